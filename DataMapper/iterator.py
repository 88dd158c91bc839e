"""
Result Iterator - Fold joined rows into nested objects

A joined result set repeats parent columns once per child row:

    id  name      pets.id  pets.name
    --  --------  -------  ---------
    1   Santiago  1        Rufus
    1   Santiago  2        Buddy
    2   Peter     4        Hugo

ResultIterator walks it as a tree. The top level yields one object per
distinct key tuple (``id``), skipping repeated rows; each object's ``pets``
attribute is a nested iterator restricted to the rows carrying that parent
key, starting at the parent's row.

Usage:
    people = ResultIterator(['id'])
    people.attribute('name')
    people.attribute('pets', ResultIterator(['pets.id']).attribute('name', 'pets.name'))
    people.set_result_set(result)

    for person in people:
        print(person.name, [pet.name for pet in person.pets])

Rows of one key group must be contiguous in the result set. Queries that
reorder rows between a group's members (e.g. ORDER BY a child column) split
the group into several objects.
"""

import copy
import dataclasses
import json
import logging
from typing import Any, Callable, Iterator, Mapping, MutableMapping, Optional, Sequence, Union

from .base import ResultSet

logger = logging.getLogger(__name__)


class Record:
    """
    Plain result object.

    Attributes are set with ``setattr``, so column names that are Python
    keywords (``from``, ``class``) are kept and read back with ``getattr``.
    """

    _fields: tuple = ()

    def __init__(self, **values):
        for name in self._fields:
            setattr(self, name, None)
        for name, value in values.items():
            setattr(self, name, value)

    def __repr__(self) -> str:
        values = ", ".join(f"{name}={value!r}" for name, value in vars(self).items())
        return f"{type(self).__name__}({values})"

    def __eq__(self, other: Any) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return vars(self) == vars(other)


def make_record_class(field_names: Sequence[str], name: str = "Record") -> type:
    """
    Create the Record subclass used for objects yielded by an iterator.

    Every field defaults to None.
    """
    return type(name, (Record,), {"_fields": tuple(field_names), "__module__": __name__})


def get_field(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def set_field(obj: Any, name: str, value: Any) -> None:
    if isinstance(obj, MutableMapping):
        obj[name] = value
    else:
        setattr(obj, name, value)


def to_serializable(value: Any) -> Any:
    """Convert records, entities and nested iterators into plain dicts and lists."""
    if isinstance(value, ResultIterator):
        return [to_serializable(item) for item in value.fetch_all()]

    if isinstance(value, (list, tuple)):
        return [to_serializable(item) for item in value]

    if isinstance(value, dict):
        return {key: to_serializable(item) for key, item in value.items()}

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_serializable(getattr(value, f.name)) for f in dataclasses.fields(value)}

    if hasattr(value, "__dict__") and not isinstance(value, type):
        return {key: to_serializable(item) for key, item in vars(value).items() if not key.startswith("_")}

    return value


class ResultIterator:
    """
    Iterate a ResultSet as a sequence of nested objects.

    Args:
        key_fields: Output columns whose values identify one object
        factory: Callable building an object from keyword values
            (defaults to a Record over the declared attributes)
        fetch_first_row: When this iterator is nested, expose its first
            object instead of the iterator itself
    """

    def __init__(
        self,
        key_fields: Union[str, Sequence[str]],
        factory: Optional[Callable[..., Any]] = None,
        fetch_first_row: bool = False
    ):
        self.key_fields = [key_fields] if isinstance(key_fields, str) else list(key_fields)
        self.factory = factory
        self.fetch_first_row = fetch_first_row

        self.result_set: Optional[ResultSet] = None
        self.attributes: dict[str, str] = {}
        self.nested: dict[str, "ResultIterator"] = {}
        self.filters: list[Callable[[Any], Any]] = []

        self.assertions: Optional[dict[str, Any]] = None
        self.pointer_start = 0

        self.pointer = 0
        self.current_row: Optional[dict] = None
        self.last_seen: Optional[tuple] = None

    def set_result_set(self, result_set: ResultSet) -> "ResultIterator":
        self.result_set = result_set
        for nested in self.nested.values():
            nested.set_result_set(result_set)
        return self

    def attribute(self, name: str, source: Union[str, "ResultIterator", None] = None) -> "ResultIterator":
        """
        Declare an output attribute.

        Args:
            name: Attribute name on the yielded object
            source: Output column to read (defaults to ``name``), or a
                nested iterator
        """
        if isinstance(source, ResultIterator):
            self.nested[name] = source
        else:
            self.attributes[name] = source if source is not None else name
        return self

    def add_filter(self, function: Callable[[Any], Any]) -> "ResultIterator":
        """Register a function applied, in registration order, to every yielded object."""
        if not callable(function):
            raise TypeError("iterator filter is not callable")
        self.filters.append(function)
        return self

    # Iteration protocol

    def rewind(self) -> None:
        self.pointer = self.pointer_start
        self.result_set.seek(self.pointer)
        self.current_row = self.result_set.fetch_row()
        self.last_seen = self._key_of(self.current_row)

    def valid(self) -> bool:
        if self.current_row is None:
            return False

        # A null key means an empty LEFT JOIN branch
        if any(self.current_row.get(field) is None for field in self.key_fields):
            return False

        if self.assertions:
            for field, expected in self.assertions.items():
                if self.current_row.get(field) != expected:
                    return False

        return True

    def current(self) -> Any:
        """Build the object for the current row."""
        values = {name: self.current_row.get(source) for name, source in self.attributes.items()}

        assertions = {field: self.current_row.get(field) for field in self.key_fields}

        for name, template in self.nested.items():
            template.ensure_factory()
            nested = copy.copy(template)
            nested.assertions = assertions
            nested.pointer_start = self.pointer
            values[name] = nested.first() if nested.fetch_first_row else nested

        obj = self.ensure_factory()(**values)
        self._drop_undeclared(obj)

        for function in self.filters:
            function(obj)

        return obj

    def advance(self) -> None:
        """Move to the first row whose key differs from the last one seen."""
        while self.current_row is not None and self._key_of(self.current_row) == self.last_seen:
            self.pointer += 1
            self.result_set.seek(self.pointer)
            self.current_row = self.result_set.fetch_row()

        self.last_seen = self._key_of(self.current_row)

    def __iter__(self) -> Iterator[Any]:
        self.rewind()
        while self.valid():
            yield self.current()
            self.advance()

    def ensure_factory(self) -> Callable[..., Any]:
        if self.factory is None:
            self.factory = make_record_class([*self.attributes, *self.nested])
        return self.factory

    def _drop_undeclared(self, obj: Any) -> None:
        """Remove public fields the factory set beyond the declared attributes."""
        if isinstance(obj, Mapping) or not hasattr(obj, "__dict__"):
            return

        declared = set(self.attributes) | set(self.nested)
        for name in [name for name in vars(obj) if name not in declared and not name.startswith("_")]:
            delattr(obj, name)

    def _key_of(self, row: Optional[dict]) -> Optional[tuple]:
        if row is None:
            return None
        return tuple(row.get(field) for field in self.key_fields)

    # Helpers

    def first(self) -> Any:
        """The first object, or None if there are no valid rows."""
        self.rewind()
        return self.current() if self.valid() else None

    def fetch_all(self) -> list:
        """All objects, with every nested iterator resolved into a list."""
        objects = []

        for obj in self:
            for name in self.nested:
                value = get_field(obj, name)
                if isinstance(value, ResultIterator):
                    set_field(obj, name, value.fetch_all())
            objects.append(obj)

        return objects

    def row_count(self) -> Optional[int]:
        """Number of raw rows in the result set (not objects)."""
        return self.result_set.row_count() if self.result_set is not None else None

    def to_serializable(self) -> list:
        return to_serializable(self)

    def to_json(self, **kwargs) -> str:
        return json.dumps(self.to_serializable(), default=str, **kwargs)
