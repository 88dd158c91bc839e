"""
Collection - Declarative query builder

A Collection wraps one Schema and accumulates a projection, filters, joins
with other collections, ordering, grouping and paging. It compiles them into
a single Query, runs it through the connection, and returns a ResultIterator
that folds the joined rows back into nested objects. It also writes:
batched upserts through a RowBuffer, and guarded UPDATE / DELETE statements.

Usage:
    people = Collection(people_schema, db).attributes('id', 'name')
    pets = Collection(pets_schema, db).attributes('id', 'name').not_empty()

    people.attribute('pets', pets)          # join inferred from pets.owner -> people.id
    people.match('name', 'San%', '&like').order_by('name').limit(20)

    for person in people.find():
        print(person.name, [pet.name for pet in person.pets])

    people.where('pets.name = :name', {'name': 'Rufus'}).count()
"""

import copy
import datetime
import decimal
import itertools
import json
import logging
import math
import random
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from .aliasing import translate
from .base import DatabaseConfig, ResultSet
from .buffer_handler import DEFAULT_BUFFER_LIMIT, RowBuffer
from .errors import (
    EntityNotFoundError,
    QueryConstructionError,
    RelationshipAmbiguousError,
    SchemaDefinitionError,
)
from .iterator import ResultIterator, get_field, make_record_class, set_field
from .operators import Operator, build_condition, build_json_condition, get_operator, get_value, is_operator, render_comparison
from .query_builder import JoinType, OrderDirection, Query, QueryBuilder
from .schema import Schema
from .values import DEFAULT, NULL, Literal, RawSql

logger = logging.getLogger(__name__)

BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
UNIQUE_ID_EPOCH = 1424445470
UNIQUE_ID_RANDOM_CHARS = 3

SCALAR_TYPES = (str, int, float, bool, decimal.Decimal, datetime.date, datetime.time, Literal, RawSql)
_WORDS = re.compile(r'("[^"]*")|\s+')


@dataclass(frozen=True)
class MissingValue:
    """Value of a required attribute that was not given. Never renders, so its row is dropped."""
    attribute: str


@dataclass
class JoinSpec:
    """
    A registered relationship.

    Either ``local_column``/``foreign_column`` (inferred or hinted) or a raw
    ``condition`` is set.
    """
    collection: "Collection"
    local_column: Optional[str] = None
    foreign_column: Optional[str] = None
    condition: Optional[str] = None


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(BASE36[remainder])
    return "".join(reversed(digits))


def _json_decoder(attribute_name: str) -> Callable[[Any], None]:
    def decode(obj: Any) -> None:
        value = get_field(obj, attribute_name)
        if isinstance(value, (str, bytes, bytearray)):
            set_field(obj, attribute_name, json.loads(value))
    return decode


class Collection:
    """
    Query builder over one schema.

    Every builder method returns the collection itself, so calls chain.
    """

    _unique_sequence = itertools.count()

    def __init__(self, schema: Schema, db: DatabaseConfig, max_pile_size: int = DEFAULT_BUFFER_LIMIT):
        """
        Args:
            schema: Table schema (shared, never copied)
            db: Connection used for reads and writes
            max_pile_size: Pending rows that trigger an automatic flush
        """
        self.schema = schema
        self.db = db
        self.alias: Optional[str] = None
        self.factory: Optional[Callable[..., Any]] = None

        self.projection: dict[str, Optional[str]] = {}
        self.joins: dict[str, JoinSpec] = {}

        self.conditions: list[str] = []
        self.ordering: list[str] = []
        self.grouping: list[str] = []
        self.having_conditions: list[str] = []

        self._limit: Optional[int] = None
        self._offset: Optional[int] = None
        self._page: Optional[int] = None

        # Set on a collection that is about to be joined
        self.join_as_inner = False
        self.related_attribute: Optional[str] = None

        self.custom_conditions: dict[str, Callable[["Collection", Any], Any]] = {}

        self.one_element = False
        self.custom_iterator: Optional[ResultIterator] = None
        self.filters: list[Callable[[Any], Any]] = []

        self.pile = RowBuffer(db, schema.table, schema.auto_increment_columns(), max_pile_size)
        self.insert_count = 0
        self.update_values: dict[str, Any] = {}

    @classmethod
    def load(cls, db: DatabaseConfig, table_name: str) -> "Collection":
        """
        Build a collection over a live table, reading its schema from the database.

        Raises:
            SchemaDefinitionError: If the table does not exist
        """
        schema = Schema.load(db, table_name)
        if schema is None:
            raise SchemaDefinitionError(f"table '{table_name}' does not exist", data=table_name)
        return cls(schema, db)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Flush pending rows on a clean exit, discard them otherwise."""
        if exc_type is None:
            self.save()
        else:
            self.clear()
        return False

    # Configuration

    def get_db(self) -> DatabaseConfig:
        return self.db

    def get_alias(self) -> str:
        return self.alias if self.alias is not None else self.schema.table

    def set_alias(self, alias: str) -> "Collection":
        """Set this collection's alias path and propagate it to every joined collection."""
        self.alias = alias
        for name, join in self.joins.items():
            join.collection.set_alias(f"{alias}.{name}")
        return self

    def class_name(self, factory: Callable[..., Any]) -> "Collection":
        """Build result objects with ``factory(**values)`` instead of a generated Record."""
        self.factory = factory
        return self

    def has_one_element(self, flag: bool = True) -> "Collection":
        """When joined, expose the first related object instead of an iterator."""
        self.one_element = flag
        return self

    def iterator(self, custom: ResultIterator) -> "Collection":
        self.custom_iterator = custom
        return self

    def add_filter(self, function: Callable[[Any], Any]) -> "Collection":
        self.filters.append(function)
        return self

    def not_empty(self) -> "Collection":
        """When joined, use an INNER JOIN so parents without matches are excluded."""
        self.join_as_inner = True
        return self

    def related_with(self, attribute_name: str) -> "Collection":
        """When joined, relate through ``attribute_name`` instead of inferring the foreign key."""
        self.related_attribute = attribute_name
        return self

    def set_custom_conditions(self, conditions: Mapping[str, Callable[["Collection", Any], Any]]) -> "Collection":
        self.custom_conditions = dict(conditions)
        return self

    def define_condition(self, name: str, function: Callable[["Collection", Any], Any]) -> "Collection":
        """Register a condition type usable in where_object() trees."""
        self.custom_conditions[name] = function
        return self

    # Projection

    def attribute(self, name: str, source: Union[str, "Collection", None] = None, join_condition: Optional[str] = None) -> "Collection":
        """
        Select an attribute.

        Args:
            name: Attribute name
            source: None for the schema column, an SQL expression (which may
                reference other attributes by name), or a Collection to join
            join_condition: Explicit ON condition when ``source`` is a Collection
        """
        if source is None and not self.schema.has_attribute(name):
            logger.warning(f"Ignoring unknown attribute '{name}' on {self.schema.table}")
            return self

        if isinstance(source, Collection):
            self.join(name, source, join_condition)
            self.projection[name] = None
        else:
            self.projection[name] = source

        return self

    def attributes(self, *names: Union[str, Sequence[str]]) -> "Collection":
        if len(names) == 1 and isinstance(names[0], (list, tuple)):
            names = tuple(names[0])

        for name in names:
            self.attribute(name)

        return self

    def all_attributes(self) -> "Collection":
        for name in self.schema.attributes:
            self.attribute(name)
        return self

    def get_attributes(self) -> dict[str, Optional[str]]:
        return dict(self.projection)

    # Filtering

    def where(self, condition: Any, parameters: Optional[Mapping[str, Any]] = None) -> "Collection":
        """
        Add a WHERE condition.

        Args:
            condition: SQL referencing attributes by name (``:name``
                placeholders allowed), or a condition tree for where_object()
            parameters: Values for the placeholders
        """
        if not isinstance(condition, (str, int, float)):
            return self.where_object(condition)

        condition = str(condition)
        self.conditions.append(self.db.bind_parameters(condition, parameters) if parameters else condition)
        return self

    def match(self, name: Any, value: Any = None, operator: Union[str, Operator] = "&eq") -> "Collection":
        """
        Add a condition on one attribute, shaped by the value.

        - None: ``name IS NULL``
        - scalar: ``name <operator> value``
        - list: ``name IN (...)``, ``NOT IN`` with ``&nin``, ``BETWEEN`` with
          ``&between``; objects in the list contribute their first key
        - Collection: ``name IN (SELECT <key> ...)``
        - mapping as ``name``: see match_object()
        """
        if isinstance(name, Mapping) or (not isinstance(name, str) and hasattr(name, "__dict__")):
            return self.match_object(name)

        operator = operator if isinstance(operator, Operator) else Operator.from_token(operator)

        if value is None:
            return self.where(f"{name} IS NULL")

        if isinstance(value, Collection):
            return self._in_collection(name, value)

        if isinstance(value, (list, tuple, set, frozenset)):
            values = self._normalize_values(value)
            if not values:
                return self

            if operator is not Operator.BETWEEN:
                operator = Operator.NIN if operator is Operator.NIN else Operator.IN

            return self.where(render_comparison(name, operator, values, self.db.escape_string))

        return self.where(render_comparison(name, operator, value, self.db.escape_string))

    def _normalize_values(self, values: Any) -> list:
        normalized = []
        for element in values:
            if isinstance(element, SCALAR_TYPES):
                normalized.append(element)
            elif element is not None:
                key_value = get_field(element, self.schema.first_key())
                if key_value is not None:
                    normalized.append(key_value)
        return normalized

    def _in_collection(self, name: str, collection: "Collection") -> "Collection":
        single = collection.related_attribute or collection.schema.first_key()
        column = collection.schema.get_column(single) or single

        nested_sql = (
            collection.get_query()
            .merge_joined()
            .fields_from({single: f"`{collection.get_alias()}`.`{column}`"})
            .limit(None)
            .to_sql()
        )

        return self.where(f"{name} IN ({nested_sql})")

    def match_object(self, obj: Any) -> "Collection":
        """
        Match every schema attribute present in ``obj``.

        Values may be plain (equality), operator mappings such as
        ``{'&gt': 3}``, or nested mappings for joined collections.
        """
        items = obj.items() if isinstance(obj, Mapping) else vars(obj).items()

        for name, value in items:
            if name in self.joins and isinstance(value, Mapping) and not is_operator(value):
                self.joins[name].collection.match_object(value)
            elif self.schema.has_attribute(name):
                full_name = name if self.alias is None else f"{self.alias}.{name}"
                if is_operator(value):
                    self.match(full_name, get_value(value), get_operator(value))
                else:
                    self.match(full_name, value)

        return self

    def search(self, query: str, attributes: Union[str, Sequence[str]], match_all: bool = True) -> "Collection":
        """
        Add a text search.

        ``query`` is split on whitespace (double-quoted phrases stay whole).
        Each word must appear (LIKE) in at least one of ``attributes``; with
        ``match_all`` every word must match, otherwise any word.
        """
        if not query or not query.strip():
            return self

        attributes = [attributes] if isinstance(attributes, str) else list(attributes)

        if not attributes:
            logger.warning("No searchable attributes specified")
            return self

        word_conditions = []

        for word in _WORDS.split(query):
            if not word or not word.strip():
                continue

            word = word.strip()
            if word.startswith('"') and word.endswith('"') and len(word) > 1:
                word = word[1:-1]

            pattern = self.db.escape_string(word).replace("%", "\\%")
            matching = " OR ".join(f"{name} LIKE :word" for name in attributes)
            word_conditions.append(
                self.db.bind_parameters(f"({matching})", {"word": RawSql(f"'%{pattern}%'")})
            )

        if word_conditions:
            self.where((" AND " if match_all else " OR ").join(word_conditions))

        return self

    def where_object(self, condition: Any) -> "Collection":
        """
        Add a condition tree.

        Nodes are ``{'type': ..., 'model': ...}`` with types ``and`` /
        ``or`` (model: list of nodes), ``not`` (model: one node),
        ``attributes`` (model: mapping for match_object) or any name
        registered with define_condition(). A tree that adds no condition
        matches nothing.

        Raises:
            QueryConstructionError: If a node has no type
        """
        if isinstance(condition, Mapping):
            condition_type, model = condition.get("type"), condition.get("model")
        else:
            condition_type, model = getattr(condition, "type", None), getattr(condition, "model", None)

        if not condition_type:
            raise QueryConstructionError(f"invalid condition {condition!r}", data=condition)

        has_conditions = False

        if condition_type == "or":
            combined = self._sibling()
            for subcondition in model or []:
                has_conditions = True
                combined.union(self._sibling().where_object(subcondition))
            if has_conditions:
                self.intersect(combined)

        elif condition_type == "and":
            for subcondition in model or []:
                has_conditions = True
                self.intersect(self._sibling().where_object(subcondition))

        elif condition_type == "not":
            has_conditions = True
            self.exclude(self._sibling().where_object(model))

        elif condition_type == "attributes":
            if model:
                has_conditions = True
                self.match_object(model)

        elif condition_type in self.custom_conditions:
            has_conditions = True
            self.custom_conditions[condition_type](self, model)

        if not has_conditions:
            self.where("0")

        return self

    def _sibling(self) -> "Collection":
        sibling = Collection(self.schema, self.db).set_custom_conditions(self.custom_conditions)
        sibling.alias = self.alias
        return sibling

    def mongo(self, condition: Mapping) -> "Collection":
        """
        Add a mongo-style condition.

        Usage:
            people.mongo({'&or': [{'name': {'&like': 'ros%'}}, {'id': {'&in': [1, 2, 3]}}]})
        """
        json_attributes = [name for name in self.schema.attributes if self.schema.is_json(name)]
        return self.where(build_condition(condition, self.db.escape_string, json_attributes))

    def where_json(self, attribute_name: str, condition: Mapping) -> "Collection":
        """Add a condition on paths inside a JSON attribute."""
        return self.where(build_json_condition(attribute_name, condition, self.db.escape_string))

    # Ordering and grouping

    def order_by(self, attribute_name: str, descending: bool = False, prioritize: bool = False) -> "Collection":
        """
        Order by an attribute, possibly of a joined collection (``pets.name``)
        or a path into a JSON attribute (``data.address.city``). Unknown
        attributes are skipped with a warning.
        """
        direction = (OrderDirection.DESC if descending else OrderDirection.ASC).value
        parts = attribute_name.split(".")

        if len(parts) > 1 and self.schema.is_json(parts[0]):
            path = ".".join(parts[1:])
            return self.order(f"JSON_EXTRACT({parts[0]}, '$.{path}') {direction}", prioritize=prioritize)

        target = self
        for part in parts[:-1]:
            if part not in target.joins:
                logger.warning(f"order_by attribute '{attribute_name}' not found")
                return self
            target = target.joins[part].collection

        if not target.schema.has_attribute(parts[-1]):
            logger.warning(f"order_by attribute '{attribute_name}' not found")
            return self

        return self.order(f"{attribute_name} {direction}", prioritize=prioritize)

    def order(self, order: Optional[str] = None, parameters: Optional[Mapping[str, Any]] = None, prioritize: bool = False) -> "Collection":
        """Add a raw ORDER BY term (first when ``prioritize``), or clear them all with no argument."""
        if order is None:
            self.ordering = []
            return self

        order = self.db.bind_parameters(order, parameters) if parameters else order

        if prioritize:
            self.ordering.insert(0, order)
        else:
            self.ordering.append(order)

        return self

    def group_by(self, group: str, parameters: Optional[Mapping[str, Any]] = None) -> "Collection":
        self.grouping.append(self.db.bind_parameters(group, parameters) if parameters else group)
        return self

    def having(self, condition: str, parameters: Optional[Mapping[str, Any]] = None) -> "Collection":
        self.having_conditions.append(self.db.bind_parameters(condition, parameters) if parameters else condition)
        return self

    # Paging

    def limit(self, limit: Optional[Any]) -> "Collection":
        self._limit = max(1, int(limit)) if limit is not None else None
        return self

    def offset(self, offset: Any) -> "Collection":
        self._offset = max(0, int(offset))
        self._page = 1 if self._limit is None else 1 + self._offset // self._limit
        return self

    def page(self, page: Any) -> "Collection":
        self._page = max(1, int(page))
        self._offset = 0 if self._limit is None else self._limit * (self._page - 1)
        return self

    def get_limit(self) -> Optional[int]:
        return self._limit

    def get_offset(self) -> Optional[int]:
        return self._offset

    def get_page(self) -> int:
        return self._page if self._page is not None else 1

    def limit_distinct(self, limit: int, offset: Optional[int] = None) -> "Collection":
        """
        Limit the number of distinct root objects rather than joined rows.

        Keys are selected in a subquery (keeping only joins used for
        filtering) and the outer query matches them with IN.
        """
        key_name = self.schema.first_key()

        subset = self._clone()
        subset._remove_nonessential_joins()
        subset._clear_attributes()
        subset.attribute(key_name, f"DISTINCT({key_name})")

        sub_query = subset.get_query(force_select_keys=False)
        if offset:
            sub_query.limit(offset, limit)
        else:
            sub_query.limit(limit)

        return self.where(f"{key_name} IN (SELECT * FROM ({sub_query.to_sql()}) as t)")

    def _clone(self) -> "Collection":
        clone = copy.copy(self)
        clone.projection = dict(self.projection)
        clone.conditions = list(self.conditions)
        clone.ordering = list(self.ordering)
        clone.grouping = list(self.grouping)
        clone.having_conditions = list(self.having_conditions)
        clone.filters = list(self.filters)
        clone.update_values = dict(self.update_values)
        clone.pile = RowBuffer(self.db, self.schema.table, self.pile.auto_increment_columns, self.pile.buffer_limit)
        clone.joins = {
            name: JoinSpec(join.collection._clone(), join.local_column, join.foreign_column, join.condition)
            for name, join in self.joins.items()
        }
        return clone

    def _clear_attributes(self) -> "Collection":
        self.projection = {}
        for join in self.joins.values():
            join.collection._clear_attributes()
        return self

    def _remove_nonessential_joins(self) -> "Collection":
        """Drop joins not referenced by any WHERE / GROUP BY / HAVING / ORDER BY term."""
        uses = " ".join(self.conditions + self.grouping + self.having_conditions + self.ordering)
        self.joins = {name: join for name, join in self.joins.items() if f"{name}." in uses}
        return self

    # Set operations

    def union(self, other: "Collection") -> "Collection":
        """Keep rows matching this collection's conditions OR the other's."""
        conditions = self._combined_conditions(other)
        if conditions:
            self.conditions = ["(" + " OR ".join(conditions) + ")"]
        return self

    def intersect(self, other: "Collection") -> "Collection":
        """Keep rows matching this collection's conditions AND the other's."""
        self.conditions = self._combined_conditions(other)
        return self

    def exclude(self, other: "Collection") -> "Collection":
        """Keep rows matching this collection's conditions AND NOT the other's."""
        self.conditions = self._combined_conditions(other, negate_other=True)
        return self

    def _combined_conditions(self, other: "Collection", negate_other: bool = False) -> list[str]:
        self._consolidate_conditions()
        other._consolidate_conditions()

        combined = []
        if self.conditions:
            combined.append("(" + " AND ".join(self.conditions) + ")")
        if other.conditions:
            prefix = "NOT " if negate_other else ""
            combined.append(prefix + "(" + " AND ".join(other.conditions) + ")")
        return combined

    def _consolidate_conditions(self) -> None:
        """Pull the conditions of every joined collection up into this one."""
        for join in self.joins.values():
            join.collection._consolidate_conditions()
            self.conditions.extend(join.collection._scoped_conditions())
            join.collection.conditions = []

    def _scoped_conditions(self) -> list[str]:
        """
        Conditions with this collection's own attribute names prefixed by
        its alias path, so they resolve against the joined table.
        """
        if self.alias is None:
            return list(self.conditions)

        names = list(self.schema.attributes) + [name for name, source in self.projection.items() if source is not None]
        scope = {name: f"{self.alias}.{name}" for name in names}
        return [translate(condition, scope) for condition in self.conditions]

    # Joins

    def join(self, name: str, collection: "Collection", join_condition: Optional[str] = None) -> "Collection":
        """
        Join another collection under ``name``.

        Without ``join_condition`` the relationship is inferred, in order:
        ``name`` is a foreign key here; the joined collection's
        related_with() hint (foreign key here, foreign key there, or plain
        attribute there); the single foreign key from this table to the
        other; the single foreign key from the other table to this one.

        Raises:
            RelationshipAmbiguousError: If no single relationship is found
        """
        collection.set_alias(name if self.alias is None else f"{self.alias}.{name}")

        if join_condition is not None:
            self.joins[name] = JoinSpec(collection, condition=join_condition)
            return self

        local_table = self.schema.table
        foreign_table = collection.schema.table
        related: Optional[str] = None
        is_local = False

        if self.schema.has_foreign_key(name):
            related, is_local = name, True

        elif collection.related_attribute is not None:
            hint = collection.related_attribute
            if self.schema.has_foreign_key(hint):
                related, is_local = hint, True
            elif collection.schema.has_foreign_key(hint) or collection.schema.has_attribute(hint):
                related, is_local = hint, False
            else:
                raise RelationshipAmbiguousError(f"foreign attribute '{hint}' not found in {foreign_table}", data=hint)

        else:
            outgoing = self.schema.get_foreign_keys(foreign_table)
            incoming = collection.schema.get_foreign_keys(local_table)

            if len(outgoing) == 1:
                related, is_local = next(iter(outgoing)), True
            elif not outgoing and len(incoming) == 1:
                related, is_local = next(iter(incoming)), False
            else:
                candidates = list(outgoing) or list(incoming)
                raise RelationshipAmbiguousError(
                    f"could not determine relation between tables '{local_table}' and '{foreign_table}'",
                    data=candidates,
                )

        if is_local:
            foreign_key = self.schema.get_foreign_key(related)
            local_column = self.schema.get_column(related)
            foreign_column = foreign_key.column
        else:
            foreign_key = collection.schema.get_foreign_key(related)
            foreign_column = collection.schema.get_column(related)
            local_column = foreign_key.column if foreign_key else self.schema.get_column(self.schema.first_key())

        self.joins[name] = JoinSpec(collection, local_column=local_column, foreign_column=foreign_column)
        return self

    # Compilation

    def build_alias_map(self) -> dict[str, str]:
        """
        Map every attribute path in the join tree to its SQL source:
        ``pets.name`` to ```pets`.`name```, custom attributes to their
        translated expression in parentheses.
        """
        table_alias = self.get_alias()
        prefix = "" if self.alias is None else f"{self.alias}."

        alias_map = {
            prefix + name: f"`{table_alias}`.`{attribute.column}`"
            for name, attribute in self.schema.attributes.items()
        }

        for join in self.joins.values():
            alias_map.update(join.collection.build_alias_map())

        for name, source in self.projection.items():
            if source is not None and not self.schema.has_attribute(name):
                alias_map[prefix + name] = f"({translate(source, alias_map)})"

        return alias_map

    def get_query(self, alias_map: Optional[Mapping[str, str]] = None, force_select_keys: bool = True) -> Query:
        """
        Compile this collection (and its joins) into a Query.

        Key attributes are always selected (unless ``force_select_keys`` is
        off) since the iterator groups rows by them. Conditions of joined
        collections go into their ON clause, so they filter only that branch.
        """
        if alias_map is None:
            alias_map = self.build_alias_map()

        table_alias = self.get_alias()
        prefix = "" if self.alias is None else f"{self.alias}."

        query = Query(self.schema.table, table_alias)

        if force_select_keys:
            for key in self.schema.keys:
                query.field(prefix + key, f"`{table_alias}`.`{self.schema.get_column(key)}`")

        for name, source in self.projection.items():
            if name in self.joins:
                continue

            if source is None:
                source = f"`{table_alias}`.`{self.schema.get_column(name)}`"
            else:
                source = translate(source, alias_map)

            query.field(prefix + name, source)

        for join in self.joins.values():
            nested = join.collection
            join_type = JoinType.INNER if nested.join_as_inner else JoinType.LEFT

            if join.condition is not None:
                on = [translate(join.condition, alias_map)]
            else:
                on = [f"`{table_alias}`.`{join.local_column}` = `{nested.get_alias()}`.`{join.foreign_column}`"]

            on.extend(translate(condition, alias_map) for condition in nested._scoped_conditions())

            branch = copy.copy(nested)
            branch.conditions = []
            query.join(join_type, branch.get_query(alias_map, force_select_keys), on)

        for condition in self.conditions:
            query.where(translate(condition, alias_map))

        for order in self.ordering:
            query.order_by(translate(order, alias_map))

        for group in self.grouping:
            query.group_by(translate(group, alias_map))

        for condition in self.having_conditions:
            query.having(translate(condition, alias_map))

        if self._limit is not None:
            if self._offset is not None:
                query.limit(self._offset, self._limit)
            else:
                query.limit(self._limit)

        return query

    def build_iterator(self) -> ResultIterator:
        """Build the iterator that folds this collection's result rows into objects."""
        prefix = "" if self.alias is None else f"{self.alias}."
        key_fields = [prefix + key for key in self.schema.keys]
        factory = self.factory or make_record_class(list(self.projection))

        iterator = ResultIterator(key_fields, factory, self.one_element)

        for name in self.projection:
            if name in self.joins:
                iterator.attribute(name, self.joins[name].collection.build_iterator())
            else:
                iterator.attribute(name, prefix + name)

            if self.schema.is_json(name):
                iterator.add_filter(_json_decoder(name))

        for function in self.filters:
            iterator.add_filter(function)

        return iterator

    # Reading

    def find(self, key: Any = None) -> Union[ResultIterator, Any]:
        """
        Run the query.

        Returns:
            ResultIterator over the results, or the single object for ``key``
            (see fetch())
        """
        if key is not None:
            return self.fetch(key)

        result = self.db.execute(self.get_query().to_sql())
        iterator = self.custom_iterator if self.custom_iterator is not None else self.build_iterator()
        iterator.set_result_set(result if result is not None else ResultSet())
        return iterator

    def fetch(self, key: Any = None) -> Any:
        """
        Get one object by primary key (values given positionally for
        composite keys).

        Raises:
            EntityNotFoundError: If no row matches
        """
        if key is not None:
            values = list(key) if isinstance(key, (list, tuple)) else [key]
            prefix = "" if self.alias is None else f"{self.alias}."
            for key_name, value in zip(self.schema.keys, values):
                self.match(prefix + key_name, value)

        result = self.find().first()

        if result is None:
            raise EntityNotFoundError(f"No records for key {json.dumps(key, default=str)}", data=key)

        return result

    def first(self) -> Any:
        """The first object, or None."""
        return self.limit(1).find().first()

    def count(self) -> Optional[int]:
        """Number of rows the query returns, ignoring the limit."""
        query = self.get_query()
        query.limit(None)

        result = self.db.execute(f"SELECT COUNT(*) as `count` FROM ({query.to_sql()}) countTable")
        row = result.fetch_row() if result is not None else None

        if not row or row.get("count") is None:
            return None
        return int(row["count"])

    # Writing

    def add(self, obj: Any) -> "Collection":
        """Queue an object (or mapping) for insertion. Flushes automatically at the pile limit."""
        self.insert_count += self.pile.add_row(self._to_row(obj))
        return self

    def clear(self) -> None:
        """Discard queued rows."""
        self.pile.clear()

    def save(self, entity: Any = None) -> int:
        """
        Write queued rows (plus ``entity``, if given) as one batched upsert.

        Generated values (UUID keys, auto increment ids, JSON attributes) are
        written back onto ``entity``.

        Returns:
            Total rows affected by this collection's writes so far
        """
        last_row = None
        if entity is not None:
            last_row = self._to_row(entity)
            self.insert_count += self.pile.add_row(last_row)

        self.insert_count += self.pile.flush()

        if entity is not None:
            self._write_back(entity, last_row)

        return self.insert_count

    def _write_back(self, entity: Any, row: dict) -> None:
        for name, attribute in self.schema.attributes.items():
            value = row.get(attribute.column)

            if value is not None and value is not DEFAULT and not isinstance(value, MissingValue):
                value = None if value is NULL else value
                if attribute.json and isinstance(value, str):
                    value = json.loads(value)
                set_field(entity, name, value)
            elif attribute.auto_increment:
                set_field(entity, name, self.db.last_insert_id)

    def _written_attributes(self) -> list[str]:
        return list(self.projection) if self.projection else list(self.schema.attributes)

    def _to_row(self, obj: Any) -> dict:
        """Convert an object into a row keyed by column name."""
        row = {}

        for key in self.schema.keys:
            value = get_field(obj, key)
            if value is None and self.schema.is_uuid(key):
                value = self.get_unique_id()
            row[self.schema.get_column(key)] = self._sanitize_attribute_value(value, key)

        for name in self._written_attributes():
            if self.schema.is_key(name) or not self.schema.has_attribute(name):
                continue
            row[self.schema.get_column(name)] = self._sanitize_attribute_value(get_field(obj, name), name)

        return row

    def _sanitize_attribute_value(self, value: Any, name: str) -> Any:
        if value is None:
            fixed = self.update_values.get(name)
            if fixed is not None and isinstance(fixed, SCALAR_TYPES):
                return fixed

            if not self.schema.accepts_null(name):
                if self.schema.is_auto_increment(name):
                    return None
                if self.schema.has_default(name):
                    return DEFAULT
                return MissingValue(name)

        if self.schema.is_json(name):
            return None if value is None else json.dumps(value, default=str)

        if value is None or value is NULL or value is DEFAULT or isinstance(value, SCALAR_TYPES):
            return value

        if name in self.joins:
            related = self.joins[name].collection
            key_value = self._first_key_value(related, value)
            if key_value is None:
                related.save(value)
                key_value = self._first_key_value(related, value)
            if key_value is not None:
                return key_value

        return DEFAULT

    @staticmethod
    def _first_key_value(collection: "Collection", obj: Any) -> Any:
        for key in collection.schema.keys:
            value = get_field(obj, key)
            if value is not None:
                return value
        return None

    def set(self, name: str, value: Any) -> "Collection":
        """Set a value for update(); also used for missing values on add()."""
        self.update_values[name] = value
        return self

    def update(self) -> int:
        """
        Apply set() values to every row matching the conditions.

        A collection with no conditions is not updated (a warning is logged);
        use ``where(1)`` to update the whole table.

        Returns:
            Number of rows affected
        """
        if not self.update_values:
            logger.warning(f"No values to update on {self.schema.table}")
            return 0

        if not self.conditions:
            logger.warning(
                f"Update on {self.schema.table} ignored because no conditions are defined. "
                f"Use where(1) to update the entire collection"
            )
            return 0

        alias_map = self.build_alias_map()
        table_alias = self.get_alias()

        values = {translate(name, alias_map): value for name, value in self.update_values.items()}
        condition = " AND ".join(translate(c, alias_map) for c in self.conditions)

        table = f"{self.schema.table} `{table_alias}`"
        for join in self.joins.values():
            nested = join.collection
            if join.condition is not None:
                on = [translate(join.condition, alias_map)]
            else:
                on = [f"`{table_alias}`.`{join.local_column}` = `{nested.get_alias()}`.`{join.foreign_column}`"]
            on.extend(translate(c, alias_map) for c in nested._scoped_conditions())
            table += f" JOIN {nested.schema.table} `{nested.get_alias()}` ON {' AND '.join(on)}"

        query = QueryBuilder.update(table, values, condition, self.db.escape_string)
        if query is None:
            return 0

        self.db.execute(query)
        return self.db.affected_rows

    def delete(self) -> int:
        """
        Delete every row matching the conditions.

        A collection with no conditions deletes nothing (a warning is
        logged); use ``where(1)`` to empty the table.

        Returns:
            Number of rows affected
        """
        if not self.conditions:
            logger.warning(
                f"Delete on {self.schema.table} ignored because no conditions are defined. "
                f"Use where(1) to delete the entire collection"
            )
            return 0

        alias_map = self.build_alias_map()
        condition = " AND ".join(translate(c, alias_map) for c in self.conditions)

        # MySQL does not accept an aliased table in a single-table DELETE
        condition = condition.replace(f"`{self.get_alias()}`.", "")

        self.db.execute(QueryBuilder.delete(self.schema.table, condition))
        return self.db.affected_rows

    def last_insert_id(self) -> Optional[int]:
        return self.db.last_insert_id

    def next_insert_id(self) -> Optional[int]:
        return self.db.next_insert_id(self.schema.table)

    # Unique ids

    @classmethod
    def get_unique_id(cls) -> str:
        """
        Generate a compact, roughly time-ordered id: base 36 of the time in
        tenths of milliseconds since 2015-02-20 (plus a process-wide
        counter), followed by three random base 36 characters.
        """
        value = math.floor(time.time() * 10000) - UNIQUE_ID_EPOCH * 10000 + next(cls._unique_sequence)
        suffix = "".join(random.choice(BASE36) for _ in range(UNIQUE_ID_RANDOM_CHARS))
        return _base36(value) + suffix

    @staticmethod
    def get_unique_id_timestamp(unique_id: str) -> int:
        """Unix timestamp (seconds) at which ``unique_id`` was generated."""
        return int(unique_id[:-UNIQUE_ID_RANDOM_CHARS], 36) // 10000 + UNIQUE_ID_EPOCH
