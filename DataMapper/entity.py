"""
Entity - Declarative table classes

An entity class declares its table in a ``schema`` dict and gets a typed
Collection, persistence helpers and dependency ordering for table creation.

Usage:
    class Person(Entity):
        schema = {
            'table': 'people',
            'keys': ['id'],
            'attributes': {
                'id': {'type': 'int', 'unsigned': True, 'autoIncrement': True},
                'name': {'type': 'varchar', 'length': 128},
            },
        }

    class Pet(Entity):
        schema = {
            'table': 'pets',
            'keys': ['id'],
            'attributes': {
                'id': {'type': 'uuid'},
                'owner': {'entity': 'Person', 'onDelete': 'CASCADE'},
                'name': {'type': 'varchar', 'length': 64},
            },
        }

    for cls in Entity.organize([Pet, Person]):     # Person, then Pet
        cls.get_schema().create(db)

    ana = Person(name='Ana').save(db)
    Pet(owner=ana.id, name='Rufus').save(db)

    people = Person.collection(db).all_attributes()
    people.attribute('pets', Pet.collection(db).all_attributes())
"""

import copy
import logging
from typing import Any, Callable, Mapping, Optional, Union

from .base import Attribute, DatabaseConfig
from .collection import SCALAR_TYPES, Collection
from .errors import SchemaDefinitionError
from .iterator import ResultIterator
from .schema import Schema

logger = logging.getLogger(__name__)

# Entity classes by name, so relations can reference classes declared later
_registry: dict[str, type] = {}


def _items(values: Any):
    if isinstance(values, Mapping):
        return values.items()
    if hasattr(values, "__dict__"):
        return vars(values).items()
    return ()


class Entity:
    """Base class for declarative entities."""

    schema: dict = {}

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        _registry[cls.__name__] = cls
        _registry[f"{cls.__module__}.{cls.__qualname__}"] = cls

    def __init__(self, **values):
        for name in self.schema.get("attributes", {}):
            setattr(self, name, None)

        for name, value in values.items():
            setattr(self, name, value)

    def __getattr__(self, name: str) -> Any:
        # Declared attributes left out of a query read as None
        if name in type(self).schema.get("attributes", {}):
            return None
        raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

    def __repr__(self) -> str:
        fields = ", ".join(f"{key}={value!r}" for key, value in vars(self).items())
        return f"{type(self).__name__}({fields})"

    # Schema

    @staticmethod
    def resolve(reference: Union[str, type]) -> type:
        """
        Find an entity class by class or name.

        Raises:
            SchemaDefinitionError: If no entity class has that name
        """
        if isinstance(reference, type):
            return reference

        name = str(reference).strip(".\\")
        if name not in _registry:
            raise SchemaDefinitionError(f"invalid schema: related entity '{reference}' not found", data=reference)
        return _registry[name]

    @classmethod
    def get_schema(cls) -> Schema:
        """
        Build the Schema declared in ``cls.schema``.

        Attributes declaring an ``entity`` become foreign keys to that
        entity's ``attribute`` (its first key by default), inheriting type,
        length and unsigned from it unless given.

        Raises:
            SchemaDefinitionError: On missing table, keys or attributes, or
                an unknown related entity
        """
        definition = cls.schema

        for required in ("table", "attributes", "keys"):
            if not definition.get(required):
                raise SchemaDefinitionError(f"invalid schema for {cls.__name__}: no {required} defined", data=cls.__name__)

        attributes = {}
        foreign_keys = {}

        for name, data in definition["attributes"].items():
            data = dict(data)
            related = data.pop("entity", None)
            foreign_attribute_name = data.pop("attribute", None)

            if related is not None:
                foreign_table, foreign_attribute = cls._related_attribute(related, foreign_attribute_name, definition)

                for inherited in ("type", "length", "unsigned"):
                    if data.get(inherited) is None and getattr(foreign_attribute, inherited) not in (None, False):
                        data[inherited] = getattr(foreign_attribute, inherited)

                foreign_keys[name] = {
                    "table": foreign_table,
                    "column": foreign_attribute.column,
                    "on_delete": data.pop("onDelete", data.pop("on_delete", None)),
                    "on_update": data.pop("onUpdate", data.pop("on_update", None)),
                }

            attributes[name] = data

        return Schema.from_definition({**definition, "attributes": attributes, "foreignKeys": foreign_keys})

    @classmethod
    def _related_attribute(cls, related: Union[str, type], attribute_name: Optional[str], definition: dict) -> tuple[str, Attribute]:
        foreign_class = cls.resolve(related)

        if foreign_class is cls:
            # Self reference: read the referenced attribute from this definition
            attribute_name = attribute_name or definition["keys"][0]
            data = definition["attributes"].get(attribute_name)
            if not data or "entity" in data:
                raise SchemaDefinitionError(f"invalid schema: attribute '{attribute_name}' not found", data=attribute_name)
            attribute = Schema().attribute(attribute_name, data).get_attribute(attribute_name)
            return definition["table"], attribute

        foreign_schema = foreign_class.get_schema()
        attribute_name = attribute_name or foreign_schema.first_key()
        attribute = foreign_schema.get_attribute(attribute_name)
        if attribute is None:
            raise SchemaDefinitionError(
                f"invalid schema: attribute '{attribute_name}' not found in {foreign_class.__name__}",
                data=attribute_name,
            )
        return foreign_schema.table, attribute

    @classmethod
    def get_relations(cls) -> dict[str, Union[str, type]]:
        """Related entity of every attribute declaring one."""
        return {
            name: data["entity"]
            for name, data in cls.schema.get("attributes", {}).items()
            if data.get("entity") is not None
        }

    @classmethod
    def get_relation(cls, name: str) -> Optional[dict]:
        data = cls.schema.get("attributes", {}).get(name)
        return data if data and data.get("entity") is not None else None

    @classmethod
    def organize(cls, classes, organized: Optional[list] = None, checking: Optional[set] = None) -> list[type]:
        """
        Order entity classes so every class comes after the classes it
        references (the order tables must be created in).

        Names that do not resolve to an Entity subclass are skipped.
        """
        organized = [] if organized is None else organized
        checking = set() if checking is None else checking

        for reference in classes:
            try:
                entity_class = cls.resolve(reference)
            except SchemaDefinitionError:
                logger.warning(f"Skipping unknown entity {reference}")
                continue

            if entity_class in checking:
                continue
            checking.add(entity_class)

            if not issubclass(entity_class, Entity):
                continue

            cls.organize(entity_class.get_relations().values(), organized, checking)
            organized.append(entity_class)

        return organized

    # Collections

    @classmethod
    def define_condition(cls, name: str, function: Callable[[Collection, Any], Any]) -> None:
        """Register a condition type for where_object() trees on this entity's collections."""
        if not callable(function):
            raise TypeError(f"define_condition: invalid callback for '{name}'")

        if "_custom_conditions" not in cls.__dict__:
            cls._custom_conditions = {}
        cls._custom_conditions[name] = function

    @classmethod
    def collection(cls, db: DatabaseConfig, attributes_object: Any = None) -> Collection:
        """
        Collection of this entity.

        Args:
            db: Connection
            attributes_object: Optional object (or mapping); each schema
                attribute it has is selected, and related entities it holds
                are joined
        """
        schema = cls.get_schema()
        collection = Collection(schema, db).class_name(cls)

        conditions = cls.__dict__.get("_custom_conditions")
        if conditions:
            collection.set_custom_conditions(conditions)

        if attributes_object is not None:
            for name, value in _items(attributes_object):
                if not schema.has_attribute(name):
                    continue

                if isinstance(value, Entity):
                    collection.attribute(name, type(value).collection(db, value))
                elif value is None or isinstance(value, SCALAR_TYPES) or schema.is_json(name):
                    collection.attribute(name)

        return collection

    @classmethod
    def single(cls, db: DatabaseConfig) -> Collection:
        """Collection that, when joined, yields one object instead of an iterator."""
        return cls.collection(db).has_one_element()

    @classmethod
    def fetch(cls, db: DatabaseConfig, key: Any) -> "Entity":
        """
        Load one entity by primary key.

        Raises:
            EntityNotFoundError: If no row matches
        """
        return cls.collection(db).all_attributes().fetch(key)

    @classmethod
    def get_unique_id(cls) -> str:
        return Collection.get_unique_id()

    # Instances

    def set_values(self, values: Any, accepted_attributes: Optional[list[str]] = None) -> "Entity":
        """
        Copy schema attributes from a mapping or object.

        Mapping values of foreign key attributes become instances of the
        related entity.
        """
        schema = type(self).get_schema()

        for name, value in _items(values):
            if not schema.has_attribute(name):
                continue

            if accepted_attributes is not None and name not in accepted_attributes:
                continue

            relation = type(self).get_relation(name)
            if relation and schema.has_foreign_key(name) and (isinstance(value, Mapping) or hasattr(value, "__dict__")):
                related = self.resolve(relation["entity"])()
                related.set_values(value, accepted_attributes)
                value = related

            setattr(self, name, value)

        return self

    def fetch_all(self) -> "Entity":
        """Copy of this entity with nested iterators and entities fully resolved."""
        resolved = copy.copy(self)

        for name, value in vars(resolved).items():
            if isinstance(value, (ResultIterator, Entity)):
                setattr(resolved, name, value.fetch_all())

        return resolved

    def save(self, db: DatabaseConfig) -> "Entity":
        """Insert or update this entity; generated values are written back."""
        type(self).collection(db, self).save(self)
        return self

    def delete(self, db: DatabaseConfig) -> int:
        """Delete this entity by its key values. Returns affected rows."""
        schema = type(self).get_schema()
        collection = type(self).collection(db)

        for key in schema.keys:
            value = getattr(self, key, None)
            if value is not None:
                collection.match(key, value)

        return collection.delete()

    def find(self, db: DatabaseConfig) -> ResultIterator:
        """Find entities matching every attribute set on this one."""
        schema = type(self).get_schema()
        collection = type(self).collection(db).all_attributes()

        for name in schema.attributes:
            value = getattr(self, name, None)
            if value is not None and isinstance(value, SCALAR_TYPES):
                collection.match(name, value)

        return collection.find()

    def obtain(self, db: DatabaseConfig) -> "Entity":
        """
        Load the first entity matching the attributes set on this one, or
        save this one if there is none.
        """
        match = self.find(db).first()

        if match is None:
            return self.save(db)

        self.set_values(match)
        return self
