"""
Schema - Table metadata, DDL and migrations

A Schema describes one table: its attributes (in declaration order), primary
key, foreign keys, indexes, unique constraints and triggers. It renders the
DDL for the table, can be read back from a live table, and computes the
ALTER statements that turn one shape into another.
"""

from typing import Any, Optional, Union
import logging
import re

from .base import Attribute, DatabaseConfig, ForeignKey, IndexInfo, TriggerInfo
from .errors import SchemaDefinitionError, UnknownTableError

logger = logging.getLogger(__name__)

TRIGGER_TIMINGS = ("before", "after")
TRIGGER_EVENTS = ("insert", "update", "delete")

# Spellings accepted in declarative definitions
_DEFINITION_KEYS = {
    "autoIncrement": "auto_increment",
    "acceptNull": "accept_null",
    "onDelete": "on_delete",
    "onUpdate": "on_update",
}

_TYPE_ALIASES = {
    "integer": "int",
    "bool": "tinyint",
    "boolean": "tinyint",
    "character varying": "varchar",
}

_FOREIGN_KEY_PATTERN = re.compile(
    r"FOREIGN KEY \(`(.+?)`\) REFERENCES `(.+?)` \(`(.+?)`\)"
    r"(?: ON DELETE (CASCADE|RESTRICT|NO ACTION|SET NULL|SET DEFAULT))?"
    r"(?: ON UPDATE (CASCADE|RESTRICT|NO ACTION|SET NULL|SET DEFAULT))?"
)


def _normalize_definition(definition: dict) -> dict:
    return {_DEFINITION_KEYS.get(key, key): value for key, value in definition.items()}


def _normalize_type(type_name: Optional[str]) -> Optional[str]:
    if type_name is None:
        return None
    type_name = type_name.strip().lower()
    return _TYPE_ALIASES.get(type_name, type_name)


class Schema:
    """
    Table schema.

    Usage:
        people = (
            Schema('people')
            .attribute('id', {'type': 'int', 'unsigned': True, 'auto_increment': True})
            .attribute('name', {'type': 'varchar', 'length': 128})
            .attribute('email', {'type': 'varchar', 'length': 255, 'accept_null': True, 'default': None})
            .primary_key('id')
            .unique('email')
        )

        db.execute(people.to_create_sql())
    """

    def __init__(self, table: Optional[str] = None, db: Optional[str] = None):
        """
        Args:
            table: Table name
            db: Optional logical database identifier
        """
        self.table = table
        self.db = db
        self.keys: list[str] = []
        self.attributes: dict[str, Attribute] = {}
        self.foreign_keys: dict[str, ForeignKey] = {}
        self.indexes: dict[str, IndexInfo] = {}
        self.uniques: list[list[str]] = []
        self.triggers: list[TriggerInfo] = []

    def __repr__(self) -> str:
        return f"Schema({self.table!r}, attributes={list(self.attributes)}, keys={self.keys})"

    # Declaration

    def attribute(self, name: str, definition: Union[dict, Attribute, None] = None, **kwargs) -> "Schema":
        """
        Declare an attribute.

        Args:
            name: Attribute name
            definition: Dict with ``type`` (required), ``column``, ``length``,
                ``unsigned``, ``accept_null``, ``default``, ``auto_increment``,
                ``json`` and ``uuid``; or a ready Attribute
            **kwargs: Same keys, merged over ``definition``

        Raises:
            SchemaDefinitionError: If no type is given
        """
        if isinstance(definition, Attribute):
            self.attributes[name] = definition
            return self

        data = _normalize_definition({**(definition or {}), **kwargs})

        if not data.get("type"):
            raise SchemaDefinitionError(f"no type specified for attribute '{name}'", data=name)

        attribute_type = str(data["type"]).lower()
        if attribute_type == "uuid":
            data.update(type="varchar", length=13, uuid=True)
        elif attribute_type == "json":
            data["json"] = True

        self.attributes[name] = Attribute(
            name=name,
            type=data["type"],
            column=data.get("column") or name,
            length=data.get("length"),
            unsigned=bool(data.get("unsigned", False)),
            accept_null=bool(data.get("accept_null", False)),
            default=data.get("default"),
            has_default="default" in data,
            auto_increment=bool(data.get("auto_increment", False)),
            json=bool(data.get("json", False)),
            uuid=bool(data.get("uuid", False)),
        )

        return self

    def primary_key(self, *names: Union[str, list[str]]) -> "Schema":
        """
        Set the primary key.

        Usage:
            schema.primary_key('id')
            schema.primary_key('person', 'token')
            schema.primary_key(['person', 'token'])
        """
        if len(names) == 1 and isinstance(names[0], (list, tuple)):
            names = tuple(names[0])

        for name in names:
            self._require_attribute(name, "cannot set key")

        self.keys = list(names)
        return self

    def foreign_key(self, name: str, definition: Union[dict, ForeignKey, None] = None, **kwargs) -> "Schema":
        """
        Declare an attribute as a foreign key.

        Args:
            name: Local attribute name
            definition: Dict with ``table``, ``column``, ``on_delete`` and
                ``on_update`` (both default to RESTRICT)

        Raises:
            SchemaDefinitionError: If the attribute, table or column is missing
        """
        self._require_attribute(name, "cannot set foreign key")

        if isinstance(definition, ForeignKey):
            self.foreign_keys[name] = definition
            return self

        data = _normalize_definition({**(definition or {}), **kwargs})

        if not data.get("table"):
            raise SchemaDefinitionError("cannot set foreign key: no foreign table specified", data=name)

        if not data.get("column"):
            raise SchemaDefinitionError("cannot set foreign key: no foreign column specified", data=name)

        self.foreign_keys[name] = ForeignKey(
            attribute=name,
            table=data["table"],
            column=data["column"],
            on_delete=data.get("on_delete") or "RESTRICT",
            on_update=data.get("on_update") or "RESTRICT",
        )

        return self

    def unique(self, attributes: Union[str, list[str]]) -> "Schema":
        """Add a unique constraint over one or more attributes."""
        attributes = [attributes] if isinstance(attributes, str) else list(attributes)

        for name in attributes:
            self._require_attribute(name, "cannot set unique key")

        self.uniques.append(attributes)
        return self

    def index(self, index_name: str, attributes: Union[str, list[str]]) -> "Schema":
        """Add a named index over one or more attributes."""
        attributes = [attributes] if isinstance(attributes, str) else list(attributes)

        for name in attributes:
            self._require_attribute(name, "cannot set index")

        self.indexes[index_name] = IndexInfo(name=index_name, attributes=attributes)
        return self

    def trigger(self, timing: str, event: str, statement: str, table: Optional[str] = None) -> "Schema":
        """
        Add a trigger statement for ``timing`` (before/after) and ``event``
        (insert/update/delete) on this table, or on ``table``.

        Trigger names are assigned when the SQL is generated.
        """
        timing = timing.lower()
        event = event.lower()

        if timing not in TRIGGER_TIMINGS:
            raise SchemaDefinitionError(f"invalid trigger timing '{timing}'", data=timing)

        if event not in TRIGGER_EVENTS:
            raise SchemaDefinitionError(f"invalid trigger event '{event}'", data=event)

        table = table or self.table

        for trigger in self.triggers:
            if (trigger.table, trigger.timing, trigger.event) == (table, timing, event):
                trigger.statements.append(statement)
                return self

        self.triggers.append(TriggerInfo(table=table, timing=timing, event=event, statements=[statement]))
        return self

    def _require_attribute(self, name: str, action: str) -> None:
        if name not in self.attributes:
            raise SchemaDefinitionError(f"{action}: '{name}' is not a defined attribute", data=name)

    # Lookups

    def has_attribute(self, name: str) -> bool:
        return name in self.attributes

    def get_attribute(self, name: str) -> Optional[Attribute]:
        return self.attributes.get(name)

    def get_column(self, name: str) -> Optional[str]:
        attribute = self.attributes.get(name)
        return attribute.column if attribute else None

    def first_key(self) -> str:
        if not self.keys:
            raise SchemaDefinitionError(f"table '{self.table}' has no primary key", data=self.table)
        return self.keys[0]

    def is_key(self, name: str) -> bool:
        return name in self.keys

    def is_auto_increment(self, name: str) -> bool:
        attribute = self.attributes.get(name)
        return bool(attribute and attribute.auto_increment)

    def accepts_null(self, name: str) -> bool:
        attribute = self.attributes.get(name)
        return bool(attribute and attribute.accept_null)

    def is_json(self, name: str) -> bool:
        attribute = self.attributes.get(name)
        return bool(attribute and attribute.json)

    def is_uuid(self, name: str) -> bool:
        attribute = self.attributes.get(name)
        return bool(attribute and attribute.uuid)

    def has_default(self, name: str) -> bool:
        attribute = self.attributes.get(name)
        return bool(attribute and attribute.has_default)

    def has_foreign_key(self, name: Optional[str]) -> bool:
        return name in self.foreign_keys

    def get_foreign_key(self, name: str) -> Optional[ForeignKey]:
        return self.foreign_keys.get(name)

    def get_foreign_keys(self, table: Optional[str] = None) -> dict[str, ForeignKey]:
        """All foreign keys, or only those referencing ``table``."""
        if table is None:
            return dict(self.foreign_keys)
        return {name: fk for name, fk in self.foreign_keys.items() if fk.table == table}

    def auto_increment_columns(self) -> list[str]:
        return [self.get_column(name) for name in self.keys if self.is_auto_increment(name)]

    # SQL generators

    def to_create_sql(
        self,
        engine: str = "InnoDB",
        charset: str = "utf8mb4",
        collation: str = "utf8mb4_general_ci"
    ) -> str:
        """
        Build the CREATE TABLE statement.

        Columns follow declaration order, then the primary key, then one
        plain index per foreign key column. Constraints are emitted
        separately (see to_foreign_key_sql) so tables can be created in any
        order.
        """
        if not self.table:
            raise SchemaDefinitionError("invalid schema: no table defined")

        lines = [f"\t{attribute.to_sql()}" for attribute in self.attributes.values()]

        if self.keys:
            key_columns = "`, `".join(self.get_column(name) for name in self.keys)
            lines.append(f"\tPRIMARY KEY (`{key_columns}`)")

        for name in self.foreign_keys:
            column = self.get_column(name)
            lines.append(f"\tKEY `{column}` (`{column}`)")

        body = ",\n".join(lines)
        return (
            f"CREATE TABLE IF NOT EXISTS `{self.table}` (\n{body}\n) "
            f"ENGINE={engine} CHARACTER SET {charset} COLLATE {collation}"
        )

    def to_foreign_key_sql(self) -> Optional[str]:
        if not self.foreign_keys:
            return None

        statements = []
        for count, (name, fk) in enumerate(self.foreign_keys.items(), start=1):
            clause = (
                f"ADD CONSTRAINT `{self.table}_fk{count}` FOREIGN KEY (`{self.get_column(name)}`) "
                f"REFERENCES `{fk.table}` (`{fk.column}`)"
            )
            if fk.on_delete:
                clause += f" ON DELETE {fk.on_delete}"
            if fk.on_update:
                clause += f" ON UPDATE {fk.on_update}"
            statements.append(clause)

        return f"ALTER TABLE `{self.table}`\n" + ",\n".join(statements)

    def to_index_sql(self) -> Optional[str]:
        if not self.indexes:
            return None

        statements = [
            f"ADD INDEX `{index.name}` (`" + "`, `".join(self.get_column(a) for a in index.attributes) + "`)"
            for index in self.indexes.values()
        ]
        return f"ALTER TABLE `{self.table}`\n" + ",\n".join(statements)

    def to_unique_sql(self) -> Optional[str]:
        if not self.uniques:
            return None

        statements = [
            "ADD UNIQUE (`" + "`, `".join(self.get_column(a) for a in attributes) + "`)"
            for attributes in self.uniques
        ]
        return f"ALTER TABLE `{self.table}`\n" + ",\n".join(statements)

    def trigger_queries(self) -> list[str]:
        """DROP/CREATE pairs for every trigger statement, guarded by @DISABLE_TRIGGERS."""
        queries = []
        count = 0

        for trigger in self.triggers:
            for statement in trigger.statements:
                count += 1
                name = f"{trigger.table}_{trigger.timing}_{trigger.event}_{count}"
                queries.append(f"DROP TRIGGER IF EXISTS `{name}`")
                queries.append(
                    f"CREATE TRIGGER `{name}` {trigger.timing.upper()} {trigger.event.upper()} ON `{trigger.table}`\n"
                    f"FOR EACH ROW\n"
                    f"BEGIN\n"
                    f"    IF (@DISABLE_TRIGGERS IS NULL) THEN\n"
                    f"        {statement}\n"
                    f"    END IF;\n"
                    f"END"
                )

        return queries

    # Migrations

    def diff(self, target: "Schema") -> list[str]:
        """
        Compute the ALTER statements that turn this table into ``target``.

        Attributes missing from ``target`` are dropped. Attributes missing
        from this schema are added right after the attribute that precedes
        them in ``target`` (or FIRST). Attributes present in both are
        changed only when type, length, unsigned, nullability, default or
        auto increment differ after normalization.

        Returns:
            Statements in execution order; empty when the shapes match
        """
        statements = []

        for name, attribute in self.attributes.items():
            if name not in target.attributes:
                statements.append(f"ALTER TABLE `{self.table}` DROP `{attribute.column}`")

        previous: Optional[Attribute] = None

        for name, attribute in target.attributes.items():
            current = self.attributes.get(name)

            if current is None:
                position = "FIRST" if previous is None else f"AFTER `{previous.column}`"
                statements.append(f"ALTER TABLE `{self.table}` ADD {attribute.to_sql()} {position}")
            elif self._differs(current, attribute):
                statements.append(f"ALTER TABLE `{self.table}` CHANGE `{current.column}` {attribute.to_sql()}")

            previous = attribute

        return statements

    @staticmethod
    def _differs(current: Attribute, target: Attribute) -> bool:
        if _normalize_type(current.type) != _normalize_type(target.type):
            return True

        # Unspecified length is not a mismatch
        if current.length is not None and target.length is not None and str(current.length) != str(target.length):
            return True

        if (current.unsigned, current.accept_null, current.auto_increment) != \
                (target.unsigned, target.accept_null, target.auto_increment):
            return True

        if current.has_default and target.has_default:
            current_default = None if current.default is None else str(current.default)
            target_default = None if target.default is None else str(target.default)
            if current_default != target_default:
                return True

        return False

    def alter_to(self, target: "Schema", db: DatabaseConfig) -> list[str]:
        """
        Run the statements from diff() against the database.

        Returns:
            The statements executed
        """
        statements = self.diff(target)

        for statement in statements:
            try:
                db.execute(statement)
                logger.info(statement)
            except Exception as e:
                logger.error(f"Failed to alter table {self.table}: {e}")
                raise

        return statements

    # Loading

    @classmethod
    def from_definition(cls, definition: dict) -> "Schema":
        """
        Build a schema from a declarative dict.

        Usage:
            Schema.from_definition({
                'table': 'pets',
                'keys': ['id'],
                'attributes': {
                    'id': {'type': 'uuid'},
                    'owner': {'type': 'int', 'unsigned': True},
                    'name': {'type': 'varchar', 'length': 64},
                },
                'foreignKeys': {'owner': {'table': 'people', 'column': 'id', 'onDelete': 'CASCADE'}},
                'indexes': {'name': 'name'},
                'unique': [['owner', 'name']],
                'triggers': {'pets': {'insert': {'after': 'SET @x = 1;'}}},
            })

        Raises:
            SchemaDefinitionError: If table, attributes or keys are missing
        """
        for required in ("table", "attributes", "keys"):
            if not definition.get(required):
                raise SchemaDefinitionError(f"invalid schema: no {required} defined", data=definition)

        schema = cls(definition["table"], db=definition.get("db"))

        for name, attribute_definition in definition["attributes"].items():
            schema.attribute(name, attribute_definition)

        schema.primary_key(definition["keys"])

        for name, fk_definition in definition.get("foreignKeys", {}).items():
            schema.foreign_key(name, fk_definition)

        for index_name, attributes in definition.get("indexes", {}).items():
            schema.index(index_name, attributes)

        for attributes in definition.get("unique", []):
            schema.unique(attributes)

        for table, events in definition.get("triggers", {}).items():
            for event, timings in events.items():
                for timing, statement in timings.items():
                    schema.trigger(timing, event, statement, table=table)

        return schema

    @classmethod
    def load(cls, db: DatabaseConfig, table_name: str) -> Optional["Schema"]:
        """
        Read the schema of a live table.

        Args:
            db: Connected database
            table_name: Table to inspect

        Returns:
            Equivalent Schema, or None if the table does not exist
        """
        try:
            columns = db.execute(f"DESCRIBE `{table_name}`")
        except UnknownTableError:
            logger.info(f"Table {table_name} does not exist")
            return None

        schema = cls(table_name)
        keys = []

        for row in columns.fetch_all() if columns else []:
            parts = row["Type"].split(" ")
            full_type = parts[0]
            type_name, _, length = full_type.partition("(")

            definition: dict[str, Any] = {
                "column": row["Field"],
                "type": type_name,
                "length": length[:-1] if length else None,
                "auto_increment": "auto_increment" in (row.get("Extra") or ""),
                "unsigned": "unsigned" in parts[1:],
                "accept_null": row["Null"] == "YES",
            }

            # NOT NULL columns without a default have no DEFAULT clause
            if definition["accept_null"] or row.get("Default") is not None:
                definition["default"] = row.get("Default")

            if row.get("Key") == "PRI":
                keys.append(row["Field"])

            schema.attribute(row["Field"], definition)

        schema.primary_key(keys)

        create = db.execute(f"SHOW CREATE TABLE `{table_name}`")
        for row in create.fetch_all() if create else []:
            for column, table, foreign_column, on_delete, on_update in _FOREIGN_KEY_PATTERN.findall(row["Create Table"]):
                if column not in schema.attributes:
                    continue
                schema.foreign_keys[column] = ForeignKey(
                    attribute=column,
                    table=table,
                    column=foreign_column,
                    on_delete=on_delete or None,
                    on_update=on_update or None,
                )

        return schema

    # Write operations on the database

    def create(self, db: DatabaseConfig) -> bool:
        """
        Create the table, then add its foreign keys, indexes and uniques.

        Returns:
            True if successful
        """
        statements = [self.to_create_sql(), self.to_foreign_key_sql(), self.to_index_sql(), self.to_unique_sql()]

        try:
            for statement in statements:
                if statement:
                    db.execute(statement)
            logger.info(f"Created table: {self.table}")
            return True
        except Exception as e:
            logger.error(f"Failed to create table {self.table}: {e}")
            raise

    def create_triggers(self, db: DatabaseConfig) -> None:
        for query in self.trigger_queries():
            db.execute(query)

    def drop(self, db: DatabaseConfig) -> None:
        db.execute(f"DROP TABLE IF EXISTS `{self.table}`")
        logger.info(f"Dropped table: {self.table}")

    def truncate(self, db: DatabaseConfig) -> None:
        db.execute(f"TRUNCATE `{self.table}`")
        logger.info(f"Truncated table: {self.table}")

    def delete_all(self, db: DatabaseConfig) -> None:
        """Delete every row (firing triggers) and reset AUTO_INCREMENT."""
        db.execute(f"DELETE FROM `{self.table}`")
        db.execute(f"ALTER TABLE `{self.table}` AUTO_INCREMENT = 1")

    def optimize(self, db: DatabaseConfig) -> None:
        db.execute(f"OPTIMIZE TABLE `{self.table}`")

    def defragment(self, db: DatabaseConfig) -> None:
        db.execute(f"ALTER TABLE `{self.table}` ENGINE = InnoDB")

    def patch(self, db: DatabaseConfig) -> list[str]:
        """
        Make the live table match this schema: create it if it does not
        exist, alter it otherwise.

        Returns:
            The ALTER statements executed (empty when the table was created
            or already matched)
        """
        current = Schema.load(db, self.table)

        if current is None:
            self.create(db)
            return []

        return current.alter_to(self, db)
