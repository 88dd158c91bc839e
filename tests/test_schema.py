"""Tests for Schema declaration, DDL generation, reflection and migrations."""

import pytest

from DataMapper import Schema, SchemaDefinitionError, UnknownTableError


def _people(*extra):
    schema = (
        Schema("people")
        .attribute("id", {"type": "int", "unsigned": True, "auto_increment": True})
        .attribute("name", {"type": "varchar", "length": 128})
    )
    for name, definition in extra:
        schema.attribute(name, definition)
    return schema.primary_key("id")


EMAIL = ("email", {"type": "varchar", "length": 255, "accept_null": True, "default": None})


class TestDeclaration:
    """Declaring attributes, keys and constraints."""

    def test_attribute_needs_type(self):
        with pytest.raises(SchemaDefinitionError):
            Schema("people").attribute("name", {"length": 10})

    def test_keys_and_constraints_need_declared_attributes(self, people):
        with pytest.raises(SchemaDefinitionError):
            people.primary_key("uuid")

        with pytest.raises(SchemaDefinitionError):
            people.foreign_key("parent", {"table": "people", "column": "id"})

        with pytest.raises(SchemaDefinitionError):
            people.unique(["name", "nickname"])

        with pytest.raises(SchemaDefinitionError):
            people.index("by_nickname", "nickname")

    def test_foreign_key_needs_table_and_column(self, people):
        with pytest.raises(SchemaDefinitionError):
            people.foreign_key("age", {"column": "id"})

        with pytest.raises(SchemaDefinitionError):
            people.foreign_key("age", {"table": "ages"})

    def test_special_types(self, cars, people):
        key = cars.get_attribute("id")
        assert key.type == "varchar"
        assert key.length == 13
        assert cars.is_uuid("id")
        assert people.is_json("data")

    def test_camel_case_definition_keys(self):
        schema = Schema("t").attribute("id", {"type": "int", "autoIncrement": True, "acceptNull": False})
        assert schema.is_auto_increment("id")

    def test_lookups(self, people, pets):
        assert people.first_key() == "id"
        assert people.has_default("email")
        assert not people.has_default("name")
        assert people.accepts_null("age")
        assert pets.has_foreign_key("owner")
        assert list(pets.get_foreign_keys("people")) == ["owner"]
        assert pets.get_foreign_keys("cars") == {}
        assert people.auto_increment_columns() == ["id"]

    def test_first_key_without_keys(self):
        with pytest.raises(SchemaDefinitionError):
            Schema("t").attribute("a", {"type": "int"}).first_key()

    def test_invalid_trigger(self, people):
        with pytest.raises(SchemaDefinitionError):
            people.trigger("during", "insert", "SET @a = 1;")

        with pytest.raises(SchemaDefinitionError):
            people.trigger("after", "select", "SET @a = 1;")


class TestDdl:
    """Generated DDL."""

    def test_create_table(self, pets):
        sql = pets.to_create_sql()
        assert sql.startswith("CREATE TABLE IF NOT EXISTS `pets` (\n")
        assert "\t`id` int unsigned NOT NULL AUTO_INCREMENT,\n" in sql
        assert "\t`name` varchar(64) NOT NULL,\n" in sql
        assert "\tPRIMARY KEY (`id`),\n" in sql
        assert "\tKEY `owner` (`owner`)\n" in sql
        assert sql.endswith(") ENGINE=InnoDB CHARACTER SET utf8mb4 COLLATE utf8mb4_general_ci")

    def test_defaults(self, people, cars):
        assert people.get_attribute("email").to_sql() == "`email` varchar(255) NULL DEFAULT NULL"
        assert cars.get_attribute("model").to_sql() == "`model` varchar(64) NOT NULL DEFAULT ''"

    def test_foreign_keys(self, pets, people):
        assert pets.to_foreign_key_sql() == (
            "ALTER TABLE `pets`\n"
            "ADD CONSTRAINT `pets_fk1` FOREIGN KEY (`owner`) REFERENCES `people` (`id`) "
            "ON DELETE CASCADE ON UPDATE RESTRICT"
        )
        assert people.to_foreign_key_sql() is None

    def test_indexes_and_uniques(self, people):
        people.index("by_name", ["name", "age"]).unique("email")
        assert people.to_index_sql() == "ALTER TABLE `people`\nADD INDEX `by_name` (`name`, `age`)"
        assert people.to_unique_sql() == "ALTER TABLE `people`\nADD UNIQUE (`email`)"

    def test_triggers(self, people):
        people.trigger("after", "insert", "SET @a = 1;").trigger("after", "insert", "SET @b = 2;")
        queries = people.trigger_queries()

        assert len(queries) == 4
        assert queries[0] == "DROP TRIGGER IF EXISTS `people_after_insert_1`"
        assert queries[1].startswith("CREATE TRIGGER `people_after_insert_1` AFTER INSERT ON `people`")
        assert "IF (@DISABLE_TRIGGERS IS NULL) THEN" in queries[1]
        assert "SET @b = 2;" in queries[3]


class TestDiff:
    """Migration statements between two shapes."""

    def test_same_shape(self, people):
        assert people.diff(people) == []
        assert _people(EMAIL).diff(_people(EMAIL)) == []

    def test_added_attribute_goes_after_its_predecessor(self):
        statements = _people().diff(_people(EMAIL))
        assert statements == ["ALTER TABLE `people` ADD `email` varchar(255) NULL DEFAULT NULL AFTER `name`"]

    def test_added_first_attribute(self):
        current = Schema("t").attribute("b", {"type": "int"})
        target = Schema("t").attribute("a", {"type": "int"}).attribute("b", {"type": "int"})
        assert current.diff(target) == ["ALTER TABLE `t` ADD `a` int NOT NULL FIRST"]

    def test_removed_attribute(self):
        statements = _people(EMAIL).diff(_people())
        assert statements == ["ALTER TABLE `people` DROP `email`"]

    def test_changed_attribute(self):
        current = _people(("email", {"type": "varchar", "length": 128, "accept_null": True}))
        statements = current.diff(_people(EMAIL))
        assert statements == ["ALTER TABLE `people` CHANGE `email` `email` varchar(255) NULL DEFAULT NULL"]

    def test_equivalent_types_and_unspecified_lengths(self):
        current = Schema("t").attribute("a", {"type": "INTEGER", "length": 11})
        target = Schema("t").attribute("a", {"type": "int"})
        assert current.diff(target) == []

    def test_alter_to_executes_statements(self, db):
        statements = _people().alter_to(_people(EMAIL), db)
        assert db.statements == statements
        assert len(statements) == 1


class TestDefinition:
    """Schemas from declarative dicts."""

    def test_full_definition(self):
        schema = Schema.from_definition({
            "table": "pets",
            "keys": ["id"],
            "attributes": {
                "id": {"type": "uuid"},
                "owner": {"type": "int", "unsigned": True},
                "name": {"type": "varchar", "length": 64},
            },
            "foreignKeys": {"owner": {"table": "people", "column": "id", "onDelete": "CASCADE"}},
            "indexes": {"by_name": "name"},
            "unique": [["owner", "name"]],
            "triggers": {"pets": {"insert": {"after": "SET @x = 1;"}}},
        })

        assert schema.keys == ["id"]
        assert schema.get_foreign_key("owner").on_delete == "CASCADE"
        assert schema.indexes["by_name"].attributes == ["name"]
        assert schema.uniques == [["owner", "name"]]
        assert schema.triggers[0].timing == "after"
        assert schema.triggers[0].event == "insert"

    @pytest.mark.parametrize("missing", ["table", "attributes", "keys"])
    def test_required_parts(self, missing):
        definition = {"table": "t", "keys": ["a"], "attributes": {"a": {"type": "int"}}}
        del definition[missing]
        with pytest.raises(SchemaDefinitionError):
            Schema.from_definition(definition)


DESCRIBE_PETS = [
    {"Field": "id", "Type": "int(10) unsigned", "Null": "NO", "Key": "PRI", "Default": None, "Extra": "auto_increment"},
    {"Field": "owner", "Type": "int(10) unsigned", "Null": "NO", "Key": "MUL", "Default": None, "Extra": ""},
    {"Field": "name", "Type": "varchar(64)", "Null": "YES", "Key": "", "Default": None, "Extra": ""},
]

SHOW_CREATE_PETS = [{
    "Table": "pets",
    "Create Table": (
        "CREATE TABLE `pets` (\n"
        "  `id` int(10) unsigned NOT NULL AUTO_INCREMENT,\n"
        "  `owner` int(10) unsigned NOT NULL,\n"
        "  `name` varchar(64) DEFAULT NULL,\n"
        "  PRIMARY KEY (`id`),\n"
        "  KEY `owner` (`owner`),\n"
        "  CONSTRAINT `pets_fk1` FOREIGN KEY (`owner`) REFERENCES `people` (`id`) ON DELETE CASCADE\n"
        ") ENGINE=InnoDB"
    ),
}]


class TestLoad:
    """Reading a schema back from a live table."""

    def test_load(self, db):
        db.queue(DESCRIBE_PETS).queue(SHOW_CREATE_PETS)
        schema = Schema.load(db, "pets")

        assert db.statements == ["DESCRIBE `pets`", "SHOW CREATE TABLE `pets`"]
        assert list(schema.attributes) == ["id", "owner", "name"]
        assert schema.keys == ["id"]

        key = schema.get_attribute("id")
        assert (key.type, key.length, key.unsigned, key.auto_increment) == ("int", "10", True, True)

        name = schema.get_attribute("name")
        assert name.accept_null and name.has_default and name.default is None
        assert not schema.get_attribute("owner").has_default

        fk = schema.get_foreign_key("owner")
        assert (fk.table, fk.column, fk.on_delete, fk.on_update) == ("people", "id", "CASCADE", None)

    def test_missing_table(self, db):
        db.queue(UnknownTableError("Table 'shop.pets' doesn't exist", code=1146))
        assert Schema.load(db, "pets") is None

    def test_patch_creates_missing_table(self, db, pets):
        db.queue(UnknownTableError("Table 'shop.pets' doesn't exist", code=1146))
        assert pets.patch(db) == []
        assert db.statements[0] == "DESCRIBE `pets`"
        assert db.statements[1].startswith("CREATE TABLE IF NOT EXISTS `pets`")
        assert db.statements[2].startswith("ALTER TABLE `pets`\nADD CONSTRAINT")

    def test_patch_alters_existing_table(self, db, pets):
        db.queue(DESCRIBE_PETS).queue(SHOW_CREATE_PETS)
        statements = pets.patch(db)
        assert statements == ["ALTER TABLE `pets` CHANGE `name` `name` varchar(64) NOT NULL"]
        assert db.statements[-1] == statements[0]


class TestMaintenance:
    """Table-level statements."""

    def test_statements(self, db, people):
        people.drop(db)
        people.truncate(db)
        people.delete_all(db)
        people.optimize(db)
        people.defragment(db)

        assert db.statements == [
            "DROP TABLE IF EXISTS `people`",
            "TRUNCATE `people`",
            "DELETE FROM `people`",
            "ALTER TABLE `people` AUTO_INCREMENT = 1",
            "OPTIMIZE TABLE `people`",
            "ALTER TABLE `people` ENGINE = InnoDB",
        ]
