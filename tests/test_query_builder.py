"""Tests for SELECT assembly and the write statement builders."""

import pytest

from DataMapper import ConflictAction, JoinType, Query, QueryBuilder, QueryConstructionError


class TestQuery:
    """SELECT statements."""

    def test_needs_fields(self):
        with pytest.raises(QueryConstructionError):
            Query("people").to_sql()

    def test_full_statement(self):
        query = (
            Query("people")
            .field("id")
            .field("label", "UPPER(`people`.`name`)")
            .where("`people`.`age` > 18")
            .where("`people`.`name` IS NOT NULL")
            .group_by("`people`.`age`")
            .having("COUNT(*) > 1")
            .order_by("label")
            .limit(5, 10)
        )

        assert query.to_sql() == (
            "SELECT\n"
            "`people`.`id` as `id`,\n"
            "UPPER(`people`.`name`) as `label`\n"
            "FROM people `people`\n"
            "WHERE (`people`.`age` > 18) AND (`people`.`name` IS NOT NULL)\n"
            "GROUP BY `people`.`age`\n"
            "HAVING COUNT(*) > 1\n"
            "ORDER BY UPPER(`people`.`name`)\n"
            "LIMIT 5, 10"
        )
        assert str(query) == query.to_sql()

    def test_limit_forms(self):
        query = Query("people").field("id")
        assert query.limit(10).limit_clause == "10"
        assert query.limit(20, 10).limit_clause == "20, 10"
        assert query.limit(None).limit_clause is None

    def test_fields_from(self):
        query = Query("people", "p").field("id")
        assert query.fields_from(["name", "age"]).fields == {"name": "`p`.`name`", "age": "`p`.`age`"}
        assert query.fields_from({"n": "`p`.`name`"}).fields == {"n": "`p`.`name`"}
        assert query.fields_from(None).fields == {}

    def test_use_index(self):
        sql = Query("people").field("id").use_index("by_name").to_sql()
        assert "FROM people `people`\nUSE INDEX(by_name)" in sql

    def test_merge_joined_flattens_any_depth(self):
        toys = Query("toys", "pets.toys").field("pets.toys.id", "`pets.toys`.`id`")
        toys.where("`pets.toys`.`color` = 'red'")

        pets = Query("pets", "pets").field("pets.id", "`pets`.`id`")
        pets.join(JoinType.INNER, toys, "`pets`.`id` = `pets.toys`.`pet`")

        people = Query("people").field("id")
        people.join("left", pets, ["`people`.`id` = `pets`.`owner`", "`pets`.`name` = 'Rufus'"])

        merged = people.merge_joined()
        assert merged.joins == []
        assert list(merged.fields) == ["id", "pets.id", "pets.toys.id"]
        assert [clause.to_sql() for clause in merged.joined] == [
            "LEFT JOIN pets `pets` ON `people`.`id` = `pets`.`owner` AND `pets`.`name` = 'Rufus'",
            "INNER JOIN toys `pets.toys` ON `pets`.`id` = `pets.toys`.`pet`",
        ]
        assert merged.conditions == ["`pets.toys`.`color` = 'red'"]

        # the source tree is left untouched
        assert len(people.joins) == 1
        assert people.conditions == []


class TestInsert:
    """Batched INSERT statements."""

    def test_upsert(self, escape):
        rows = [{"id": None, "name": "Ana"}, {"id": 2, "name": "O'Hara"}]
        sql = QueryBuilder.insert("people", ["id", "name"], rows, escape, ConflictAction.UPDATE, ["id"])

        assert sql == (
            "INSERT INTO `people` (`id`, `name`)\n"
            "VALUES\n"
            "(NULL, 'Ana'),\n"
            "(2, 'O\\'Hara')\n"
            "ON DUPLICATE KEY UPDATE `id` = LAST_INSERT_ID(`id`), `name` = VALUES(`name`)"
        )

    def test_ignore(self, escape):
        sql = QueryBuilder.insert("people", ["name"], [{"name": "Ana"}], escape, ConflictAction.IGNORE)
        assert sql == "INSERT IGNORE INTO `people` (`name`)\nVALUES\n('Ana')"

    def test_unsanitizable_rows_are_dropped(self, escape, caplog):
        rows = [{"name": "Ana"}, {"name": object()}, {"name": "Luis"}]
        sql = QueryBuilder.insert("people", ["name"], rows, escape)

        assert sql == "INSERT INTO `people` (`name`)\nVALUES\n('Ana'),\n('Luis')"
        assert "Dropping row 1" in caplog.text

    def test_no_surviving_rows(self, escape):
        with pytest.raises(QueryConstructionError):
            QueryBuilder.insert("people", ["name"], [{"name": object()}], escape)

    def test_invalid_identifiers(self, escape):
        with pytest.raises(QueryConstructionError):
            QueryBuilder.insert("people; DROP TABLE x", ["name"], [{"name": "a"}], escape)

        with pytest.raises(QueryConstructionError):
            QueryBuilder.insert("people", ["na me"], [{"na me": "a"}], escape)


class TestUpdateAndDelete:
    """UPDATE and DELETE statements."""

    def test_update(self, escape):
        sql = QueryBuilder.update("people `people`", {"`people`.`name`": "Ana"}, "`people`.`id` = 3", escape)
        assert sql == "UPDATE people `people` SET `people`.`name` = 'Ana' WHERE `people`.`id` = 3"

    def test_update_skips_unsanitizable_values(self, escape):
        values = {"`people`.`name`": "Ana", "`people`.`data`": object()}
        sql = QueryBuilder.update("people `people`", values, None, escape)
        assert sql == "UPDATE people `people` SET `people`.`name` = 'Ana'"

        assert QueryBuilder.update("people `people`", {"`people`.`data`": object()}, None, escape) is None

    def test_delete(self):
        assert QueryBuilder.delete("people", "`id` = 3") == "DELETE FROM `people` WHERE `id` = 3"
        assert QueryBuilder.delete("people") == "DELETE FROM `people`"
