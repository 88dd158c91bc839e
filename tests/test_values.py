"""Tests for value sanitization and placeholder binding."""

import datetime
import decimal

import pytest

from DataMapper import DEFAULT, NULL, Literal, RawSql, SanitizationFailure
from DataMapper.values import bind_parameters, sanitize


class TestSanitize:
    """Rendering Python values as SQL literals."""

    def test_keywords(self, escape):
        assert sanitize(None, escape) == "NULL"
        assert sanitize(NULL, escape) == "NULL"
        assert sanitize(DEFAULT, escape) == "DEFAULT"

    def test_numbers_and_booleans(self, escape):
        assert sanitize(3, escape) == "3"
        assert sanitize(2.5, escape) == "2.5"
        assert sanitize(decimal.Decimal("10.20"), escape) == "10.20"
        assert sanitize(True, escape) == "1"
        assert sanitize(False, escape) == "0"

    def test_strings_are_escaped_and_quoted(self, escape):
        assert sanitize("Ana", escape) == "'Ana'"
        assert sanitize("D'angelo", escape) == "'D\\'angelo'"

    def test_dates(self, escape):
        assert sanitize(datetime.datetime(2024, 1, 2, 3, 4, 5), escape) == "'2024-01-02 03:04:05'"
        assert sanitize(datetime.date(2024, 1, 2), escape) == "'2024-01-02'"

    def test_sequences_render_as_lists(self, escape):
        assert sanitize([1, "a"], escape) == "(1, 'a')"
        assert sanitize((), escape) == "()"

    def test_literal_and_raw(self, escape):
        assert sanitize(Literal(5), escape) == "5"
        assert sanitize(Literal("x"), escape) == "'x'"
        assert sanitize(RawSql("NOW()"), escape) == "NOW()"

    def test_unknown_types_fail(self, escape):
        with pytest.raises(SanitizationFailure):
            sanitize(object(), escape)

        with pytest.raises(SanitizationFailure):
            sanitize({"a": 1}, escape)


class TestBindParameters:
    """Replacing :name placeholders."""

    def test_binds_known_placeholders(self, escape):
        statement = bind_parameters("id = :id AND name = :name", {"id": 7, "name": "x"}, escape)
        assert statement == "id = 7 AND name = 'x'"

    def test_unknown_placeholders_are_kept(self, escape):
        assert bind_parameters("id = :other", {"id": 7}, escape) == "id = :other"

    def test_casts_and_times_are_not_placeholders(self, escape):
        assert bind_parameters("a::int = :a", {"a": 1, "int": 2}, escape) == "a::int = 1"
        assert bind_parameters("at = '10:30'", {"a": 1}, escape) == "at = '10:30'"

    def test_values_are_escaped(self, escape):
        assert bind_parameters("name = :name", {"name": "O'Hara"}, escape) == "name = 'O\\'Hara'"
