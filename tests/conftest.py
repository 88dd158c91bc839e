"""Shared fixtures: a recording connection and a small people / pets / cars schema."""

from typing import Any, Mapping, Optional

import pytest

from DataMapper import DatabaseConfig, ResultSet, Schema

READ_PREFIXES = ("SELECT", "DESCRIBE", "SHOW")


class FakeConnection(DatabaseConfig):
    """
    Connection that records every statement instead of running it.

    Reads (SELECT / DESCRIBE / SHOW) are answered from a queue of scripted
    results: a list of row dicts, a ResultSet, or an exception to raise.
    Reads with nothing queued return an empty result.
    """

    def __init__(self):
        super().__init__()
        self.statements: list[str] = []
        self.results: list[Any] = []
        self.insert_id: Optional[int] = None
        self.rows_affected = 1
        self.transactions: list[str] = []

    def queue(self, result: Any) -> "FakeConnection":
        self.results.append(result)
        return self

    def connect(self) -> bool:
        self._connected = True
        return True

    def close(self) -> None:
        self._connected = False

    def execute(self, query: str, parameters: Optional[Mapping[str, Any]] = None) -> Optional[ResultSet]:
        if parameters:
            query = self.bind_parameters(query, parameters)
        self.statements.append(query)

        if not query.lstrip().upper().startswith(READ_PREFIXES):
            return None

        result = self.results.pop(0) if self.results else []
        if isinstance(result, Exception):
            raise result
        if isinstance(result, ResultSet):
            return result
        return ResultSet(result)

    def escape_string(self, value: str) -> str:
        return value.replace("\\", "\\\\").replace("'", "\\'")

    @property
    def last_insert_id(self) -> Optional[int]:
        return self.insert_id

    @property
    def affected_rows(self) -> int:
        return self.rows_affected

    def begin_transaction(self) -> None:
        self.transactions.append("begin")

    def commit(self) -> None:
        self.transactions.append("commit")

    def rollback(self) -> None:
        self.transactions.append("rollback")

    def next_insert_id(self, table_name: str) -> Optional[int]:
        return 42


def people_schema() -> Schema:
    return (
        Schema("people")
        .attribute("id", {"type": "int", "unsigned": True, "auto_increment": True})
        .attribute("name", {"type": "varchar", "length": 128})
        .attribute("email", {"type": "varchar", "length": 255, "accept_null": True, "default": None})
        .attribute("age", {"type": "int", "accept_null": True, "default": None})
        .attribute("data", {"type": "json", "accept_null": True, "default": None})
        .primary_key("id")
    )


def pets_schema() -> Schema:
    return (
        Schema("pets")
        .attribute("id", {"type": "int", "unsigned": True, "auto_increment": True})
        .attribute("owner", {"type": "int", "unsigned": True})
        .attribute("name", {"type": "varchar", "length": 64})
        .primary_key("id")
        .foreign_key("owner", {"table": "people", "column": "id", "on_delete": "CASCADE"})
    )


def cars_schema() -> Schema:
    return (
        Schema("cars")
        .attribute("id", {"type": "uuid"})
        .attribute("driver", {"type": "int", "unsigned": True})
        .attribute("owner", {"type": "int", "unsigned": True})
        .attribute("model", {"type": "varchar", "length": 64, "default": ""})
        .primary_key("id")
        .foreign_key("driver", {"table": "people", "column": "id"})
        .foreign_key("owner", {"table": "people", "column": "id"})
    )


@pytest.fixture
def db():
    return FakeConnection()


@pytest.fixture
def escape():
    return FakeConnection().escape_string


@pytest.fixture
def people():
    return people_schema()


@pytest.fixture
def pets():
    return pets_schema()


@pytest.fixture
def cars():
    return cars_schema()
