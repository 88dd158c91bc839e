"""Tests for the MySQL connection and settings, with the driver mocked out."""

from unittest.mock import MagicMock, patch

import mysql.connector
import pytest

from DataMapper import (
    ConnectionSettings,
    DatabaseFactory,
    DataMapperError,
    DuplicateKeyError,
    MysqlConfig,
)


@pytest.fixture
def settings():
    return ConnectionSettings(host="localhost", user="root", password="secret", database="shop")


@pytest.fixture
def cursor():
    cursor = MagicMock()
    cursor.with_rows = False
    cursor.rowcount = 2
    cursor.lastrowid = 17
    return cursor


@pytest.fixture
def connected(settings, cursor):
    with patch("DataMapper.mysql_toolkit.mysql.connector.connect") as connect:
        connect.return_value.cursor.return_value = cursor
        db = MysqlConfig(settings)
        assert db.connect()
        yield db


class TestSettings:
    """Connection settings."""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SHOP_HOST", "db.internal")
        monkeypatch.setenv("SHOP_USER", "app")
        monkeypatch.setenv("SHOP_NAME", "shop")
        monkeypatch.setenv("SHOP_PORT", "3307")

        settings = ConnectionSettings.from_env("SHOP_")
        assert (settings.host, settings.user, settings.database, settings.port) == ("db.internal", "app", "shop", 3307)

    def test_from_env_needs_host(self, monkeypatch):
        monkeypatch.delenv("NOHOST_HOST", raising=False)
        with pytest.raises(DataMapperError):
            ConnectionSettings.from_env("NOHOST_")

    def test_password_is_masked(self, settings):
        assert "secret" not in repr(settings)
        assert settings.parameters()["password"] == "secret"


class TestMysqlConfig:
    """Statement execution through the driver."""

    def test_factory(self, settings):
        assert "mysql" in DatabaseFactory.available_types()
        assert isinstance(DatabaseFactory.create("mysql", settings=settings), MysqlConfig)

        with pytest.raises(ValueError):
            DatabaseFactory.create("oracle")

    def test_requires_connection(self, settings):
        with pytest.raises(ConnectionError):
            MysqlConfig(settings).execute("SELECT 1")

    def test_write(self, connected, cursor):
        assert connected.execute("UPDATE people SET name = :name", {"name": "O'Hara"}) is None

        cursor.execute.assert_called_once_with("UPDATE people SET name = 'O\\'Hara'")
        assert connected.affected_rows == 2
        assert connected.last_insert_id == 17
        cursor.close.assert_called_once()

    def test_read(self, connected, cursor):
        cursor.with_rows = True
        cursor.fetchall.return_value = [{"id": 1}, {"id": 2}]

        result = connected.execute("SELECT id FROM people")
        assert result.fetch_all() == [{"id": 1}, {"id": 2}]

    def test_errors_are_mapped(self, connected, cursor):
        cursor.execute.side_effect = mysql.connector.Error(msg="Duplicate entry 'a' for key 'email'", errno=1062)

        with pytest.raises(DuplicateKeyError) as raised:
            connected.execute("INSERT INTO people (email) VALUES ('a')")

        assert raised.value.key == "email"
        assert raised.value.sql == "INSERT INTO people (email) VALUES ('a')"

    def test_next_insert_id(self, connected, cursor):
        cursor.with_rows = True
        cursor.fetchall.return_value = [{"Name": "people", "Auto_increment": 8}]

        assert connected.next_insert_id("people") == 8
        cursor.execute.assert_called_once_with("SHOW TABLE STATUS LIKE 'people'")

    def test_close(self, connected):
        connected.close()
        assert not connected.is_connected
        assert connected.connection is None

    def test_create_database(self, settings):
        with patch("DataMapper.mysql_toolkit.mysql.connector.connect") as connect:
            MysqlConfig(settings).create_database()

        assert "database" not in connect.call_args.kwargs
        cursor = connect.return_value.cursor.return_value
        cursor.execute.assert_called_once_with(
            "CREATE DATABASE IF NOT EXISTS `shop` DEFAULT CHARACTER SET utf8mb4 COLLATE utf8mb4_general_ci"
        )
        connect.return_value.close.assert_called_once()
