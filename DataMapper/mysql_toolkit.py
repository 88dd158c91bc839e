"""
MySQL Database Implementation

Provides the MySQL connection used by collections and schemas, built on
mysql-connector-python.
"""

from typing import Any, Mapping, Optional
import logging

import mysql.connector
from mysql.connector import errorcode
from mysql.connector.conversion import MySQLConverter

from .base import DatabaseConfig, DatabaseFactory, ResultSet
from .config import ConnectionSettings
from .errors import DbError, DbErrorKind

logger = logging.getLogger(__name__)

MAX_LOGGED_QUERY_LENGTH = 10000

ERROR_KINDS: dict[int, DbErrorKind] = {
    errorcode.ER_BAD_NULL_ERROR: DbErrorKind.CANNOT_BE_NULL,
    errorcode.ER_BAD_FIELD_ERROR: DbErrorKind.UNKNOWN_COLUMN,
    errorcode.ER_DUP_ENTRY: DbErrorKind.DUPLICATE_KEY,
    errorcode.ER_PARSE_ERROR: DbErrorKind.PARSE_ERROR,
    errorcode.ER_NO_SUCH_TABLE: DbErrorKind.UNKNOWN_TABLE,
    errorcode.ER_ROW_IS_REFERENCED_2: DbErrorKind.FOREIGN_KEY_CONSTRAINT,
    errorcode.ER_NO_REFERENCED_ROW_2: DbErrorKind.REFERENCE_NOT_FOUND,
}


def map_error(error: mysql.connector.Error, query: Optional[str] = None) -> DbError:
    """Translate a driver error into the matching DbError."""
    return DbError.from_code(error.errno, error.msg, query, kinds=ERROR_KINDS)


class MysqlConfig(DatabaseConfig):
    """
    MySQL database configuration and operations.

    Usage:
        db = MysqlConfig(ConnectionSettings(host='localhost', user='root', database='shop'))
        db.connect()
        result = db.execute("SELECT * FROM people WHERE id = :id", {'id': 1})
        db.close()

    Or with context manager:
        with MysqlConfig(ConnectionSettings.from_env()) as db:
            result = db.execute("SELECT * FROM people")
    """

    def __init__(self, settings: ConnectionSettings):
        """
        Initialize MySQL configuration.

        Args:
            settings: Host, credentials and database to connect to
        """
        super().__init__()
        self.settings = settings
        self._converter = MySQLConverter(settings.charset)
        self._last_insert_id: Optional[int] = None
        self._affected_rows = 0

    def connect(self) -> bool:
        """
        Establish connection to the MySQL server.

        Returns:
            bool: True if connection successful
        """
        try:
            self.connection = mysql.connector.connect(**self.settings.parameters())
            self._connected = True
            logger.info(f"Connected to MySQL database: {self.settings!r}")
            return True

        except mysql.connector.Error as e:
            logger.error(f"Failed to connect to MySQL database: {e}")
            self._connected = False
            return False

    def close(self) -> None:
        """Close the database connection."""
        if self.connection:
            try:
                self.connection.close()
                logger.info(f"Closed MySQL connection: {self.settings!r}")
            except mysql.connector.Error as e:
                logger.error(f"Error closing MySQL connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def execute(self, query: str, parameters: Optional[Mapping[str, Any]] = None) -> Optional[ResultSet]:
        """
        Execute a statement.

        Args:
            query: SQL statement with optional ``:name`` placeholders
            parameters: Optional values for the placeholders

        Returns:
            ResultSet with all rows for row-producing statements, None otherwise
        """
        if not self.is_connected:
            raise ConnectionError("Database not connected. Call connect() first.")

        if parameters:
            query = self.bind_parameters(query, parameters)

        if len(query) > MAX_LOGGED_QUERY_LENGTH:
            logger.debug(f"[Query too long to debug ({len(query)} characters)]")
        else:
            logger.debug(query)

        cursor = self.connection.cursor(dictionary=True, buffered=True)
        try:
            cursor.execute(query)
            result = ResultSet(cursor.fetchall()) if cursor.with_rows else None
            self._affected_rows = cursor.rowcount
            self._last_insert_id = cursor.lastrowid
            return result
        except mysql.connector.Error as e:
            logger.error(f"Query execution failed: {e}\nQuery: {query}")
            raise map_error(e, query) from e
        finally:
            cursor.close()

    def escape_string(self, value: str) -> str:
        escaped = self._converter.escape(value)
        return escaped.decode(self.settings.charset) if isinstance(escaped, bytes) else escaped

    @property
    def last_insert_id(self) -> Optional[int]:
        """Get the ID of the last inserted row."""
        return self._last_insert_id

    @property
    def affected_rows(self) -> int:
        return self._affected_rows

    def begin_transaction(self) -> None:
        """Begin a transaction."""
        if self.is_connected:
            self.connection.start_transaction()

    def commit(self) -> None:
        """Commit current transaction."""
        if self.connection:
            self.connection.commit()

    def rollback(self) -> None:
        """Rollback current transaction."""
        if self.connection:
            self.connection.rollback()

    def next_insert_id(self, table_name: str) -> Optional[int]:
        """
        Get the AUTO_INCREMENT value the next insert into a table will use.

        Args:
            table_name: Table to inspect

        Returns:
            Next auto increment value, or None if the table has none
        """
        result = self.execute("SHOW TABLE STATUS LIKE :table", {"table": table_name})
        row = result.fetch_row() if result else None
        return row.get("Auto_increment") if row else None

    def create_database(self, collation: str = "utf8mb4_general_ci") -> None:
        """
        Create the configured database if it does not exist.

        Connects without selecting a database, so it works before the
        database exists.
        """
        parameters = self.settings.parameters()
        database = parameters.pop("database")
        query = (
            f"CREATE DATABASE IF NOT EXISTS `{database}` "
            f"DEFAULT CHARACTER SET {self.settings.charset} COLLATE {collation}"
        )

        connection = mysql.connector.connect(**parameters)
        try:
            cursor = connection.cursor()
            cursor.execute(query)
            cursor.close()
            logger.info(f"Created database: {database}")
        except mysql.connector.Error as e:
            logger.error(f"Failed to create database {database}: {e}")
            raise map_error(e, query) from e
        finally:
            connection.close()


# Register MySQL with the factory
DatabaseFactory.register('mysql', MysqlConfig)
