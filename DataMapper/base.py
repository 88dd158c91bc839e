"""
Database Abstraction Layer - Base Classes

Provides the metadata dataclasses shared by schemas and statements, the
abstract connection every database implementation must provide, and the
seekable result set the iterators read from.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional, Mapping, Sequence
from dataclasses import dataclass, field
import logging

from .values import bind_parameters

logger = logging.getLogger(__name__)


@dataclass
class Attribute:
    """
    Attribute (column) metadata.

    Usage:
        Attribute('id', 'int', unsigned=True, auto_increment=True)
        Attribute('title', 'varchar', length=128, accept_null=True, has_default=True)
    """
    name: str
    type: str
    column: Optional[str] = None
    length: Optional[Any] = None
    unsigned: bool = False
    accept_null: bool = False
    default: Any = None
    has_default: bool = False
    auto_increment: bool = False
    json: bool = False
    uuid: bool = False

    def __post_init__(self):
        if self.column is None:
            self.column = self.name

    @property
    def type_sql(self) -> str:
        return f"{self.type}({self.length})" if self.length is not None else self.type

    def to_sql(self) -> str:
        """Convert attribute to a column definition."""
        parts = [f"`{self.column}`", self.type_sql]

        if self.unsigned:
            parts.append("unsigned")

        parts.append("NULL" if self.accept_null else "NOT NULL")

        if self.has_default:
            if self.default is None:
                parts.append("DEFAULT NULL")
            else:
                escaped = str(self.default).replace("'", "''")
                parts.append(f"DEFAULT '{escaped}'")

        if self.auto_increment:
            parts.append("AUTO_INCREMENT")

        return " ".join(parts)


@dataclass
class ForeignKey:
    """Foreign key constraint definition"""
    attribute: str
    table: str
    column: str
    on_delete: Optional[str] = "RESTRICT"
    on_update: Optional[str] = "RESTRICT"


@dataclass
class IndexInfo:
    """Index metadata"""
    name: str
    attributes: list[str]
    unique: bool = False


@dataclass
class TriggerInfo:
    """Trigger metadata"""
    table: str
    timing: str
    event: str
    statements: list[str] = field(default_factory=list)


class ResultSet:
    """
    Seekable, forward-reading cursor over a buffered result.

    Rows are dicts keyed by output column name. Nested iterators share one
    ResultSet and reposition it with seek() before every read.

    Usage:
        result = ResultSet([{'id': 1}, {'id': 2}])
        result.seek(1)
        result.fetch_row()     # {'id': 2}
        result.fetch_row()     # None
    """

    def __init__(self, rows: Optional[Sequence[Mapping[str, Any]]] = None):
        self.rows = [dict(row) for row in rows] if rows else []
        self.pointer = 0

    def fetch_row(self) -> Optional[dict]:
        """Return the row at the current position and move past it, or None at the end."""
        if self.pointer >= len(self.rows):
            return None
        row = self.rows[self.pointer]
        self.pointer += 1
        return row

    def seek(self, offset: int) -> None:
        self.pointer = max(0, offset)

    def row_count(self) -> int:
        return len(self.rows)

    def fetch_all(self) -> list[dict]:
        return list(self.rows)


class DatabaseConfig(ABC):
    """
    Abstract base class for database connections.

    All database implementations must inherit from this class
    and implement the abstract methods. Everything the library sends to a
    database goes through execute().
    """

    def __init__(self):
        self.connection = None
        self._connected = False

    @abstractmethod
    def connect(self) -> bool:
        """
        Establish connection to the database.

        Returns:
            bool: True if connection successful, False otherwise
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the database connection."""
        pass

    @abstractmethod
    def execute(self, query: str, parameters: Optional[Mapping[str, Any]] = None) -> Optional[ResultSet]:
        """
        Execute a statement.

        Args:
            query: SQL statement, optionally with ``:name`` placeholders
            parameters: Optional values for the placeholders

        Returns:
            ResultSet for statements producing rows, None otherwise

        Raises:
            DbError: mapped from the native error
        """
        pass

    @abstractmethod
    def escape_string(self, value: str) -> str:
        """Escape a string for inclusion between single quotes."""
        pass

    @property
    @abstractmethod
    def last_insert_id(self) -> Optional[int]:
        """Get the ID generated by the last INSERT."""
        pass

    @property
    @abstractmethod
    def affected_rows(self) -> int:
        """Get the number of rows changed by the last statement."""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Begin a transaction."""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit current transaction."""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Rollback current transaction."""
        pass

    def next_insert_id(self, table_name: str) -> Optional[int]:
        """Get the AUTO_INCREMENT value the next insert into a table will use."""
        raise NotImplementedError(f"{type(self).__name__} cannot report the next insert id")

    def bind_parameters(self, statement: str, parameters: Mapping[str, Any]) -> str:
        """
        Replace ``:name`` placeholders with sanitized values.

        Usage:
            db.bind_parameters("name = :name", {"name": "D'angelo"})
            # "name = 'D\\'angelo'"
        """
        return bind_parameters(statement, parameters, self.escape_string)

    @property
    def is_connected(self) -> bool:
        """Check if database is connected."""
        return self._connected

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        if exc_type is not None:
            self.rollback()
        self.close()
        return False


class DatabaseFactory:
    """
    Factory for creating database instances.

    Only implementation types are registered; every call to create()
    returns a fresh, unconnected instance.

    Usage:
        db = DatabaseFactory.create('mysql', settings=ConnectionSettings.from_env())
    """

    _registry: dict[str, type] = {}

    @classmethod
    def register(cls, db_type: str, db_class: type) -> None:
        """Register a database implementation."""
        cls._registry[db_type.lower()] = db_class

    @classmethod
    def create(cls, db_type: str, **kwargs) -> DatabaseConfig:
        """
        Create a database instance.

        Args:
            db_type: Type of database ('mysql')
            **kwargs: Database-specific configuration parameters

        Returns:
            DatabaseConfig instance

        Raises:
            ValueError: If db_type is not registered
        """
        db_type = db_type.lower()
        if db_type not in cls._registry:
            available = ", ".join(cls._registry.keys())
            raise ValueError(
                f"Unknown database type: '{db_type}'. "
                f"Available types: {available}"
            )
        return cls._registry[db_type](**kwargs)

    @classmethod
    def available_types(cls) -> list[str]:
        """Get list of available database types."""
        return list(cls._registry.keys())
