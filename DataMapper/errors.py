"""
DataMapper Exceptions

All errors raised by the library derive from DataMapperError, which carries
an optional ``data`` payload describing the offending input.
"""

import re
from enum import Enum
from typing import Any, Optional


class DataMapperError(Exception):
    """Base class for every error raised by DataMapper."""

    def __init__(self, message: str = "", data: Any = None):
        super().__init__(message)
        self.message = message
        self.data = data


class SchemaDefinitionError(DataMapperError):
    """A schema references a missing type, table, key or attribute."""


class RelationshipAmbiguousError(DataMapperError):
    """Join inference could not settle on exactly one relationship."""


class QueryConstructionError(DataMapperError):
    """A statement cannot be built from the given parts."""


class SanitizationFailure(DataMapperError):
    """A value cannot be safely rendered as SQL."""


class EntityNotFoundError(DataMapperError):
    """A fetch by key produced no rows."""


class DbErrorKind(Enum):
    """Semantic kinds of native database errors"""
    DUPLICATE_KEY = "duplicate_key"
    CANNOT_BE_NULL = "cannot_be_null"
    UNKNOWN_COLUMN = "unknown_column"
    UNKNOWN_TABLE = "unknown_table"
    FOREIGN_KEY_CONSTRAINT = "foreign_key_constraint"
    REFERENCE_NOT_FOUND = "reference_not_found"
    PARSE_ERROR = "parse_error"
    GENERIC = "generic"


# MySQL server error numbers
# https://dev.mysql.com/doc/mysql-errors/8.0/en/server-error-reference.html
NATIVE_ERROR_KINDS: dict[int, DbErrorKind] = {
    1048: DbErrorKind.CANNOT_BE_NULL,
    1054: DbErrorKind.UNKNOWN_COLUMN,
    1062: DbErrorKind.DUPLICATE_KEY,
    1064: DbErrorKind.PARSE_ERROR,
    1146: DbErrorKind.UNKNOWN_TABLE,
    1451: DbErrorKind.FOREIGN_KEY_CONSTRAINT,
    1452: DbErrorKind.REFERENCE_NOT_FOUND,
}


class DbError(DataMapperError):
    """
    Error reported by the connection while running a statement.

    Attributes:
        kind: Semantic kind the native error code maps to
        code: Native error code
        sql: Statement that failed
    """

    kind = DbErrorKind.GENERIC

    def __init__(
        self,
        message: str,
        sql: Optional[str] = None,
        code: Optional[int] = None
    ):
        super().__init__(message, data=sql)
        self.sql = sql
        self.code = code

    @classmethod
    def from_code(
        cls,
        code: Optional[int],
        message: str,
        sql: Optional[str] = None,
        kinds: Optional[dict[int, DbErrorKind]] = None
    ) -> "DbError":
        """
        Build the exception matching a native error code.

        Args:
            code: Native error number reported by the driver
            message: Native error message
            sql: Statement that failed
            kinds: Code to kind mapping (defaults to MySQL's)

        Returns:
            DbError subclass instance for the mapped kind
        """
        kind = (kinds or NATIVE_ERROR_KINDS).get(code, DbErrorKind.GENERIC)
        error_class = _ERROR_CLASSES.get(kind, DbError)

        if error_class is DbError:
            message = f"Db error {code}: {message}"

        return error_class(message, sql=sql, code=code)


class DuplicateKeyError(DbError):
    kind = DbErrorKind.DUPLICATE_KEY

    def __init__(self, message: str, sql: Optional[str] = None, code: Optional[int] = None):
        super().__init__(message, sql=sql, code=code)
        match = re.search(r"Duplicate entry '(.+)' for key '(.+)'", message)
        self.entry = match.group(1) if match else None
        self.key = match.group(2) if match else None


class CannotBeNullError(DbError):
    kind = DbErrorKind.CANNOT_BE_NULL


class UnknownColumnError(DbError):
    kind = DbErrorKind.UNKNOWN_COLUMN


class UnknownTableError(DbError):
    kind = DbErrorKind.UNKNOWN_TABLE


class ForeignKeyConstraintError(DbError):
    kind = DbErrorKind.FOREIGN_KEY_CONSTRAINT


class ReferenceNotFoundError(DbError):
    kind = DbErrorKind.REFERENCE_NOT_FOUND


class ParseError(DbError):
    kind = DbErrorKind.PARSE_ERROR


_ERROR_CLASSES: dict[DbErrorKind, type] = {
    DbErrorKind.DUPLICATE_KEY: DuplicateKeyError,
    DbErrorKind.CANNOT_BE_NULL: CannotBeNullError,
    DbErrorKind.UNKNOWN_COLUMN: UnknownColumnError,
    DbErrorKind.UNKNOWN_TABLE: UnknownTableError,
    DbErrorKind.FOREIGN_KEY_CONSTRAINT: ForeignKeyConstraintError,
    DbErrorKind.REFERENCE_NOT_FOUND: ReferenceNotFoundError,
    DbErrorKind.PARSE_ERROR: ParseError,
}
