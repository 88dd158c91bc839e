"""
SQL Values - Tagged values and sanitization

Values headed for a statement are rendered here. ``NULL`` and ``DEFAULT``
are tagged singletons, so renderers switch on a closed set of variants
instead of comparing against reserved strings.

Usage:
    sanitize("D'angelo", escape)      # "'D\\'angelo'"
    sanitize(DEFAULT, escape)         # "DEFAULT"
    bind_parameters("id = :id", {"id": 7}, escape)   # "id = 7"
"""

import datetime
import decimal
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .errors import SanitizationFailure

Escape = Callable[[str], str]


class _Keyword:
    """A reserved SQL keyword value."""

    def __init__(self, sql: str):
        self.sql = sql

    def __repr__(self) -> str:
        return self.sql


NULL = _Keyword("NULL")
DEFAULT = _Keyword("DEFAULT")


@dataclass(frozen=True)
class Literal:
    """A plain value to be escaped and quoted as needed."""
    value: Any


@dataclass(frozen=True)
class RawSql:
    """An SQL expression passed through untouched (e.g. ``NOW()``)."""
    text: str


def sanitize(value: Any, escape: Escape) -> str:
    """
    Render a value as an SQL literal.

    Args:
        value: Python value, tagged keyword, Literal or RawSql
        escape: String escaping function supplied by the connection

    Returns:
        SQL text for the value

    Raises:
        SanitizationFailure: If the value has no safe rendering
    """
    if isinstance(value, Literal):
        value = value.value

    if value is None or value is NULL:
        return "NULL"

    if value is DEFAULT:
        return "DEFAULT"

    if isinstance(value, RawSql):
        return value.text

    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "1" if value else "0"

    if isinstance(value, (int, float, decimal.Decimal)):
        return str(value)

    if isinstance(value, str):
        return f"'{escape(value)}'"

    if isinstance(value, datetime.datetime):
        return f"'{escape(value.isoformat(sep=' '))}'"

    if isinstance(value, (datetime.date, datetime.time)):
        return f"'{escape(value.isoformat())}'"

    if isinstance(value, (list, tuple, set, frozenset)):
        return "(" + ", ".join(sanitize(item, escape) for item in value) + ")"

    raise SanitizationFailure(f"cannot sanitize value of type {type(value).__name__}", data=value)


_PARAMETER = re.compile(r"(?<![\w:]):([A-Za-z_][A-Za-z0-9_]*)")


def bind_parameters(statement: str, parameters: Mapping[str, Any], escape: Escape) -> str:
    """
    Replace ``:name`` placeholders with sanitized values.

    Placeholders with no matching parameter are left as they are.

    Args:
        statement: SQL fragment with ``:name`` placeholders
        parameters: Values by placeholder name
        escape: String escaping function supplied by the connection

    Returns:
        The fragment with every known placeholder bound
    """
    def replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in parameters:
            return match.group(0)
        return sanitize(parameters[name], escape)

    return _PARAMETER.sub(replace, statement)
