"""
Operators - Symbolic comparison vocabulary

Maps the operator tokens used in match() and mongo-style conditions
(``eq, ne, gt, gte, lt, lte, in, nin, like, between, or, and``, optionally
prefixed with ``&``) to SQL, and builds conditions over JSON columns.

Usage:
    Operator.from_token('&gte').sql                       # '>='
    render_comparison('age', Operator.IN, [18, 21], esc)  # 'age IN (18, 21)'
    build_condition({'&or': [{'a': {'&eq': 1}}, {'b': {'&gt': 2}}]}, esc)
    # '( a = 1 ) OR ( b > 2 )'
"""

import json
from enum import Enum
from typing import Any, Collection, Mapping

from .errors import QueryConstructionError
from .values import Escape, sanitize


class Operator(Enum):
    """SQL comparison operators, keyed by token"""
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NIN = "nin"
    LIKE = "like"
    BETWEEN = "between"
    OR = "or"
    AND = "and"

    @property
    def sql(self) -> str:
        return _SQL[self]

    @property
    def is_logical(self) -> bool:
        return self in (Operator.OR, Operator.AND)

    @classmethod
    def from_token(cls, token: str) -> "Operator":
        """
        Look up an operator by token.

        Raises:
            QueryConstructionError: If the token is not a known operator
        """
        try:
            return cls(str(token).lstrip("&").lower())
        except ValueError:
            raise QueryConstructionError(f"unknown operator '{token}'", data=token) from None

    @classmethod
    def is_token(cls, token: Any) -> bool:
        return isinstance(token, str) and token.startswith("&") and token[1:].lower() in _TOKENS


_SQL = {
    Operator.EQ: "=",
    Operator.NE: "!=",
    Operator.GT: ">",
    Operator.GTE: ">=",
    Operator.LT: "<",
    Operator.LTE: "<=",
    Operator.IN: "IN",
    Operator.NIN: "NOT IN",
    Operator.LIKE: "LIKE",
    Operator.BETWEEN: "BETWEEN",
    Operator.OR: "OR",
    Operator.AND: "AND",
}

_TOKENS = {op.value for op in Operator}


def is_operator(element: Any) -> bool:
    """True if element is a mapping whose keys are all ``&`` operator tokens, e.g. ``{'&gt': 3}``."""
    if not isinstance(element, Mapping) or not element:
        return False
    return all(Operator.is_token(key) for key in element)


def get_operator(element: Mapping) -> Operator:
    return Operator.from_token(next(iter(element)))


def get_value(element: Mapping) -> Any:
    return next(iter(element.values()))


def render_comparison(field: str, operator: Operator, value: Any, escape: Escape) -> str:
    """
    Render ``field <operator> value``.

    Args:
        field: Left-hand side SQL (attribute name or expression)
        operator: Comparison operator
        value: Scalar, or sequence for IN / NOT IN / BETWEEN
        escape: String escaping function supplied by the connection

    Returns:
        SQL condition

    Raises:
        QueryConstructionError: For logical operators or malformed BETWEEN bounds
    """
    if operator.is_logical:
        raise QueryConstructionError(f"'{operator.value}' is not a comparison", data=field)

    if operator is Operator.BETWEEN:
        if not isinstance(value, (list, tuple)) or len(value) < 2:
            raise QueryConstructionError("between needs a low and a high value", data=value)
        return f"{field} BETWEEN {sanitize(value[0], escape)} AND {sanitize(value[1], escape)}"

    if operator in (Operator.IN, Operator.NIN) and not isinstance(value, (list, tuple, set, frozenset)):
        value = [value]

    return f"{field} {operator.sql} {sanitize(value, escape)}"


def build_condition(condition: Mapping, escape: Escape, json_attributes: Collection[str] = ()) -> str:
    """
    Convert a mongo-style condition into SQL.

    ``{"&or": [...]}`` and ``{"&and": [...]}`` recurse, each sub-condition
    parenthesized. ``{"attribute": {"&op": value}}`` renders a comparison.
    A dotted attribute whose first part is listed in ``json_attributes``
    is treated as a path into a JSON column.

    Raises:
        QueryConstructionError: If the condition is not a single-key mapping
            or uses an unknown operator
    """
    if not isinstance(condition, Mapping) or len(condition) != 1:
        raise QueryConstructionError(f"invalid condition {_dump(condition)}", data=condition)

    key, subcondition = next(iter(condition.items()))

    if key in ("&or", "&and"):
        glue = " OR " if key == "&or" else " AND "
        return glue.join(
            f"( {build_condition(item, escape, json_attributes)} )" for item in _as_list(subcondition)
        )

    attribute_name, _, path = key.partition(".")
    if path and attribute_name in json_attributes:
        return build_json_condition(attribute_name, {path: subcondition}, escape)

    if not is_operator(subcondition):
        raise QueryConstructionError(f"invalid condition {_dump(condition)}", data=condition)

    return render_comparison(key, get_operator(subcondition), get_value(subcondition), escape)


def build_json_condition(attribute_name: str, condition: Mapping, escape: Escape) -> str:
    """
    Convert a condition on paths inside a JSON column into SQL.

    Usage:
        build_json_condition('data', {'address.city': {'&eq': 'Cali'}}, esc)
        # "JSON_CONTAINS(data, '\\"Cali\\"', '$.address.city')"

    Raises:
        QueryConstructionError: On malformed conditions or unknown operators
    """
    if not isinstance(condition, Mapping) or len(condition) != 1:
        raise QueryConstructionError(f"invalid JSON condition {_dump(condition)}", data=condition)

    path, value = next(iter(condition.items()))

    if path in ("&or", "&and"):
        glue = " OR " if path == "&or" else " AND "
        parts = [build_json_condition(attribute_name, item, escape) for item in _as_list(value)]
        return "(" + glue.join(parts) + ")"

    if not isinstance(value, Mapping) or len(value) != 1:
        raise QueryConstructionError(f"invalid JSON condition {_dump(condition)}", data=condition)

    token, argument = next(iter(value.items()))
    operator = str(token).lstrip("&")
    json_path = f"'$.{escape(path)}'"

    if _is_numeric(argument):
        argument = int(float(argument))

    if operator in _SEARCH_PATTERNS:
        pattern = _SEARCH_PATTERNS[operator].format(escape(str(argument)))
        return f"JSON_SEARCH({attribute_name}, 'one', '{pattern}', NULL, {json_path}) IS NOT NULL"

    if operator == "eq":
        return f"JSON_CONTAINS({attribute_name}, {_json_literal(argument, escape)}, {json_path})"

    if operator in ("ne", "neq"):
        return f"NOT JSON_CONTAINS({attribute_name}, {_json_literal(argument, escape)}, {json_path})"

    if operator in ("gt", "gte", "lt", "lte"):
        rendered = str(argument) if isinstance(argument, int) else sanitize(argument, escape)
        return f"JSON_EXTRACT({attribute_name}, {json_path}) {Operator(operator).sql} {rendered}"

    if operator in ("hasAny", "hasAll"):
        targets = argument if isinstance(argument, (list, tuple)) else [argument]
        parts = [f"JSON_CONTAINS({attribute_name}, {_json_literal(target, escape)}, {json_path})" for target in targets]
        glue = " OR " if operator == "hasAny" else " AND "
        return "(" + glue.join(parts) + ")"

    raise QueryConstructionError(f"unknown JSON operator '{token}'", data=condition)


_SEARCH_PATTERNS = {
    "like": "{}",
    "beginsWith": "{}%",
    "endsWith": "%{}",
    "contains": "%{}%",
}


def _json_literal(value: Any, escape: Escape) -> str:
    return f"'{escape(json.dumps(value))}'"


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        try:
            float(value)
        except ValueError:
            return False
        return True
    return False


def _as_list(value: Any) -> list:
    if not isinstance(value, (list, tuple)):
        raise QueryConstructionError(f"expected a list of conditions, got {_dump(value)}", data=value)
    return list(value)


def _dump(value: Any) -> str:
    return json.dumps(value, default=str)
