"""
Query Builder - SELECT assembly and write statements

Query collects the parts of one SELECT (fields, joins, conditions, grouping,
ordering, paging) and flattens nested join trees into a single statement.
QueryBuilder renders the INSERT / UPDATE / DELETE statements used by
collections, with every value passed through the connection's escaping.
"""

import copy
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Sequence, Union

from .errors import QueryConstructionError, SanitizationFailure
from .values import Escape, sanitize

logger = logging.getLogger(__name__)


class JoinType(Enum):
    """SQL JOIN types"""
    INNER = "INNER"
    LEFT = "LEFT"


class OrderDirection(Enum):
    """ORDER BY directions"""
    ASC = "ASC"
    DESC = "DESC"


class ConflictAction(Enum):
    """What an INSERT does with rows whose key already exists"""
    UPDATE = "update"
    IGNORE = "ignore"


@dataclass
class Join:
    """
    A nested query joined to its parent.

    Usage:
        Join(JoinType.LEFT, Query('pets', 'pets'), ['`people`.`id` = `pets`.`owner`'])
    """
    join_type: JoinType
    query: "Query"
    conditions: list[str] = field(default_factory=list)


@dataclass
class JoinClause:
    """A flattened JOIN, ready to render."""
    join_type: JoinType
    table: str
    alias: str
    condition: str

    def to_sql(self) -> str:
        return f"{self.join_type.value} JOIN {self.table} `{self.alias}` ON {self.condition}"


class Query:
    """
    SELECT statement builder.

    Usage:
        query = Query('people')
        query.field('id')
        query.field('fullName', "CONCAT(`people`.`first_name`, ' ', `people`.`last_name`)")
        query.where('`people`.`id` > 3').order_by('fullName').limit(10)

        query.to_sql()
        # SELECT `people`.`id` as `id`, CONCAT(...) as `fullName`
        # FROM people `people`
        # WHERE (`people`.`id` > 3)
        # ORDER BY CONCAT(...)
        # LIMIT 10
    """

    def __init__(self, table: str, alias: Optional[str] = None):
        """
        Args:
            table: Table name
            alias: Table alias (defaults to the table name)
        """
        self.table = table
        self.alias = alias if alias is not None else table

        self.fields: dict[str, str] = {}
        self.conditions: list[str] = []
        self.joins: list[Join] = []
        self.joined: list[JoinClause] = []
        self.order: list[str] = []
        self.group: list[str] = []
        self.having_conditions: list[str] = []
        self.limit_clause: Optional[str] = None
        self.indexes: list[str] = []

    def field(self, name: str, source: Optional[str] = None) -> "Query":
        """Select ``source`` as ``name`` (source defaults to the column of the same name)."""
        if source is None:
            source = f"`{self.alias}`.`{name}`"

        self.fields[name] = source
        return self

    def fields_from(self, fields: Union[None, str, Sequence[str], Mapping[str, str]]) -> "Query":
        """
        Replace the field list.

        Args:
            fields: None to clear, a name or list of names, or a
                ``{name: source}`` mapping
        """
        self.fields = {}

        if fields is None:
            return self

        if isinstance(fields, str):
            fields = [fields]

        if isinstance(fields, Mapping):
            for name, source in fields.items():
                self.field(name, source)
        else:
            for name in fields:
                self.field(name)

        return self

    def where(self, condition: str) -> "Query":
        self.conditions.append(condition)
        return self

    def limit(self, offset: Optional[Any], value: Optional[Any] = None) -> "Query":
        """
        Set the LIMIT clause. Arguments follow MySQL order: ``limit(10)`` or
        ``limit(offset, count)``. ``limit(None)`` removes it.
        """
        if offset is None:
            self.limit_clause = None
        elif value is not None:
            self.limit_clause = f"{int(offset)}, {int(value)}"
        else:
            self.limit_clause = str(int(offset))

        return self

    def having(self, condition: str) -> "Query":
        self.having_conditions.append(condition)
        return self

    def order_by(self, value: Optional[str] = None) -> "Query":
        """Append an ORDER BY term, or clear them all with no argument."""
        if value is None:
            self.order = []
        else:
            self.order.append(value)
        return self

    def group_by(self, value: Optional[str] = None) -> "Query":
        """Append a GROUP BY term, or clear them all with no argument."""
        if value is None:
            self.group = []
        else:
            self.group.append(value)
        return self

    def join(self, join_type: Union[JoinType, str], query: "Query", conditions: Union[str, Sequence[str]]) -> "Query":
        """
        Join a nested query.

        Args:
            join_type: JoinType or its name ("inner", "left")
            query: Nested query (may have joins of its own)
            conditions: ON condition(s), joined with AND
        """
        if isinstance(join_type, str):
            join_type = JoinType(join_type.upper())

        if isinstance(conditions, str):
            conditions = [conditions]

        self.joins.append(Join(join_type, query, list(conditions)))
        return self

    def use_index(self, index: str) -> "Query":
        self.indexes.append(index)
        return self

    def merge_joined(self) -> "Query":
        """
        Flatten the join tree.

        Each nested query is merged recursively, then its fields, joins and
        conditions are appended to a copy of this query, so any depth of
        nesting compiles to a single statement.

        Returns:
            New Query with no nested joins
        """
        merged = copy.copy(self)
        merged.fields = dict(self.fields)
        merged.conditions = list(self.conditions)
        merged.joined = list(self.joined)
        merged.order = list(self.order)
        merged.group = list(self.group)
        merged.having_conditions = list(self.having_conditions)
        merged.indexes = list(self.indexes)

        for join in self.joins:
            nested = join.query.merge_joined()

            merged.joined.append(JoinClause(
                join_type=join.join_type,
                table=nested.table,
                alias=nested.alias,
                condition=" AND ".join(join.conditions),
            ))

            merged.fields.update(nested.fields)
            merged.joined.extend(nested.joined)
            merged.conditions.extend(nested.conditions)

        merged.joins = []
        return merged

    def to_sql(self) -> str:
        """
        Render the statement.

        Raises:
            QueryConstructionError: If no fields were selected
        """
        select = self.merge_joined()

        if not select.fields:
            raise QueryConstructionError(f"no fields selected for query on '{self.table}'", data=self.table)

        columns = ",\n".join(f"{source} as `{name}`" for name, source in select.fields.items())
        lines = [f"SELECT\n{columns}", f"FROM {select.table} `{select.alias}`"]

        if select.indexes:
            lines.append(f"USE INDEX({', '.join(select.indexes)})")

        lines.extend(join.to_sql() for join in select.joined)

        if select.conditions:
            lines.append("WHERE (" + ") AND (".join(select.conditions) + ")")

        if select.group:
            lines.append("GROUP BY " + ", ".join(select.group))

        if select.having_conditions:
            lines.append("HAVING " + " AND ".join(select.having_conditions))

        if select.order:
            # Terms naming a selected field are ordered by its source
            lines.append("ORDER BY " + ", ".join(select.fields.get(term, term) for term in select.order))

        if select.limit_clause is not None:
            lines.append(f"LIMIT {select.limit_clause}")

        return "\n".join(lines)

    def __str__(self) -> str:
        return self.to_sql()


class QueryBuilder:
    """
    Write statement builder.

    Values are rendered through ``escape`` (the connection's escaping
    function), so the statements can be executed as they are.

    Usage:
        sql = QueryBuilder.insert('people', ['id', 'name'], rows, db.escape_string,
                                  on_duplicate=ConflictAction.UPDATE, auto_increment_columns=['id'])
        sql = QueryBuilder.update('people `people`', {'`people`.`name`': 'Ana'}, '`people`.`id` = 3', db.escape_string)
        sql = QueryBuilder.delete('people', '`id` = 3')
    """

    @staticmethod
    def _validate_identifier(name: str) -> str:
        """
        Validate a column or table name.

        Raises:
            QueryConstructionError: If the identifier contains invalid characters
        """
        if not re.match(r'^[A-Za-z_][A-Za-z0-9_$]*$', name):
            raise QueryConstructionError(f"invalid identifier: {name}", data=name)
        return name

    @staticmethod
    def insert(
        table: str,
        columns: Sequence[str],
        rows: Sequence[Mapping[str, Any]],
        escape: Escape,
        on_duplicate: Optional[ConflictAction] = None,
        auto_increment_columns: Sequence[str] = ()
    ) -> str:
        """
        Build a multi-row INSERT.

        Rows containing a value that cannot be sanitized are dropped (with a
        warning); the rest are inserted.

        Args:
            table: Table name
            columns: Column names, in VALUES order
            rows: Dicts keyed by column name
            escape: String escaping function
            on_duplicate: UPDATE for ``ON DUPLICATE KEY UPDATE``, IGNORE for
                ``INSERT IGNORE``
            auto_increment_columns: Columns kept with ``LAST_INSERT_ID(col)``
                on duplicates, so the connection reports the existing id

        Returns:
            SQL statement

        Raises:
            QueryConstructionError: If no row survives sanitization
        """
        values = QueryBuilder.render_rows(table, columns, rows, escape)
        return QueryBuilder.insert_values(table, columns, values, on_duplicate, auto_increment_columns)

    @staticmethod
    def render_rows(table: str, columns: Sequence[str], rows: Sequence[Mapping[str, Any]], escape: Escape) -> list[str]:
        """Render each row as a ``(v1, v2, ...)`` tuple, dropping rows that fail sanitization."""
        values = []
        for index, row in enumerate(rows):
            try:
                rendered = [sanitize(row.get(column), escape) for column in columns]
            except SanitizationFailure as e:
                logger.warning(f"Dropping row {index} from insert into {table}: {e}")
                continue
            values.append("(" + ", ".join(rendered) + ")")
        return values

    @staticmethod
    def insert_values(
        table: str,
        columns: Sequence[str],
        values: Sequence[str],
        on_duplicate: Optional[ConflictAction] = None,
        auto_increment_columns: Sequence[str] = ()
    ) -> str:
        """Build a multi-row INSERT from tuples already rendered by ``render_rows``."""
        table = QueryBuilder._validate_identifier(table)
        columns = [QueryBuilder._validate_identifier(c) for c in columns]

        if not values:
            raise QueryConstructionError(f"no records passed sanitization for '{table}'", data=table)

        verb = "INSERT IGNORE INTO" if on_duplicate is ConflictAction.IGNORE else "INSERT INTO"
        column_list = ", ".join(f"`{c}`" for c in columns)
        query = f"{verb} `{table}` ({column_list})\nVALUES\n" + ",\n".join(values)

        if on_duplicate is ConflictAction.UPDATE:
            fallbacks = [f"`{c}` = LAST_INSERT_ID(`{c}`)" for c in auto_increment_columns]
            fallbacks.extend(f"`{c}` = VALUES(`{c}`)" for c in columns if c not in auto_increment_columns)
            query += "\nON DUPLICATE KEY UPDATE " + ", ".join(fallbacks)

        return query

    @staticmethod
    def update(table: str, values: Mapping[str, Any], condition: Optional[str], escape: Escape) -> Optional[str]:
        """
        Build an UPDATE.

        Args:
            table: Table reference, possibly aliased and joined
                (e.g. ``people `people` JOIN pets `pets` ON ...``)
            values: ``{column_sql: value}``; assignments whose value cannot
                be sanitized are skipped with a warning
            condition: WHERE condition, or None
            escape: String escaping function

        Returns:
            SQL statement, or None if no assignment survived
        """
        assignments = []
        for column, value in values.items():
            try:
                assignments.append(f"{column} = {sanitize(value, escape)}")
            except SanitizationFailure as e:
                logger.warning(f"Could not sanitize value for column {column}: {e}")

        if not assignments:
            return None

        query = f"UPDATE {table} SET {', '.join(assignments)}"
        if condition:
            query += f" WHERE {condition}"

        return query

    @staticmethod
    def delete(table: str, condition: Optional[str] = None) -> str:
        """Build a DELETE on a single, unaliased table."""
        table = QueryBuilder._validate_identifier(table)

        query = f"DELETE FROM `{table}`"
        if condition:
            query += f" WHERE {condition}"

        return query
