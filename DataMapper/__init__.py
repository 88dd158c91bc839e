"""
DataMapper - Declarative query building and object mapping for MySQL

Schemas describe tables, Collections compose queries over them (projections,
filters, inferred joins, paging), and ResultIterators fold the joined rows
back into nested objects. Collections also write: batched upserts and
guarded updates and deletes.

Usage:
    from DataMapper import MysqlConfig, ConnectionSettings, Schema, Collection

    # Connection
    db = MysqlConfig(ConnectionSettings.from_env())
    db.connect()

    # Schemas
    people = Schema.from_definition({
        'table': 'people',
        'keys': ['id'],
        'attributes': {
            'id': {'type': 'int', 'unsigned': True, 'autoIncrement': True},
            'name': {'type': 'varchar', 'length': 128},
        },
    })
    people.patch(db)      # create or migrate the live table

    # Queries
    for person in Collection(people, db).attributes('id', 'name').match('name', 'A%', '&like').find():
        print(person.id, person.name)

    # Writes
    with Collection(people, db).all_attributes() as pending:
        pending.add({'name': 'Ana'})
        pending.add({'name': 'Luis'})
"""

# Base classes
from .base import (
    Attribute,
    DatabaseConfig,
    DatabaseFactory,
    ForeignKey,
    IndexInfo,
    ResultSet,
    TriggerInfo
)

# Errors
from .errors import (
    DataMapperError,
    SchemaDefinitionError,
    RelationshipAmbiguousError,
    QueryConstructionError,
    SanitizationFailure,
    EntityNotFoundError,
    DbError,
    DbErrorKind,
    DuplicateKeyError,
    CannotBeNullError,
    UnknownColumnError,
    UnknownTableError,
    ForeignKeyConstraintError,
    ReferenceNotFoundError,
    ParseError
)

# Values and operators
from .values import NULL, DEFAULT, Literal, RawSql
from .operators import Operator

# Schema management
from .schema import Schema

# Query building
from .query_builder import (
    Query,
    QueryBuilder,
    JoinType,
    OrderDirection,
    ConflictAction
)

# Collections and results
from .iterator import ResultIterator
from .buffer_handler import RowBuffer
from .collection import Collection
from .entity import Entity

# MySQL implementation
from .config import ConnectionSettings
from .mysql_toolkit import MysqlConfig

__all__ = [
    # Base
    'Attribute',
    'DatabaseConfig',
    'DatabaseFactory',
    'ForeignKey',
    'IndexInfo',
    'ResultSet',
    'TriggerInfo',

    # Errors
    'DataMapperError',
    'SchemaDefinitionError',
    'RelationshipAmbiguousError',
    'QueryConstructionError',
    'SanitizationFailure',
    'EntityNotFoundError',
    'DbError',
    'DbErrorKind',
    'DuplicateKeyError',
    'CannotBeNullError',
    'UnknownColumnError',
    'UnknownTableError',
    'ForeignKeyConstraintError',
    'ReferenceNotFoundError',
    'ParseError',

    # Values
    'NULL',
    'DEFAULT',
    'Literal',
    'RawSql',
    'Operator',

    # Schema
    'Schema',

    # Query Builder
    'Query',
    'QueryBuilder',
    'JoinType',
    'OrderDirection',
    'ConflictAction',

    # Collections
    'ResultIterator',
    'RowBuffer',
    'Collection',
    'Entity',

    # MySQL
    'ConnectionSettings',
    'MysqlConfig',
]

__version__ = '1.0.0'
