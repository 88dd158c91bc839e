import argparse
import logging
import sys

from DataMapper import ConnectionSettings, DataMapperError, MysqlConfig, Schema

logging.basicConfig(level=logging.INFO, format='[%(levelname)s] %(asctime)s: %(message)s')

# Parse command line arguments
parser = argparse.ArgumentParser(description='Inspect a live MySQL table and print its DDL or a migration diff')
parser.add_argument(
    '-t', '--table',
    type=str,
    required=True,
    help='Table to inspect'
)
parser.add_argument(
    '--diff-against',
    type=str,
    default=None,
    help='Print the ALTER statements that give TABLE the shape of this table instead'
)
parser.add_argument(
    '--env-prefix',
    type=str,
    default='DB_',
    help='Prefix of the connection environment variables (default: DB_)'
)
args = parser.parse_args()

try:
    settings = ConnectionSettings.from_env(args.env_prefix)
except DataMapperError as e:
    print(f"Invalid connection settings: {e}")
    sys.exit(1)

db = MysqlConfig(settings)
if not db.connect():
    print(f"Could not connect to {settings!r}")
    sys.exit(1)

try:
    schema = Schema.load(db, args.table)
    if schema is None:
        print(f"Table not found: {args.table}")
        sys.exit(1)

    print(f"--- Table: {args.table} ---")
    print(f"Attributes: {list(schema.attributes)}")
    print(f"Keys: {schema.keys}")

    if args.diff_against:
        target = Schema.load(db, args.diff_against)
        if target is None:
            print(f"Table not found: {args.diff_against}")
            sys.exit(1)

        statements = schema.diff(target)
        if not statements:
            print("No differences.")
        for statement in statements:
            print(f"{statement};")
    else:
        print(f"{schema.to_create_sql()};")
        for statement in (schema.to_foreign_key_sql(), schema.to_index_sql(), schema.to_unique_sql()):
            if statement:
                print(f"{statement};")

except DataMapperError as e:
    print(f"Error inspecting database: {e}")
    sys.exit(1)

finally:
    db.close()
