"""
DuckDB schema for the tickercache key-value store.

Run with: python -m tickercache.data.schema --init
"""

import argparse
from typing import Union

from loguru import logger

# One row per key. Values are JSON text; expires_at is epoch seconds (NULL =
# never expires); version increments on every write and backs compare-and-set.
KV_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS kv_store (
        key VARCHAR PRIMARY KEY,
        value VARCHAR NOT NULL,
        expires_at DOUBLE,
        version BIGINT NOT NULL DEFAULT 1,
        updated_at DOUBLE NOT NULL
    )
"""

TABLES = {
    "kv_store": KV_TABLE_SQL,
}


def create_tables(db_path: Union[str, None] = None) -> None:
    """
    Create all tables. Idempotent.

    Args:
        db_path: Optional database path (defaults to configured store path)
    """
    from tickercache.data.store import get_store

    store = get_store(db_path)
    with store.connection() as conn:
        for name, ddl in TABLES.items():
            conn.execute(ddl)
            logger.debug(f"Ensured table {name}")
    logger.info(f"Schema ready at {store.db_path}")


def main() -> None:
    parser = argparse.ArgumentParser(description="tickercache store schema")
    parser.add_argument("--init", action="store_true", help="Create tables")
    parser.add_argument("--db", type=str, default=None, help="Database path")
    args = parser.parse_args()

    if args.init:
        create_tables(args.db)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
