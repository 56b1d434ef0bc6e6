#!/usr/bin/env python3
"""
Initialize the digital twin database schema.
Run this where OMNITWIN_DSN (or DATABASE_URL) is available.
"""
import os
import sys

from omnitwin.common.exceptions import ConnectivityError
from omnitwin.config import TwinConfig
from omnitwin.graph.store import PostgresNodeStore


def main():
    config = TwinConfig.from_env()
    dsn = os.environ.get("OMNITWIN_DSN") or os.environ.get("DATABASE_URL")
    if not dsn:
        print("ERROR: OMNITWIN_DSN or DATABASE_URL environment variable not set")
        sys.exit(1)
    config.store.dsn = dsn

    print("Connecting to database...")
    store = PostgresNodeStore(config.store)
    try:
        store.connect()
        print("Initializing twin_nodes schema...")
        store.init_schema()
        print("\n✅ Database initialization complete!")
    except ConnectivityError as e:
        print(f"ERROR: Database initialization failed: {e}")
        sys.exit(1)
    finally:
        store.disconnect()


if __name__ == "__main__":
    main()
