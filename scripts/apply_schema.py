#!/usr/bin/env python3
from __future__ import annotations

import argparse
from pathlib import Path

from contractos_api.config import configure_logging
from contractos_api.db import apply_schema, init_db_pool, shutdown_db_pool


def main() -> int:
    parser = argparse.ArgumentParser(description="Apply the ContractOS DDL to the database named by COS_DB_DSN.")
    parser.add_argument("--schema", type=Path, help="Alternative DDL file (default: bundled sql/schema.sql)")
    args = parser.parse_args()

    configure_logging()
    init_db_pool()
    try:
        apply_schema(args.schema)
    finally:
        shutdown_db_pool()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
