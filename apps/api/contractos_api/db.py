from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from fastapi import HTTPException
from psycopg import Cursor
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from .config import db_connect_timeout_seconds, db_pool_max_size

_db_pool: ConnectionPool | None = None
_logger = logging.getLogger(__name__)

_SCHEMA_PATH = Path(__file__).resolve().parent / "sql" / "schema.sql"


def init_db_pool() -> None:
    """
    Open the shared connection pool named by `COS_DB_DSN`.

    Without a DSN, or when Postgres refuses the first connection, the pool stays unset and the
    process keeps running: API routes and Celery tasks that touch the DB answer 503 until a later
    call manages to open it.
    """
    global _db_pool
    if _db_pool is not None:
        return

    dsn = os.environ.get("COS_DB_DSN")
    if not dsn:
        _logger.info("COS_DB_DSN is not set; database-backed operations are disabled.")
        return

    pool = ConnectionPool(
        conninfo=dsn,
        min_size=1,
        max_size=db_pool_max_size(),
        open=False,
        kwargs={"autocommit": True},
    )
    try:
        pool.open(wait=True, timeout=db_connect_timeout_seconds())
    except (PoolTimeout, OSError) as exc:
        _logger.error("Could not open DB pool (%s); continuing without a database.", exc)
        pool.close()
        return

    _db_pool = pool


def shutdown_db_pool() -> None:
    global _db_pool
    pool, _db_pool = _db_pool, None
    if pool is not None:
        pool.close()


def _db_pool_or_503() -> ConnectionPool:
    if _db_pool is None:
        init_db_pool()
    if _db_pool is None:
        raise HTTPException(status_code=503, detail="Database unavailable (check Postgres and COS_DB_DSN).")
    return _db_pool


@contextmanager
def _cursor() -> Iterator[Cursor[dict[str, Any]]]:
    # Autocommit connection: each statement is its own transaction.
    with _db_pool_or_503().connection() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            yield cur


def _db_fetch_one(sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
    with _cursor() as cur:
        row = cur.execute(sql, params).fetchone()
    return dict(row) if row else None


def _db_fetch_all(sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
    with _cursor() as cur:
        rows = cur.execute(sql, params).fetchall()
    return [dict(r) for r in rows]


def _db_execute(sql: str, params: tuple[Any, ...] = ()) -> int:
    """Run a statement without a result set; returns the affected row count."""
    with _cursor() as cur:
        cur.execute(sql, params)
        return cur.rowcount


def _db_execute_returning(sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
    """
    Run an INSERT/UPDATE with a RETURNING clause and return the first row.

    `None` means nothing was written: an `ON CONFLICT DO NOTHING` that hit the constraint, or a
    guarded `UPDATE ... WHERE status = 'queued'` that another worker won.
    """
    return _db_fetch_one(sql, params)


def _db_execute_returning_all(sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
    return _db_fetch_all(sql, params)


@contextmanager
def _db_transaction() -> Iterator[Cursor[dict[str, Any]]]:
    """
    Yield a dict-row cursor bound to one explicit transaction.

    Leaving the block normally commits; an exception rolls every statement back and propagates.
    """
    with _db_pool_or_503().connection() as conn:
        with conn.transaction():
            with conn.cursor(row_factory=dict_row) as cur:
                yield cur


def apply_schema(path: Path | None = None) -> None:
    """Run `sql/schema.sql` (or `path`); every statement in it is idempotent."""
    schema_path = path or _SCHEMA_PATH
    with _db_pool_or_503().connection() as conn:
        conn.execute(schema_path.read_text(encoding="utf-8"))
    _logger.info("Applied schema from %s", schema_path)


def db_ping() -> bool:
    """`True` when a pooled connection can run `SELECT 1`."""
    try:
        with _cursor() as cur:
            cur.execute("SELECT 1")
    except HTTPException:
        return False
    except Exception:
        _logger.warning("DB ping failed", exc_info=True)
        return False
    return True
