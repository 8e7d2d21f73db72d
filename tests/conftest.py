from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Any
from unittest.mock import MagicMock

import pytest

from contractos_api.ingestion.models import Job


class FakeCursor:
    """
    Records executed statements and answers `RETURNING id, inserted` style queries.

    `existing` holds natural keys already "in the table" so upserts report `inserted=False`.
    """

    def __init__(
        self,
        totals_row: dict[str, Any] | None = None,
        fail_on: str | None = None,
        no_rows_for: tuple[str, ...] = (),
    ):
        self.statements: list[tuple[str, tuple[Any, ...] | None]] = []
        self.rowcount = 0
        self.totals_row = totals_row or {"budget_uf": 100, "declared_budget": None, "spent": 40, "edps_paid": 1, "edps_total": 2}
        self.fail_on = fail_on
        self.no_rows_for = no_rows_for
        self.existing: set[tuple[Any, ...]] = set()
        self._last_sql = ""
        self._last_params: tuple[Any, ...] | None = None
        self.connection = MagicMock()

        @contextmanager
        def _savepoint():
            yield

        self.connection.transaction.side_effect = _savepoint

    def execute(self, sql: str, params: tuple[Any, ...] | None = None) -> None:
        if self.fail_on and self.fail_on in sql:
            import psycopg

            raise psycopg.errors.DivisionByZero("boom")
        self.statements.append((" ".join(sql.split()), params))
        self._last_sql = sql
        self._last_params = params
        self.rowcount = 0

    def fetchone(self) -> dict[str, Any] | None:
        if any(marker in self._last_sql for marker in self.no_rows_for):
            return None
        if "FROM contracts c" in self._last_sql:
            return dict(self.totals_row)
        key = (" ".join(self._last_sql.split())[:40], self._last_params[:2] if self._last_params else None)
        inserted = key not in self.existing
        self.existing.add(key)
        return {"id": str(uuid.uuid5(uuid.NAMESPACE_OID, repr(key))), "inserted": inserted, "code": "C-101"}

    def sql(self) -> list[str]:
        return [s for s, _ in self.statements]


@pytest.fixture
def fake_cursor():
    return FakeCursor()


@pytest.fixture
def job_factory():
    def _make(**overrides: Any) -> Job:
        data = {
            "id": str(uuid.uuid4()),
            "project_prefix": "acme",
            "storage_path": "acme/C-101/contracts/Contrato.pdf",
            "status": "working",
            "attempts": 1,
        }
        data.update(overrides)
        return Job(**data)

    return _make
