from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any
from uuid import uuid4

from .db import _db_execute
from .time_utils import _utc_now

logger = logging.getLogger(__name__)


def _log_tool_run(
    tool_name: str,
    *,
    inputs: dict[str, Any],
    outputs: dict[str, Any],
    status: str,
    started_at: datetime,
    job_id: str | None = None,
    confidence_hint: str | None = None,
    uncertainty_note: str | None = None,
) -> str | None:
    """
    Record one external call in `tool_runs`.

    Audit rows are best-effort: a failed insert is logged and never replaces the error (or
    result) of the call being audited.
    """
    tool_run_id = str(uuid4())
    try:
        _db_execute(
            """
            INSERT INTO tool_runs (
              id, tool_name, inputs_logged, outputs_logged, status,
              started_at, ended_at, confidence_hint, uncertainty_note, job_id
            )
            VALUES (%s, %s, %s::jsonb, %s::jsonb, %s, %s, %s, %s, %s, %s::uuid)
            """,
            (
                tool_run_id,
                tool_name,
                json.dumps(inputs, ensure_ascii=False, default=str),
                json.dumps(outputs, ensure_ascii=False, default=str),
                status,
                started_at,
                _utc_now(),
                confidence_hint,
                uncertainty_note,
                job_id,
            ),
        )
    except Exception:  # noqa: BLE001
        logger.warning("Failed to record tool run %s", tool_name, exc_info=True)
        return None
    return tool_run_id
