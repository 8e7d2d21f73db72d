from __future__ import annotations

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..db import _db_fetch_all, _db_fetch_one
from ..errors import ContractNotFound


def get_contract(code: str) -> JSONResponse:
    """Contract with its tasks, payment statements and derived totals."""
    contract = _db_fetch_one(
        """
        SELECT id, code, title, client, contractor, budget_uf, currency, start_date, end_date,
               review_required, metadata, created_at, updated_at
        FROM contracts
        WHERE code = %s
        """,
        (code,),
    )
    if not contract:
        raise ContractNotFound(f"Contract {code} not found", details={"code": code})

    contract_id = str(contract["id"])
    # Numbered tasks in numeric order ("2" before "10"); unmapped codes such as "A1" sort last.
    tasks = _db_fetch_all(
        """
        SELECT task_number, task_name, budget_uf, spent_uf, progress_percentage, updated_at
        FROM contract_tasks
        WHERE contract_id = %s::uuid
        ORDER BY
          task_number ~ '^[0-9]{1,9}([.][0-9]{1,9})*$' DESC,
          CASE WHEN task_number ~ '^[0-9]{1,9}([.][0-9]{1,9})*$'
               THEN string_to_array(task_number, '.')::int[] END ASC,
          task_number ASC
        """,
        (contract_id,),
    )
    payment_states = _db_fetch_all(
        """
        SELECT id, edp_number, period_label, period_start, period_end, amount_uf, uf_rate, amount_clp, status, updated_at
        FROM payment_states
        WHERE contract_id = %s::uuid
        ORDER BY edp_number ASC
        """,
        (contract_id,),
    )
    documents = _db_fetch_all(
        """
        SELECT filename, file_url, doc_type, processing_status, review_required, updated_at
        FROM documents
        WHERE contract_id = %s::uuid
        ORDER BY updated_at DESC
        """,
        (contract_id,),
    )
    metadata = contract.get("metadata") or {}
    return JSONResponse(
        content=jsonable_encoder(
            {
                "contract": contract,
                "totals": {k: metadata.get(k) for k in ("budget_uf", "spent_uf", "available_uf", "overall_progress_pct", "edps_paid", "edps_total", "totals_stale")},
                "tasks": tasks,
                "payment_states": payment_states,
                "documents": documents,
            }
        )
    )
