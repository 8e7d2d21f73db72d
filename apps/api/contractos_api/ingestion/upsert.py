from __future__ import annotations

import hashlib
import json
import logging
import re
from typing import Any

import psycopg
from psycopg import Cursor

from ..db import _db_transaction
from ..errors import UpsertError
from ..text_utils import _fold_text
from .classifier import classify_storage_path, document_type_config
from .job_log import append_log
from .models import (
    ContractExtraction,
    EdpExtraction,
    ExtractedPayload,
    Job,
    ObligationItem,
    RecordWrite,
    RiskItem,
    TaskLine,
)

logger = logging.getLogger(__name__)

# Payment states that count towards spend.
_SPEND_STATUSES = ("approved", "submitted")


def _natural_key_hash(text: str) -> str:
    folded = re.sub(r"\s+", " ", _fold_text(text))
    return hashlib.sha1(folded.encode("utf-8")).hexdigest()


def _num(value: Any) -> float:
    if value is None:
        return 0.0
    return float(value)


def _action(row: dict[str, Any]) -> str:
    return "inserted" if row.get("inserted") else "updated"


def _is_low_confidence(payload: ExtractedPayload) -> bool:
    if payload.structured.kind == "unknown":
        return True
    return any(w.code == "low_confidence_classification" for w in payload.warnings)


class UpsertRouter:
    """
    Maps a validated extraction onto the domain tables.

    Every write is an insert-or-update on a natural key; a document's writes share one
    transaction. Derived totals (task spend, contract spend and progress) are recomputed
    from rows after the writes, never incremented.
    """

    def apply(
        self,
        payload: ExtractedPayload,
        job: Job,
        *,
        file_size: int | None = None,
        parse_method: str | None = None,
        model_id: str | None = None,
        cur: Cursor[Any] | None = None,
    ) -> list[RecordWrite]:
        if cur is not None:
            return self._apply(cur, payload, job, file_size=file_size, parse_method=parse_method, model_id=model_id)
        try:
            with _db_transaction() as tx:
                return self._apply(tx, payload, job, file_size=file_size, parse_method=parse_method, model_id=model_id)
        except psycopg.Error as exc:
            raise UpsertError(f"Domain write failed: {exc}", details={"job_id": job.id}) from exc

    def _apply(
        self,
        cur: Cursor[Any],
        payload: ExtractedPayload,
        job: Job,
        *,
        file_size: int | None,
        parse_method: str | None,
        model_id: str | None,
    ) -> list[RecordWrite]:
        writes: list[RecordWrite] = []
        structured = payload.structured

        resolved = self._resolve_contract(cur, payload, job)
        if resolved is None:
            # Kept for review; no domain rows are written for a document with no known contract.
            self._insert_payload(cur, payload, job, None, parse_method, model_id)
            self._log_skip(cur, job, "contracts", "low-confidence document matches no existing contract")
            return writes
        contract_id, contract_write = resolved
        writes.append(contract_write)
        self._log_write(cur, job, contract_write)

        payload_id = self._insert_payload(cur, payload, job, contract_id, parse_method, model_id)

        if isinstance(structured, ContractExtraction):
            for task in structured.tasks:
                write = self._upsert_contract_task(cur, contract_id, task, set_budget=True)
                if write:
                    writes.append(write)
                    self._log_write(cur, job, write)
                else:
                    self._log_skip(cur, job, "contract_tasks", f"task {task.name!r} has no number")
        elif isinstance(structured, EdpExtraction):
            writes.extend(self._apply_edp(cur, structured, job, contract_id))

        for risk in getattr(structured, "risks", []) or []:
            write = self._upsert_risk(cur, contract_id, risk, payload.source_filename)
            writes.append(write)
            self._log_write(cur, job, write)
        for obligation in getattr(structured, "obligations", []) or []:
            write = self._upsert_obligation(cur, contract_id, obligation, payload.source_filename)
            writes.append(write)
            self._log_write(cur, job, write)

        doc_write = self._upsert_document(cur, payload, job, contract_id, payload_id, file_size)
        writes.append(doc_write)
        self._log_write(cur, job, doc_write)

        if isinstance(structured, (ContractExtraction, EdpExtraction)):
            total_write = self.recompute_contract_totals(cur, contract_id)
            writes.append(total_write)
            append_log(
                job.id,
                "aggregate",
                "Contract totals recomputed" if total_write.action == "recomputed" else "Contract totals marked stale",
                {"contract_id": contract_id, **total_write.natural_key},
                cur=cur,
            )
        return writes

    def _log_write(self, cur: Cursor[Any], job: Job, write: RecordWrite) -> None:
        append_log(
            job.id,
            "upsert",
            f"{write.action} {write.table}",
            {"table": write.table, "natural_key": write.natural_key, "record_id": write.record_id, "action": write.action},
            cur=cur,
        )

    def _log_skip(self, cur: Cursor[Any], job: Job, table: str, reason: str) -> None:
        append_log(job.id, "upsert", f"skipped {table}: {reason}", {"table": table, "skipped": True}, cur=cur)

    def _resolve_contract(self, cur: Cursor[Any], payload: ExtractedPayload, job: Job) -> tuple[str, RecordWrite] | None:
        """
        Find or create the contract a document belongs to.

        Low-confidence documents (type `unknown`, or a classification the validator flagged)
        only attach to an existing contract; `None` means there is none to attach to.
        """
        structured = payload.structured
        code = (getattr(structured, "contract_code", None) or "").strip() or None

        if isinstance(structured, ContractExtraction) and code:
            cur.execute(
                """
                INSERT INTO contracts (code, title, client, contractor, budget_uf, currency, start_date, end_date, review_required)
                VALUES (%s, %s, %s, %s, %s, COALESCE(%s, 'UF'), %s, %s, %s)
                ON CONFLICT (code) DO UPDATE SET
                  title = COALESCE(EXCLUDED.title, contracts.title),
                  client = COALESCE(EXCLUDED.client, contracts.client),
                  contractor = COALESCE(EXCLUDED.contractor, contracts.contractor),
                  budget_uf = COALESCE(EXCLUDED.budget_uf, contracts.budget_uf),
                  currency = COALESCE(EXCLUDED.currency, contracts.currency),
                  start_date = COALESCE(EXCLUDED.start_date, contracts.start_date),
                  end_date = COALESCE(EXCLUDED.end_date, contracts.end_date),
                  review_required = EXCLUDED.review_required,
                  updated_at = now()
                RETURNING id, (xmax = 0) AS inserted
                """,
                (
                    code,
                    structured.title,
                    structured.client,
                    structured.contractor,
                    structured.budget_uf,
                    structured.currency,
                    structured.start_date,
                    structured.end_date,
                    payload.review_required,
                ),
            )
            row = cur.fetchone()
            return str(row["id"]), RecordWrite(table="contracts", natural_key={"code": code}, record_id=str(row["id"]), action=_action(row))

        if not code and job.contract_id:
            cur.execute("SELECT id, code FROM contracts WHERE id = %s::uuid", (job.contract_id,))
            row = cur.fetchone()
            if row:
                return str(row["id"]), RecordWrite(table="contracts", natural_key={"code": row["code"]}, record_id=str(row["id"]), action="resolved")

        if not code:
            code = classify_storage_path(job.storage_path).entity_code
        if not code:
            if _is_low_confidence(payload):
                return None
            raise UpsertError(
                "No contract code in the extraction, the job or the storage path",
                details={"job_id": job.id, "storage_path": job.storage_path},
            )

        if _is_low_confidence(payload):
            cur.execute("SELECT id, code FROM contracts WHERE code = %s", (code,))
            row = cur.fetchone()
            if not row:
                return None
            return str(row["id"]), RecordWrite(table="contracts", natural_key={"code": row["code"]}, record_id=str(row["id"]), action="resolved")

        budget = getattr(structured, "contract_budget_uf", None)
        cur.execute(
            """
            INSERT INTO contracts (code, budget_uf)
            VALUES (%s, %s)
            ON CONFLICT (code) DO UPDATE SET
              budget_uf = COALESCE(contracts.budget_uf, EXCLUDED.budget_uf),
              updated_at = now()
            RETURNING id, (xmax = 0) AS inserted
            """,
            (code, budget),
        )
        row = cur.fetchone()
        return str(row["id"]), RecordWrite(table="contracts", natural_key={"code": code}, record_id=str(row["id"]), action=_action(row))

    def _insert_payload(
        self,
        cur: Cursor[Any],
        payload: ExtractedPayload,
        job: Job,
        contract_id: str | None,
        parse_method: str | None,
        model_id: str | None,
    ) -> str:
        # Earlier payloads for the same source are kept for audit and only marked superseded.
        cur.execute(
            """
            UPDATE extracted_payloads
            SET superseded_at = now()
            WHERE storage_path = %s AND document_type = %s AND superseded_at IS NULL
            """,
            (job.storage_path, payload.document_type),
        )
        cur.execute(
            """
            INSERT INTO extracted_payloads (
              job_id, contract_id, document_type, source_filename, storage_path, raw_output, structured,
              confidence, warnings, review_required, provenance, parse_method, model_id
            )
            VALUES (%s::uuid, %s::uuid, %s, %s, %s, %s::jsonb, %s::jsonb, %s, %s::jsonb, %s, %s::jsonb, %s, %s)
            RETURNING id
            """,
            (
                job.id,
                contract_id,
                payload.document_type,
                payload.source_filename,
                job.storage_path,
                json.dumps(payload.raw_output, ensure_ascii=False, default=str),
                payload.structured.model_dump_json(),
                payload.confidence,
                json.dumps([w.model_dump() for w in payload.warnings], ensure_ascii=False, default=str),
                payload.review_required,
                json.dumps([p.model_dump() for p in payload.provenance], ensure_ascii=False, default=str),
                parse_method,
                model_id,
            ),
        )
        return str(cur.fetchone()["id"])

    def _upsert_contract_task(
        self,
        cur: Cursor[Any],
        contract_id: str,
        task: TaskLine,
        *,
        set_budget: bool,
    ) -> RecordWrite | None:
        if not task.task_number:
            return None
        if set_budget:
            budget_sql = "COALESCE(EXCLUDED.budget_uf, contract_tasks.budget_uf)"
            name_sql = "EXCLUDED.task_name"
        else:
            # A payment statement never overrides what the contract itself declared.
            budget_sql = "COALESCE(contract_tasks.budget_uf, EXCLUDED.budget_uf)"
            name_sql = "contract_tasks.task_name"
        cur.execute(
            f"""
            INSERT INTO contract_tasks (contract_id, task_number, task_name, budget_uf)
            VALUES (%s::uuid, %s, %s, %s)
            ON CONFLICT (contract_id, task_number) DO UPDATE SET
              task_name = {name_sql},
              budget_uf = {budget_sql},
              updated_at = now()
            RETURNING id, (xmax = 0) AS inserted
            """,
            (contract_id, task.task_number, task.name, task.budget_uf),
        )
        row = cur.fetchone()
        return RecordWrite(
            table="contract_tasks",
            natural_key={"contract_id": contract_id, "task_number": task.task_number},
            record_id=str(row["id"]),
            action=_action(row),
        )

    def _apply_edp(self, cur: Cursor[Any], edp: EdpExtraction, job: Job, contract_id: str) -> list[RecordWrite]:
        writes: list[RecordWrite] = []
        if edp.edp_number is None:
            self._log_skip(cur, job, "payment_states", "edp_number missing")
            return writes

        data = edp.model_dump(mode="json", exclude={"tasks_executed", "kind"})
        cur.execute(
            """
            INSERT INTO payment_states (
              contract_id, edp_number, period_label, period_start, period_end,
              amount_uf, uf_rate, amount_clp, status, data
            )
            VALUES (%s::uuid, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, 'submitted'), %s::jsonb)
            ON CONFLICT (contract_id, edp_number) DO UPDATE SET
              period_label = EXCLUDED.period_label,
              period_start = EXCLUDED.period_start,
              period_end = EXCLUDED.period_end,
              amount_uf = EXCLUDED.amount_uf,
              uf_rate = EXCLUDED.uf_rate,
              amount_clp = EXCLUDED.amount_clp,
              status = EXCLUDED.status,
              data = EXCLUDED.data,
              updated_at = now()
            RETURNING id, (xmax = 0) AS inserted
            """,
            (
                contract_id,
                edp.edp_number,
                edp.period_label,
                edp.period_start,
                edp.period_end,
                edp.amount_uf,
                edp.uf_rate,
                edp.amount_clp,
                edp.status,
                json.dumps(data, ensure_ascii=False),
            ),
        )
        row = cur.fetchone()
        payment_state_id = str(row["id"])
        state_write = RecordWrite(
            table="payment_states",
            natural_key={"contract_id": contract_id, "edp_number": edp.edp_number},
            record_id=payment_state_id,
            action=_action(row),
        )
        writes.append(state_write)
        self._log_write(cur, job, state_write)

        kept_numbers: list[str] = []
        for task in edp.tasks_executed:
            if not task.task_number:
                self._log_skip(cur, job, "payment_state_items", f"task {task.name!r} has no number")
                continue
            task_write = self._upsert_contract_task(cur, contract_id, task, set_budget=False)
            if task_write:
                writes.append(task_write)
                self._log_write(cur, job, task_write)
            cur.execute(
                """
                INSERT INTO payment_state_items (payment_state_id, task_number, task_name, spent_uf, budget_uf, progress_pct)
                VALUES (%s::uuid, %s, %s, COALESCE(%s, 0), %s, %s)
                ON CONFLICT (payment_state_id, task_number) DO UPDATE SET
                  task_name = EXCLUDED.task_name,
                  spent_uf = EXCLUDED.spent_uf,
                  budget_uf = EXCLUDED.budget_uf,
                  progress_pct = EXCLUDED.progress_pct,
                  updated_at = now()
                RETURNING id, (xmax = 0) AS inserted
                """,
                (payment_state_id, task.task_number, task.name, task.spent_uf, task.budget_uf, task.progress_pct),
            )
            item_row = cur.fetchone()
            kept_numbers.append(task.task_number)
            item_write = RecordWrite(
                table="payment_state_items",
                natural_key={"payment_state_id": payment_state_id, "task_number": task.task_number},
                record_id=str(item_row["id"]),
                action=_action(item_row),
            )
            writes.append(item_write)
            self._log_write(cur, job, item_write)

        if kept_numbers:
            # The latest statement replaces the line items of earlier extractions.
            cur.execute(
                """
                DELETE FROM payment_state_items
                WHERE payment_state_id = %s::uuid AND NOT (task_number = ANY(%s))
                """,
                (payment_state_id, kept_numbers),
            )
            if cur.rowcount:
                append_log(
                    job.id,
                    "upsert",
                    f"removed {cur.rowcount} payment_state_items absent from the latest extraction",
                    {"payment_state_id": payment_state_id, "removed": cur.rowcount},
                    cur=cur,
                )
        return writes

    def _upsert_risk(self, cur: Cursor[Any], contract_id: str, risk: RiskItem, source_filename: str | None) -> RecordWrite:
        risk_key = _natural_key_hash(risk.title)
        cur.execute(
            """
            INSERT INTO contract_risks (contract_id, risk_key, title, category, description, severity, recommendation, source_filename)
            VALUES (%s::uuid, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (contract_id, risk_key) DO UPDATE SET
              title = EXCLUDED.title,
              category = COALESCE(EXCLUDED.category, contract_risks.category),
              description = COALESCE(EXCLUDED.description, contract_risks.description),
              severity = COALESCE(EXCLUDED.severity, contract_risks.severity),
              recommendation = COALESCE(EXCLUDED.recommendation, contract_risks.recommendation),
              source_filename = EXCLUDED.source_filename,
              updated_at = now()
            RETURNING id, (xmax = 0) AS inserted
            """,
            (contract_id, risk_key, risk.title, risk.category, risk.description, risk.severity, risk.recommendation, source_filename),
        )
        row = cur.fetchone()
        return RecordWrite(table="contract_risks", natural_key={"contract_id": contract_id, "risk_key": risk_key}, record_id=str(row["id"]), action=_action(row))

    def _upsert_obligation(
        self,
        cur: Cursor[Any],
        contract_id: str,
        obligation: ObligationItem,
        source_filename: str | None,
    ) -> RecordWrite:
        obligation_key = _natural_key_hash(obligation.description)
        cur.execute(
            """
            INSERT INTO contract_obligations (contract_id, obligation_key, description, obligation_type, due_date, criticality, source_filename)
            VALUES (%s::uuid, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (contract_id, obligation_key) DO UPDATE SET
              description = EXCLUDED.description,
              obligation_type = COALESCE(EXCLUDED.obligation_type, contract_obligations.obligation_type),
              due_date = COALESCE(EXCLUDED.due_date, contract_obligations.due_date),
              criticality = COALESCE(EXCLUDED.criticality, contract_obligations.criticality),
              source_filename = EXCLUDED.source_filename,
              updated_at = now()
            RETURNING id, (xmax = 0) AS inserted
            """,
            (
                contract_id,
                obligation_key,
                obligation.description,
                obligation.type,
                obligation.due_date,
                obligation.criticality,
                source_filename,
            ),
        )
        row = cur.fetchone()
        return RecordWrite(
            table="contract_obligations",
            natural_key={"contract_id": contract_id, "obligation_key": obligation_key},
            record_id=str(row["id"]),
            action=_action(row),
        )

    def _upsert_document(
        self,
        cur: Cursor[Any],
        payload: ExtractedPayload,
        job: Job,
        contract_id: str,
        payload_id: str,
        file_size: int | None,
    ) -> RecordWrite:
        filename = payload.source_filename or job.storage_path.rsplit("/", 1)[-1]
        doc_type = document_type_config(payload.document_type).get("registry_doc_type") or "original"
        cur.execute(
            """
            INSERT INTO documents (
              contract_id, filename, file_url, doc_type, file_size, checksum,
              processing_status, extracted_payload_id, review_required
            )
            VALUES (%s::uuid, %s, %s, %s, %s, %s, 'completed', %s::uuid, %s)
            ON CONFLICT (contract_id, filename) DO UPDATE SET
              file_url = EXCLUDED.file_url,
              doc_type = EXCLUDED.doc_type,
              file_size = COALESCE(EXCLUDED.file_size, documents.file_size),
              checksum = COALESCE(EXCLUDED.checksum, documents.checksum),
              processing_status = 'completed',
              extracted_payload_id = EXCLUDED.extracted_payload_id,
              review_required = EXCLUDED.review_required,
              updated_at = now()
            RETURNING id, (xmax = 0) AS inserted
            """,
            (contract_id, filename, job.storage_path, doc_type, file_size, job.file_hash or job.etag, payload_id, payload.review_required),
        )
        row = cur.fetchone()
        return RecordWrite(
            table="documents",
            natural_key={"contract_id": contract_id, "filename": filename},
            record_id=str(row["id"]),
            action=_action(row),
        )

    def recompute_contract_totals(self, cur: Cursor[Any], contract_id: str) -> RecordWrite:
        """
        Derive task spend and contract totals from payment statement rows.

        Runs under a savepoint: when recomputation fails the document's other writes still
        commit and the contract is flagged `totals_stale` for the next recomputation.
        """
        try:
            with cur.connection.transaction():
                totals = self._recompute(cur, contract_id)
        except psycopg.Error as exc:
            logger.warning("Recomputing totals for contract %s failed: %s", contract_id, exc)
            cur.execute(
                """
                UPDATE contracts
                SET metadata = metadata || jsonb_build_object('totals_stale', true), updated_at = now()
                WHERE id = %s::uuid
                """,
                (contract_id,),
            )
            return RecordWrite(
                table="contracts",
                natural_key={"contract_id": contract_id, "error": str(exc)[:500]},
                record_id=contract_id,
                action="marked_stale",
            )
        return RecordWrite(table="contracts", natural_key=totals, record_id=contract_id, action="recomputed")

    def _recompute(self, cur: Cursor[Any], contract_id: str) -> dict[str, Any]:
        cur.execute(
            """
            UPDATE contract_tasks t
            SET spent_uf = COALESCE(s.total, 0),
                progress_percentage = CASE
                  WHEN t.budget_uf > 0 THEN LEAST(100, ROUND(COALESCE(s.total, 0) / t.budget_uf * 100, 2))
                  ELSE 0
                END,
                updated_at = now()
            FROM contract_tasks t2
            LEFT JOIN (
              SELECT i.task_number, SUM(i.spent_uf) AS total
              FROM payment_state_items i
              JOIN payment_states ps ON ps.id = i.payment_state_id
              WHERE ps.contract_id = %s::uuid AND ps.status = ANY(%s)
              GROUP BY i.task_number
            ) s ON s.task_number = t2.task_number
            WHERE t.id = t2.id AND t.contract_id = %s::uuid
            """,
            (contract_id, list(_SPEND_STATUSES), contract_id),
        )
        cur.execute(
            """
            SELECT
              c.budget_uf,
              (SELECT MAX((ps.data->>'contract_budget_uf')::numeric) FROM payment_states ps WHERE ps.contract_id = c.id) AS declared_budget,
              COALESCE((SELECT SUM(ps.amount_uf) FROM payment_states ps WHERE ps.contract_id = c.id AND ps.status = ANY(%s)), 0) AS spent,
              (SELECT COUNT(*) FROM payment_states ps WHERE ps.contract_id = c.id AND ps.status = 'approved') AS edps_paid,
              (SELECT COUNT(*) FROM payment_states ps WHERE ps.contract_id = c.id) AS edps_total
            FROM contracts c
            WHERE c.id = %s::uuid
            """,
            (list(_SPEND_STATUSES), contract_id),
        )
        row = cur.fetchone() or {}
        budget = _num(row.get("budget_uf")) or _num(row.get("declared_budget"))
        spent = round(_num(row.get("spent")), 2)
        totals = {
            "budget_uf": round(budget, 2),
            "spent_uf": spent,
            "available_uf": round(budget - spent, 2),
            "overall_progress_pct": round(spent / budget * 100, 2) if budget > 0 else 0.0,
            "edps_paid": int(row.get("edps_paid") or 0),
            "edps_total": int(row.get("edps_total") or 0),
            "totals_stale": False,
        }
        cur.execute(
            """
            UPDATE contracts
            SET metadata = metadata || %s::jsonb, updated_at = now()
            WHERE id = %s::uuid
            """,
            (json.dumps(totals), contract_id),
        )
        return totals
