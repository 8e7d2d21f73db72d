import re
from contextlib import contextmanager
from unittest.mock import patch

import psycopg
import pytest

from conftest import FakeCursor
from contractos_api.errors import UpsertError
from contractos_api.ingestion.upsert import UpsertRouter, _natural_key_hash
from contractos_api.ingestion.validator import validate_extraction


def _contract_payload():
    return validate_extraction(
        {
            "code": "C-101",
            "client": "Minera Andina",
            "contractor": "Ingeniería Sur",
            "budget_uf": 100,
            "tasks": [
                {"task_number": "1", "name": "Recopilación", "budget_uf": 60},
                {"task_number": "2", "name": "Estudio hidrológico", "budget_uf": 40},
            ],
            "risks": [{"title": "Atraso en permisos", "severity": "high"}],
            "obligations": [{"description": "Entregar boleta de garantía", "due_date": "2024-03-01"}],
        },
        "contract",
        source_filename="Contrato.pdf",
    )


def _edp_payload(**overrides):
    data = {
        "contract_code": "C-101",
        "edp_number": 2,
        "amount_uf": 40,
        "status": "approved",
        "tasks_executed": [
            {"task_number": "1", "name": "Recopilación", "spent_uf": 25},
            {"task_number": "2", "name": "Estudio hidrológico", "spent_uf": 15},
        ],
    }
    data.update(overrides)
    return validate_extraction(data, "edp", source_filename="EDP_02.pdf")


def _domain_statements(cur):
    return [(s, p) for s, p in cur.statements if not s.startswith("INSERT INTO ingest_logs")]


def test_contract_writes_by_natural_key(fake_cursor, job_factory):
    writes = UpsertRouter().apply(_contract_payload(), job_factory(), cur=fake_cursor, file_size=1024)

    tables = [w.table for w in writes]
    assert tables[0] == "contracts"
    assert tables.count("contract_tasks") == 2
    assert "contract_risks" in tables and "contract_obligations" in tables
    assert "documents" in tables
    assert writes[-1].action == "recomputed"

    sql = fake_cursor.sql()
    assert any("ON CONFLICT (code) DO UPDATE" in s for s in sql)
    assert any("ON CONFLICT (contract_id, task_number) DO UPDATE" in s for s in sql)
    assert any("ON CONFLICT (contract_id, filename) DO UPDATE" in s for s in sql)
    assert any(s.startswith("UPDATE extracted_payloads SET superseded_at") for s in sql)


def test_every_write_is_logged(fake_cursor, job_factory):
    writes = UpsertRouter().apply(_contract_payload(), job_factory(), cur=fake_cursor)
    upsert_logs = [p for s, p in fake_cursor.statements if s.startswith("INSERT INTO ingest_logs") and p[1] == "upsert"]
    # the totals write is logged under the aggregate step
    assert len(upsert_logs) == len(writes) - 1
    assert any(p[1] == "aggregate" for s, p in fake_cursor.statements if s.startswith("INSERT INTO ingest_logs"))


def test_rerun_is_idempotent(job_factory):
    cur = FakeCursor()
    job = job_factory()
    payload = _contract_payload()
    first = UpsertRouter().apply(payload, job, cur=cur)
    first_statements = _domain_statements(cur)
    cur.statements.clear()

    second = UpsertRouter().apply(payload, job, cur=cur)

    assert _domain_statements(cur) == first_statements
    assert [(w.table, w.natural_key) for w in second] == [(w.table, w.natural_key) for w in first]
    assert {w.action for w in second if w.table not in ("contracts",)} <= {"updated"}


def test_aggregates_are_recomputed_not_incremented(fake_cursor, job_factory):
    UpsertRouter().apply(_edp_payload(), job_factory(storage_path="acme/C-101/edp/EDP_02.pdf"), cur=fake_cursor)

    for statement in fake_cursor.sql():
        assert not re.search(r"spent_uf\s*=\s*\w*\.?spent_uf\s*\+", statement)
        assert "amount_uf +" not in statement
    metadata_update = next(p for s, p in fake_cursor.statements if s.startswith("UPDATE contracts SET metadata = metadata ||") and "%s::jsonb" in s)
    assert '"spent_uf": 40.0' in metadata_update[0]
    assert '"available_uf": 60.0' in metadata_update[0]
    assert '"overall_progress_pct": 40.0' in metadata_update[0]
    assert '"edps_paid": 1' in metadata_update[0]


def test_edp_never_overrides_contract_task_budget(fake_cursor, job_factory):
    UpsertRouter().apply(_edp_payload(), job_factory(storage_path="acme/C-101/edp/EDP_02.pdf"), cur=fake_cursor)
    task_sql = [s for s in fake_cursor.sql() if s.startswith("INSERT INTO contract_tasks")]
    assert task_sql
    assert all("COALESCE(contract_tasks.budget_uf, EXCLUDED.budget_uf)" in s for s in task_sql)
    assert any(s.startswith("DELETE FROM payment_state_items") for s in fake_cursor.sql())


def test_edp_without_number_skips_payment_state(fake_cursor, job_factory):
    writes = UpsertRouter().apply(
        _edp_payload(edp_number=None),
        job_factory(storage_path="acme/C-101/edp/EDP.pdf"),
        cur=fake_cursor,
    )
    assert "payment_states" not in [w.table for w in writes]


def test_contract_resolved_from_path_when_code_missing(fake_cursor, job_factory):
    payload = validate_extraction({"summary": "Minuta de reunión"}, "memo")
    writes = UpsertRouter().apply(payload, job_factory(storage_path="acme/C-202/memo/Minuta.pdf"), cur=fake_cursor)
    assert writes[0].natural_key == {"code": "C-202"}


def test_contract_resolved_from_job_contract(fake_cursor, job_factory):
    payload = validate_extraction({"summary": "Minuta"}, "memo")
    job = job_factory(storage_path="acme/memo/Minuta.pdf", contract_id="6f1c1c52-8a7e-4a43-9a55-3f7c8a1f0d11")
    writes = UpsertRouter().apply(payload, job, cur=fake_cursor)
    assert writes[0].action == "resolved"


def test_no_contract_anywhere_is_upsert_error(fake_cursor, job_factory):
    payload = validate_extraction({"summary": "?"}, "memo")
    with pytest.raises(UpsertError):
        UpsertRouter().apply(payload, job_factory(storage_path="acme/memo/x.pdf"), cur=fake_cursor)


def test_unknown_document_never_creates_a_contract(job_factory):
    cur = FakeCursor(no_rows_for=("FROM contracts WHERE code",))
    payload = validate_extraction({"contract_code": "NEW-999", "summary": "Acta"}, "unknown", source_filename="Acta.pdf")

    writes = UpsertRouter().apply(payload, job_factory(storage_path="acme/NEW-999/varios/Acta.pdf"), cur=cur)

    assert writes == []
    assert not any(s.startswith("INSERT INTO contracts") for s in cur.sql())
    payload_insert = next(p for s, p in cur.statements if s.startswith("INSERT INTO extracted_payloads"))
    assert payload_insert[1] is None
    assert any("skipped contracts" in (p[2] if p else "") for s, p in cur.statements if s.startswith("INSERT INTO ingest_logs"))


def test_unknown_document_attaches_to_existing_contract(fake_cursor, job_factory):
    payload = validate_extraction({"contract_code": "C-101", "summary": "Acta"}, "unknown", source_filename="Acta.pdf")

    writes = UpsertRouter().apply(payload, job_factory(storage_path="acme/C-101/varios/Acta.pdf"), cur=fake_cursor)

    assert writes[0].table == "contracts"
    assert writes[0].action == "resolved"
    assert not any(s.startswith("INSERT INTO contracts") for s in fake_cursor.sql())


def test_low_confidence_memo_only_looks_up_the_contract(job_factory):
    cur = FakeCursor(no_rows_for=("FROM contracts WHERE code",))
    payload = validate_extraction({"summary": "Minuta"}, "memo", classification_confident=False)

    writes = UpsertRouter().apply(payload, job_factory(storage_path="acme/C-303/otros/Minuta.pdf"), cur=cur)

    assert writes == []
    assert not any(s.startswith("INSERT INTO contracts") for s in cur.sql())


def test_failed_recompute_marks_totals_stale(job_factory):
    cur = FakeCursor(fail_on="UPDATE contract_tasks t")
    writes = UpsertRouter().apply(_edp_payload(), job_factory(storage_path="acme/C-101/edp/EDP_02.pdf"), cur=cur)
    assert writes[-1].action == "marked_stale"
    assert any("'totals_stale', true" in s for s in cur.sql())


def test_database_error_becomes_upsert_error(job_factory):
    cur = FakeCursor(fail_on="INSERT INTO contracts")

    @contextmanager
    def _tx():
        yield cur

    with patch("contractos_api.ingestion.upsert._db_transaction", _tx):
        with pytest.raises(UpsertError, match="Domain write failed"):
            UpsertRouter().apply(_contract_payload(), job_factory())


def test_natural_key_hash_ignores_case_accents_and_spacing():
    assert _natural_key_hash("Atraso en  Permisos") == _natural_key_hash("atraso en permisos")
    assert _natural_key_hash("Garantía") == _natural_key_hash("garantia")
    assert _natural_key_hash("a") != _natural_key_hash("b")
