import psycopg
import pytest
from unittest.mock import patch

from fastapi.testclient import TestClient

from contractos_api.app import create_app
from contractos_api.errors import EnqueueConflict, ExtractionUpstreamError
from contractos_api.ingestion.models import CleanupCounts, DispatchResult, Job, LogEntry

JOB_ID = "0b6f7a52-5a0d-4c53-8f0a-5f0e4d1d9a01"
CONTRACT_ID = "7d7b3f0e-1111-4c53-8f0a-5f0e4d1d9a01"


@pytest.fixture
def client():
    return TestClient(create_app())


def _job(**overrides):
    data = {"id": JOB_ID, "project_prefix": "acme", "storage_path": "acme/C-101/edp/EDP_01.pdf", "status": "queued"}
    data.update(overrides)
    return Job(**data)


def test_enqueue_created(client):
    with patch("contractos_api.ingestion.job_store.enqueue_job", return_value=_job()) as enqueue, patch(
        "contractos_api.services.ingest.schedule_job", return_value=True
    ) as schedule:
        resp = client.post("/ingest/jobs", json={"storage_path": "acme/C-101/edp/EDP_01.pdf", "project_prefix": "acme", "content_hash": "abc"})

    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "created"
    assert body["job_id"] == JOB_ID
    assert enqueue.call_args[1]["file_hash"] == "abc"
    schedule.assert_called_once_with(JOB_ID)


def test_enqueue_duplicate_is_a_no_op(client):
    with patch(
        "contractos_api.ingestion.job_store.enqueue_job",
        side_effect=EnqueueConflict("acme/C-101/edp/EDP_01.pdf", existing_job_id=JOB_ID),
    ), patch("contractos_api.services.ingest.schedule_job") as schedule:
        resp = client.post("/ingest/jobs", json={"storage_path": "acme/C-101/edp/EDP_01.pdf", "project_prefix": "acme"})

    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "status": "skipped", "message": "Job already queued or processed", "existing_job_id": JOB_ID}
    schedule.assert_not_called()


def test_enqueue_missing_fields(client):
    resp = client.post("/ingest/jobs", json={"storage_path": "acme/x.pdf"})
    assert resp.status_code == 400


def test_dispatch_idle(client):
    with patch("contractos_api.ingestion.dispatcher.process_one", return_value=DispatchResult(ok=True, idle=True)):
        resp = client.post("/ingest/dispatch")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "idle": True}


def test_dispatch_failure_is_structured(client):
    error = ExtractionUpstreamError("HTTP 500", service="llm", status_code=500).to_dict()
    with patch("contractos_api.ingestion.dispatcher.process_one", return_value=DispatchResult(ok=False, job_id=JOB_ID, error=error)) as process_one:
        resp = client.post("/ingest/dispatch", json={"job_id": JOB_ID})
    body = resp.json()
    assert body["ok"] is False
    assert body["error"]["kind"] == "extraction_upstream_error"
    process_one.assert_called_once_with(JOB_ID)


def test_dispatch_rejects_bad_job_id(client):
    resp = client.post("/ingest/dispatch", json={"job_id": "not-a-uuid"})
    assert resp.status_code == 400


def test_list_jobs(client):
    with patch("contractos_api.ingestion.job_store.list_jobs", return_value=[_job(), _job(id=CONTRACT_ID)]) as list_jobs:
        resp = client.get(f"/ingest/jobs?contract_id={CONTRACT_ID}&status=failed&limit=10")
    assert resp.status_code == 200
    assert len(resp.json()["jobs"]) == 2
    assert list_jobs.call_args[1] == {"contract_id": CONTRACT_ID, "status": "failed", "limit": 10, "offset": 0}


def test_list_jobs_bad_status(client):
    resp = client.get("/ingest/jobs?status=processing")
    assert resp.status_code == 400


def test_get_missing_job_is_taxonomy_error(client):
    with patch("contractos_api.ingestion.job_store.get_job", return_value=None):
        resp = client.get(f"/ingest/jobs/{JOB_ID}")
    assert resp.status_code == 404
    assert resp.json()["ok"] is False
    assert resp.json()["error"]["kind"] == "job_not_found"


def test_get_job_with_latest_payload(client):
    payload = {"id": "p1", "document_type": "edp", "confidence": 0.8, "review_required": False, "warnings": [], "created_at": None}
    with patch("contractos_api.ingestion.job_store.get_job", return_value=_job(status="done")), patch(
        "contractos_api.services.ingest._db_fetch_one", return_value=payload
    ):
        resp = client.get(f"/ingest/jobs/{JOB_ID}")
    assert resp.json()["job"]["status"] == "done"
    assert resp.json()["latest_payload"]["confidence"] == 0.8


def test_logs(client):
    logs = [LogEntry(step="enqueued", message="Queued"), LogEntry(step="start", message="Processing")]
    with patch("contractos_api.ingestion.job_log.list_logs", return_value=logs):
        resp = client.get(f"/ingest/jobs/{JOB_ID}/logs")
    assert [e["step"] for e in resp.json()["logs"]] == ["enqueued", "start"]


def test_stuck_jobs(client):
    with patch("contractos_api.ingestion.job_store.find_stuck_jobs", return_value=[_job(status="working")]):
        resp = client.get("/ingest/jobs/stuck")
    assert resp.json()["count"] == 1


def test_repair_endpoints(client):
    with patch("contractos_api.ingestion.repair.repair_job_paths", return_value={"fixed": 2, "skipped": 0}):
        resp = client.post("/ingest/repair/paths", json={"contract_id": CONTRACT_ID})
    assert resp.json() == {"ok": True, "fixed": 2, "skipped": 0}

    with patch(
        "contractos_api.ingestion.repair.repair_unparseable_filenames",
        return_value={"fixed": 1, "skipped": 0, "skipped_jobs": []},
    ) as repair_filenames:
        resp = client.post("/ingest/repair/filenames")
    assert resp.json()["fixed"] == 1
    assert repair_filenames.call_args[1] == {"signature": "PDF parsing failed", "limit": 10}


def test_retry_and_cleanup(client):
    with patch("contractos_api.ingestion.job_store.requeue_failed_jobs", return_value=[_job()]):
        resp = client.post("/ingest/retry-failed")
    assert resp.json() == {"ok": True, "requeued": 1, "job_ids": [JOB_ID]}

    with patch("contractos_api.ingestion.retention.cleanup_ingest_jobs", return_value=CleanupCounts(jobs_deleted=3, jobs_expired=1, logs_deleted=9)):
        resp = client.post("/ingest/cleanup")
    assert resp.json() == {"ok": True, "jobs_deleted": 3, "jobs_expired": 1, "logs_deleted": 9}


def test_contract_not_found(client):
    with patch("contractos_api.services.contracts._db_fetch_one", return_value=None):
        resp = client.get("/contracts/C-404")
    assert resp.status_code == 404
    assert resp.json()["error"]["kind"] == "contract_not_found"


def test_contract_read_model(client):
    contract = {"id": CONTRACT_ID, "code": "C-101", "metadata": {"spent_uf": 40.0, "budget_uf": 100.0, "totals_stale": False}}
    with patch("contractos_api.services.contracts._db_fetch_one", return_value=contract), patch(
        "contractos_api.services.contracts._db_fetch_all", side_effect=[[{"task_number": "1"}], [{"edp_number": 1}], []]
    ):
        resp = client.get("/contracts/C-101")
    body = resp.json()
    assert body["totals"]["spent_uf"] == 40.0
    assert body["tasks"] == [{"task_number": "1"}]
    assert body["payment_states"] == [{"edp_number": 1}]


def test_healthz(client):
    with patch("contractos_api.services.core.db_ping", return_value=False):
        assert client.get("/healthz").json() == {"status": "ok", "db": "down"}
        assert client.get("/readyz").status_code == 503


def test_healthz_reports_queue_depth(client):
    rows = [{"status": "queued", "n": 3}, {"status": "failed", "n": 1}]
    with patch("contractos_api.services.core.db_ping", return_value=True), patch(
        "contractos_api.services.core._db_fetch_all", return_value=rows
    ):
        body = client.get("/healthz").json()
        assert client.get("/readyz").json() == {"status": "ready", "db": "ok"}

    assert body == {"status": "ok", "db": "ok", "jobs": {"queued": 3, "working": 0, "done": 0, "failed": 1}}


def test_list_jobs_rejects_bad_contract_id(client):
    assert client.get("/ingest/jobs?contract_id=nope").status_code == 400


def test_enqueue_unknown_contract_is_taxonomy_error(client):
    fk = psycopg.errors.ForeignKeyViolation("violates foreign key constraint")
    with patch("contractos_api.ingestion.job_store._db_execute_returning", side_effect=fk):
        resp = client.post(
            "/ingest/jobs",
            json={"storage_path": "acme/C-101/edp/EDP_01.pdf", "project_prefix": "acme", "contract_id": CONTRACT_ID},
        )

    assert resp.status_code == 404
    assert resp.json() == {
        "ok": False,
        "error": {"kind": "contract_not_found", "message": f"Contract {CONTRACT_ID} not found", "details": {"contract_id": CONTRACT_ID}},
    }


def test_database_errors_render_as_structured_json(client):
    with patch("contractos_api.services.contracts._db_fetch_one", side_effect=psycopg.errors.InvalidTextRepresentation("bad cast")):
        resp = client.get("/contracts/C-101")

    assert resp.status_code == 500
    assert resp.json()["ok"] is False
    assert resp.json()["error"]["kind"] == "database_error"


def test_task_order_only_casts_numbered_tasks(client):
    contract = {"id": CONTRACT_ID, "code": "C-101", "metadata": {}}
    with patch("contractos_api.services.contracts._db_fetch_one", return_value=contract), patch(
        "contractos_api.services.contracts._db_fetch_all", side_effect=[[{"task_number": "2"}, {"task_number": "A1"}], [], []]
    ) as fetch_all:
        resp = client.get("/contracts/C-101")

    assert resp.status_code == 200
    tasks_sql = " ".join(fetch_all.call_args_list[0][0][0].split())
    assert "CASE WHEN task_number ~ '^[0-9]{1,9}([.][0-9]{1,9})*$' THEN string_to_array(task_number, '.')::int[] END" in tasks_sql
