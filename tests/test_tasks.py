from unittest.mock import patch

from contractos_api.ingestion import tasks
from contractos_api.ingestion.models import DispatchResult, Job


def test_routes_and_schedule():
    conf = tasks.celery_app.conf
    assert conf.task_routes["contractos_api.ingestion.tasks.process_ingest_job"] == {"queue": "ingest"}
    assert conf.task_routes["contractos_api.ingestion.tasks.cleanup_ingest_jobs"] == {"queue": "ingest_maintenance"}
    assert {"retry-failed-ingest-jobs", "cleanup-ingest-jobs"} <= set(conf.beat_schedule)
    assert conf.worker_prefetch_multiplier == 1


def test_schedule_job_is_best_effort():
    with patch.object(tasks.celery_app, "send_task", side_effect=ConnectionError("broker down")):
        assert tasks.schedule_job("j1") is False
    with patch.object(tasks.celery_app, "send_task") as send_task:
        assert tasks.schedule_job("j1") is True
    assert send_task.call_args[1] == {"kwargs": {"job_id": "j1"}}


def test_process_task_runs_one_dispatch():
    with patch("contractos_api.ingestion.tasks.process_one", return_value=DispatchResult(ok=True, idle=True)):
        assert tasks.process_ingest_job.run() == {"ok": True, "job_id": None, "idle": True, "result": None, "error": None}


def test_retry_task_schedules_requeued_jobs():
    job = Job(id="j1", project_prefix="acme", storage_path="acme/x.pdf")
    with patch("contractos_api.ingestion.tasks.requeue_failed_jobs", return_value=[job]), patch(
        "contractos_api.ingestion.tasks.schedule_job"
    ) as schedule:
        out = tasks.retry_failed_jobs.run()
    assert out == {"requeued": 1, "job_ids": ["j1"]}
    schedule.assert_called_once_with("j1")
