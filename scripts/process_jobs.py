#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json

from contractos_api.config import configure_logging
from contractos_api.db import init_db_pool, shutdown_db_pool
from contractos_api.ingestion.dispatcher import drain, process_one
from contractos_api.ingestion.retention import cleanup_ingest_jobs


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the ingestion dispatcher in-process, without a Celery worker.")
    parser.add_argument("--job-id", help="Process this job only")
    parser.add_argument("--max-jobs", type=int, default=1, help="Process up to N queued jobs (default: 1)")
    parser.add_argument("--cleanup", action="store_true", help="Run the retention pass instead")
    args = parser.parse_args()

    configure_logging()
    init_db_pool()
    try:
        if args.cleanup:
            print(json.dumps(cleanup_ingest_jobs().model_dump(), indent=2))
            return 0
        if args.job_id:
            results = [process_one(args.job_id)]
        else:
            results = drain(args.max_jobs)
    finally:
        shutdown_db_pool()

    for result in results:
        print(json.dumps(result.model_dump(mode="json", exclude_none=True), indent=2, ensure_ascii=False))
    if not results:
        print("idle: no queued jobs")
    return 0 if all(r.ok for r in results) else 1


if __name__ == "__main__":
    raise SystemExit(main())
