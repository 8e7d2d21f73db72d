#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
import time
import urllib.error
import urllib.request


def _http_json(method: str, url: str, payload: object | None = None, timeout_seconds: float = 60.0) -> object:
    data = None
    headers = {"Accept": "application/json"}
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        headers["Content-Type"] = "application/json"

    req = urllib.request.Request(url, data=data, method=method, headers=headers)
    try:
        with urllib.request.urlopen(req, timeout=timeout_seconds) as resp:  # noqa: S310
            raw = resp.read()
    except urllib.error.HTTPError as exc:  # noqa: PERF203
        try:
            detail = exc.read().decode("utf-8", errors="replace")
        except Exception:  # noqa: BLE001
            detail = ""
        raise RuntimeError(f"{exc.code} {exc.reason}{(': ' + detail[:600]) if detail else ''}") from exc
    except urllib.error.URLError as exc:
        raise RuntimeError(str(exc)) from exc

    if not raw:
        return {}
    return json.loads(raw.decode("utf-8"))


def main() -> int:
    parser = argparse.ArgumentParser(description="Enqueue a stored document for ingestion and follow the job until it ends.")
    parser.add_argument("--api-base", default="http://localhost:8000", help="ContractOS API base URL (default: http://localhost:8000)")
    parser.add_argument("--storage-path", required=True, help="Object path, e.g. acme/C-101/edp/EDP_03.pdf")
    parser.add_argument("--project-prefix", help="Project prefix (default: first path segment)")
    parser.add_argument("--dispatch", action="store_true", help="Run the job synchronously through POST /ingest/dispatch")
    parser.add_argument("--poll-seconds", type=float, default=2.0, help="Polling interval (default: 2s)")
    parser.add_argument("--timeout-minutes", type=float, default=15.0, help="Stop polling after this long (default: 15m)")
    args = parser.parse_args()

    api_base = args.api_base.rstrip("/")
    prefix = args.project_prefix or args.storage_path.strip("/").split("/", 1)[0]
    body = {"storage_path": args.storage_path, "project_prefix": prefix, "schedule": not args.dispatch}
    res = _http_json("POST", f"{api_base}/ingest/jobs", body)
    if not isinstance(res, dict):
        print("Unexpected response shape from enqueue endpoint.", file=sys.stderr)
        return 2

    job_id = res.get("job_id") or res.get("existing_job_id")
    print(f"enqueue: status={res.get('status')} job_id={job_id}", flush=True)
    if not job_id:
        print(f"Enqueue response did not include a job id: {res}", file=sys.stderr)
        return 2

    if args.dispatch:
        result = _http_json("POST", f"{api_base}/ingest/dispatch", {"job_id": job_id}, timeout_seconds=600.0)
        print(json.dumps(result, indent=2, ensure_ascii=False))

    deadline = time.time() + max(args.timeout_minutes, 0.5) * 60.0
    seen_logs = 0
    while time.time() < deadline:
        logs = _http_json("GET", f"{api_base}/ingest/jobs/{job_id}/logs")
        entries = logs.get("logs", []) if isinstance(logs, dict) else []
        for entry in entries[seen_logs:]:
            print(f"[{entry.get('step')}] {entry.get('message')}", flush=True)
        seen_logs = len(entries)

        res = _http_json("GET", f"{api_base}/ingest/jobs/{job_id}")
        job = res.get("job") if isinstance(res, dict) else None
        status = (job or {}).get("status")
        if status == "done":
            payload = res.get("latest_payload") or {}
            print(f"done: confidence={payload.get('confidence')} review_required={payload.get('review_required')}")
            return 0
        if status == "failed":
            print(f"failed: {(job or {}).get('last_error')}", file=sys.stderr)
            return 1

        time.sleep(max(args.poll_seconds, 0.5))

    print("Timed out waiting for the job. Check GET /ingest/jobs/stuck.", file=sys.stderr)
    return 3


if __name__ == "__main__":
    raise SystemExit(main())
