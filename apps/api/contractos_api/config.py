from __future__ import annotations

import logging
import os

_logger = logging.getLogger(__name__)


def _env_float(key: str, default: float, *, minimum: float, maximum: float) -> float:
    raw = os.environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        _logger.warning("Ignoring invalid %s=%r; using %s", key, raw, default)
        return default
    return max(minimum, min(value, maximum))


def _env_int(key: str, default: int, *, minimum: int, maximum: int) -> int:
    raw = os.environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        _logger.warning("Ignoring invalid %s=%r; using %s", key, raw, default)
        return default
    return max(minimum, min(value, maximum))


def reconcile_tolerance() -> float:
    """Relative tolerance for line-item sums against declared totals (0.05 = 5%)."""
    return _env_float("COS_RECONCILE_TOLERANCE", 0.05, minimum=0.0, maximum=1.0)


def stuck_after_minutes() -> int:
    return _env_int("COS_STUCK_AFTER_MINUTES", 30, minimum=1, maximum=24 * 60)


def job_retention_days() -> int:
    return _env_int("COS_JOB_RETENTION_DAYS", 7, minimum=1, maximum=3650)


def log_retention_days() -> int:
    return _env_int("COS_LOG_RETENTION_DAYS", 60, minimum=1, maximum=3650)


def abandoned_after_days() -> int:
    return _env_int("COS_ABANDONED_AFTER_DAYS", 2, minimum=1, maximum=365)


def max_job_attempts() -> int:
    return _env_int("COS_MAX_JOB_ATTEMPTS", 3, minimum=1, maximum=50)


def retry_max_attempts() -> int:
    return _env_int("COS_RETRY_MAX_ATTEMPTS", 3, minimum=1, maximum=10)


def http_timeout_seconds() -> float:
    return _env_float("COS_HTTP_TIMEOUT_SECONDS", 120.0, minimum=1.0, maximum=900.0)


def configure_logging() -> None:
    level_name = os.environ.get("COS_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def docparse_poll_seconds() -> float:
    return _env_float("COS_DOCPARSE_POLL_SECONDS", 2.0, minimum=0.0, maximum=60.0)


def docparse_max_polls() -> int:
    return _env_int("COS_DOCPARSE_MAX_POLLS", 30, minimum=1, maximum=600)


def db_pool_max_size() -> int:
    return _env_int("COS_DB_POOL_MAX", 6, minimum=1, maximum=32)


def db_connect_timeout_seconds() -> float:
    return _env_float("COS_DB_CONNECT_TIMEOUT_SECONDS", 10.0, minimum=1.0, maximum=120.0)
