from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Callable, TypeVar

from .config import retry_max_attempts
from .errors import ExtractionUpstreamError
from .time_utils import _utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, ExtractionUpstreamError) and exc.rate_limited


def parse_retry_after(value: str | None) -> float | None:
    """
    Parse a `Retry-After` header: either delta-seconds or an HTTP date.
    """
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0.0, (when - _utc_now()).total_seconds())


@dataclass
class RetryPolicy:
    """
    Bounded exponential backoff around a single external call.

    Only errors accepted by `retryable` are retried; everything else propagates on the
    first failure. A server-supplied retry-after hint replaces the computed delay.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0
    jitter_seconds: float = 0.6
    retryable: Callable[[BaseException], bool] = is_rate_limited
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def from_env(cls) -> RetryPolicy:
        return cls(max_attempts=retry_max_attempts())

    def delay_for(self, attempt: int, exc: BaseException | None = None) -> float:
        hinted = getattr(exc, "retry_after", None)
        if isinstance(hinted, (int, float)) and hinted >= 0:
            return min(float(hinted), self.max_delay_seconds)
        delay = self.base_delay_seconds * (2 ** (attempt - 1))
        if self.jitter_seconds:
            delay += random.random() * self.jitter_seconds
        return min(delay, self.max_delay_seconds)

    def run(self, fn: Callable[[], T], *, label: str = "call") -> T:
        attempts = max(1, self.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except Exception as exc:
                if not self.retryable(exc) or attempt >= attempts:
                    raise
                delay = self.delay_for(attempt, exc)
                logger.warning(
                    "%s failed on attempt %s/%s (%s); retrying in %.1fs",
                    label,
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                self.sleep(delay)
        raise AssertionError("unreachable")
