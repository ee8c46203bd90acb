from __future__ import annotations

import threading
from collections import defaultdict

from core.logging_utils import log_structured

METRIC_DISPATCH_TASKS_CREATED = "dispatch.tasks_created"
METRIC_DISPATCH_SKIPPED_DAILY_LIMIT = "dispatch.skipped_daily_limit"
METRIC_DISPATCH_SKIPPED_CONDITIONS = "dispatch.skipped_conditions"
METRIC_DELIVERY_SUCCEEDED = "delivery.succeeded"
METRIC_DELIVERY_RETRY_SCHEDULED = "delivery.retry_scheduled"
METRIC_DELIVERY_FAILED = "delivery.failed"
METRIC_DELIVERY_ELIGIBILITY_LOST = "delivery.eligibility_lost"
METRIC_DELIVERY_CLAIM_SKIPPED = "delivery.claim_skipped"
METRIC_DELIVERY_CLAIM_LOST = "delivery.claim_lost"
METRIC_DELIVERY_RECLAIMED = "delivery.reclaimed"
METRIC_UNEXPECTED_EXCEPTION = "runtime.unexpected_exception"


class _InMemoryCounters:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = defaultdict(int)

    def increment(self, metric: str, value: int = 1) -> int:
        if value < 0:
            raise ValueError("counter increments must be non-negative")
        with self._lock:
            self._counters[metric] += value
            return self._counters[metric]

    def value(self, metric: str) -> int:
        with self._lock:
            return self._counters.get(metric, 0)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()


COUNTERS = _InMemoryCounters()


def increment_metric(metric: str, *, value: int = 1, reason: str | None = None) -> int:
    current = COUNTERS.increment(metric, value)
    log_structured(
        "metric.increment",
        metric=metric,
        value=current,
        reason=reason,
    )
    return current


def unexpected_exception_metric(error_class: str) -> int:
    base = increment_metric(METRIC_UNEXPECTED_EXCEPTION, reason=error_class)
    COUNTERS.increment(f"{METRIC_UNEXPECTED_EXCEPTION}.{error_class}")
    return base
