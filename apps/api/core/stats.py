"""Read-only delivery rollups for one webhook over a trailing window of days."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from core.clock import SYSTEM_CLOCK, Clock, ensure_utc
from models.webhook import TERMINAL_DELIVERY_STATUSES, DeliveryStatus, WebhookDailyCounter, WebhookDelivery


@dataclass(frozen=True)
class DeliveryStats:
    webhook_id: uuid.UUID
    window_days: int
    total_deliveries: int
    success_rate: float
    average_response_ms: float | None
    per_status_counts: dict[str, int]
    per_day_counts: dict[str, dict[str, int]]


def window_start(now: datetime, window_days: int) -> datetime:
    """Midnight UTC of the first day in a window that ends today."""
    first_day = ensure_utc(now).date() - timedelta(days=max(window_days, 1) - 1)
    return datetime.combine(first_day, time.min, tzinfo=timezone.utc)


def compute_stats(
    db: Session,
    webhook_id: uuid.UUID,
    window_days: int = 7,
    clock: Clock = SYSTEM_CLOCK,
) -> DeliveryStats:
    since = window_start(clock.now(), window_days)
    in_window = (WebhookDelivery.webhook_id == webhook_id, WebhookDelivery.created_at >= since)

    per_status_counts = {status.value: 0 for status in DeliveryStatus}
    rows = db.execute(
        select(WebhookDelivery.status, func.count()).where(*in_window).group_by(WebhookDelivery.status)
    ).all()
    for status, count in rows:
        per_status_counts[status.value] = int(count)
    total = sum(per_status_counts.values())
    success_rate = per_status_counts[DeliveryStatus.SUCCESS.value] / total if total else 0.0

    timings = db.execute(
        select(WebhookDelivery.request_timestamp, WebhookDelivery.response_timestamp).where(
            *in_window,
            WebhookDelivery.status.in_(TERMINAL_DELIVERY_STATUSES),
            WebhookDelivery.request_timestamp.is_not(None),
            WebhookDelivery.response_timestamp.is_not(None),
        )
    ).all()
    # Computed in Python: interval arithmetic differs between SQLite and PostgreSQL.
    durations = [
        (ensure_utc(responded) - ensure_utc(requested)).total_seconds() * 1000
        for requested, responded in timings
    ]
    average_response_ms = round(sum(durations) / len(durations), 2) if durations else None

    per_day_counts: dict[str, dict[str, int]] = {}
    counters = db.execute(
        select(WebhookDailyCounter.day, WebhookDailyCounter.status, WebhookDailyCounter.count)
        .where(WebhookDailyCounter.webhook_id == webhook_id, WebhookDailyCounter.day >= since.date())
        .order_by(WebhookDailyCounter.day.asc())
    ).all()
    for day, status, count in counters:
        per_day_counts.setdefault(day.isoformat(), {})[status.value] = int(count)

    return DeliveryStats(
        webhook_id=webhook_id,
        window_days=window_days,
        total_deliveries=total,
        success_rate=success_rate,
        average_response_ms=average_response_ms,
        per_status_counts=per_status_counts,
        per_day_counts=per_day_counts,
    )
