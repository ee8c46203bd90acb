"""Event fan-out: one delivery task per eligible, subscribed webhook.

Ledger rows are committed before anything is handed to the scheduler, so a
crash after dispatch leaves PENDING rows for the sweep rather than lost sends.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from core.auth import Caller
from core.clock import SYSTEM_CLOCK, Clock, isoformat_z
from core.errors import ForbiddenTransitionError, NotEligibleError
from core.ledger import DeliveryLedger
from core.logging_utils import log_structured
from core.observability import (
    METRIC_DISPATCH_SKIPPED_CONDITIONS,
    METRIC_DISPATCH_SKIPPED_DAILY_LIMIT,
    METRIC_DISPATCH_TASKS_CREATED,
    increment_metric,
)
from core.registry import WebhookRegistry, eligible_clause
from core.scheduler import DeliveryScheduler
from core.signing import canonical_json
from core.webhooks import apply_field_filter, build_payload, conditions_match
from models.webhook import EventType, WebhookRegistration

TEST_SUBMISSION_ID = "test-submission"
TEST_SUBMISSION_DATA = {
    "name": "Test User",
    "email": "test@example.com",
    "message": "This is a test webhook delivery",
}


@dataclass(frozen=True)
class SubmissionSummary:
    id: str
    created_at: datetime
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DomainEvent:
    event_type: EventType
    form_id: str
    form_title: str | None = None
    submission: SubmissionSummary | None = None
    occurred_at: datetime | None = None


def _submission_payload(submission: SubmissionSummary | None, webhook: WebhookRegistration) -> dict[str, Any] | None:
    if submission is None:
        return None
    return {
        "id": submission.id,
        "createdAt": isoformat_z(submission.created_at),
        "data": apply_field_filter(submission.data, webhook.field_filter_mode, webhook.field_filter_keys),
    }


class Dispatcher:
    def __init__(self, db: Session, scheduler: DeliveryScheduler | None = None, clock: Clock = SYSTEM_CLOCK) -> None:
        self._db = db
        self._scheduler = scheduler
        self._clock = clock
        self._ledger = DeliveryLedger(db)

    def dispatch(self, event: DomainEvent) -> list[uuid.UUID]:
        """Create and submit delivery tasks for ``event``; returns their ids.

        No eligible subscriber is not an error. Delivery outcomes never
        surface here.
        """
        now = self._clock.now()
        webhooks = self._db.scalars(
            select(WebhookRegistration)
            .where(
                WebhookRegistration.form_id == event.form_id,
                WebhookRegistration.deleted_at.is_(None),
                eligible_clause(),
            )
            .order_by(WebhookRegistration.created_at.asc())
        ).all()

        task_ids: list[uuid.UUID] = []
        for webhook in webhooks:
            if event.event_type.value not in (webhook.event_types or []):
                continue
            if event.submission is not None and not conditions_match(webhook.filter_conditions, event.submission.data):
                increment_metric(METRIC_DISPATCH_SKIPPED_CONDITIONS)
                continue
            if not self._consume_daily_quota(webhook, now):
                increment_metric(METRIC_DISPATCH_SKIPPED_DAILY_LIMIT)
                log_structured("dispatch.daily_limit_reached", webhook_id=webhook.id, form_id=event.form_id)
                continue
            payload = build_payload(
                event_type=event.event_type,
                form_id=event.form_id,
                form_title=event.form_title,
                submission=_submission_payload(event.submission, webhook),
                timestamp=event.occurred_at or now,
            )
            delivery = self._ledger.enqueue(
                webhook_id=webhook.id,
                event_type=event.event_type,
                request_body=canonical_json(payload),
                created_at=now,
                submission_id=event.submission.id if event.submission else None,
            )
            task_ids.append(delivery.id)
        self._db.commit()

        if task_ids:
            increment_metric(METRIC_DISPATCH_TASKS_CREATED, value=len(task_ids))
        log_structured(
            "dispatch.completed",
            event_type=event.event_type.value,
            form_id=event.form_id,
            count=len(task_ids),
        )
        self._submit(task_ids)
        return task_ids

    def dispatch_test(self, webhook_id: uuid.UUID, caller: Caller | None = None) -> uuid.UUID:
        """Send a sample submission to one webhook regardless of its event types.

        Raises ``NotEligibleError`` naming the reason when the webhook is not ACTIVE.
        """
        webhook = WebhookRegistry(self._db, self._clock).get(webhook_id, caller)
        reason = webhook.ineligibility_reason
        if reason is not None:
            raise NotEligibleError(reason)

        now = self._clock.now()
        sample = SubmissionSummary(id=TEST_SUBMISSION_ID, created_at=now, data=dict(TEST_SUBMISSION_DATA))
        payload = build_payload(
            event_type=EventType.SUBMISSION_CREATED,
            form_id=webhook.form_id,
            form_title=None,
            submission=_submission_payload(sample, webhook),
            timestamp=now,
            is_test=True,
        )
        delivery = self._ledger.enqueue(
            webhook_id=webhook.id,
            event_type=EventType.SUBMISSION_CREATED,
            request_body=canonical_json(payload),
            created_at=now,
            is_test=True,
        )
        self._db.commit()
        log_structured("dispatch.test_created", webhook_id=webhook.id, delivery_id=delivery.id, is_test=True)
        self._submit([delivery.id])
        return delivery.id

    def redeliver(self, task_id: uuid.UUID, caller: Caller | None = None) -> uuid.UUID:
        """Start a fresh task chain carrying the exact body of a finished task."""
        original = self._ledger.get(task_id)
        webhook = WebhookRegistry(self._db, self._clock).get(original.webhook_id, caller)
        if not original.is_terminal:
            raise ForbiddenTransitionError("Only completed deliveries can be redelivered")
        reason = webhook.ineligibility_reason
        if reason is not None:
            raise NotEligibleError(reason)

        delivery = self._ledger.enqueue(
            webhook_id=webhook.id,
            event_type=original.event_type,
            request_body=original.request_body,
            created_at=self._clock.now(),
            submission_id=original.submission_id,
            is_test=original.is_test,
            redelivery_of=original.id,
        )
        self._db.commit()
        log_structured("dispatch.redelivery_created", webhook_id=webhook.id, delivery_id=delivery.id)
        self._submit([delivery.id])
        return delivery.id

    def _consume_daily_quota(self, webhook: WebhookRegistration, now: datetime) -> bool:
        if webhook.daily_limit is None:
            return True
        day_start = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
        self._db.execute(
            update(WebhookRegistration)
            .where(
                WebhookRegistration.id == webhook.id,
                or_(WebhookRegistration.daily_reset_at.is_(None), WebhookRegistration.daily_reset_at < day_start),
            )
            .values(daily_usage=0, daily_reset_at=now)
            .execution_options(synchronize_session=False)
        )
        result = self._db.execute(
            update(WebhookRegistration)
            .where(
                WebhookRegistration.id == webhook.id,
                WebhookRegistration.daily_usage < WebhookRegistration.daily_limit,
            )
            .values(daily_usage=WebhookRegistration.daily_usage + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _submit(self, task_ids: list[uuid.UUID]) -> None:
        if self._scheduler is not None:
            self._scheduler.submit_many(task_ids)
