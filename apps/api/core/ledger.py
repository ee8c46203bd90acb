"""Delivery ledger: the durable record of every delivery task and attempt.

Only the scheduler moves a task between statuses. The dispatcher appends
PENDING rows through ``enqueue``; everything else here is a read.

Writes made on behalf of a claim are fenced by the claim's ``claimed_at``:
once a stale claim has been reclaimed, its late writes match no row and are
dropped.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.clock import ensure_utc
from core.errors import NotFoundError
from models.webhook import (
    CLAIMABLE_DELIVERY_STATUSES,
    TERMINAL_DELIVERY_STATUSES,
    DeliveryStatus,
    EventType,
    WebhookDailyCounter,
    WebhookDelivery,
    WebhookDeliveryAttempt,
)

INTERRUPTED_ATTEMPT_MESSAGE = "Delivery attempt interrupted before a result was recorded"


@dataclass(frozen=True)
class DeliveryFilters:
    status: DeliveryStatus | None = None
    event_type: EventType | None = None
    is_test: bool | None = None
    since: datetime | None = None
    until: datetime | None = None


@dataclass(frozen=True)
class Page:
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True)
class AttemptOutcome:
    responded_at: datetime | None
    status_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    failure_class: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300


class DeliveryLedger:
    def __init__(self, db: Session) -> None:
        self._db = db

    # Writers

    def enqueue(
        self,
        *,
        webhook_id: uuid.UUID,
        event_type: EventType,
        request_body: str,
        created_at: datetime,
        submission_id: str | None = None,
        is_test: bool = False,
        redelivery_of: uuid.UUID | None = None,
    ) -> WebhookDelivery:
        delivery = WebhookDelivery(
            id=uuid.uuid4(),
            webhook_id=webhook_id,
            event_type=event_type,
            submission_id=submission_id,
            is_test=is_test,
            redelivery_of=redelivery_of,
            status=DeliveryStatus.PENDING,
            attempt_count=0,
            request_body=request_body,
            created_at=created_at,
        )
        self._db.add(delivery)
        self._db.flush()
        return delivery

    def claim(self, task_id: uuid.UUID, now: datetime) -> bool:
        """Move a due PENDING or SCHEDULED task to IN_FLIGHT.

        A single conditional UPDATE; exactly one concurrent caller sees a row
        count of one and owns the next attempt.
        """
        stmt = (
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == task_id,
                WebhookDelivery.status.in_(CLAIMABLE_DELIVERY_STATUSES),
                or_(WebhookDelivery.next_attempt_at.is_(None), WebhookDelivery.next_attempt_at <= now),
            )
            .values(status=DeliveryStatus.IN_FLIGHT, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        result = self._db.execute(stmt)
        self._db.commit()
        return result.rowcount == 1

    def begin_attempt(self, delivery: WebhookDelivery, claimed_at: datetime) -> int | None:
        """Count a new attempt; None when the claim was already taken over."""
        owned = self._update_owned(
            delivery,
            claimed_at,
            attempt_count=WebhookDelivery.attempt_count + 1,
            request_timestamp=claimed_at,
            response_timestamp=None,
            status_code=None,
            response_body=None,
            error_message=None,
            failure_class=None,
            next_attempt_at=None,
        )
        self._db.commit()
        if not owned:
            return None
        self._db.refresh(delivery)
        return delivery.attempt_count

    def record_attempt(
        self,
        delivery: WebhookDelivery,
        outcome: AttemptOutcome,
        next_attempt_at: datetime,
        *,
        claimed_at: datetime,
    ) -> bool:
        """Store a failed, non-final attempt and schedule the next one."""
        owned = self._update_owned(
            delivery,
            claimed_at,
            status=DeliveryStatus.SCHEDULED,
            next_attempt_at=next_attempt_at,
            claimed_at=None,
            **self._outcome_values(outcome),
        )
        if not owned:
            self._db.rollback()
            return False
        self._append_attempt(delivery, outcome)
        self._db.commit()
        return True

    def finalize(
        self,
        delivery: WebhookDelivery,
        status: DeliveryStatus,
        outcome: AttemptOutcome,
        *,
        completed_at: datetime,
        claimed_at: datetime,
        attempted: bool = True,
    ) -> bool:
        """Close a task as SUCCESS or FAILED; False when the claim was lost.

        ``attempted=False`` closes a task without a send (eligibility loss,
        exhausted budget); no attempt row is written for it.
        """
        if status not in TERMINAL_DELIVERY_STATUSES:
            raise ValueError(f"{status.value} is not a terminal delivery status")
        owned = self._update_owned(
            delivery,
            claimed_at,
            status=status,
            next_attempt_at=None,
            claimed_at=None,
            completed_at=completed_at,
            **self._outcome_values(outcome),
        )
        if not owned:
            self._db.rollback()
            return False
        if attempted:
            self._append_attempt(delivery, outcome)
        self._bump_daily_counter(delivery.webhook_id, ensure_utc(completed_at).date(), status)
        self._db.commit()
        return True

    def reclaim_stuck(self, claimed_before: datetime, now: datetime) -> int:
        """Return IN_FLIGHT tasks whose claim went stale to SCHEDULED, due now."""
        stmt = (
            update(WebhookDelivery)
            .where(
                WebhookDelivery.status == DeliveryStatus.IN_FLIGHT,
                WebhookDelivery.claimed_at < claimed_before,
            )
            .values(
                status=DeliveryStatus.SCHEDULED,
                next_attempt_at=now,
                claimed_at=None,
                error_message=INTERRUPTED_ATTEMPT_MESSAGE,
            )
            .execution_options(synchronize_session=False)
        )
        result = self._db.execute(stmt)
        self._db.commit()
        return result.rowcount or 0

    def _update_owned(self, delivery: WebhookDelivery, claim: datetime, **values) -> bool:
        stmt = (
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == delivery.id,
                WebhookDelivery.status == DeliveryStatus.IN_FLIGHT,
                WebhookDelivery.claimed_at == claim,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self._db.execute(stmt).rowcount == 1

    @staticmethod
    def _outcome_values(outcome: AttemptOutcome) -> dict:
        return {
            "response_timestamp": outcome.responded_at,
            "status_code": outcome.status_code,
            "response_body": outcome.response_body,
            "error_message": outcome.error_message,
            "failure_class": outcome.failure_class,
        }

    def _append_attempt(self, delivery: WebhookDelivery, outcome: AttemptOutcome) -> None:
        duration_ms = None
        if delivery.request_timestamp is not None and outcome.responded_at is not None:
            elapsed = ensure_utc(outcome.responded_at) - ensure_utc(delivery.request_timestamp)
            duration_ms = int(elapsed.total_seconds() * 1000)
        self._db.add(
            WebhookDeliveryAttempt(
                delivery_id=delivery.id,
                webhook_id=delivery.webhook_id,
                attempt_number=delivery.attempt_count,
                request_timestamp=delivery.request_timestamp,
                response_timestamp=outcome.responded_at,
                status_code=outcome.status_code,
                response_body=outcome.response_body,
                error_message=outcome.error_message,
                failure_class=outcome.failure_class,
                duration_ms=duration_ms,
                success=outcome.succeeded,
            )
        )

    def _bump_daily_counter(self, webhook_id: uuid.UUID, day: date, status: DeliveryStatus) -> None:
        if self._increment_counter(webhook_id, day, status):
            return
        try:
            with self._db.begin_nested():
                self._db.add(WebhookDailyCounter(webhook_id=webhook_id, day=day, status=status, count=1))
        except IntegrityError:
            # Another worker created the row first.
            self._increment_counter(webhook_id, day, status)

    def _increment_counter(self, webhook_id: uuid.UUID, day: date, status: DeliveryStatus) -> bool:
        stmt = (
            update(WebhookDailyCounter)
            .where(
                WebhookDailyCounter.webhook_id == webhook_id,
                WebhookDailyCounter.day == day,
                WebhookDailyCounter.status == status,
            )
            .values(count=WebhookDailyCounter.count + 1)
            .execution_options(synchronize_session=False)
        )
        return bool(self._db.execute(stmt).rowcount)

    # Readers

    def get(self, task_id: uuid.UUID) -> WebhookDelivery:
        delivery = self._db.get(WebhookDelivery, task_id)
        if delivery is None:
            raise NotFoundError("Delivery not found")
        return delivery

    def list_attempts(self, task_id: uuid.UUID) -> list[WebhookDeliveryAttempt]:
        return list(
            self._db.scalars(
                select(WebhookDeliveryAttempt)
                .where(WebhookDeliveryAttempt.delivery_id == task_id)
                .order_by(WebhookDeliveryAttempt.attempt_number.asc())
            ).all()
        )

    def find_due(self, now: datetime, *, pending_before: datetime | None = None, limit: int = 100) -> list[uuid.UUID]:
        """Ids of SCHEDULED tasks that are due, oldest first.

        With ``pending_before``, PENDING tasks created before that instant are
        included too: their immediate execution never happened.
        """
        due = and_(
            WebhookDelivery.status == DeliveryStatus.SCHEDULED,
            WebhookDelivery.next_attempt_at <= now,
        )
        if pending_before is not None:
            due = or_(
                due,
                and_(
                    WebhookDelivery.status == DeliveryStatus.PENDING,
                    WebhookDelivery.created_at <= pending_before,
                ),
            )
        stmt = select(WebhookDelivery.id).where(due).order_by(WebhookDelivery.created_at.asc()).limit(limit)
        return list(self._db.scalars(stmt).all())

    def list_by_webhook(
        self,
        webhook_id: uuid.UUID,
        filters: DeliveryFilters | None = None,
        page: Page | None = None,
    ) -> tuple[list[WebhookDelivery], int]:
        filters = filters or DeliveryFilters()
        page = page or Page()
        conditions = [WebhookDelivery.webhook_id == webhook_id]
        if filters.status is not None:
            conditions.append(WebhookDelivery.status == filters.status)
        if filters.event_type is not None:
            conditions.append(WebhookDelivery.event_type == filters.event_type)
        if filters.is_test is not None:
            conditions.append(WebhookDelivery.is_test.is_(filters.is_test))
        if filters.since is not None:
            conditions.append(WebhookDelivery.created_at >= filters.since)
        if filters.until is not None:
            conditions.append(WebhookDelivery.created_at < filters.until)

        total = self._db.scalar(select(func.count()).select_from(WebhookDelivery).where(*conditions)) or 0
        items = list(
            self._db.scalars(
                select(WebhookDelivery)
                .where(*conditions)
                .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.asc())
                .limit(page.limit)
                .offset(page.offset)
            ).all()
        )
        return items, int(total)
