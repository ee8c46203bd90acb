"""Delivery execution and retry scheduling.

``execute`` runs one attempt for one task. It is safe to call any number of
times, from any number of threads or processes: the ledger claim lets exactly
one caller through per due attempt, and everyone else returns immediately.
"""
from __future__ import annotations

import hmac
import logging
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from core.clock import SYSTEM_CLOCK, Clock
from core.config import Settings, get_settings
from core.errors import INELIGIBILITY_MESSAGES, IneligibilityReason
from core.failure_modes import FailureClass, classify_failure
from core.ledger import AttemptOutcome, DeliveryLedger
from core.logging_utils import log_structured
from core.observability import (
    METRIC_DELIVERY_CLAIM_LOST,
    METRIC_DELIVERY_CLAIM_SKIPPED,
    METRIC_DELIVERY_ELIGIBILITY_LOST,
    METRIC_DELIVERY_FAILED,
    METRIC_DELIVERY_RECLAIMED,
    METRIC_DELIVERY_RETRY_SCHEDULED,
    METRIC_DELIVERY_SUCCEEDED,
    increment_metric,
    unexpected_exception_metric,
)
from core.signing import signature_header
from core.webhooks import (
    HttpResult,
    build_webhook_headers,
    derive_webhook_secret,
    hash_webhook_secret,
    send_webhook_http,
)
from models.webhook import DeliveryStatus, WebhookDelivery, WebhookRegistration

Sender = Callable[[str, bytes, dict[str, str], float, int], HttpResult]

ERROR_MESSAGE_LIMIT = 500
MAX_ATTEMPTS_REACHED_MESSAGE = "Maximum delivery attempts reached"
SECRET_MISMATCH_MESSAGE = "Webhook secret mismatch"


@dataclass(frozen=True)
class SweepResult:
    reclaimed: int
    submitted: int


def retry_delay(retry_interval_seconds: int, attempt_count: int) -> timedelta:
    """Linear backoff: the n-th failed attempt waits n intervals."""
    return timedelta(seconds=retry_interval_seconds * attempt_count)


def _ineligibility(webhook: WebhookRegistration | None) -> IneligibilityReason | None:
    if webhook is None or webhook.deleted_at is not None:
        return IneligibilityReason.INACTIVE
    return webhook.ineligibility_reason


class DeliveryScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        clock: Clock = SYSTEM_CLOCK,
        sender: Sender | None = None,
        executor: Executor | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._sender = sender or send_webhook_http
        # Without an executor tasks run inline on the submitting thread.
        self._executor = executor
        self._settings = settings or get_settings()

    def submit(self, task_id: uuid.UUID) -> None:
        if self._executor is None:
            self._execute_logged(task_id)
            return
        self._executor.submit(self._execute_logged, task_id)

    def submit_many(self, task_ids: Iterable[uuid.UUID]) -> None:
        for task_id in task_ids:
            self.submit(task_id)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def _execute_logged(self, task_id: uuid.UUID) -> DeliveryStatus | None:
        try:
            return self.execute(task_id)
        except Exception as exc:
            # The task stays claimed and is picked up again once its claim goes stale.
            unexpected_exception_metric(exc.__class__.__name__)
            log_structured(
                "delivery.execute_failed",
                level=logging.ERROR,
                delivery_id=task_id,
                error_class=exc.__class__.__name__,
                failure_class=classify_failure(exc).value,
            )
            return None

    def execute(self, task_id: uuid.UUID) -> DeliveryStatus | None:
        """Run the next attempt of a task; returns its new status, or None if not claimed."""
        db = self._session_factory()
        try:
            return self._execute(db, task_id)
        finally:
            db.close()

    def _execute(self, db: Session, task_id: uuid.UUID) -> DeliveryStatus | None:
        ledger = DeliveryLedger(db)
        claimed_at = self._clock.now()
        if not ledger.claim(task_id, claimed_at):
            increment_metric(METRIC_DELIVERY_CLAIM_SKIPPED)
            log_structured("delivery.claim_skipped", level=logging.DEBUG, delivery_id=task_id)
            return None

        delivery = ledger.get(task_id)
        webhook = db.get(WebhookRegistration, delivery.webhook_id)

        reason = _ineligibility(webhook)
        if reason is not None:
            return self._close_unsent(
                ledger,
                delivery,
                claimed_at,
                f"Webhook no longer eligible: {INELIGIBILITY_MESSAGES[reason]}",
                FailureClass.ELIGIBILITY_LOST,
                metric=METRIC_DELIVERY_ELIGIBILITY_LOST,
                reason=reason.value,
            )
        if delivery.attempt_count >= webhook.max_attempts:
            return self._close_unsent(
                ledger, delivery, claimed_at, MAX_ATTEMPTS_REACHED_MESSAGE, None, metric=METRIC_DELIVERY_FAILED
            )

        secret = derive_webhook_secret(webhook.id)
        if not hmac.compare_digest(hash_webhook_secret(secret), webhook.secret_hash):
            return self._close_unsent(
                ledger,
                delivery,
                claimed_at,
                SECRET_MISMATCH_MESSAGE,
                FailureClass.SECRET_MISMATCH,
                metric=METRIC_DELIVERY_FAILED,
                reason="secret_mismatch",
            )

        max_attempts = webhook.max_attempts
        retry_interval = webhook.retry_interval_seconds
        attempt = ledger.begin_attempt(delivery, claimed_at)
        if attempt is None:
            return self._claim_lost(task_id, None)
        body = delivery.request_body.encode("utf-8")
        headers = build_webhook_headers(
            webhook_id=webhook.id,
            delivery_id=delivery.id,
            event_type=delivery.event_type,
            attempt=attempt,
            signature=signature_header(secret, body),
            auth_mode=webhook.auth_mode,
            auth_value=webhook.auth_value,
            api_key_header=webhook.api_key_header,
            custom_headers=webhook.custom_headers,
            verification_token=webhook.verification_token,
        )
        outcome = self._send(webhook.url, body, headers)

        log_fields = {
            "delivery_id": delivery.id,
            "webhook_id": webhook.id,
            "event_type": delivery.event_type.value,
            "attempt": attempt,
            "max_attempts": max_attempts,
            "status_code": outcome.status_code,
            "failure_class": outcome.failure_class,
            "is_test": delivery.is_test,
        }
        if outcome.succeeded:
            if not ledger.finalize(
                delivery, DeliveryStatus.SUCCESS, outcome, completed_at=outcome.responded_at, claimed_at=claimed_at
            ):
                return self._claim_lost(task_id, attempt)
            increment_metric(METRIC_DELIVERY_SUCCEEDED)
            log_structured("delivery.succeeded", **log_fields)
            return DeliveryStatus.SUCCESS

        if attempt < max_attempts:
            next_attempt_at = outcome.responded_at + retry_delay(retry_interval, attempt)
            if not ledger.record_attempt(delivery, outcome, next_attempt_at, claimed_at=claimed_at):
                return self._claim_lost(task_id, attempt)
            increment_metric(METRIC_DELIVERY_RETRY_SCHEDULED, reason=outcome.failure_class)
            log_structured(
                "delivery.retry_scheduled",
                level=logging.WARNING,
                next_attempt_at=next_attempt_at.isoformat(),
                **log_fields,
            )
            return DeliveryStatus.SCHEDULED

        if not ledger.finalize(
            delivery, DeliveryStatus.FAILED, outcome, completed_at=outcome.responded_at, claimed_at=claimed_at
        ):
            return self._claim_lost(task_id, attempt)
        increment_metric(METRIC_DELIVERY_FAILED, reason=outcome.failure_class)
        log_structured("delivery.failed", level=logging.WARNING, **log_fields)
        return DeliveryStatus.FAILED

    def _claim_lost(self, delivery_id: uuid.UUID, attempt: int | None) -> None:
        # The claim went stale and was reclaimed; the new owner's result stands.
        increment_metric(METRIC_DELIVERY_CLAIM_LOST)
        log_structured("delivery.claim_lost", level=logging.WARNING, delivery_id=delivery_id, attempt=attempt)
        return None

    def _send(self, url: str, body: bytes, headers: dict[str, str]) -> AttemptOutcome:
        limit = self._settings.webhook_response_body_limit
        try:
            result = self._sender(url, body, headers, self._settings.webhook_request_timeout_seconds, limit)
        except Exception as exc:
            # Transport failures (timeouts included) are retryable outcomes, not errors.
            message = str(exc) or exc.__class__.__name__
            return AttemptOutcome(
                responded_at=self._clock.now(),
                error_message=message[:ERROR_MESSAGE_LIMIT],
                failure_class=classify_failure(exc).value,
            )
        outcome = AttemptOutcome(
            responded_at=self._clock.now(),
            status_code=result.status_code,
            response_body=result.body[:limit] if result.body else None,
        )
        if outcome.succeeded:
            return outcome
        return AttemptOutcome(
            responded_at=outcome.responded_at,
            status_code=outcome.status_code,
            response_body=outcome.response_body,
            error_message=f"HTTP {result.status_code}",
            failure_class=FailureClass.HTTP_STATUS.value,
        )

    def _close_unsent(
        self,
        ledger: DeliveryLedger,
        delivery: WebhookDelivery,
        claimed_at: datetime,
        message: str,
        failure_class: FailureClass | None,
        *,
        metric: str,
        reason: str | None = None,
    ) -> DeliveryStatus | None:
        now = self._clock.now()
        delivery_id, webhook_id, attempt = delivery.id, delivery.webhook_id, delivery.attempt_count
        outcome = AttemptOutcome(
            responded_at=delivery.response_timestamp,
            status_code=delivery.status_code,
            response_body=delivery.response_body,
            error_message=message,
            failure_class=failure_class.value if failure_class else delivery.failure_class,
        )
        if not ledger.finalize(
            delivery, DeliveryStatus.FAILED, outcome, completed_at=now, claimed_at=claimed_at, attempted=False
        ):
            return self._claim_lost(delivery_id, attempt)
        increment_metric(metric, reason=reason)
        log_structured(
            "delivery.closed_unsent",
            level=logging.WARNING,
            delivery_id=delivery_id,
            webhook_id=webhook_id,
            attempt=attempt,
            reason=reason or message,
        )
        return DeliveryStatus.FAILED

    def run_due(self, limit: int = 100) -> SweepResult:
        """Reclaim stale claims, then submit every due task."""
        now = self._clock.now()
        db = self._session_factory()
        try:
            ledger = DeliveryLedger(db)
            reclaimed = ledger.reclaim_stuck(now - timedelta(seconds=self._settings.webhook_stale_claim_seconds), now)
            due = ledger.find_due(
                now,
                pending_before=now - timedelta(seconds=self._settings.webhook_pending_grace_seconds),
                limit=limit,
            )
        finally:
            db.close()
        if reclaimed:
            increment_metric(METRIC_DELIVERY_RECLAIMED, value=reclaimed)
        log_structured("delivery.sweep", level=logging.DEBUG, count=len(due), value=reclaimed)
        self.submit_many(due)
        return SweepResult(reclaimed=reclaimed, submitted=len(due))
