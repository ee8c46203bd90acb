import uuid
from dataclasses import asdict
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.auth import Caller, require_caller
from core.clock import Clock
from core.contracts import paginated
from core.deps import get_clock, get_db, get_scheduler
from core.dispatcher import Dispatcher
from core.ledger import DeliveryFilters, DeliveryLedger, Page
from core.registry import WebhookRegistry
from core.scheduler import DeliveryScheduler
from core.stats import compute_stats
from core.webhooks import derive_webhook_secret, mask_secret
from models.webhook import DeliveryStatus, EventType, FieldFilterMode, WebhookDelivery, WebhookRegistration
from schemas.webhook import (
    DeliveryAttemptOut,
    DeliveryDetailOut,
    DeliveryOut,
    StatsOut,
    WebhookCreate,
    WebhookCreateOut,
    WebhookOut,
    WebhookPatch,
)

router = APIRouter(tags=["webhooks"])


def webhook_out(webhook: WebhookRegistration, secret: str | None = None) -> WebhookOut | WebhookCreateOut:
    base = {
        "id": webhook.id,
        "form_id": webhook.form_id,
        "account_id": webhook.account_id,
        "name": webhook.name,
        "url": webhook.url,
        "event_types": webhook.event_types,
        "state": webhook.state,
        "active": webhook.active,
        "admin_approved": webhook.admin_approval.to_wire(),
        "admin_locked": webhook.admin_locked,
        "deactivated_by_id": webhook.deactivated_by_id,
        "admin_notes": webhook.admin_notes,
        "auth_mode": webhook.auth_mode,
        "api_key_header": webhook.api_key_header,
        "custom_headers": webhook.custom_headers,
        "include_fields": webhook.field_filter_keys if webhook.field_filter_mode == FieldFilterMode.INCLUDE else None,
        "exclude_fields": webhook.field_filter_keys if webhook.field_filter_mode == FieldFilterMode.EXCLUDE else None,
        "filter_conditions": webhook.filter_conditions,
        "max_attempts": webhook.max_attempts,
        "retry_interval_seconds": webhook.retry_interval_seconds,
        "daily_limit": webhook.daily_limit,
        "daily_usage": webhook.daily_usage,
        "secret_masked": mask_secret(secret or derive_webhook_secret(webhook.id)),
        "created_at": webhook.created_at,
        "updated_at": webhook.updated_at,
    }
    if secret is not None:
        return WebhookCreateOut(**base, secret=secret)
    return WebhookOut(**base)


def _delivery_for_caller(db: Session, delivery_id: uuid.UUID, caller: Caller, clock: Clock) -> WebhookDelivery:
    delivery = DeliveryLedger(db).get(delivery_id)
    # Ownership check; raises NotFoundError for other accounts.
    WebhookRegistry(db, clock).get(delivery.webhook_id, caller, include_deleted=True)
    return delivery


@router.post(
    "/forms/{form_id}/webhooks",
    response_model=WebhookCreateOut,
    description="Client or admin route. Registers a webhook pending admin approval and returns its secret once.",
)
def create_webhook(
    form_id: str,
    payload: WebhookCreate,
    account_id: str | None = Query(default=None, description="Owning account when an admin creates the webhook."),
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_caller),
    clock: Clock = Depends(get_clock),
):
    webhook, secret = WebhookRegistry(db, clock).create(form_id, payload, caller, account_id=account_id)
    return webhook_out(webhook, secret=secret)


@router.get(
    "/forms/{form_id}/webhooks",
    response_model=dict,
    description="Client or admin route. Supports pagination with limit/offset.",
)
def list_form_webhooks(
    form_id: str,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_caller),
    clock: Clock = Depends(get_clock),
):
    webhooks, total = WebhookRegistry(db, clock).list_for_form(form_id, caller, limit=limit, offset=offset)
    return paginated([webhook_out(webhook) for webhook in webhooks], limit=limit, offset=offset, count=total)


@router.get("/webhooks/{webhook_id}", response_model=WebhookOut)
def get_webhook(
    webhook_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_caller),
    clock: Clock = Depends(get_clock),
):
    return webhook_out(WebhookRegistry(db, clock).get(webhook_id, caller))


@router.patch(
    "/webhooks/{webhook_id}",
    response_model=WebhookOut,
    description="Client edits fail with WEBHOOK_LOCKED while an admin lock is in place.",
)
def update_webhook(
    webhook_id: uuid.UUID,
    payload: WebhookPatch,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_caller),
    clock: Clock = Depends(get_clock),
):
    return webhook_out(WebhookRegistry(db, clock).update(webhook_id, payload, caller))


@router.delete("/webhooks/{webhook_id}")
def delete_webhook(
    webhook_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_caller),
    clock: Clock = Depends(get_clock),
):
    WebhookRegistry(db, clock).delete(webhook_id, caller)
    return {"deleted": True, "id": str(webhook_id)}


@router.post("/webhooks/{webhook_id}/activate", response_model=WebhookOut)
def activate_webhook(
    webhook_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_caller),
    clock: Clock = Depends(get_clock),
):
    return webhook_out(WebhookRegistry(db, clock).activate(webhook_id, caller))


@router.post("/webhooks/{webhook_id}/deactivate", response_model=WebhookOut)
def deactivate_webhook(
    webhook_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_caller),
    clock: Clock = Depends(get_clock),
):
    return webhook_out(WebhookRegistry(db, clock).deactivate_by_client(webhook_id, caller))


@router.post(
    "/webhooks/{webhook_id}/test",
    description="Queues a signed sample delivery. Fails with WEBHOOK_NOT_ELIGIBLE unless the webhook is ACTIVE.",
)
def send_test_webhook(
    webhook_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_caller),
    scheduler: DeliveryScheduler | None = Depends(get_scheduler),
    clock: Clock = Depends(get_clock),
):
    delivery_id = Dispatcher(db, scheduler, clock).dispatch_test(webhook_id, caller)
    return {"delivery_id": str(delivery_id)}


@router.get(
    "/webhooks/{webhook_id}/deliveries",
    response_model=dict,
    description="Delivery audit log, newest first. Filterable by status, event type, test flag and time range.",
)
def list_webhook_deliveries(
    webhook_id: uuid.UUID,
    status: DeliveryStatus | None = Query(default=None),
    event_type: EventType | None = Query(default=None),
    is_test: bool | None = Query(default=None),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_caller),
    clock: Clock = Depends(get_clock),
):
    WebhookRegistry(db, clock).get(webhook_id, caller, include_deleted=True)
    filters = DeliveryFilters(
        status=status,
        event_type=event_type,
        is_test=is_test,
        since=since,
        until=until,
    )
    deliveries, total = DeliveryLedger(db).list_by_webhook(webhook_id, filters, Page(limit=limit, offset=offset))
    data = [DeliveryOut.model_validate(delivery) for delivery in deliveries]
    return paginated(data, limit=limit, offset=offset, count=total)


@router.get("/webhooks/{webhook_id}/stats", response_model=StatsOut)
def get_webhook_stats(
    webhook_id: uuid.UUID,
    window_days: int = Query(default=7, ge=1, le=90),
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_caller),
    clock: Clock = Depends(get_clock),
):
    WebhookRegistry(db, clock).get(webhook_id, caller, include_deleted=True)
    stats = compute_stats(db, webhook_id, window_days, clock=clock)
    return StatsOut(**asdict(stats))


@router.get("/deliveries/{delivery_id}", response_model=DeliveryDetailOut)
def get_delivery(
    delivery_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_caller),
    clock: Clock = Depends(get_clock),
):
    delivery = _delivery_for_caller(db, delivery_id, caller, clock)
    attempts = [DeliveryAttemptOut.model_validate(attempt) for attempt in DeliveryLedger(db).list_attempts(delivery.id)]
    return DeliveryDetailOut(
        **DeliveryOut.model_validate(delivery).model_dump(),
        request_body=delivery.request_body,
        response_body=delivery.response_body,
        attempts=attempts,
    )


@router.post(
    "/deliveries/{delivery_id}/retry",
    description="Manual retry of a finished delivery. Creates a new delivery chain linked by redelivery_of.",
)
def retry_delivery(
    delivery_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_caller),
    scheduler: DeliveryScheduler | None = Depends(get_scheduler),
    clock: Clock = Depends(get_clock),
):
    new_id = Dispatcher(db, scheduler, clock).redeliver(delivery_id, caller)
    return {"delivery_id": str(new_id), "redelivery_of": str(delivery_id)}
