import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.auth import Caller, require_admin
from core.clock import Clock
from core.contracts import paginated
from core.deps import get_clock, get_db, get_scheduler
from core.registry import WebhookRegistry
from core.scheduler import DeliveryScheduler
from models.webhook import WebhookState
from routers.webhooks import webhook_out
from schemas.webhook import AdminNotesIn, SweepOut, WebhookOut

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get(
    "/webhooks",
    response_model=dict,
    description="Admin-only route. Lists all webhooks, optionally filtered by derived state.",
)
def list_all_webhooks(
    state: WebhookState | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    webhooks, total = WebhookRegistry(db, clock).list_all(state, limit=limit, offset=offset)
    return paginated([webhook_out(webhook) for webhook in webhooks], limit=limit, offset=offset, count=total)


@router.get("/webhooks/pending", response_model=dict, description="Admin-only route. Approval queue.")
def list_pending_webhooks(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    webhooks, total = WebhookRegistry(db, clock).list_pending(limit=limit, offset=offset)
    return paginated([webhook_out(webhook) for webhook in webhooks], limit=limit, offset=offset, count=total)


@router.post("/webhooks/{webhook_id}/approve", response_model=WebhookOut)
def approve_webhook(
    webhook_id: uuid.UUID,
    db: Session = Depends(get_db),
    admin: Caller = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    return webhook_out(WebhookRegistry(db, clock).approve(webhook_id, admin.actor_id))


@router.post("/webhooks/{webhook_id}/reject", response_model=WebhookOut)
def reject_webhook(
    webhook_id: uuid.UUID,
    db: Session = Depends(get_db),
    admin: Caller = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    return webhook_out(WebhookRegistry(db, clock).reject(webhook_id, admin.actor_id))


@router.post("/webhooks/{webhook_id}/lock", response_model=WebhookOut)
def lock_webhook(
    webhook_id: uuid.UUID,
    db: Session = Depends(get_db),
    admin: Caller = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    return webhook_out(WebhookRegistry(db, clock).lock(webhook_id, admin.actor_id))


@router.post("/webhooks/{webhook_id}/unlock", response_model=WebhookOut)
def unlock_webhook(
    webhook_id: uuid.UUID,
    db: Session = Depends(get_db),
    admin: Caller = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    return webhook_out(WebhookRegistry(db, clock).unlock(webhook_id, admin.actor_id))


@router.post(
    "/webhooks/{webhook_id}/deactivate",
    response_model=WebhookOut,
    description="Admin-only route. Force-deactivates; the owner cannot reactivate until an admin does.",
)
def admin_deactivate_webhook(
    webhook_id: uuid.UUID,
    db: Session = Depends(get_db),
    admin: Caller = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    return webhook_out(WebhookRegistry(db, clock).deactivate(webhook_id, admin.actor_id))


@router.post("/webhooks/{webhook_id}/activate", response_model=WebhookOut)
def admin_activate_webhook(
    webhook_id: uuid.UUID,
    db: Session = Depends(get_db),
    admin: Caller = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    return webhook_out(WebhookRegistry(db, clock).activate(webhook_id, admin))


@router.put("/webhooks/{webhook_id}/notes", response_model=WebhookOut)
def set_webhook_notes(
    webhook_id: uuid.UUID,
    payload: AdminNotesIn,
    db: Session = Depends(get_db),
    admin: Caller = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    return webhook_out(WebhookRegistry(db, clock).set_admin_notes(webhook_id, admin.actor_id, payload.notes))


@router.post(
    "/deliveries/sweep",
    response_model=SweepOut,
    description="Admin-only route. Runs one due-retry sweep immediately.",
)
def sweep_deliveries(scheduler: DeliveryScheduler | None = Depends(get_scheduler)):
    if scheduler is None:
        return SweepOut(reclaimed=0, submitted=0)
    result = scheduler.run_due()
    return SweepOut(reclaimed=result.reclaimed, submitted=result.submitted)
