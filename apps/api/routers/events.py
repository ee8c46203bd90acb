from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.auth import require_admin
from core.clock import Clock
from core.deps import get_clock, get_db, get_scheduler
from core.dispatcher import DomainEvent, Dispatcher, SubmissionSummary
from core.scheduler import DeliveryScheduler
from schemas.webhook import DispatchOut, DomainEventIn

router = APIRouter(prefix="/events", tags=["events"], dependencies=[Depends(require_admin)])


@router.post(
    "",
    response_model=DispatchOut,
    description=(
        "Service route for the form and submission subsystem. Fans the event out to every eligible webhook "
        "and returns the created delivery ids; delivery itself is asynchronous."
    ),
)
def publish_event(
    payload: DomainEventIn,
    db: Session = Depends(get_db),
    scheduler: DeliveryScheduler | None = Depends(get_scheduler),
    clock: Clock = Depends(get_clock),
):
    submission = None
    if payload.submission is not None:
        submission = SubmissionSummary(
            id=payload.submission.id,
            created_at=payload.submission.created_at,
            data=dict(payload.submission.data),
        )
    event = DomainEvent(
        event_type=payload.event_type,
        form_id=payload.form_id,
        form_title=payload.form_title,
        submission=submission,
        occurred_at=payload.occurred_at,
    )
    return DispatchOut(delivery_ids=Dispatcher(db, scheduler, clock).dispatch(event))
