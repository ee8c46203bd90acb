from collections.abc import Iterator

from fastapi import Request
from sqlalchemy.orm import Session

from core.clock import SYSTEM_CLOCK, Clock
from core.db import SessionLocal
from core.scheduler import DeliveryScheduler


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_scheduler(request: Request) -> DeliveryScheduler | None:
    return getattr(request.app.state, "delivery_scheduler", None)


def get_clock(request: Request) -> Clock:
    return getattr(request.app.state, "clock", SYSTEM_CLOCK)
