import tempfile
import threading
import time
import unittest
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from core.auth import Caller
from core.clock import FrozenClock
from core.db import Base
from core.observability import COUNTERS
from core.registry import WebhookRegistry
from core.scheduler import DeliveryScheduler
from core.webhooks import HttpResult
from models.webhook import WebhookDelivery, WebhookRegistration
from schemas.webhook import WebhookCreate

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
HOOK_URL = "https://hooks.example.com/formatic"


class SenderStub:
    """Stands in for the HTTP sender; replays ``responses`` and repeats the last one.

    A response is a status code or an exception instance to raise.
    """

    def __init__(self, *responses, delay: float = 0.0) -> None:
        self._responses = list(responses) or [200]
        self._delay = delay
        self._lock = threading.Lock()
        self.calls: list[SimpleNamespace] = []

    def __call__(self, url, body, headers, timeout, read_limit):
        with self._lock:
            self.calls.append(SimpleNamespace(url=url, body=body, headers=dict(headers), timeout=timeout))
            response = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if self._delay:
            time.sleep(self._delay)
        if isinstance(response, BaseException):
            raise response
        return HttpResult(status_code=response, body=f"status {response}")


class EngineTestCase(unittest.TestCase):
    """File-backed SQLite so the scheduler's own sessions see committed rows."""

    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(self.tmpdir.name) / "webhooks.db"
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False},
        )
        self.SessionLocal = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)
        Base.metadata.create_all(bind=self.engine)
        self.db = self.SessionLocal()
        self.clock = FrozenClock(BASE_TIME)
        self.sender = SenderStub(200)
        self.scheduler = DeliveryScheduler(self.SessionLocal, clock=self.clock, sender=self.sender)
        self.registry = WebhookRegistry(self.db, self.clock)
        self.owner = Caller.client("acct-1")
        self.admin = Caller.admin("admin-1")
        COUNTERS.reset()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()
        self.tmpdir.cleanup()

    def use_sender(self, sender: SenderStub) -> SenderStub:
        self.sender = sender
        self.scheduler = DeliveryScheduler(self.SessionLocal, clock=self.clock, sender=sender)
        return sender

    def register(self, form_id: str = "form-1", approve: bool = True, **overrides) -> WebhookRegistration:
        payload = WebhookCreate(name="crm sync", url=HOOK_URL, **overrides)
        webhook, _secret = self.registry.create(form_id, payload, self.owner)
        if approve:
            webhook = self.registry.approve(webhook.id, self.admin.actor_id)
        return webhook

    def load_delivery(self, delivery_id) -> WebhookDelivery:
        with self.SessionLocal() as session:
            return session.get(WebhookDelivery, delivery_id)
