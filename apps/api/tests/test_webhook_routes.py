import asyncio
import json
import unittest

from fastapi.routing import APIRoute
from starlette.requests import Request

from core.auth import Caller, CallerRole, require_admin, require_caller
from core.config import get_settings
from core.errors import (
    AuthError,
    AuthMissingError,
    LockedError,
    NotEligibleError,
    NotFoundError,
    IneligibilityReason,
)
from models.webhook import DeliveryStatus, EventType, WebhookState
from routers.admin import (
    approve_webhook,
    list_all_webhooks,
    list_pending_webhooks,
    lock_webhook,
    router as admin_router,
    set_webhook_notes,
    sweep_deliveries,
)
from routers.events import publish_event, router as events_router
from routers.health import health, metrics, version
from routers.webhooks import (
    create_webhook,
    delete_webhook,
    get_delivery,
    get_webhook,
    get_webhook_stats,
    list_form_webhooks,
    list_webhook_deliveries,
    retry_delivery,
    send_test_webhook,
    update_webhook,
)
from schemas.webhook import AdminNotesIn, DomainEventIn, WebhookCreate, WebhookPatch
from webhook_test_support import BASE_TIME, HOOK_URL, EngineTestCase


def make_request(path: str = "/") -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "headers": [],
        "client": ("127.0.0.1", 12345),
    }
    return Request(scope)


class WebhookRouteTests(EngineTestCase):
    def _create(self, form_id: str = "form-1", **overrides):
        return create_webhook(
            form_id=form_id,
            payload=WebhookCreate(name="crm sync", url=HOOK_URL, **overrides),
            account_id=None,
            db=self.db,
            caller=self.owner,
            clock=self.clock,
        )

    def _deliveries(self, webhook_id, **filters):
        query = {"status": None, "event_type": None, "is_test": None, "since": None, "until": None}
        query.update(filters)
        return list_webhook_deliveries(
            webhook_id, limit=50, offset=0, db=self.db, caller=self.owner, clock=self.clock, **query
        )

    def _approve(self, webhook_id):
        return approve_webhook(webhook_id, db=self.db, admin=self.admin, clock=self.clock)

    def test_create_returns_secret_once_and_starts_pending(self) -> None:
        created = self._create()
        self.assertTrue(created.secret.startswith("whsec_"))
        self.assertTrue(created.secret_masked.startswith("****"))
        self.assertEqual(created.state, WebhookState.PENDING_APPROVAL)
        self.assertIsNone(created.admin_approved)
        self.assertTrue(created.active)

        fetched = get_webhook(created.id, db=self.db, caller=self.owner, clock=self.clock)
        self.assertFalse(hasattr(fetched, "secret"))
        self.assertEqual(fetched.secret_masked, created.secret_masked)

        listed = list_form_webhooks("form-1", limit=50, offset=0, db=self.db, caller=self.owner, clock=self.clock)
        self.assertEqual(listed["meta"], {"limit": 50, "offset": 0, "count": 1})
        self.assertEqual(listed["data"][0].id, created.id)

    def test_other_accounts_see_nothing(self) -> None:
        created = self._create()
        stranger = Caller.client("acct-2")
        with self.assertRaises(NotFoundError):
            get_webhook(created.id, db=self.db, caller=stranger, clock=self.clock)
        listed = list_form_webhooks("form-1", limit=50, offset=0, db=self.db, caller=stranger, clock=self.clock)
        self.assertEqual(listed["data"], [])

    def test_admin_approval_and_lock_flow(self) -> None:
        created = self._create()
        pending = list_pending_webhooks(limit=50, offset=0, db=self.db, clock=self.clock)
        self.assertEqual([item.id for item in pending["data"]], [created.id])

        approved = self._approve(created.id)
        self.assertEqual(approved.state, WebhookState.ACTIVE)
        self.assertTrue(approved.admin_approved)

        active = list_all_webhooks(state=WebhookState.ACTIVE, limit=50, offset=0, db=self.db, clock=self.clock)
        self.assertEqual(active["meta"]["count"], 1)

        locked = lock_webhook(created.id, db=self.db, admin=self.admin, clock=self.clock)
        self.assertTrue(locked.admin_locked)
        with self.assertRaises(LockedError):
            update_webhook(created.id, WebhookPatch(name="renamed"), db=self.db, caller=self.owner, clock=self.clock)

        noted = set_webhook_notes(
            created.id, AdminNotesIn(notes="vendor verified"), db=self.db, admin=self.admin, clock=self.clock
        )
        self.assertEqual(noted.admin_notes, "vendor verified")

    def test_test_send_requires_active_webhook(self) -> None:
        created = self._create()
        with self.assertRaises(NotEligibleError) as ctx:
            send_test_webhook(created.id, db=self.db, caller=self.owner, scheduler=self.scheduler, clock=self.clock)
        self.assertEqual(ctx.exception.reason, IneligibilityReason.PENDING_APPROVAL)

        self._approve(created.id)
        sent = send_test_webhook(created.id, db=self.db, caller=self.owner, scheduler=self.scheduler, clock=self.clock)
        self.assertEqual(len(self.sender.calls), 1)
        self.assertEqual(self.sender.calls[0].headers["X-Webhook-Delivery-Id"], sent["delivery_id"])

    def test_delivery_audit_routes(self) -> None:
        created = self._create()
        self._approve(created.id)
        sent = send_test_webhook(created.id, db=self.db, caller=self.owner, scheduler=self.scheduler, clock=self.clock)

        listed = self._deliveries(created.id)
        self.assertEqual(listed["meta"]["count"], 1)
        self.assertEqual(listed["data"][0].status, DeliveryStatus.SUCCESS)
        self.assertTrue(listed["data"][0].is_test)

        detail = get_delivery(listed["data"][0].id, db=self.db, caller=self.owner, clock=self.clock)
        self.assertEqual(str(detail.id), sent["delivery_id"])
        self.assertEqual(len(detail.attempts), 1)
        self.assertTrue(detail.attempts[0].success)
        self.assertTrue(json.loads(detail.request_body)["test"])
        with self.assertRaises(NotFoundError):
            get_delivery(detail.id, db=self.db, caller=Caller.client("acct-2"), clock=self.clock)

        retried = retry_delivery(detail.id, db=self.db, caller=self.owner, scheduler=self.scheduler, clock=self.clock)
        self.assertEqual(retried["redelivery_of"], sent["delivery_id"])
        self.assertNotEqual(retried["delivery_id"], sent["delivery_id"])

        stats = get_webhook_stats(created.id, window_days=7, db=self.db, caller=self.owner, clock=self.clock)
        self.assertEqual(stats.total_deliveries, 2)
        self.assertEqual(stats.success_rate, 1.0)
        self.assertEqual(stats.per_day_counts, {BASE_TIME.date().isoformat(): {"success": 2}})
        self.assertEqual(self._deliveries(created.id, status=DeliveryStatus.FAILED)["meta"]["count"], 0)
        self.assertEqual(self._deliveries(created.id, status=DeliveryStatus.SUCCESS)["meta"]["count"], 2)

    def test_deleted_webhook_keeps_its_delivery_history(self) -> None:
        created = self._create()
        self._approve(created.id)
        send_test_webhook(created.id, db=self.db, caller=self.owner, scheduler=self.scheduler, clock=self.clock)

        result = delete_webhook(created.id, db=self.db, caller=self.owner, clock=self.clock)
        self.assertEqual(result, {"deleted": True, "id": str(created.id)})
        with self.assertRaises(NotFoundError):
            get_webhook(created.id, db=self.db, caller=self.owner, clock=self.clock)
        listed = self._deliveries(created.id)
        self.assertEqual(listed["meta"]["count"], 1)

    def test_event_intake_fans_out(self) -> None:
        first = self._create(event_types=[EventType.SUBMISSION_CREATED])
        second = self._create(event_types=[EventType.SUBMISSION_CREATED, EventType.FORM_PUBLISHED])
        self._approve(first.id)
        self._approve(second.id)

        result = publish_event(
            payload=DomainEventIn(
                event_type=EventType.SUBMISSION_CREATED,
                form_id="form-1",
                form_title="Contact us",
                submission={"id": "sub-9", "created_at": BASE_TIME, "data": {"name": "Ada"}},
            ),
            db=self.db,
            scheduler=self.scheduler,
            clock=self.clock,
        )
        self.assertEqual(len(result.delivery_ids), 2)
        self.assertEqual(len(self.sender.calls), 2)

        published = publish_event(
            payload=DomainEventIn(event_type=EventType.FORM_PUBLISHED, form_id="form-1"),
            db=self.db,
            scheduler=self.scheduler,
            clock=self.clock,
        )
        self.assertEqual(len(published.delivery_ids), 1)

    def test_sweep_route(self) -> None:
        self.assertEqual(sweep_deliveries(scheduler=None).model_dump(), {"reclaimed": 0, "submitted": 0})
        self.assertEqual(sweep_deliveries(scheduler=self.scheduler).model_dump(), {"reclaimed": 0, "submitted": 0})


class CallerAuthTests(unittest.TestCase):
    def test_client_identity_comes_from_account_header(self) -> None:
        caller = require_caller(admin_key=None, actor_id=None, account_id=" acct-9 ")
        self.assertEqual(caller, Caller(actor_id="acct-9", role=CallerRole.CLIENT))

    def test_missing_identity_is_rejected(self) -> None:
        with self.assertRaises(AuthMissingError):
            require_caller(admin_key=None, actor_id=None, account_id="  ")

    def test_wrong_admin_key_is_rejected_even_with_account(self) -> None:
        with self.assertRaises(AuthError):
            require_caller(admin_key="nope", actor_id=None, account_id="acct-1")
        with self.assertRaises(AuthError):
            require_admin(admin_key="nope", actor_id=None)

    def test_admin_key_names_actor(self) -> None:
        key = get_settings().admin_api_key
        self.assertEqual(require_admin(admin_key=key, actor_id="ops-7").actor_id, "ops-7")
        self.assertTrue(require_caller(admin_key=key, actor_id=None, account_id="acct-1").is_admin)

    def test_admin_and_event_routes_require_admin_key(self) -> None:
        for router in (admin_router, events_router):
            for route in router.routes:
                if not isinstance(route, APIRoute):
                    continue
                dependencies = [d.dependency for d in route.dependencies]
                self.assertIn(require_admin, dependencies, msg=f"missing require_admin for route {route.path}")


class ErrorEnvelopeTests(unittest.TestCase):
    def _render(self, exc):
        from main import engine_exception_handler

        response = asyncio.run(engine_exception_handler(make_request("/webhooks/x"), exc))
        return response.status_code, json.loads(response.body)

    def test_engine_errors_render_stable_codes(self) -> None:
        status, body = self._render(LockedError("Webhook is locked by an administrator"))
        self.assertEqual(status, 423)
        self.assertEqual(body["error"]["code"], "WEBHOOK_LOCKED")
        self.assertEqual(body["error"]["message"], "Webhook is locked by an administrator")

        status, body = self._render(NotEligibleError(IneligibilityReason.ADMIN_DEACTIVATED))
        self.assertEqual(status, 409)
        self.assertEqual(body["error"]["code"], "WEBHOOK_NOT_ELIGIBLE")
        self.assertEqual(body["error"]["message"], "Webhook has been deactivated by administrator")

    def test_health_routes(self) -> None:
        self.assertEqual(health(), {"status": "ok"})
        self.assertIn("version_hash", version())
        self.assertIn("counters", metrics())


if __name__ == "__main__":
    unittest.main()
