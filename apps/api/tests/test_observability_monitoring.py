import json
import socket
import ssl
import types
import unittest
import urllib.error
from unittest.mock import patch

from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.requests import Request

from core.failure_modes import FailureClass, classify_failure, failure_policy
from core.logging_utils import log_structured
from core.observability import COUNTERS, METRIC_DELIVERY_FAILED, increment_metric
from routers.health import ready


class _Connection:
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return None

    def execute(self, _query):
        return 1


class ObservabilityMonitoringTests(unittest.TestCase):
    def setUp(self) -> None:
        COUNTERS.reset()

    def _request(self, app) -> Request:
        scope = {
            "type": "http",
            "method": "GET",
            "path": "/ready",
            "headers": [],
            "app": app,
        }
        return Request(scope)

    def _app(self, scheduler=object()):
        return types.SimpleNamespace(
            state=types.SimpleNamespace(delivery_scheduler=scheduler, webhook_worker_task=None)
        )

    def test_readiness_fails_when_db_unavailable(self) -> None:
        with patch("routers.health.engine.connect", side_effect=RuntimeError("db down")):
            resp = ready(self._request(self._app()))
        self.assertEqual(resp.status_code, 503)
        body = json.loads(resp.body.decode("utf-8"))
        self.assertEqual(body["status"], "not_ready")
        self.assertEqual(body["checks"]["db"], "failed")

    def test_readiness_fails_on_migration_mismatch(self) -> None:
        with patch("routers.health.engine.connect", return_value=_Connection()):
            with patch("routers.health.settings.expected_alembic_head", "abc123"):
                with patch("routers.health._current_alembic_heads", return_value="def456"):
                    resp = ready(self._request(self._app()))
        self.assertEqual(resp.status_code, 503)
        body = json.loads(resp.body.decode("utf-8"))
        self.assertEqual(body["checks"]["migration_head"], "failed")

    def test_readiness_requires_delivery_scheduler(self) -> None:
        with patch("routers.health.engine.connect", return_value=_Connection()):
            with patch("routers.health.settings.expected_alembic_head", ""):
                resp = ready(self._request(self._app(scheduler=None)))
                self.assertEqual(resp.status_code, 503)
                healthy = ready(self._request(self._app()))
        self.assertEqual(healthy["status"], "ready")
        self.assertEqual(healthy["checks"]["delivery_scheduler"], "ok")

    def test_secrets_never_appear_in_logs(self) -> None:
        with self.assertLogs("formatic.webhooks", level="INFO") as capture:
            log_structured(
                "security.test",
                request_id="req-1",
                reason="Authorization: Bearer tok-live-123",
                failure_class="whsec_abcdefgh",
                ignored_field="should_not_log",
            )
        joined = "\n".join(capture.output)
        self.assertNotIn("tok-live-123", joined)
        self.assertNotIn("whsec_abcdefgh", joined)
        self.assertNotIn("ignored_field", joined)
        self.assertIn("request_id=req-1", joined)

    def test_metric_increments_are_counted_and_logged(self) -> None:
        with self.assertLogs("formatic.webhooks", level="INFO") as capture:
            increment_metric(METRIC_DELIVERY_FAILED, reason="delivery.http_status")
            increment_metric(METRIC_DELIVERY_FAILED)
        self.assertEqual(COUNTERS.value(METRIC_DELIVERY_FAILED), 2)
        self.assertIn("metric=delivery.failed", capture.output[0])
        with self.assertRaises(ValueError):
            COUNTERS.increment(METRIC_DELIVERY_FAILED, -1)


class FailureClassificationTests(unittest.TestCase):
    def test_transport_failures(self) -> None:
        self.assertEqual(classify_failure(TimeoutError()), FailureClass.TIMEOUT)
        self.assertEqual(classify_failure(socket.timeout("timed out")), FailureClass.TIMEOUT)
        self.assertEqual(classify_failure(urllib.error.URLError(TimeoutError("timed out"))), FailureClass.TIMEOUT)
        self.assertEqual(classify_failure(ssl.SSLError("bad handshake")), FailureClass.TLS)
        self.assertEqual(classify_failure(ConnectionResetError()), FailureClass.CONNECTION)
        self.assertEqual(classify_failure(urllib.error.URLError("Name or service not known")), FailureClass.CONNECTION)
        self.assertEqual(classify_failure(RuntimeError("boom")), FailureClass.UNEXPECTED_EXCEPTION)

    def test_database_failures_map_to_http_status(self) -> None:
        unavailable = OperationalError("SELECT 1", {}, Exception("connection refused"))
        conflict = IntegrityError("INSERT", {}, Exception("duplicate key"))
        self.assertEqual(failure_policy(unavailable).http_status, 503)
        self.assertEqual(failure_policy(conflict).http_status, 409)
        self.assertEqual(failure_policy(RuntimeError("boom")).http_status, 500)


if __name__ == "__main__":
    unittest.main()
