import base64
import json
import unittest
import uuid
from datetime import datetime, timezone

from core.signing import canonical_json, canonical_json_bytes, sign, signature_header, verify_signature
from core.webhooks import (
    apply_field_filter,
    build_payload,
    build_webhook_headers,
    conditions_match,
    mask_secret,
)
from models.webhook import AuthMode, EventType, FieldFilterMode


class SigningTests(unittest.TestCase):
    def test_signature_is_deterministic_and_byte_sensitive(self) -> None:
        payload = canonical_json_bytes({"event": "SUBMISSION_CREATED", "form": {"id": "f1", "title": "Contact"}})
        first = sign("whsec_abc", payload)
        self.assertEqual(first, sign("whsec_abc", payload))
        self.assertEqual(len(first), 64)

        tampered = bytearray(payload)
        tampered[-2] = ord("X")
        self.assertNotEqual(first, sign("whsec_abc", bytes(tampered)))
        self.assertNotEqual(first, sign("whsec_abd", payload))

    def test_signature_header_round_trips_through_verify(self) -> None:
        body = canonical_json_bytes({"a": 1})
        header = signature_header("whsec_abc", body)
        self.assertTrue(header.startswith("sha256="))
        self.assertTrue(verify_signature("whsec_abc", body, header))
        self.assertFalse(verify_signature("whsec_abc", body + b" ", header))
        self.assertFalse(verify_signature("whsec_other", body, header))
        self.assertFalse(verify_signature("whsec_abc", body, None))

    def test_canonical_payload_key_order_is_stable(self) -> None:
        payload = build_payload(
            event_type=EventType.SUBMISSION_CREATED,
            form_id="form-1",
            form_title="Contact",
            submission={"id": "s1", "createdAt": "2026-03-02T09:00:00Z", "data": {"b": 2, "a": 1}},
            timestamp=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
        )
        text = canonical_json(payload)
        self.assertEqual(list(json.loads(text).keys()), ["event", "form", "submission", "timestamp"])
        self.assertIn('"data":{"a":1,"b":2}', text)
        self.assertIn('"timestamp":"2026-03-02T09:00:00Z"', text)
        self.assertEqual(text, canonical_json(json.loads(text)))

    def test_test_payload_is_flagged(self) -> None:
        payload = build_payload(
            event_type=EventType.SUBMISSION_CREATED,
            form_id="form-1",
            form_title=None,
            submission=None,
            timestamp=datetime(2026, 3, 2, tzinfo=timezone.utc),
            is_test=True,
        )
        self.assertTrue(payload["test"])


class OutboundHeaderTests(unittest.TestCase):
    def _headers(self, **kwargs) -> dict[str, str]:
        return build_webhook_headers(
            webhook_id=uuid.UUID(int=1),
            delivery_id=uuid.UUID(int=2),
            event_type=EventType.FORM_PUBLISHED,
            attempt=2,
            signature="sha256=abc",
            **kwargs,
        )

    def test_engine_headers_always_present(self) -> None:
        headers = self._headers()
        self.assertEqual(headers["Content-Type"], "application/json")
        self.assertEqual(headers["X-Webhook-Event"], "FORM_PUBLISHED")
        self.assertEqual(headers["X-Webhook-Delivery-Id"], str(uuid.UUID(int=2)))
        self.assertEqual(headers["X-Webhook-Signature"], "sha256=abc")
        self.assertEqual(headers["X-Webhook-Attempt"], "2")
        self.assertEqual(headers["User-Agent"], "Formatic-Webhook-Service")
        self.assertNotIn("Authorization", headers)

    def test_auth_modes(self) -> None:
        self.assertEqual(self._headers(auth_mode=AuthMode.BEARER, auth_value="tok")["Authorization"], "Bearer tok")
        basic = self._headers(auth_mode=AuthMode.BASIC, auth_value="user:pass")["Authorization"]
        self.assertEqual(basic, "Basic " + base64.b64encode(b"user:pass").decode("ascii"))
        self.assertEqual(self._headers(auth_mode=AuthMode.API_KEY, auth_value="k1")["X-API-Key"], "k1")
        custom = self._headers(auth_mode=AuthMode.API_KEY, auth_value="k1", api_key_header="X-Partner-Key")
        self.assertEqual(custom["X-Partner-Key"], "k1")

    def test_custom_headers_cannot_override_engine_headers(self) -> None:
        headers = self._headers(
            custom_headers={"X-Tenant": "t1", "x-webhook-signature": "forged"},
            verification_token="vt",
        )
        self.assertEqual(headers["X-Tenant"], "t1")
        self.assertEqual(headers["X-Webhook-Signature"], "sha256=abc")
        self.assertNotIn("x-webhook-signature", headers)
        self.assertEqual(headers["X-Webhook-Token"], "vt")


class PayloadShapingTests(unittest.TestCase):
    def test_field_filters(self) -> None:
        data = {"name": "Ada", "email": "ada@example.com", "age": 36}
        self.assertEqual(apply_field_filter(data, FieldFilterMode.EXCLUDE, ["email"]), {"name": "Ada", "age": 36})
        self.assertEqual(apply_field_filter(data, FieldFilterMode.INCLUDE, ["name", "missing"]), {"name": "Ada"})
        self.assertEqual(apply_field_filter(data, None, None), data)
        self.assertIsNone(apply_field_filter(None, FieldFilterMode.INCLUDE, ["name"]))

    def test_conditions(self) -> None:
        data = {"plan": "pro", "seats": "12", "note": "urgent request"}
        self.assertTrue(conditions_match(None, data))
        self.assertTrue(conditions_match({"logic": "AND", "rules": []}, data))
        all_rules = {
            "logic": "AND",
            "rules": [
                {"field": "plan", "operator": "equals", "value": "pro"},
                {"field": "seats", "operator": "greater_than", "value": 10},
                {"field": "note", "operator": "contains", "value": "urgent"},
            ],
        }
        self.assertTrue(conditions_match(all_rules, data))
        all_rules["rules"].append({"field": "seats", "operator": "less_than", "value": 5})
        self.assertFalse(conditions_match(all_rules, data))
        self.assertTrue(conditions_match({**all_rules, "logic": "OR"}, data))
        self.assertFalse(conditions_match({"rules": [{"field": "absent", "operator": "not_equals", "value": 1}]}, data))

    def test_mask_secret(self) -> None:
        self.assertEqual(mask_secret("whsec_abcdefgh1234"), "****1234")
        self.assertIsNone(mask_secret(None))


if __name__ == "__main__":
    unittest.main()
