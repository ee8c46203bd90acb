import base64
import hashlib
import hmac
import ipaddress
import time
import urllib.error
import urllib.parse
import urllib.request
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from core.clock import isoformat_z
from core.config import get_settings
from core.errors import WebhookValidationError
from models.webhook import AuthMode, EventType, FieldFilterMode

USER_AGENT = "Formatic-Webhook-Service"
DEFAULT_API_KEY_HEADER = "X-API-Key"
RESERVED_HEADERS = frozenset(
    {
        "authorization",
        "content-type",
        "user-agent",
        "x-webhook-attempt",
        "x-webhook-delivery-id",
        "x-webhook-event",
        "x-webhook-id",
        "x-webhook-signature",
        "x-webhook-token",
    }
)
CONDITION_OPERATORS = frozenset({"equals", "not_equals", "contains", "greater_than", "less_than"})


def validate_webhook_url(url: str) -> str:
    settings = get_settings()
    candidate = url.strip()
    parsed = urllib.parse.urlparse(candidate)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise WebhookValidationError("Invalid webhook URL")
    if settings.env == "prod" and parsed.scheme != "https":
        raise WebhookValidationError("Webhook URL must use https in prod")
    if not settings.webhook_allow_private_urls and _is_private_host(parsed.hostname):
        raise WebhookValidationError("Webhook URL must not target a private or loopback address")
    return candidate


def _is_private_host(hostname: str) -> bool:
    if hostname.lower() in {"localhost", "localhost.localdomain"}:
        return True
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_link_local or address.is_reserved


def derive_webhook_secret(webhook_id: uuid.UUID) -> str:
    digest = hmac.new(
        get_settings().webhook_signing_secret.encode("utf-8"),
        f"webhook:{webhook_id}".encode("utf-8"),
        hashlib.sha256,
    ).digest()
    token = base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")
    return f"whsec_{token}"


def hash_webhook_secret(secret: str) -> str:
    return hmac.new(
        get_settings().webhook_signing_secret.encode("utf-8"),
        f"webhook-secret:{secret}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def mask_secret(secret: str | None) -> str | None:
    if not secret:
        return None
    tail = secret[-4:] if len(secret) >= 8 else ""
    return f"****{tail}"


def apply_field_filter(
    data: dict[str, Any] | None,
    mode: FieldFilterMode | None,
    keys: list[str] | None,
) -> dict[str, Any] | None:
    if data is None:
        return None
    if mode is None or not keys:
        return dict(data)
    if mode == FieldFilterMode.INCLUDE:
        return {key: data[key] for key in keys if key in data}
    excluded = set(keys)
    return {key: value for key, value in data.items() if key not in excluded}


def _rule_matches(rule: dict[str, Any], data: dict[str, Any]) -> bool:
    field = rule.get("field")
    if field not in data:
        return False
    actual = data[field]
    expected = rule.get("value")
    operator = rule.get("operator")
    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "contains":
        return str(expected) in str(actual)
    if operator in {"greater_than", "less_than"}:
        try:
            left, right = float(actual), float(expected)
        except (TypeError, ValueError):
            return False
        return left > right if operator == "greater_than" else left < right
    return False


def conditions_match(conditions: dict[str, Any] | None, data: dict[str, Any] | None) -> bool:
    if not conditions or not conditions.get("rules"):
        return True
    data = data or {}
    results = [_rule_matches(rule, data) for rule in conditions["rules"]]
    if str(conditions.get("logic", "AND")).upper() == "OR":
        return any(results)
    return all(results)


def build_payload(
    *,
    event_type: EventType,
    form_id: str,
    form_title: str | None,
    submission: dict[str, Any] | None,
    timestamp: datetime,
    is_test: bool = False,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "event": event_type.value,
        "form": {"id": form_id, "title": form_title},
        "submission": submission,
        "timestamp": isoformat_z(timestamp),
    }
    if is_test:
        payload["test"] = True
    return payload


def build_auth_headers(auth_mode: AuthMode, auth_value: str | None, api_key_header: str | None) -> dict[str, str]:
    if auth_mode == AuthMode.BEARER:
        return {"Authorization": f"Bearer {auth_value or ''}"}
    if auth_mode == AuthMode.BASIC:
        encoded = base64.b64encode((auth_value or "").encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {encoded}"}
    if auth_mode == AuthMode.API_KEY:
        return {api_key_header or DEFAULT_API_KEY_HEADER: auth_value or ""}
    return {}


def build_webhook_headers(
    *,
    webhook_id: uuid.UUID,
    delivery_id: uuid.UUID,
    event_type: EventType,
    attempt: int,
    signature: str,
    auth_mode: AuthMode = AuthMode.NONE,
    auth_value: str | None = None,
    api_key_header: str | None = None,
    custom_headers: dict[str, str] | None = None,
    verification_token: str | None = None,
) -> dict[str, str]:
    headers = {
        name: value
        for name, value in (custom_headers or {}).items()
        if name.lower() not in RESERVED_HEADERS
    }
    headers.update(build_auth_headers(auth_mode, auth_value, api_key_header))
    headers.update(
        {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Id": str(webhook_id),
            "X-Webhook-Event": event_type.value,
            "X-Webhook-Delivery-Id": str(delivery_id),
            "X-Webhook-Attempt": str(attempt),
            "X-Webhook-Signature": signature,
        }
    )
    if verification_token:
        headers["X-Webhook-Token"] = verification_token
    return headers


@dataclass(frozen=True)
class HttpResult:
    status_code: int
    body: str


RESPONSE_READ_CHUNK = 1024


def _read_before(stream, read_limit: int, deadline: float) -> bytes:
    # The socket timeout bounds each read, not the whole body; a slow trickle
    # is cut off once the overall deadline passes.
    read = getattr(stream, "read1", stream.read)
    chunks: list[bytes] = []
    remaining = read_limit + 1
    while remaining > 0:
        if time.monotonic() > deadline:
            raise TimeoutError("response body not received within the request timeout")
        chunk = read(min(RESPONSE_READ_CHUNK, remaining))
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def send_webhook_http(url: str, body: bytes, headers: dict[str, str], timeout: float, read_limit: int) -> HttpResult:
    """POST ``body`` and return the status with at most ``read_limit`` characters of response body.

    Non-2xx responses are returned, not raised; transport failures propagate.
    A response whose body is still arriving after ``timeout`` seconds fails
    with ``TimeoutError``.
    """
    deadline = time.monotonic() + timeout
    request = urllib.request.Request(url=url, data=body, method="POST", headers=headers)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:  # noqa: S310
            raw = _read_before(response, read_limit, deadline)
            return HttpResult(status_code=int(response.status), body=raw.decode("utf-8", errors="replace"))
    except urllib.error.HTTPError as exc:
        raw = _read_before(exc, read_limit, deadline) if exc.fp is not None else b""
        return HttpResult(status_code=int(exc.code), body=raw.decode("utf-8", errors="replace"))
