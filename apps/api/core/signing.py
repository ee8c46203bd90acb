"""Payload canonicalization and HMAC signing.

The body a receiver gets is exactly ``canonical_json_bytes(payload)``; the
signature header is ``sha256=<hex hmac>`` over those bytes, so any receiver
holding the secret can recompute it.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

SIGNATURE_PREFIX = "sha256="


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def canonical_json_bytes(value: Any) -> bytes:
    return canonical_json(value).encode("utf-8")


def sign(secret: str, canonical_payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), canonical_payload, hashlib.sha256).hexdigest()


def signature_header(secret: str, canonical_payload: bytes) -> str:
    return f"{SIGNATURE_PREFIX}{sign(secret, canonical_payload)}"


def verify_signature(secret: str, canonical_payload: bytes, header_value: str | None) -> bool:
    if not secret or not header_value:
        return False
    expected = signature_header(secret, canonical_payload)
    return hmac.compare_digest(expected, header_value.strip())
