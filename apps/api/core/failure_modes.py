from __future__ import annotations

import socket
import ssl
import urllib.error
from dataclasses import dataclass
from enum import StrEnum

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError


class FailureClass(StrEnum):
    HTTP_STATUS = "delivery.http_status"
    TIMEOUT = "delivery.timeout"
    TLS = "delivery.tls"
    CONNECTION = "delivery.connection"
    ELIGIBILITY_LOST = "delivery.eligibility_lost"
    SECRET_MISMATCH = "delivery.secret_mismatch"
    DB_UNAVAILABLE = "db.unavailable"
    DB_CONSTRAINT_VIOLATION = "db.constraint_violation"
    UNEXPECTED_EXCEPTION = "unexpected.exception"


@dataclass(frozen=True)
class FailurePolicy:
    failure_class: FailureClass
    http_status: int


def classify_failure(exc: BaseException) -> FailureClass:
    if isinstance(exc, IntegrityError):
        return FailureClass.DB_CONSTRAINT_VIOLATION
    if isinstance(exc, (OperationalError, DBAPIError)):
        return FailureClass.DB_UNAVAILABLE
    if isinstance(exc, urllib.error.URLError) and exc.reason is not None and isinstance(exc.reason, BaseException):
        # urlopen wraps socket level failures; classify the cause.
        return classify_failure(exc.reason)
    if isinstance(exc, (TimeoutError, socket.timeout)):
        return FailureClass.TIMEOUT
    if isinstance(exc, ssl.SSLError):
        return FailureClass.TLS
    if isinstance(exc, (ConnectionError, urllib.error.URLError, OSError)):
        return FailureClass.CONNECTION

    lowered = str(exc).lower()
    if "timed out" in lowered or "timeout" in lowered:
        return FailureClass.TIMEOUT
    if "ssl" in lowered or "certificate" in lowered:
        return FailureClass.TLS
    return FailureClass.UNEXPECTED_EXCEPTION


def failure_policy(exc: Exception) -> FailurePolicy:
    failure_class = classify_failure(exc)
    if failure_class == FailureClass.DB_UNAVAILABLE:
        return FailurePolicy(failure_class=failure_class, http_status=503)
    if failure_class == FailureClass.DB_CONSTRAINT_VIOLATION:
        return FailurePolicy(failure_class=failure_class, http_status=409)
    return FailurePolicy(failure_class=failure_class, http_status=500)
