"""Domain errors raised by the registry, dispatcher and ledger.

Each error carries the HTTP status and error code the API layer renders; the
engine itself never catches these.
"""
from __future__ import annotations

import enum

from core.contracts import ErrorCode


class WebhookEngineError(Exception):
    status_code = 500
    code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthError(WebhookEngineError):
    status_code = 401
    code = ErrorCode.AUTH_INVALID


class AuthMissingError(AuthError):
    code = ErrorCode.AUTH_MISSING


class PermissionDeniedError(WebhookEngineError):
    status_code = 403
    code = ErrorCode.FORBIDDEN


class NotFoundError(WebhookEngineError):
    status_code = 404
    code = ErrorCode.NOT_FOUND


class WebhookValidationError(WebhookEngineError):
    """Raised synchronously for bad registration input; never reaches the scheduler."""

    status_code = 422
    code = ErrorCode.VALIDATION_ERROR


class LockedError(WebhookEngineError):
    """Raised when a client mutates a registration an admin has locked."""

    status_code = 423
    code = ErrorCode.WEBHOOK_LOCKED


class ForbiddenTransitionError(WebhookEngineError):
    """Raised when a client changes a rejected registration or reactivates an admin-deactivated one."""

    status_code = 409
    code = ErrorCode.FORBIDDEN_TRANSITION


class IneligibilityReason(str, enum.Enum):
    PENDING_APPROVAL = "pending_approval"
    REJECTED = "rejected"
    INACTIVE = "inactive"
    ADMIN_DEACTIVATED = "admin_deactivated"


INELIGIBILITY_MESSAGES = {
    IneligibilityReason.PENDING_APPROVAL: "Webhook is pending administrator approval",
    IneligibilityReason.REJECTED: "Webhook has been rejected by administrator",
    IneligibilityReason.INACTIVE: "Webhook is currently inactive",
    IneligibilityReason.ADMIN_DEACTIVATED: "Webhook has been deactivated by administrator",
}


class NotEligibleError(WebhookEngineError):
    status_code = 409
    code = ErrorCode.WEBHOOK_NOT_ELIGIBLE

    def __init__(self, reason: IneligibilityReason) -> None:
        super().__init__(INELIGIBILITY_MESSAGES[reason])
        self.reason = reason
