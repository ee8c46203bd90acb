from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    AUTH_MISSING = "AUTH_MISSING"
    AUTH_INVALID = "AUTH_INVALID"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    FORBIDDEN = "FORBIDDEN"
    WEBHOOK_LOCKED = "WEBHOOK_LOCKED"
    FORBIDDEN_TRANSITION = "FORBIDDEN_TRANSITION"
    WEBHOOK_NOT_ELIGIBLE = "WEBHOOK_NOT_ELIGIBLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


def success(data: Any) -> dict[str, Any]:
    return {"data": data}


def paginated(data: list[Any], *, limit: int, offset: int, count: int) -> dict[str, Any]:
    return {
        "data": data,
        "meta": {
            "limit": limit,
            "offset": offset,
            "count": count,
        },
    }


def error_body(code: ErrorCode, message: str, request_id: str) -> dict[str, Any]:
    return {
        "error": {
            "code": str(code),
            "message": message,
            "request_id": request_id,
        }
    }
