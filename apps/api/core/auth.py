"""Caller identity.

Sessions and users live in the auth subsystem; it forwards the authenticated
account in ``X-Account-Id``. Admins authenticate with the admin API key and
name themselves in ``X-Actor-Id``.
"""
import enum
import hmac
from dataclasses import dataclass

from fastapi import Header, Security
from fastapi.security import APIKeyHeader

from core.config import get_settings
from core.errors import AuthError, AuthMissingError


admin_key_header = APIKeyHeader(name="X-Admin-Api-Key", auto_error=False)


class CallerRole(str, enum.Enum):
    ADMIN = "admin"
    CLIENT = "client"


@dataclass(frozen=True)
class Caller:
    actor_id: str
    role: CallerRole

    @property
    def is_admin(self) -> bool:
        return self.role == CallerRole.ADMIN

    @classmethod
    def admin(cls, actor_id: str = "admin") -> "Caller":
        return cls(actor_id=actor_id, role=CallerRole.ADMIN)

    @classmethod
    def client(cls, account_id: str) -> "Caller":
        return cls(actor_id=account_id, role=CallerRole.CLIENT)


def is_admin_key(admin_key: str | None) -> bool:
    if not admin_key:
        return False
    return hmac.compare_digest(admin_key, get_settings().admin_api_key)


def _admin_actor(actor_id: str | None) -> Caller:
    return Caller.admin((actor_id or "").strip() or "admin")


def require_admin(
    admin_key: str | None = Security(admin_key_header),
    actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
) -> Caller:
    if not is_admin_key(admin_key):
        raise AuthError("Invalid admin credentials")
    return _admin_actor(actor_id)


def require_caller(
    admin_key: str | None = Security(admin_key_header),
    actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    account_id: str | None = Header(default=None, alias="X-Account-Id"),
) -> Caller:
    if admin_key:
        if not is_admin_key(admin_key):
            raise AuthError("Invalid admin credentials")
        return _admin_actor(actor_id)
    if account_id and account_id.strip():
        return Caller.client(account_id.strip())
    raise AuthMissingError("Missing caller identity")
