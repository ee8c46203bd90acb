"""Webhook registrations and their approval state machine.

State is never stored; it is derived from ``active``, ``admin_approval`` and
``deactivated_by_id`` (see ``WebhookRegistration.state``). Clients may change
``active`` on unlocked registrations; admins may do anything.
"""
from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import ColumnElement, and_, func, select
from sqlalchemy.orm import Session

from core.auth import Caller
from core.clock import SYSTEM_CLOCK, Clock
from core.config import get_settings
from core.errors import ForbiddenTransitionError, LockedError, NotFoundError, WebhookValidationError
from core.logging_utils import log_structured
from core.webhooks import (
    RESERVED_HEADERS,
    derive_webhook_secret,
    hash_webhook_secret,
    validate_webhook_url,
)
from models.webhook import AdminApproval, AuthMode, FieldFilterMode, WebhookRegistration, WebhookState
from schemas.webhook import WebhookCreate, WebhookPatch


def state_clause(state: WebhookState) -> ColumnElement[bool]:
    """SQL predicate selecting registrations currently in ``state``."""
    not_deactivated = WebhookRegistration.deactivated_by_id.is_(None)
    if state == WebhookState.ADMIN_DEACTIVATED:
        return WebhookRegistration.deactivated_by_id.is_not(None)
    if state == WebhookState.REJECTED:
        return and_(not_deactivated, WebhookRegistration.admin_approval == AdminApproval.REJECTED)
    if state == WebhookState.PENDING_APPROVAL:
        return and_(not_deactivated, WebhookRegistration.admin_approval == AdminApproval.PENDING)
    approved = and_(not_deactivated, WebhookRegistration.admin_approval == AdminApproval.APPROVED)
    if state == WebhookState.INACTIVE:
        return and_(approved, WebhookRegistration.active.is_(False))
    return and_(approved, WebhookRegistration.active.is_(True))


def eligible_clause() -> ColumnElement[bool]:
    return state_clause(WebhookState.ACTIVE)


def _resolve_field_filter(
    include_fields: list[str] | None,
    exclude_fields: list[str] | None,
) -> tuple[FieldFilterMode | None, list[str] | None]:
    if include_fields and exclude_fields:
        raise WebhookValidationError("include_fields and exclude_fields are mutually exclusive")
    if include_fields:
        return FieldFilterMode.INCLUDE, list(dict.fromkeys(include_fields))
    if exclude_fields:
        return FieldFilterMode.EXCLUDE, list(dict.fromkeys(exclude_fields))
    return None, None


def _validate_event_types(event_types: list[Any] | None) -> list[str]:
    if not event_types:
        raise WebhookValidationError("At least one event type is required")
    return [event_type.value for event_type in dict.fromkeys(event_types)]


def _validate_custom_headers(headers: dict[str, str] | None) -> dict[str, str] | None:
    if not headers:
        return None
    reserved = sorted(name for name in headers if name.lower() in RESERVED_HEADERS)
    if reserved:
        raise WebhookValidationError(f"Custom headers may not override: {', '.join(reserved)}")
    return dict(headers)


def _validate_retry_policy(max_attempts: int, retry_interval_seconds: int) -> None:
    settings = get_settings()
    if not 1 <= max_attempts <= settings.webhook_max_attempts_ceiling:
        raise WebhookValidationError(
            f"max_attempts must be between 1 and {settings.webhook_max_attempts_ceiling}"
        )
    if retry_interval_seconds < settings.webhook_min_retry_interval_seconds:
        raise WebhookValidationError(
            f"retry_interval_seconds must be at least {settings.webhook_min_retry_interval_seconds}"
        )


def _validate_auth(auth_mode: AuthMode, auth_value: str | None) -> None:
    if auth_mode == AuthMode.NONE:
        return
    if not auth_value:
        raise WebhookValidationError(f"auth_value is required for auth_mode {auth_mode.value}")
    if auth_mode == AuthMode.BASIC and ":" not in auth_value:
        raise WebhookValidationError("BASIC auth_value must be formatted as username:password")


class WebhookRegistry:
    def __init__(self, db: Session, clock: Clock = SYSTEM_CLOCK) -> None:
        self._db = db
        self._clock = clock

    def create(
        self,
        form_id: str,
        payload: WebhookCreate,
        caller: Caller,
        account_id: str | None = None,
    ) -> tuple[WebhookRegistration, str]:
        """Register a webhook; returns it with its plaintext secret, shown only once."""
        settings = get_settings()
        max_attempts = payload.max_attempts or settings.webhook_default_max_attempts
        retry_interval = payload.retry_interval_seconds or settings.webhook_default_retry_interval_seconds
        _validate_retry_policy(max_attempts, retry_interval)
        _validate_auth(payload.auth_mode, payload.auth_value)
        filter_mode, filter_keys = _resolve_field_filter(payload.include_fields, payload.exclude_fields)

        owner = caller.actor_id if not caller.is_admin else (account_id or caller.actor_id)
        webhook_id = uuid.uuid4()
        secret = derive_webhook_secret(webhook_id)
        now = self._clock.now()
        webhook = WebhookRegistration(
            id=webhook_id,
            form_id=form_id,
            account_id=owner,
            name=payload.name.strip(),
            url=validate_webhook_url(str(payload.url)),
            event_types=_validate_event_types(payload.event_types),
            secret_hash=hash_webhook_secret(secret),
            auth_mode=payload.auth_mode,
            auth_value=payload.auth_value if payload.auth_mode != AuthMode.NONE else None,
            api_key_header=payload.api_key_header,
            custom_headers=_validate_custom_headers(payload.custom_headers),
            verification_token=payload.verification_token,
            field_filter_mode=filter_mode,
            field_filter_keys=filter_keys,
            filter_conditions=payload.filter_conditions.model_dump() if payload.filter_conditions else None,
            max_attempts=max_attempts,
            retry_interval_seconds=retry_interval,
            daily_limit=payload.daily_limit,
            daily_usage=0,
            active=True,
            admin_approval=AdminApproval.PENDING,
            admin_locked=False,
            created_at=now,
            updated_at=now,
        )
        self._db.add(webhook)
        self._db.commit()
        self._db.refresh(webhook)
        log_structured(
            "webhook.created",
            webhook_id=webhook.id,
            form_id=form_id,
            account_id=owner,
            actor=caller.actor_id,
            state=webhook.state.value,
        )
        return webhook, secret

    def get(
        self,
        webhook_id: uuid.UUID,
        caller: Caller | None = None,
        *,
        include_deleted: bool = False,
    ) -> WebhookRegistration:
        webhook = self._db.get(WebhookRegistration, webhook_id)
        if webhook is None or (webhook.deleted_at is not None and not include_deleted):
            raise NotFoundError("Webhook not found")
        # Other accounts' registrations are indistinguishable from missing ones.
        if caller is not None and not caller.is_admin and webhook.account_id != caller.actor_id:
            raise NotFoundError("Webhook not found")
        return webhook

    def list_for_form(
        self,
        form_id: str,
        caller: Caller,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookRegistration], int]:
        conditions = [WebhookRegistration.form_id == form_id, WebhookRegistration.deleted_at.is_(None)]
        if not caller.is_admin:
            conditions.append(WebhookRegistration.account_id == caller.actor_id)
        return self._page(conditions, limit=limit, offset=offset)

    def list_all(
        self,
        state: WebhookState | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookRegistration], int]:
        conditions = [WebhookRegistration.deleted_at.is_(None)]
        if state is not None:
            conditions.append(state_clause(state))
        return self._page(conditions, limit=limit, offset=offset)

    def list_pending(self, *, limit: int = 50, offset: int = 0) -> tuple[list[WebhookRegistration], int]:
        return self.list_all(WebhookState.PENDING_APPROVAL, limit=limit, offset=offset)

    def _page(self, conditions: list, *, limit: int, offset: int) -> tuple[list[WebhookRegistration], int]:
        total = self._db.scalar(select(func.count()).select_from(WebhookRegistration).where(*conditions)) or 0
        items = list(
            self._db.scalars(
                select(WebhookRegistration)
                .where(*conditions)
                .order_by(WebhookRegistration.created_at.desc(), WebhookRegistration.id.asc())
                .limit(limit)
                .offset(offset)
            ).all()
        )
        return items, int(total)

    def update(self, webhook_id: uuid.UUID, patch: WebhookPatch, caller: Caller) -> WebhookRegistration:
        webhook = self.get(webhook_id, caller)
        changes = patch.model_dump(exclude_unset=True)
        self._check_client_mutable(webhook, caller)

        if "active" in changes and changes["active"] is not None:
            self._set_active(webhook, bool(changes.pop("active")), caller)
        else:
            changes.pop("active", None)

        if "name" in changes:
            if not changes["name"] or not changes["name"].strip():
                raise WebhookValidationError("name must not be empty")
            webhook.name = changes["name"].strip()
        if "url" in changes:
            if changes["url"] is None:
                raise WebhookValidationError("url is required")
            webhook.url = validate_webhook_url(str(patch.url))
        if "event_types" in changes:
            webhook.event_types = _validate_event_types(patch.event_types)
        if "custom_headers" in changes:
            webhook.custom_headers = _validate_custom_headers(patch.custom_headers)
        if "verification_token" in changes:
            webhook.verification_token = patch.verification_token
        if "api_key_header" in changes:
            webhook.api_key_header = patch.api_key_header
        if "filter_conditions" in changes:
            webhook.filter_conditions = patch.filter_conditions.model_dump() if patch.filter_conditions else None
        if "daily_limit" in changes:
            webhook.daily_limit = patch.daily_limit

        if "auth_mode" in changes or "auth_value" in changes:
            auth_mode = patch.auth_mode if patch.auth_mode is not None else webhook.auth_mode
            auth_value = changes["auth_value"] if "auth_value" in changes else webhook.auth_value
            _validate_auth(auth_mode, auth_value)
            webhook.auth_mode = auth_mode
            webhook.auth_value = auth_value if auth_mode != AuthMode.NONE else None

        if "include_fields" in changes or "exclude_fields" in changes:
            include = changes.get("include_fields")
            exclude = changes.get("exclude_fields")
            if "include_fields" not in changes and webhook.field_filter_mode == FieldFilterMode.INCLUDE:
                include = webhook.field_filter_keys
            if "exclude_fields" not in changes and webhook.field_filter_mode == FieldFilterMode.EXCLUDE:
                exclude = webhook.field_filter_keys
            webhook.field_filter_mode, webhook.field_filter_keys = _resolve_field_filter(include, exclude)

        if "max_attempts" in changes or "retry_interval_seconds" in changes:
            max_attempts = patch.max_attempts or webhook.max_attempts
            retry_interval = patch.retry_interval_seconds or webhook.retry_interval_seconds
            _validate_retry_policy(max_attempts, retry_interval)
            webhook.max_attempts = max_attempts
            webhook.retry_interval_seconds = retry_interval

        return self._save(webhook, "webhook.updated", caller.actor_id)

    def _check_client_mutable(self, webhook: WebhookRegistration, caller: Caller) -> None:
        if caller.is_admin:
            return
        if webhook.admin_locked:
            raise LockedError("Webhook is locked by an administrator")
        if webhook.admin_approval == AdminApproval.REJECTED:
            raise ForbiddenTransitionError("Rejected webhooks can only be changed by an administrator")

    def _set_active(self, webhook: WebhookRegistration, active: bool, caller: Caller) -> None:
        if caller.is_admin:
            webhook.active = active
            webhook.deactivated_by_id = None if active else caller.actor_id
            return
        if active and webhook.deactivated_by_id is not None:
            raise ForbiddenTransitionError("Webhook was deactivated by an administrator and cannot be reactivated")
        webhook.active = active

    def approve(self, webhook_id: uuid.UUID, admin_id: str) -> WebhookRegistration:
        webhook = self.get(webhook_id)
        webhook.admin_approval = AdminApproval.APPROVED
        webhook.reviewed_by_id = admin_id
        return self._save(webhook, "webhook.approved", admin_id)

    def reject(self, webhook_id: uuid.UUID, admin_id: str) -> WebhookRegistration:
        webhook = self.get(webhook_id)
        webhook.admin_approval = AdminApproval.REJECTED
        webhook.reviewed_by_id = admin_id
        return self._save(webhook, "webhook.rejected", admin_id)

    def lock(self, webhook_id: uuid.UUID, admin_id: str) -> WebhookRegistration:
        webhook = self.get(webhook_id)
        webhook.admin_locked = True
        return self._save(webhook, "webhook.locked", admin_id)

    def unlock(self, webhook_id: uuid.UUID, admin_id: str) -> WebhookRegistration:
        webhook = self.get(webhook_id)
        webhook.admin_locked = False
        return self._save(webhook, "webhook.unlocked", admin_id)

    def deactivate(self, webhook_id: uuid.UUID, admin_id: str) -> WebhookRegistration:
        """Force-deactivate; only an admin can bring the webhook back."""
        webhook = self.get(webhook_id)
        webhook.active = False
        webhook.deactivated_by_id = admin_id
        return self._save(webhook, "webhook.admin_deactivated", admin_id)

    def deactivate_by_client(self, webhook_id: uuid.UUID, caller: Caller) -> WebhookRegistration:
        webhook = self.get(webhook_id, caller)
        self._check_client_mutable(webhook, caller)
        webhook.active = False
        return self._save(webhook, "webhook.deactivated", caller.actor_id)

    def activate(self, webhook_id: uuid.UUID, caller: Caller) -> WebhookRegistration:
        webhook = self.get(webhook_id, caller)
        self._check_client_mutable(webhook, caller)
        self._set_active(webhook, True, caller)
        return self._save(webhook, "webhook.activated", caller.actor_id)

    def set_admin_notes(self, webhook_id: uuid.UUID, admin_id: str, notes: str | None) -> WebhookRegistration:
        webhook = self.get(webhook_id)
        webhook.admin_notes = notes.strip() if notes and notes.strip() else None
        return self._save(webhook, "webhook.notes_updated", admin_id)

    def delete(self, webhook_id: uuid.UUID, caller: Caller) -> None:
        """Tombstone the registration; its deliveries stay readable."""
        webhook = self.get(webhook_id, caller)
        self._check_client_mutable(webhook, caller)
        webhook.active = False
        webhook.deleted_at = self._clock.now()
        self._save(webhook, "webhook.deleted", caller.actor_id)

    def _save(self, webhook: WebhookRegistration, event: str, actor: str) -> WebhookRegistration:
        webhook.updated_at = self._clock.now()
        self._db.commit()
        self._db.refresh(webhook)
        log_structured(event, webhook_id=webhook.id, actor=actor, state=webhook.state.value)
        return webhook
