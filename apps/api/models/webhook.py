import enum
import uuid
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
    inspect,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base
from core.errors import IneligibilityReason


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=lambda x: [e.value for e in x],
    )


class EventType(str, enum.Enum):
    SUBMISSION_CREATED = "SUBMISSION_CREATED"
    SUBMISSION_UPDATED = "SUBMISSION_UPDATED"
    FORM_PUBLISHED = "FORM_PUBLISHED"
    FORM_UNPUBLISHED = "FORM_UNPUBLISHED"


class AuthMode(str, enum.Enum):
    NONE = "NONE"
    BASIC = "BASIC"
    BEARER = "BEARER"
    API_KEY = "API_KEY"


class AdminApproval(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @classmethod
    def from_wire(cls, value: bool | None) -> "AdminApproval":
        if value is None:
            return cls.PENDING
        return cls.APPROVED if value else cls.REJECTED

    def to_wire(self) -> bool | None:
        if self is AdminApproval.PENDING:
            return None
        return self is AdminApproval.APPROVED


class FieldFilterMode(str, enum.Enum):
    INCLUDE = "include"
    EXCLUDE = "exclude"


class WebhookState(str, enum.Enum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    ACTIVE = "ACTIVE"
    REJECTED = "REJECTED"
    INACTIVE = "INACTIVE"
    ADMIN_DEACTIVATED = "ADMIN_DEACTIVATED"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    IN_FLIGHT = "in_flight"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_DELIVERY_STATUSES = frozenset({DeliveryStatus.SUCCESS, DeliveryStatus.FAILED})
CLAIMABLE_DELIVERY_STATUSES = (DeliveryStatus.PENDING, DeliveryStatus.SCHEDULED)


class WebhookRegistration(Base):
    __tablename__ = "webhooks"
    __table_args__ = (Index("ix_webhooks_form_id_deleted_at", "form_id", "deleted_at"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    form_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    event_types: Mapped[list] = mapped_column(JSON, nullable=False)
    secret_hash: Mapped[str] = mapped_column(String(128), nullable=False)

    auth_mode: Mapped[AuthMode] = mapped_column(
        _enum_column(AuthMode, "webhookauthmode"),
        nullable=False,
        default=AuthMode.NONE,
        server_default=AuthMode.NONE.value,
    )
    auth_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    api_key_header: Mapped[str | None] = mapped_column(String(128), nullable=True)
    custom_headers: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    verification_token: Mapped[str | None] = mapped_column(String(256), nullable=True)

    field_filter_mode: Mapped[FieldFilterMode | None] = mapped_column(
        _enum_column(FieldFilterMode, "webhookfieldfiltermode"),
        nullable=True,
    )
    field_filter_keys: Mapped[list | None] = mapped_column(JSON, nullable=True)
    filter_conditions: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3, server_default="3")
    retry_interval_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=60, server_default="60")
    daily_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    daily_usage: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    daily_reset_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    admin_approval: Mapped[AdminApproval] = mapped_column(
        _enum_column(AdminApproval, "webhookadminapproval"),
        nullable=False,
        default=AdminApproval.PENDING,
        server_default=AdminApproval.PENDING.value,
    )
    admin_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    deactivated_by_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reviewed_by_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def state(self) -> WebhookState:
        if self.deactivated_by_id is not None:
            return WebhookState.ADMIN_DEACTIVATED
        if self.admin_approval == AdminApproval.REJECTED:
            return WebhookState.REJECTED
        if self.admin_approval == AdminApproval.PENDING:
            return WebhookState.PENDING_APPROVAL
        if not self.active:
            return WebhookState.INACTIVE
        return WebhookState.ACTIVE

    @property
    def ineligibility_reason(self) -> IneligibilityReason | None:
        return _INELIGIBILITY_BY_STATE[self.state]

    @property
    def is_eligible(self) -> bool:
        return self.state == WebhookState.ACTIVE


_INELIGIBILITY_BY_STATE: dict[WebhookState, IneligibilityReason | None] = {
    WebhookState.ACTIVE: None,
    WebhookState.PENDING_APPROVAL: IneligibilityReason.PENDING_APPROVAL,
    WebhookState.REJECTED: IneligibilityReason.REJECTED,
    WebhookState.INACTIVE: IneligibilityReason.INACTIVE,
    WebhookState.ADMIN_DEACTIVATED: IneligibilityReason.ADMIN_DEACTIVATED,
}


class WebhookDelivery(Base):
    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        Index("ix_webhook_deliveries_status_next_attempt", "status", "next_attempt_at"),
        Index("ix_webhook_deliveries_webhook_id_created_at", "webhook_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # Soft reference: registrations are tombstoned, never removed from under their deliveries.
    webhook_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    event_type: Mapped[EventType] = mapped_column(_enum_column(EventType, "webhookeventtype"), nullable=False)
    submission_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_test: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    redelivery_of: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)

    status: Mapped[DeliveryStatus] = mapped_column(
        _enum_column(DeliveryStatus, "webhookdeliverystatus"),
        nullable=False,
        default=DeliveryStatus.PENDING,
        server_default=DeliveryStatus.PENDING.value,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    request_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    response_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    request_body: Mapped[str] = mapped_column(Text, nullable=False)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_class: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DELIVERY_STATUSES


class WebhookDeliveryAttempt(Base):
    __tablename__ = "webhook_delivery_attempts"
    __table_args__ = (
        UniqueConstraint("delivery_id", "attempt_number", name="uq_webhook_delivery_attempts_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    delivery_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    webhook_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    request_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    response_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_class: Mapped[str | None] = mapped_column(String(64), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class WebhookDailyCounter(Base):
    __tablename__ = "webhook_daily_counters"
    __table_args__ = (
        UniqueConstraint("webhook_id", "day", "status", name="uq_webhook_daily_counters_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    webhook_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(
        _enum_column(DeliveryStatus, "webhookdeliverystatus"),
        nullable=False,
    )
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")


@event.listens_for(WebhookDeliveryAttempt, "before_update", propagate=True)
def _prevent_attempt_update(_mapper, _connection, _target) -> None:
    raise ValueError("webhook_delivery_attempts is append-only")


@event.listens_for(WebhookDeliveryAttempt, "before_delete", propagate=True)
def _prevent_attempt_delete(_mapper, _connection, _target) -> None:
    raise ValueError("webhook_delivery_attempts is append-only")


@event.listens_for(WebhookDelivery, "before_update", propagate=True)
def _prevent_terminal_delivery_update(_mapper, _connection, target: WebhookDelivery) -> None:
    history = inspect(target).attrs.status.history
    previous = history.deleted or history.unchanged
    if previous and previous[0] in TERMINAL_DELIVERY_STATUSES:
        raise ValueError("terminal webhook deliveries are immutable")


@event.listens_for(WebhookDelivery, "before_delete", propagate=True)
def _prevent_delivery_delete(_mapper, _connection, _target) -> None:
    raise ValueError("webhook_deliveries is an append-only audit trail")
