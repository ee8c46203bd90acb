from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, HttpUrl

from models.webhook import AuthMode, DeliveryStatus, EventType, WebhookState


class ConditionRule(BaseModel):
    field: str = Field(min_length=1, max_length=128)
    operator: Literal["equals", "not_equals", "contains", "greater_than", "less_than"]
    value: Any = None


class FilterConditions(BaseModel):
    logic: Literal["AND", "OR"] = "AND"
    rules: list[ConditionRule] = Field(default_factory=list)


class WebhookCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    url: HttpUrl
    event_types: list[EventType] = Field(default_factory=lambda: [EventType.SUBMISSION_CREATED], min_length=1)
    auth_mode: AuthMode = AuthMode.NONE
    auth_value: str | None = None
    api_key_header: str | None = Field(default=None, max_length=128)
    custom_headers: dict[str, str] | None = None
    verification_token: str | None = Field(default=None, max_length=256)
    include_fields: list[str] | None = None
    exclude_fields: list[str] | None = None
    filter_conditions: FilterConditions | None = None
    max_attempts: int | None = Field(default=None, ge=1)
    retry_interval_seconds: int | None = Field(default=None, ge=1)
    daily_limit: int | None = Field(default=None, ge=1)


class WebhookPatch(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    url: HttpUrl | None = None
    event_types: list[EventType] | None = None
    active: bool | None = None
    auth_mode: AuthMode | None = None
    auth_value: str | None = None
    api_key_header: str | None = Field(default=None, max_length=128)
    custom_headers: dict[str, str] | None = None
    verification_token: str | None = Field(default=None, max_length=256)
    include_fields: list[str] | None = None
    exclude_fields: list[str] | None = None
    filter_conditions: FilterConditions | None = None
    max_attempts: int | None = Field(default=None, ge=1)
    retry_interval_seconds: int | None = Field(default=None, ge=1)
    daily_limit: int | None = Field(default=None, ge=1)


class WebhookOut(BaseModel):
    id: UUID
    form_id: str
    account_id: str
    name: str
    url: str
    event_types: list[EventType]
    state: WebhookState
    active: bool
    admin_approved: bool | None
    admin_locked: bool
    deactivated_by_id: str | None
    admin_notes: str | None = None
    auth_mode: AuthMode
    api_key_header: str | None
    custom_headers: dict[str, str] | None
    include_fields: list[str] | None
    exclude_fields: list[str] | None
    filter_conditions: dict[str, Any] | None
    max_attempts: int
    retry_interval_seconds: int
    daily_limit: int | None
    daily_usage: int
    secret_masked: str | None
    created_at: datetime
    updated_at: datetime


class WebhookCreateOut(WebhookOut):
    secret: str


class AdminNotesIn(BaseModel):
    notes: str | None = Field(default=None, max_length=4000)


class DeliveryOut(BaseModel):
    id: UUID
    webhook_id: UUID
    event_type: EventType
    submission_id: str | None
    is_test: bool
    redelivery_of: UUID | None
    status: DeliveryStatus
    attempt_count: int
    next_attempt_at: datetime | None
    request_timestamp: datetime | None
    response_timestamp: datetime | None
    status_code: int | None
    error_message: str | None
    failure_class: str | None
    created_at: datetime
    completed_at: datetime | None

    class Config:
        from_attributes = True


class DeliveryAttemptOut(BaseModel):
    attempt_number: int
    request_timestamp: datetime
    response_timestamp: datetime | None
    status_code: int | None
    error_message: str | None
    failure_class: str | None
    duration_ms: int | None
    success: bool

    class Config:
        from_attributes = True


class DeliveryDetailOut(DeliveryOut):
    request_body: str
    response_body: str | None
    attempts: list[DeliveryAttemptOut]


class StatsOut(BaseModel):
    webhook_id: UUID
    window_days: int
    total_deliveries: int
    success_rate: float
    average_response_ms: float | None
    per_status_counts: dict[str, int]
    per_day_counts: dict[str, dict[str, int]]


class SubmissionIn(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    created_at: datetime
    data: dict[str, Any] = Field(default_factory=dict)


class DomainEventIn(BaseModel):
    event_type: EventType
    form_id: str = Field(min_length=1, max_length=64)
    form_title: str | None = None
    submission: SubmissionIn | None = None
    occurred_at: datetime | None = None


class DispatchOut(BaseModel):
    delivery_ids: list[UUID]


class SweepOut(BaseModel):
    reclaimed: int
    submitted: int
