"""create webhook delivery tables

Revision ID: 3c7e1f0a9b24
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "3c7e1f0a9b24"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enums are stored as constrained strings (native_enum=False on the models).
ENUM_LENGTH = 32


def _has_table(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _has_index(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return any(idx["name"] == index_name for idx in inspector.get_indexes(table_name))


def _create_index(table_name: str, index_name: str, columns: list[str]) -> None:
    inspector = sa.inspect(op.get_bind())
    if _has_table(inspector, table_name) and not _has_index(inspector, table_name, index_name):
        op.create_index(index_name, table_name, columns, unique=False)


def upgrade() -> None:
    inspector = sa.inspect(op.get_bind())
    if not _has_table(inspector, "webhooks"):
        op.create_table(
            "webhooks",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("form_id", sa.String(length=64), nullable=False),
            sa.Column("account_id", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("url", sa.String(length=2048), nullable=False),
            sa.Column("event_types", sa.JSON(), nullable=False),
            sa.Column("secret_hash", sa.String(length=128), nullable=False),
            sa.Column("auth_mode", sa.String(length=ENUM_LENGTH), nullable=False, server_default="NONE"),
            sa.Column("auth_value", sa.Text(), nullable=True),
            sa.Column("api_key_header", sa.String(length=128), nullable=True),
            sa.Column("custom_headers", sa.JSON(), nullable=True),
            sa.Column("verification_token", sa.String(length=256), nullable=True),
            sa.Column("field_filter_mode", sa.String(length=ENUM_LENGTH), nullable=True),
            sa.Column("field_filter_keys", sa.JSON(), nullable=True),
            sa.Column("filter_conditions", sa.JSON(), nullable=True),
            sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
            sa.Column("retry_interval_seconds", sa.Integer(), nullable=False, server_default=sa.text("60")),
            sa.Column("daily_limit", sa.Integer(), nullable=True),
            sa.Column("daily_usage", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("daily_reset_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("admin_approval", sa.String(length=ENUM_LENGTH), nullable=False, server_default="pending"),
            sa.Column("admin_locked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("deactivated_by_id", sa.String(length=64), nullable=True),
            sa.Column("reviewed_by_id", sa.String(length=64), nullable=True),
            sa.Column("admin_notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index("webhooks", "ix_webhooks_account_id", ["account_id"])
    _create_index("webhooks", "ix_webhooks_form_id_deleted_at", ["form_id", "deleted_at"])

    inspector = sa.inspect(op.get_bind())
    if not _has_table(inspector, "webhook_deliveries"):
        # webhook_id is a soft reference: registrations are tombstoned, deliveries are kept for audit.
        op.create_table(
            "webhook_deliveries",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("webhook_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("event_type", sa.String(length=ENUM_LENGTH), nullable=False),
            sa.Column("submission_id", sa.String(length=64), nullable=True),
            sa.Column("is_test", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("redelivery_of", postgresql.UUID(as_uuid=True), nullable=True),
            sa.Column("status", sa.String(length=ENUM_LENGTH), nullable=False, server_default="pending"),
            sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("request_timestamp", sa.DateTime(timezone=True), nullable=True),
            sa.Column("response_timestamp", sa.DateTime(timezone=True), nullable=True),
            sa.Column("status_code", sa.Integer(), nullable=True),
            sa.Column("request_body", sa.Text(), nullable=False),
            sa.Column("response_body", sa.Text(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("failure_class", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index("webhook_deliveries", "ix_webhook_deliveries_status_next_attempt", ["status", "next_attempt_at"])
    _create_index("webhook_deliveries", "ix_webhook_deliveries_webhook_id_created_at", ["webhook_id", "created_at"])

    inspector = sa.inspect(op.get_bind())
    if not _has_table(inspector, "webhook_delivery_attempts"):
        op.create_table(
            "webhook_delivery_attempts",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("delivery_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("webhook_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("attempt_number", sa.Integer(), nullable=False),
            sa.Column("request_timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.Column("response_timestamp", sa.DateTime(timezone=True), nullable=True),
            sa.Column("status_code", sa.Integer(), nullable=True),
            sa.Column("response_body", sa.Text(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("failure_class", sa.String(length=64), nullable=True),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("success", sa.Boolean(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("delivery_id", "attempt_number", name="uq_webhook_delivery_attempts_number"),
        )
    _create_index("webhook_delivery_attempts", "ix_webhook_delivery_attempts_delivery_id", ["delivery_id"])
    _create_index("webhook_delivery_attempts", "ix_webhook_delivery_attempts_webhook_id", ["webhook_id"])

    inspector = sa.inspect(op.get_bind())
    if not _has_table(inspector, "webhook_daily_counters"):
        op.create_table(
            "webhook_daily_counters",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("webhook_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("day", sa.Date(), nullable=False),
            sa.Column("status", sa.String(length=ENUM_LENGTH), nullable=False),
            sa.Column("count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("webhook_id", "day", "status", name="uq_webhook_daily_counters_key"),
        )
    _create_index("webhook_daily_counters", "ix_webhook_daily_counters_webhook_id", ["webhook_id"])


def downgrade() -> None:
    inspector = sa.inspect(op.get_bind())
    for table_name in ("webhook_daily_counters", "webhook_delivery_attempts", "webhook_deliveries", "webhooks"):
        if _has_table(inspector, table_name):
            op.drop_table(table_name)
