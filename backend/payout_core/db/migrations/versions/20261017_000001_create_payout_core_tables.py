"""create payout core tables

Revision ID: 20261017_000001
Revises:
Create Date: 2026-10-17 00:00:01

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261017_000001"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")

PAYOUT_METHOD_TYPES = (
    "bank_transfer", "bank_transfer_international", "paypal", "card_express",
    "card_standard", "western_union", "moneygram", "crypto",
)
PAYOUT_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
ATTEMPT_STATUSES = ("in_flight", "escalated", "succeeded", "failed", "rejected", "reversed", "not_found")


def _enum(name: str, values: tuple, length: int) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, length=length)


def upgrade() -> None:
    is_postgres = op.get_bind().dialect.name == "postgresql"

    op.create_table(
        "payout_methods",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("type", _enum("payout_method_type", PAYOUT_METHOD_TYPES, 40), nullable=False),
        sa.Column("label", sa.String(length=100), nullable=False),
        sa.Column("last4", sa.String(length=4), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("bank_name", sa.String(length=120), nullable=True),
        sa.Column("routing_number", sa.String(length=34), nullable=True),
        sa.Column("account_number", sa.String(length=34), nullable=True),
        sa.Column("iban", sa.String(length=34), nullable=True),
        sa.Column("swift_code", sa.String(length=11), nullable=True),
        sa.Column("card_id", sa.String(length=64), nullable=True),
        sa.Column("crypto_address", sa.String(length=128), nullable=True),
        sa.Column("crypto_network", sa.String(length=32), nullable=True),
        sa.Column("crypto_currency", sa.String(length=16), nullable=True),
        sa.Column("recipient_name", sa.String(length=200), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("country", sa.String(length=100), nullable=True),
        sa.Column("metadata_json", JSON_TYPE, nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_payout_methods_user_id", "payout_methods", ["user_id"], unique=False)
    op.create_index("ix_payout_methods_created_at", "payout_methods", ["created_at"], unique=False)
    op.create_index("ix_payout_methods_user_active", "payout_methods", ["user_id", "deleted_at"], unique=False)
    op.create_index(
        "uq_payout_methods_user_default",
        "payout_methods",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("is_default AND deleted_at IS NULL"),
        sqlite_where=sa.text("is_default AND deleted_at IS NULL"),
    )

    request_checks = [
        sa.CheckConstraint("amount > 0", name="ck_payout_requests_amount_positive"),
        sa.CheckConstraint("fee >= 0", name="ck_payout_requests_fee_non_negative"),
        sa.CheckConstraint("currency = upper(currency)", name="ck_payout_requests_currency_upper"),
    ]
    if is_postgres:
        request_checks += [
            sa.CheckConstraint("net_amount = amount - fee", name="ck_payout_requests_net_amount"),
            sa.CheckConstraint("char_length(currency) = 3", name="ck_payout_requests_currency_len_3"),
        ]

    op.create_table(
        "payout_requests",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column(
            "payout_method_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("payout_methods.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("fee", sa.Numeric(18, 2), nullable=False),
        sa.Column("net_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("status", _enum("payout_status", PAYOUT_STATUSES, 20), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("method_type", sa.String(length=40), nullable=False),
        sa.Column("method_label", sa.String(length=100), nullable=False),
        sa.Column("reference", sa.String(length=32), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("delivery_speed", _enum("delivery_speed", ("express", "standard"), 20), nullable=True),
        sa.Column("pickup_details", JSON_TYPE, nullable=True),
        sa.Column("escalated_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        *request_checks,
    )
    op.create_index("ix_payout_requests_user_id", "payout_requests", ["user_id"], unique=False)
    op.create_index("ix_payout_requests_payout_method_id", "payout_requests", ["payout_method_id"], unique=False)
    op.create_index("ix_payout_requests_reference", "payout_requests", ["reference"], unique=False)
    op.create_index("ix_payout_requests_created_at", "payout_requests", ["created_at"], unique=False)
    op.create_index("ix_payout_requests_user_created_at", "payout_requests", ["user_id", "created_at"], unique=False)
    op.create_index("ix_payout_requests_status_created_at", "payout_requests", ["status", "created_at"], unique=False)

    op.create_table(
        "payout_attempts",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "payout_request_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("payout_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False),
        sa.Column("rail", sa.String(length=32), nullable=False),
        sa.Column("rail_operation_id", sa.String(length=128), nullable=True),
        sa.Column("status", _enum("payout_attempt_status", ATTEMPT_STATUSES, 20), nullable=False),
        sa.Column("last_rail_status", sa.String(length=64), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(), nullable=False),
        sa.Column("next_check_at", sa.DateTime(), nullable=False),
        sa.Column("check_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("payout_request_id", "attempt", name="uq_payout_attempts_request_attempt"),
        sa.UniqueConstraint("idempotency_key", name="uq_payout_attempts_idempotency_key"),
        sa.UniqueConstraint("rail_operation_id", name="uq_payout_attempts_rail_operation_id"),
    )
    op.create_index(
        "uq_payout_attempts_one_unresolved",
        "payout_attempts",
        ["payout_request_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('in_flight', 'escalated')"),
        sqlite_where=sa.text("status IN ('in_flight', 'escalated')"),
    )
    op.create_index("ix_payout_attempts_status_next_check", "payout_attempts", ["status", "next_check_at"], unique=False)

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("event_id", sa.String(length=128), nullable=False),
        sa.Column("rail_operation_id", sa.String(length=128), nullable=False),
        sa.Column("outcome", _enum("rail_outcome", ("succeeded", "failed", "reversed"), 20), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("payload", JSON_TYPE, nullable=True),
        sa.Column(
            "processing_result",
            _enum("webhook_processing_result", ("applied", "duplicate", "already_resolved", "unmatched"), 20),
            nullable=True,
        ),
        sa.Column("payout_request_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("received_at", sa.DateTime(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("event_id", name="uq_webhook_events_event_id"),
    )
    op.create_index("ix_webhook_events_rail_operation_id", "webhook_events", ["rail_operation_id"], unique=False)
    op.create_index("ix_webhook_events_payout_request_id", "webhook_events", ["payout_request_id"], unique=False)
    op.create_index("ix_webhook_events_received_at", "webhook_events", ["received_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_webhook_events_received_at", table_name="webhook_events")
    op.drop_index("ix_webhook_events_payout_request_id", table_name="webhook_events")
    op.drop_index("ix_webhook_events_rail_operation_id", table_name="webhook_events")
    op.drop_table("webhook_events")

    op.drop_index("ix_payout_attempts_status_next_check", table_name="payout_attempts")
    op.drop_index("uq_payout_attempts_one_unresolved", table_name="payout_attempts")
    op.drop_table("payout_attempts")

    op.drop_index("ix_payout_requests_status_created_at", table_name="payout_requests")
    op.drop_index("ix_payout_requests_user_created_at", table_name="payout_requests")
    op.drop_index("ix_payout_requests_created_at", table_name="payout_requests")
    op.drop_index("ix_payout_requests_reference", table_name="payout_requests")
    op.drop_index("ix_payout_requests_payout_method_id", table_name="payout_requests")
    op.drop_index("ix_payout_requests_user_id", table_name="payout_requests")
    op.drop_table("payout_requests")

    op.drop_index("uq_payout_methods_user_default", table_name="payout_methods")
    op.drop_index("ix_payout_methods_user_active", table_name="payout_methods")
    op.drop_index("ix_payout_methods_created_at", table_name="payout_methods")
    op.drop_index("ix_payout_methods_user_id", table_name="payout_methods")
    op.drop_table("payout_methods")
