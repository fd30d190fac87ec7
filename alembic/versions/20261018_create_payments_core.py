"""create payments core tables

Revision ID: 20261018_create_payments_core
Revises:
Create Date: 2026-10-18 09:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "20261018_create_payments_core"
down_revision = None
branch_labels = None
depends_on = None

INTENT_STATUSES = ("PENDING", "PROCESSING", "SUCCEEDED", "FAILED", "CANCELED", "REFUNDED")
LEDGER_OUTCOMES = (
    "RECEIVED",
    "APPLIED",
    "NOOP",
    "STALE",
    "REJECTED",
    "IGNORED",
    "ORPHANED",
    "ORPHAN_ALERTED",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "payment_intents",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("provider_ref", sa.String(length=128), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("subject_id", sa.String(length=128), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.Column("checkout_url", sa.String(length=512), nullable=True),
        sa.Column("status", sa.Enum(*INTENT_STATUSES, name="intent_status"), nullable=False),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("creation_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reconcile_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("needs_attention", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("idempotency_key", name="uq_payment_intents_idempotency_key"),
        sa.UniqueConstraint("provider_ref", name="uq_payment_intents_provider_ref"),
        sa.CheckConstraint("amount_cents > 0", name="ck_payment_intents_positive_amount"),
    )
    op.create_index("ix_payment_intents_status_updated", "payment_intents", ["status", "updated_at"])
    op.create_index("ix_payment_intents_subject", "payment_intents", ["subject_id"])

    op.create_table(
        "webhook_ledger",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider_event_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("provider_ref", sa.String(length=128), nullable=True),
        sa.Column("event_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("applied_transition", sa.String(length=32), nullable=True),
        sa.Column("outcome", sa.Enum(*LEDGER_OUTCOMES, name="ledger_outcome"), nullable=False),
        sa.Column("intent_id", sa.Integer(), sa.ForeignKey("payment_intents.id"), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw_json", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("provider_event_id", name="uq_webhook_ledger_event_id"),
    )
    op.create_index("ix_webhook_ledger_provider_ref", "webhook_ledger", ["provider_ref"])
    op.create_index("ix_webhook_ledger_intent_id", "webhook_ledger", ["intent_id"])
    op.create_index("ix_webhook_ledger_received", "webhook_ledger", ["received_at"])
    op.create_index("ix_webhook_ledger_outcome_retry", "webhook_ledger", ["outcome", "next_retry_at"])

    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("type", sa.String(length=100), nullable=False),
        sa.Column("message", sa.String(length=255), nullable=False),
        sa.Column("intent_id", sa.Integer(), sa.ForeignKey("payment_intents.id"), nullable=True),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_alerts_type", "alerts", ["type"])
    op.create_index("ix_alerts_intent_id", "alerts", ["intent_id"])
    op.create_index("ix_alerts_created_at", "alerts", ["created_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity", "entity_id"])

    op.create_table(
        "scheduler_locks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("owner", sa.String(length=128), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("name", name="uq_scheduler_locks_name"),
    )


def downgrade() -> None:
    op.drop_table("scheduler_locks")
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_alerts_created_at", table_name="alerts")
    op.drop_index("ix_alerts_intent_id", table_name="alerts")
    op.drop_index("ix_alerts_type", table_name="alerts")
    op.drop_table("alerts")
    op.drop_index("ix_webhook_ledger_outcome_retry", table_name="webhook_ledger")
    op.drop_index("ix_webhook_ledger_received", table_name="webhook_ledger")
    op.drop_index("ix_webhook_ledger_intent_id", table_name="webhook_ledger")
    op.drop_index("ix_webhook_ledger_provider_ref", table_name="webhook_ledger")
    op.drop_table("webhook_ledger")
    op.drop_index("ix_payment_intents_subject", table_name="payment_intents")
    op.drop_index("ix_payment_intents_status_updated", table_name="payment_intents")
    op.drop_table("payment_intents")
    sa.Enum(name="ledger_outcome").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="intent_status").drop(op.get_bind(), checkfirst=True)
