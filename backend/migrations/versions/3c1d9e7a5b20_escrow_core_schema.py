"""escrow core schema: orders, escrow custody, delivery codes, disputes, payouts

Revision ID: 3c1d9e7a5b20
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "3c1d9e7a5b20"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _index_exists(bind, table_name: str, index_name: str) -> bool:
    try:
        indexes = sa.inspect(bind).get_indexes(table_name)
        return any((idx.get("name") or "") == index_name for idx in indexes)
    except Exception:
        return False


def _indexes(bind, table_name: str, columns, *, unique: tuple = ()) -> None:
    for col in columns:
        name = f"ix_{table_name}_{col}"
        if not _index_exists(bind, table_name, name):
            op.create_index(name, table_name, [col], unique=col in unique)


def upgrade():
    bind = op.get_bind()

    if not _table_exists(bind, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="buyer"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    _indexes(bind, "users", ["email", "phone"], unique=("email",))

    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("buyer_id", sa.Integer(), nullable=False),
            sa.Column("vendor_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="pending_confirmation"),
            sa.Column("delivery_mode", sa.String(length=16), nullable=False, server_default="ship"),
            sa.Column("subtotal", sa.Numeric(12, 2), nullable=False),
            sa.Column("shipping_fee", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("total", sa.Numeric(12, 2), nullable=False),
            sa.Column("commission_rate", sa.Numeric(5, 2), nullable=False),
            sa.Column("commission_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("payout_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("vendor_notes", sa.Text(), nullable=True),
            sa.Column("courier_name", sa.String(length=120), nullable=True),
            sa.Column("tracking_number", sa.String(length=120), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("accepted_at", sa.DateTime(), nullable=True),
            sa.Column("shipped_at", sa.DateTime(), nullable=True),
            sa.Column("arrived_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            sa.Column("refunded_at", sa.DateTime(), nullable=True),
            sa.Column("auto_release_at", sa.DateTime(), nullable=True),
        )
    _indexes(bind, "orders", ["buyer_id", "vendor_id", "status", "created_at", "accepted_at", "auto_release_at"])

    if not _table_exists(bind, "order_items"):
        op.create_table(
            "order_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("product_id", sa.String(length=64), nullable=False),
            sa.Column("product_name", sa.String(length=240), nullable=False, server_default=""),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
            sa.Column("line_total", sa.Numeric(12, 2), nullable=False),
        )
    _indexes(bind, "order_items", ["order_id"])

    if not _table_exists(bind, "order_events"):
        op.create_table(
            "order_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("actor_role", sa.String(length=16), nullable=False, server_default="system"),
            sa.Column("event", sa.String(length=64), nullable=False),
            sa.Column("note", sa.String(length=240), nullable=True),
            sa.Column("idempotency_key", sa.String(length=160), nullable=True, unique=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    _indexes(bind, "order_events", ["order_id", "created_at"])

    if not _table_exists(bind, "escrow_transactions"):
        op.create_table(
            "escrow_transactions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="held"),
            sa.Column("held_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("commission_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("release_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("released_at", sa.DateTime(), nullable=True),
            sa.Column("refunded_at", sa.DateTime(), nullable=True),
            sa.Column("withheld_at", sa.DateTime(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
        )
    _indexes(bind, "escrow_transactions", ["order_id", "status"], unique=("order_id",))

    if not _table_exists(bind, "escrow_transitions"):
        op.create_table(
            "escrow_transitions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("from_status", sa.String(length=16), nullable=False, server_default=""),
            sa.Column("to_status", sa.String(length=16), nullable=False),
            sa.Column("actor_type", sa.String(length=16), nullable=False, server_default="system"),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("idempotency_key", sa.String(length=160), nullable=False),
            sa.Column("reason", sa.String(length=240), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("order_id", "idempotency_key", name="uq_escrow_transition_order_key"),
        )
    _indexes(bind, "escrow_transitions", ["order_id"])

    if not _table_exists(bind, "delivery_codes"):
        op.create_table(
            "delivery_codes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("code_hash", sa.String(length=64), nullable=False),
            sa.Column("is_resend", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("issued_at", sa.DateTime(), nullable=False),
            sa.Column("consumed_at", sa.DateTime(), nullable=True),
            sa.Column("superseded", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("failed_attempts", sa.Integer(), nullable=False, server_default="0"),
        )
    _indexes(bind, "delivery_codes", ["order_id", "superseded"])

    if not _table_exists(bind, "disputes"):
        op.create_table(
            "disputes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("opener_id", sa.Integer(), nullable=False),
            sa.Column("vendor_id", sa.Integer(), nullable=False),
            sa.Column("reason", sa.String(length=32), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="open"),
            sa.Column("pre_dispute_status", sa.String(length=32), nullable=False),
            sa.Column("buyer_evidence_json", sa.Text(), nullable=True),
            sa.Column("vendor_evidence_json", sa.Text(), nullable=True),
            sa.Column("vendor_response", sa.Text(), nullable=True),
            sa.Column("vendor_response_at", sa.DateTime(), nullable=True),
            sa.Column("resolved_by", sa.Integer(), nullable=True),
            sa.Column("resolution_notes", sa.Text(), nullable=True),
            sa.Column("opened_at", sa.DateTime(), nullable=False),
            sa.Column("reviewed_at", sa.DateTime(), nullable=True),
            sa.Column("resolved_at", sa.DateTime(), nullable=True),
        )
    _indexes(bind, "disputes", ["order_id", "opener_id", "vendor_id", "status", "opened_at"])

    if not _table_exists(bind, "payments"):
        op.create_table(
            "payments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("gateway", sa.String(length=32), nullable=False, server_default="paystack"),
            sa.Column("reference", sa.String(length=120), nullable=False),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="captured"),
            sa.Column("captured_at", sa.DateTime(), nullable=False),
            sa.Column("refunded_at", sa.DateTime(), nullable=True),
        )
    _indexes(bind, "payments", ["order_id", "reference", "status"], unique=("reference",))

    if not _table_exists(bind, "payouts"):
        op.create_table(
            "payouts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("vendor_id", sa.Integer(), nullable=False),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("commission_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("transfer_fee", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("net_commission", sa.Numeric(12, 2), nullable=False),
            sa.Column("trigger", sa.String(length=24), nullable=False, server_default="otp"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("reference", sa.String(length=120), nullable=True),
            sa.Column("failure_reason", sa.String(length=240), nullable=True),
            sa.Column("requested_at", sa.DateTime(), nullable=False),
            sa.Column("processing_at", sa.DateTime(), nullable=True),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("failed_at", sa.DateTime(), nullable=True),
        )
    _indexes(bind, "payouts", ["order_id", "vendor_id", "status"], unique=("order_id",))

    if not _table_exists(bind, "reconciliation_items"):
        op.create_table(
            "reconciliation_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("kind", sa.String(length=32), nullable=False),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("reference", sa.String(length=120), nullable=True),
            sa.Column("detail", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("resolved_at", sa.DateTime(), nullable=True),
            sa.Column("resolved_by", sa.Integer(), nullable=True),
            sa.Column("resolution_note", sa.String(length=240), nullable=True),
        )
    _indexes(bind, "reconciliation_items", ["order_id", "kind", "status", "created_at"])

    if not _table_exists(bind, "notifications"):
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("event_type", sa.String(length=64), nullable=False),
            sa.Column("channel", sa.String(length=32), nullable=False, server_default="in_app"),
            sa.Column("title", sa.String(length=160), nullable=True),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="queued"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("next_attempt_at", sa.DateTime(), nullable=True),
            sa.Column("last_error", sa.String(length=240), nullable=True),
            sa.Column("provider", sa.String(length=64), nullable=True),
            sa.Column("provider_ref", sa.String(length=120), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("sent_at", sa.DateTime(), nullable=True),
            sa.Column("meta", sa.Text(), nullable=True),
        )
    _indexes(bind, "notifications", ["user_id", "order_id", "event_type", "status", "next_attempt_at"])

    if not _table_exists(bind, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("actor_role", sa.String(length=16), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
    _indexes(
        bind,
        "platform_events",
        ["created_at", "event_type", "severity", "order_id", "request_id", "idempotency_key"],
        unique=("idempotency_key",),
    )

    if not _table_exists(bind, "job_runs"):
        op.create_table(
            "job_runs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_name", sa.String(length=64), nullable=False),
            sa.Column("ran_at", sa.DateTime(), nullable=False),
            sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("summary_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
        )
    _indexes(bind, "job_runs", ["job_name", "ran_at", "ok"])


def downgrade():
    bind = op.get_bind()
    for table_name in (
        "job_runs",
        "platform_events",
        "notifications",
        "reconciliation_items",
        "payouts",
        "payments",
        "disputes",
        "delivery_codes",
        "escrow_transitions",
        "escrow_transactions",
        "order_events",
        "order_items",
        "orders",
        "users",
    ):
        if _table_exists(bind, table_name):
            op.drop_table(table_name)
