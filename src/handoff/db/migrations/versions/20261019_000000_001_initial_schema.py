"""Initial schema.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

Creates:
- orders, order_items (order aggregate)
- return_requests, refund_records (return and refund workflow)
- otp_challenges (handoff codes)
- tracking_events (append-only history)
- jobs (background processing)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_ENUMS: dict[str, tuple[str, ...]] = {
    "order_status": (
        "pending",
        "confirmed",
        "processing",
        "out_for_delivery",
        "near_location",
        "delivered",
        "cancelled",
    ),
    "return_status": (
        "return_requested",
        "approved",
        "rejected",
        "cancelled",
        "out_for_pickup",
        "pickup_near_location",
        "pickup_otp_generated",
        "pickup_completed",
        "refund_requested",
    ),
    "refund_status": (
        "pending",
        "approved",
        "rejected",
        "processing",
        "completed",
        "failed",
    ),
    "return_reason": (
        "damaged",
        "defective",
        "wrong_item",
        "not_as_described",
        "quality_issues",
        "changed_mind",
        "other",
    ),
    "otp_purpose": ("delivery", "pickup"),
    "actor_role": ("customer", "delivery_partner", "manufacturer", "admin", "system"),
    "tracking_subject": ("order", "return", "refund"),
    "job_status": ("pending", "running", "completed", "failed", "cancelled"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*_ENUMS[name], name=name, create_type=False)


def _uuid_pk(name: str) -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _now(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    """Apply migration: initial schema."""
    bind = op.get_bind()
    for name in _ENUMS:
        postgresql.ENUM(*_ENUMS[name], name=name).create(bind, checkfirst=True)

    op.create_table(
        "orders",
        _uuid_pk("order_id"),
        _now("created_at"),
        _now("updated_at"),
        sa.Column("order_number", sa.String(50), nullable=False),
        sa.Column("customer_id", sa.String(255), nullable=False),
        sa.Column("customer_contact", sa.String(255), nullable=False),
        sa.Column("delivery_address", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", _enum("order_status"), nullable=False),
        sa.Column("delivery_agent_id", sa.String(255), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("return_status", _enum("return_status"), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("order_id", name=op.f("pk_orders")),
        sa.UniqueConstraint("order_number", name=op.f("uq_orders_order_number")),
    )
    op.create_index("ix_orders_customer_id", "orders", ["customer_id"])
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_delivery_agent_id", "orders", ["delivery_agent_id"])
    op.create_index("ix_orders_created_at", "orders", ["created_at"])

    op.create_table(
        "order_items",
        _uuid_pk("order_item_id"),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("product_id", sa.String(255), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("manufacturer_id", sa.String(255), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.ForeignKeyConstraint(
            ["order_id"],
            ["orders.order_id"],
            name=op.f("fk_order_items_order_id_orders"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("order_item_id", name=op.f("pk_order_items")),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    op.create_table(
        "return_requests",
        _uuid_pk("return_id"),
        _now("updated_at"),
        _now("requested_at"),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("customer_id", sa.String(255), nullable=False),
        sa.Column("reason", _enum("return_reason"), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("status", _enum("return_status"), nullable=False),
        sa.Column("pickup_date", sa.Date(), nullable=True),
        sa.Column("pickup_window", sa.String(50), nullable=True),
        sa.Column("pickup_agent_id", sa.String(255), nullable=True),
        sa.Column("rejection_notes", sa.Text(), nullable=True),
        sa.Column("decided_by", sa.String(255), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("picked_up_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_status", _enum("refund_status"), nullable=True),
        sa.Column("refund_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("refund_transaction_ref", sa.String(255), nullable=True),
        sa.Column("refund_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(
            ["order_id"],
            ["orders.order_id"],
            name=op.f("fk_return_requests_order_id_orders"),
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("return_id", name=op.f("pk_return_requests")),
    )
    op.create_index("ix_return_requests_order_id", "return_requests", ["order_id"])
    op.create_index("ix_return_requests_status", "return_requests", ["status"])
    op.create_index("ix_return_requests_customer_id", "return_requests", ["customer_id"])

    op.create_table(
        "refund_records",
        _uuid_pk("refund_id"),
        _now("created_at"),
        _now("updated_at"),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("return_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("manufacturer_id", sa.String(255), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", _enum("refund_status"), nullable=False),
        sa.Column("destination_ref", sa.String(255), nullable=False),
        sa.Column("transaction_ref", sa.String(255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("payment_attempts", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("approved_by", sa.String(255), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_by", sa.String(255), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(
            ["order_id"],
            ["orders.order_id"],
            name=op.f("fk_refund_records_order_id_orders"),
            ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["return_id"],
            ["return_requests.return_id"],
            name=op.f("fk_refund_records_return_id_return_requests"),
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("refund_id", name=op.f("pk_refund_records")),
        sa.UniqueConstraint("return_id", name=op.f("uq_refund_records_return_id")),
    )
    op.create_index("ix_refund_records_order_id", "refund_records", ["order_id"])
    op.create_index("ix_refund_records_status", "refund_records", ["status"])
    op.create_index("ix_refund_records_manufacturer_id", "refund_records", ["manufacturer_id"])

    op.create_table(
        "otp_challenges",
        _uuid_pk("challenge_id"),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("purpose", _enum("otp_purpose"), nullable=False),
        sa.Column("code_digest", sa.String(64), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("issued_by", sa.String(255), nullable=True),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("superseded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_attempts", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(
            ["order_id"],
            ["orders.order_id"],
            name=op.f("fk_otp_challenges_order_id_orders"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("challenge_id", name=op.f("pk_otp_challenges")),
    )
    op.create_index("ix_otp_challenges_order_id", "otp_challenges", ["order_id"])
    op.create_index(
        "uq_otp_challenges_active",
        "otp_challenges",
        ["order_id", "purpose"],
        unique=True,
        postgresql_where=sa.text("consumed_at IS NULL AND superseded_at IS NULL"),
    )

    op.create_table(
        "tracking_events",
        _uuid_pk("event_id"),
        _now("occurred_at"),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("subject", _enum("tracking_subject"), nullable=False),
        sa.Column("subject_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("previous_status", sa.String(50), nullable=True),
        sa.Column("new_status", sa.String(50), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("actor_role", _enum("actor_role"), nullable=False),
        sa.Column("actor_id", sa.String(255), nullable=True),
        sa.Column("event_metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(
            ["order_id"],
            ["orders.order_id"],
            name=op.f("fk_tracking_events_order_id_orders"),
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("event_id", name=op.f("pk_tracking_events")),
    )
    op.create_index(
        "uq_tracking_events_order_sequence",
        "tracking_events",
        ["order_id", "sequence"],
        unique=True,
    )
    op.create_index("ix_tracking_events_occurred_at", "tracking_events", ["occurred_at"])

    op.create_table(
        "jobs",
        _uuid_pk("job_id"),
        _now("created_at"),
        _now("updated_at"),
        sa.Column("job_type", sa.String(100), nullable=False),
        sa.Column("status", _enum("job_status"), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(255), nullable=True),
        sa.Column("lock_timeout_seconds", sa.Integer(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("base_backoff_seconds", sa.Integer(), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("result_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("queue", sa.String(100), nullable=False),
        sa.Column("correlation_id", sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint("job_id", name=op.f("pk_jobs")),
    )
    op.create_index("ix_jobs_claim", "jobs", ["queue", "status", "run_at", "priority"])
    op.create_index("ix_jobs_job_type", "jobs", ["job_type"])
    op.create_index("ix_jobs_correlation", "jobs", ["job_type", "correlation_id"])


def downgrade() -> None:
    """Revert migration: initial schema."""
    op.drop_table("jobs")
    op.drop_table("tracking_events")
    op.drop_table("otp_challenges")
    op.drop_table("refund_records")
    op.drop_table("return_requests")
    op.drop_table("order_items")
    op.drop_table("orders")

    for name in reversed(list(_ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name}")
