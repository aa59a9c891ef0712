"""Refund record owned by the manufacturer workflow."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from decimal import Decimal  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from handoff.db.models.base import (
    Base,
    OptionalTimestampTZ,
    RefundStatus,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_column,
)

if TYPE_CHECKING:
    from handoff.db.models.returns import ReturnRequest


class RefundRecord(Base):
    """Refund raised once a return pickup is complete.

    At most one record exists per return request (unique ``return_id``).
    ``completed`` is terminal; ``failed`` may be resubmitted, each
    submission using a fresh idempotency key.
    """

    __tablename__ = "refund_records"

    refund_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.order_id", ondelete="RESTRICT"),
        nullable=False,
    )
    return_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("return_requests.return_id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    manufacturer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")

    status: Mapped[RefundStatus] = mapped_column(
        enum_column(RefundStatus, "refund_status"),
        nullable=False,
        default=RefundStatus.PENDING,
    )

    # Customer wallet or payment instrument the money goes back to
    destination_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    transaction_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Rail submissions; each attempt gets its own idempotency key
    payment_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    approved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    approved_at: Mapped[OptionalTimestampTZ]
    rejected_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    rejected_at: Mapped[OptionalTimestampTZ]
    processing_started_at: Mapped[OptionalTimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]
    failed_at: Mapped[OptionalTimestampTZ]

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    return_request: Mapped[ReturnRequest] = relationship(
        "ReturnRequest",
        back_populates="refund",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_refund_records_order_id", "order_id"),
        Index("ix_refund_records_status", "status"),
        Index("ix_refund_records_manufacturer_id", "manufacturer_id"),
    )
