"""Return request model.

A return is its own entity keyed by order id rather than a set of
nullable columns on the order. Its ``status`` is authoritative for
every return phase.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import date  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from decimal import Decimal  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import TYPE_CHECKING

from sqlalchemy import Date, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from handoff.db.models.base import (
    Base,
    OptionalTimestampTZ,
    RefundStatus,
    ReturnReason,
    ReturnStatus,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_column,
)

if TYPE_CHECKING:
    from handoff.db.models.orders import Order
    from handoff.db.models.refunds import RefundRecord


class ReturnRequest(Base):
    """Customer return for a delivered order."""

    __tablename__ = "return_requests"

    return_id: Mapped[UUIDPrimaryKey]
    updated_at: Mapped[TimestampTZ]
    requested_at: Mapped[TimestampTZ]

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.order_id", ondelete="RESTRICT"),
        nullable=False,
    )
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False)

    reason: Mapped[ReturnReason] = mapped_column(
        enum_column(ReturnReason, "return_reason"),
        nullable=False,
    )
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[ReturnStatus] = mapped_column(
        enum_column(ReturnStatus, "return_status"),
        nullable=False,
        default=ReturnStatus.RETURN_REQUESTED,
    )

    # Set on approval
    pickup_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    pickup_window: Mapped[str | None] = mapped_column(String(50), nullable=True)
    pickup_agent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Set on rejection
    rejection_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    decided_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    decided_at: Mapped[OptionalTimestampTZ]
    picked_up_at: Mapped[OptionalTimestampTZ]
    cancelled_at: Mapped[OptionalTimestampTZ]

    # Mirror of the linked refund record
    refund_status: Mapped[RefundStatus | None] = mapped_column(
        enum_column(RefundStatus, "refund_status"),
        nullable=True,
    )
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    refund_transaction_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refund_processed_at: Mapped[OptionalTimestampTZ]

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    order: Mapped[Order] = relationship("Order", back_populates="return_requests")
    refund: Mapped[RefundRecord | None] = relationship(
        "RefundRecord",
        back_populates="return_request",
        uselist=False,
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_return_requests_order_id", "order_id"),
        Index("ix_return_requests_status", "status"),
        Index("ix_return_requests_customer_id", "customer_id"),
    )
