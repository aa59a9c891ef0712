"""Order aggregate: orders and their line items."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from decimal import Decimal  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from handoff.db.models.base import (
    Base,
    OptionalTimestampTZ,
    OrderStatus,
    ReturnStatus,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_column,
)

if TYPE_CHECKING:
    from handoff.db.models.otp import OTPChallenge
    from handoff.db.models.returns import ReturnRequest
    from handoff.db.models.tracking import TrackingEvent


class Order(Base):
    """Root aggregate for a customer order.

    Created at checkout in ``pending`` and mutated only through the
    order lifecycle service. ``return_status`` mirrors the status of the
    most recent return request so order listings can show it without a join.
    """

    __tablename__ = "orders"

    order_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # Human-facing reference printed on receipts (e.g. ORD-20260412-0042)
    order_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    # Where one-time codes are sent (e-mail address or phone number)
    customer_contact: Mapped[str] = mapped_column(String(255), nullable=False)

    delivery_address: Mapped[dict] = mapped_column(JSONB, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")

    status: Mapped[OrderStatus] = mapped_column(
        enum_column(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
    )

    delivery_agent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    delivered_at: Mapped[OptionalTimestampTZ]
    cancelled_at: Mapped[OptionalTimestampTZ]

    return_status: Mapped[ReturnStatus | None] = mapped_column(
        enum_column(ReturnStatus, "return_status"),
        nullable=True,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    items: Mapped[list[OrderItem]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    return_requests: Mapped[list[ReturnRequest]] = relationship(
        "ReturnRequest",
        back_populates="order",
        order_by="ReturnRequest.requested_at",
    )
    otp_challenges: Mapped[list[OTPChallenge]] = relationship(
        "OTPChallenge",
        back_populates="order",
    )
    tracking_events: Mapped[list[TrackingEvent]] = relationship(
        "TrackingEvent",
        back_populates="order",
        order_by="TrackingEvent.sequence",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_orders_customer_id", "customer_id"),
        Index("ix_orders_status", "status"),
        Index("ix_orders_delivery_agent_id", "delivery_agent_id"),
        Index("ix_orders_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Order {self.order_number} status={self.status.value if self.status else None}>"


class OrderItem(Base):
    """A product line on an order."""

    __tablename__ = "order_items"

    order_item_id: Mapped[UUIDPrimaryKey]

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.order_id", ondelete="CASCADE"),
        nullable=False,
    )

    # Catalog reference; the catalog itself lives elsewhere
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    manufacturer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    order: Mapped[Order] = relationship("Order", back_populates="items")

    __table_args__ = (Index("ix_order_items_order_id", "order_id"),)
