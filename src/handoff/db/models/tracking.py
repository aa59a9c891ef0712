"""Append-only tracking log.

One row per committed transition across the order, return and refund
state machines. Rows are immutable once flushed; the mapper listeners
below refuse any UPDATE or DELETE issued through the ORM.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import TYPE_CHECKING, Any

from sqlalchemy import ForeignKey, Index, Integer, String, Text, event
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from handoff.db.models.base import (
    ActorRole,
    Base,
    TimestampTZ,
    TrackingSubject,
    UUIDPrimaryKey,
    enum_column,
)

if TYPE_CHECKING:
    from handoff.db.models.orders import Order


class TrackingEventImmutableError(Exception):
    """Raised when code tries to modify or delete a tracking event."""


class TrackingEvent(Base):
    """A single entry in an order's tracking history."""

    __tablename__ = "tracking_events"

    event_id: Mapped[UUIDPrimaryKey]
    occurred_at: Mapped[TimestampTZ]

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.order_id", ondelete="RESTRICT"),
        nullable=False,
    )
    # Monotonic per order, starting at 1
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    subject: Mapped[TrackingSubject] = mapped_column(
        enum_column(TrackingSubject, "tracking_subject"),
        nullable=False,
    )
    # Return or refund id when the subject is not the order itself
    subject_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)

    previous_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    new_status: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    actor_role: Mapped[ActorRole] = mapped_column(
        enum_column(ActorRole, "actor_role"),
        nullable=False,
    )
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Named 'event_metadata' to avoid SQLAlchemy's reserved 'metadata'
    event_metadata: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    order: Mapped[Order] = relationship("Order", back_populates="tracking_events")

    __table_args__ = (
        Index("uq_tracking_events_order_sequence", "order_id", "sequence", unique=True),
        Index("ix_tracking_events_occurred_at", "occurred_at"),
    )


@event.listens_for(TrackingEvent, "before_update")
def _refuse_update(_mapper: Any, _connection: Any, target: TrackingEvent) -> None:
    msg = f"Tracking event {target.event_id} is immutable"
    raise TrackingEventImmutableError(msg)


@event.listens_for(TrackingEvent, "before_delete")
def _refuse_delete(_mapper: Any, _connection: Any, target: TrackingEvent) -> None:
    msg = f"Tracking event {target.event_id} cannot be deleted"
    raise TrackingEventImmutableError(msg)
