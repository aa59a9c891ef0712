"""Append-only tracking log service.

Every committed transition of an order, its return or its refund appends
exactly one TrackingEvent. Sequence numbers are allocated per order;
callers hold the order row lock (SELECT ... FOR UPDATE) while appending,
so max(sequence) + 1 cannot race.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select

from handoff.db.models.base import OrderStatus, RefundStatus, ReturnStatus, TrackingSubject
from handoff.db.models.tracking import TrackingEvent

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime
    from enum import Enum
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession

    from handoff.services.authz import Actor

logger = logging.getLogger(__name__)

DEFAULT_MESSAGES: dict[Enum, str] = {
    OrderStatus.CONFIRMED: "Order confirmed",
    OrderStatus.PROCESSING: "Order is being prepared for dispatch",
    OrderStatus.OUT_FOR_DELIVERY: "Order is out for delivery",
    OrderStatus.NEAR_LOCATION: "Delivery agent is near the delivery address",
    OrderStatus.DELIVERED: "Order delivered and verified with OTP",
    OrderStatus.CANCELLED: "Order cancelled",
    ReturnStatus.RETURN_REQUESTED: "Return requested",
    ReturnStatus.APPROVED: "Return approved, pickup scheduled",
    ReturnStatus.REJECTED: "Return rejected",
    ReturnStatus.CANCELLED: "Return cancelled by customer",
    ReturnStatus.OUT_FOR_PICKUP: "Delivery agent is on the way for pickup",
    ReturnStatus.PICKUP_NEAR_LOCATION: "Delivery agent is near the pickup address",
    ReturnStatus.PICKUP_OTP_GENERATED: "Pickup OTP sent to customer",
    ReturnStatus.PICKUP_COMPLETED: "Return picked up and verified with OTP",
    ReturnStatus.REFUND_REQUESTED: "Refund requested from manufacturer",
    RefundStatus.APPROVED: "Refund approved by manufacturer",
    RefundStatus.REJECTED: "Refund rejected by manufacturer",
    RefundStatus.PROCESSING: "Refund submitted for payment",
    RefundStatus.COMPLETED: "Refund completed",
    RefundStatus.FAILED: "Refund payment failed",
}


def default_message(status: Enum) -> str:
    """Human-readable tracking message for entering ``status``."""
    return DEFAULT_MESSAGES.get(status, f"Status changed to {status.value}")


class TrackingLog:
    """Writes and reads the per-order tracking history."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _next_sequence(self, order_id: UUID) -> int:
        query = select(func.coalesce(func.max(TrackingEvent.sequence), 0)).where(
            TrackingEvent.order_id == order_id
        )
        result = await self._session.execute(query)
        return int(result.scalar_one()) + 1

    async def append(
        self,
        *,
        order_id: UUID,
        subject: TrackingSubject,
        previous_status: Enum | None,
        new_status: Enum,
        actor: Actor,
        at: datetime,
        subject_id: UUID | None = None,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TrackingEvent:
        """Append one event for a committed transition.

        Args:
            order_id: Order the history belongs to.
            subject: Which state machine moved.
            previous_status: Status before the transition (None on creation).
            new_status: Status after the transition.
            actor: Who requested it.
            at: Event time.
            subject_id: Return or refund id for non-order subjects.
            message: Override for the default message.
            metadata: Extra JSON context.

        Returns:
            The new, flushed TrackingEvent.
        """
        event = TrackingEvent(
            order_id=order_id,
            sequence=await self._next_sequence(order_id),
            subject=subject,
            subject_id=subject_id,
            previous_status=previous_status.value if previous_status is not None else None,
            new_status=new_status.value,
            message=message or default_message(new_status),
            actor_role=actor.role,
            actor_id=actor.actor_id,
            occurred_at=at,
            event_metadata=metadata,
        )
        self._session.add(event)
        await self._session.flush()

        logger.debug(
            "Tracking event appended",
            extra={
                "order_id": str(order_id),
                "sequence": event.sequence,
                "subject": subject.value,
                "new_status": event.new_status,
            },
        )
        return event

    async def history(self, order_id: UUID) -> Sequence[TrackingEvent]:
        """Return the order's events in sequence order."""
        query = (
            select(TrackingEvent)
            .where(TrackingEvent.order_id == order_id)
            .order_by(TrackingEvent.sequence)
        )
        result = await self._session.execute(query)
        return result.scalars().all()
