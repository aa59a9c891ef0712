"""Order lifecycle state machine service.

pending -> confirmed -> processing -> out_for_delivery -> near_location -> delivered
with ``cancelled`` reachable from every pre-delivery state.

- Transitions follow ORDER_TRANSITIONS in ``handoff.services.guards``
- Each committed transition appends one tracking event
- Dispatch needs an assigned delivery agent
- ``delivered`` only commits after the delivery OTP is verified
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select

from handoff.core.clock import utcnow
from handoff.db.models.base import ActorRole, OrderStatus, OTPPurpose, TrackingSubject
from handoff.db.models.orders import Order
from handoff.services.authz import Capability, require, require_order_access
from handoff.services.errors import (
    HandoffError,
    PermissionDeniedError,
    PreconditionFailedError,
)
from handoff.services.guards import check_advance, check_not_terminal, requires_otp
from handoff.services.locking import check_expected_status, fetch_one, stale_guard
from handoff.services.tracking import TrackingLog

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime
    from enum import Enum
    from uuid import UUID

    from sqlalchemy import ColumnElement
    from sqlalchemy.ext.asyncio import AsyncSession

    from handoff.core.clock import Clock
    from handoff.db.models.tracking import TrackingEvent
    from handoff.services.authz import Actor
    from handoff.services.otp import OTPDispatch, OTPEngine

logger = logging.getLogger(__name__)

# Capability needed to request each target status
_TARGET_CAPABILITY: dict[OrderStatus, Capability] = {
    OrderStatus.PENDING: Capability.CONFIRM_ORDER,
    OrderStatus.CONFIRMED: Capability.CONFIRM_ORDER,
    OrderStatus.PROCESSING: Capability.CONFIRM_ORDER,
    OrderStatus.OUT_FOR_DELIVERY: Capability.ADVANCE_DELIVERY,
    OrderStatus.NEAR_LOCATION: Capability.REPORT_NEAR_LOCATION,
    OrderStatus.DELIVERED: Capability.VERIFY_DELIVERY_OTP,
    OrderStatus.CANCELLED: Capability.CANCEL_ORDER,
}

# Customers may cancel only before the parcel leaves the warehouse
CUSTOMER_CANCELLABLE = frozenset(
    {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING}
)

ASSIGNABLE = frozenset({OrderStatus.CONFIRMED, OrderStatus.PROCESSING})

# Held by an agent and not yet handed over
ACTIVE_DELIVERY = frozenset(
    {
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.NEAR_LOCATION,
    }
)


@dataclass(frozen=True, slots=True)
class OrderFilter:
    """Criteria for order listings. Unset fields do not filter."""

    customer_id: str | None = None
    agent_id: str | None = None
    unassigned: bool = False
    statuses: frozenset[OrderStatus] | None = None
    delivered_since: datetime | None = None

    def clauses(self) -> list[ColumnElement[bool]]:
        clauses: list[ColumnElement[bool]] = []
        if self.customer_id is not None:
            clauses.append(Order.customer_id == self.customer_id)
        if self.agent_id is not None:
            clauses.append(Order.delivery_agent_id == self.agent_id)
        if self.unassigned:
            clauses.append(Order.delivery_agent_id.is_(None))
        if self.statuses is not None:
            clauses.append(Order.status.in_(self.statuses))
        if self.delivered_since is not None:
            clauses.append(Order.delivered_at >= self.delivered_since)
        return clauses


@dataclass(frozen=True, slots=True)
class DeliveryStats:
    delivered_total: int
    delivered_today: int
    active: int


@dataclass(frozen=True, slots=True)
class TransitionResult:
    """Result of a committed (or idempotently skipped) transition.

    Attributes:
        previous_status: Status before the request.
        new_status: Status after the request.
        changed: False when the request was an idempotent no-op.
        tracking_event: Event appended for the transition, if any.
    """

    previous_status: Enum
    new_status: Enum
    changed: bool
    tracking_event: TrackingEvent | None


class OrderLifecycleService:
    """Drives orders through the delivery state machine.

    Example:
        service = OrderLifecycleService(session, otp_engine)
        await service.transition(order_id, OrderStatus.OUT_FOR_DELIVERY, actor=agent)
        await service.transition(order_id, OrderStatus.NEAR_LOCATION, actor=agent)
        dispatch = await service.issue_delivery_otp(order_id, actor=agent)
        await session.commit()
        await otp_engine.send(dispatch)
        await service.confirm_delivery(order_id, "482193", actor=agent)
    """

    def __init__(
        self,
        session: AsyncSession,
        otp: OTPEngine,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._session = session
        self._otp = otp
        self._clock = clock
        self._tracking = TrackingLog(session)

    async def get_order(self, order_id: UUID, *, lock: bool = False) -> Order:
        """Fetch an order, raising NotFoundError if missing."""
        return await fetch_one(
            self._session, Order, Order.order_id, order_id, entity="Order", lock=lock
        )

    async def _load_for_update(self, order_id: UUID, expected_status: OrderStatus | None) -> Order:
        order = await self.get_order(order_id, lock=True)
        check_expected_status(order, expected_status, entity="Order")
        return order

    async def view_order(self, order_id: UUID, *, actor: Actor) -> Order:
        require(actor, Capability.VIEW_ORDER)
        order = await self.get_order(order_id)
        require_order_access(actor, order)
        return order

    async def tracking_history(self, order_id: UUID, *, actor: Actor) -> Sequence[TrackingEvent]:
        """Chronological tracking events visible to ``actor``."""
        await self.view_order(order_id, actor=actor)
        return await self._tracking.history(order_id)

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def find_orders(
        self,
        criteria: OrderFilter,
        *,
        offset: int = 0,
        limit: int = 20,
        oldest_first: bool = False,
    ) -> tuple[list[Order], int]:
        """One page of orders matching ``criteria`` and the total match count."""
        created = Order.created_at.asc() if oldest_first else Order.created_at.desc()
        query = (
            select(Order)
            .where(*criteria.clauses())
            .order_by(created, Order.order_id)
            .offset(offset)
            .limit(limit)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all()), await self.count_orders(criteria)

    async def count_orders(self, criteria: OrderFilter) -> int:
        query = select(func.count()).select_from(Order).where(*criteria.clauses())
        return (await self._session.execute(query)).scalar_one()

    async def list_customer_orders(
        self,
        *,
        actor: Actor,
        status: OrderStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Order], int]:
        """The customer's own orders, newest first."""
        require(actor, Capability.VIEW_ORDER)
        if actor.role != ActorRole.CUSTOMER:
            raise PermissionDeniedError("Only customers have an order list")
        criteria = OrderFilter(
            customer_id=actor.actor_id,
            statuses=frozenset({status}) if status is not None else None,
        )
        return await self.find_orders(criteria, offset=offset, limit=limit)

    async def list_assignments(
        self, *, actor: Actor, offset: int = 0, limit: int = 20
    ) -> tuple[list[Order], int]:
        """Orders the delivery partner holds and has not yet handed over."""
        require(actor, Capability.VIEW_ORDER)
        if actor.role != ActorRole.DELIVERY_PARTNER:
            raise PermissionDeniedError("Only delivery partners have assignments")
        criteria = OrderFilter(agent_id=actor.actor_id, statuses=ACTIVE_DELIVERY)
        return await self.find_orders(criteria, offset=offset, limit=limit, oldest_first=True)

    async def list_unassigned(
        self, *, actor: Actor, offset: int = 0, limit: int = 20
    ) -> tuple[list[Order], int]:
        """Orders awaiting dispatch with no agent, longest waiting first."""
        require(actor, Capability.ASSIGN_AGENT)
        criteria = OrderFilter(unassigned=True, statuses=ASSIGNABLE)
        return await self.find_orders(criteria, offset=offset, limit=limit, oldest_first=True)

    async def delivery_stats(self, *, actor: Actor) -> DeliveryStats:
        """Handover counts for a delivery partner; "today" is the UTC day."""
        require(actor, Capability.VIEW_ORDER)
        if actor.role != ActorRole.DELIVERY_PARTNER:
            raise PermissionDeniedError("Only delivery partners have delivery stats")
        now = self._clock()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        delivered = frozenset({OrderStatus.DELIVERED})
        return DeliveryStats(
            delivered_total=await self.count_orders(
                OrderFilter(agent_id=actor.actor_id, statuses=delivered)
            ),
            delivered_today=await self.count_orders(
                OrderFilter(agent_id=actor.actor_id, statuses=delivered, delivered_since=midnight)
            ),
            active=await self.count_orders(
                OrderFilter(agent_id=actor.actor_id, statuses=ACTIVE_DELIVERY)
            ),
        )

    async def assign_agent(
        self,
        order_id: UUID,
        agent_id: str,
        *,
        actor: Actor,
        expected_status: OrderStatus | None = None,
    ) -> Order:
        """Assign a delivery agent while the order awaits dispatch.

        Delivery partners may only assign themselves and cannot take over
        an order another agent already holds; admins may reassign freely.
        """
        require(actor, Capability.ASSIGN_AGENT)
        if actor.role == ActorRole.DELIVERY_PARTNER and agent_id != actor.actor_id:
            raise PermissionDeniedError("Delivery partners may only assign themselves")

        order = await self._load_for_update(order_id, expected_status)
        check_not_terminal(order.status, "Order")
        if order.status not in ASSIGNABLE:
            raise PreconditionFailedError(
                f"Agents can only be assigned before dispatch (order is {order.status.value})",
                current_status=order.status,
            )
        if (
            order.delivery_agent_id is not None
            and order.delivery_agent_id != agent_id
            and actor.role != ActorRole.ADMIN
        ):
            raise PreconditionFailedError(
                "Order is already assigned to another delivery agent",
                current_status=order.status,
            )

        previous_agent = order.delivery_agent_id
        order.delivery_agent_id = agent_id
        order.updated_at = self._clock()
        async with stale_guard("Order", order_id):
            await self._session.flush()

        logger.info(
            "Delivery agent assigned",
            extra={
                "order_id": str(order_id),
                "agent_id": agent_id,
                "previous_agent_id": previous_agent,
                "actor_id": actor.actor_id,
            },
        )
        return order

    async def transition(
        self,
        order_id: UUID,
        to_status: OrderStatus,
        *,
        actor: Actor,
        expected_status: OrderStatus | None = None,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """Request a status change.

        Args:
            order_id: Order to move.
            to_status: Requested status.
            actor: Caller.
            expected_status: Status the caller based the request on.
            message: Override for the tracking message.
            metadata: Extra tracking context.

        Raises:
            PermissionDeniedError: Role or ownership check failed.
            AlreadyFinalizedError: Order is delivered or cancelled.
            InvalidTransitionError: ``to_status`` does not follow the current status.
            PreconditionFailedError: A guard (agent, customer window, OTP) failed.
            ConcurrentModificationError: The order moved on underneath the caller.
        """
        require(actor, _TARGET_CAPABILITY[to_status])
        order = await self._load_for_update(order_id, expected_status)
        require_order_access(actor, order)
        return await self._apply(order, to_status, actor, message=message, metadata=metadata)

    async def issue_delivery_otp(self, order_id: UUID, *, actor: Actor) -> OTPDispatch:
        """Issue a delivery code, to be sent after commit; only at ``near_location``."""
        require(actor, Capability.ISSUE_DELIVERY_OTP)
        order = await self._load_for_update(order_id, None)
        require_order_access(actor, order)
        check_not_terminal(order.status, "Order")
        if order.status != OrderStatus.NEAR_LOCATION:
            raise PreconditionFailedError(
                "Delivery OTP can only be issued once the agent is near the delivery address",
                current_status=order.status,
                required_status=OrderStatus.NEAR_LOCATION,
            )
        return await self._otp.issue(
            order.order_id,
            OTPPurpose.DELIVERY,
            contact=order.customer_contact,
            reference=order.order_number,
            issued_by=actor.actor_id,
        )

    async def confirm_delivery(
        self,
        order_id: UUID,
        code: str,
        *,
        actor: Actor,
    ) -> TransitionResult:
        """Verify the customer's delivery code and mark the order delivered."""
        require(actor, Capability.VERIFY_DELIVERY_OTP)
        order = await self._load_for_update(order_id, None)
        require_order_access(actor, order)
        check_advance(order.status, OrderStatus.DELIVERED, "Order")

        verification = await self._otp.verify(order.order_id, OTPPurpose.DELIVERY, code)
        return await self._apply(
            order,
            OrderStatus.DELIVERED,
            actor,
            verified=OTPPurpose.DELIVERY,
            metadata={"challenge_id": str(verification.challenge_id)},
        )

    async def _apply(
        self,
        order: Order,
        to_status: OrderStatus,
        actor: Actor,
        *,
        verified: OTPPurpose | None = None,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionResult:
        from_status = order.status

        if from_status == to_status == OrderStatus.OUT_FOR_DELIVERY:
            logger.info(
                "Order already out for delivery, nothing to do",
                extra={"order_id": str(order.order_id), "actor_id": actor.actor_id},
            )
            return TransitionResult(
                previous_status=from_status,
                new_status=from_status,
                changed=False,
                tracking_event=None,
            )

        try:
            check_advance(from_status, to_status, "Order")
            await self._check_preconditions(order, to_status, actor, verified)
        except HandoffError as e:
            logger.warning(
                "Order transition rejected",
                extra={
                    "order_id": str(order.order_id),
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                    "actor_role": actor.role.value,
                    "actor_id": actor.actor_id,
                    "error": e.code,
                },
            )
            raise

        now = self._clock()
        order.status = to_status
        order.updated_at = now
        if to_status == OrderStatus.DELIVERED:
            order.delivered_at = now
        elif to_status == OrderStatus.CANCELLED:
            order.cancelled_at = now

        async with stale_guard("Order", order.order_id):
            event = await self._tracking.append(
                order_id=order.order_id,
                subject=TrackingSubject.ORDER,
                previous_status=from_status,
                new_status=to_status,
                actor=actor,
                at=now,
                message=message,
                metadata=metadata,
            )

        logger.info(
            "Order transition completed",
            extra={
                "order_id": str(order.order_id),
                "from_status": from_status.value,
                "to_status": to_status.value,
                "sequence": event.sequence,
            },
        )
        return TransitionResult(
            previous_status=from_status,
            new_status=to_status,
            changed=True,
            tracking_event=event,
        )

    async def _check_preconditions(
        self,
        order: Order,
        to_status: OrderStatus,
        actor: Actor,
        verified: OTPPurpose | None,
    ) -> None:
        if to_status == OrderStatus.OUT_FOR_DELIVERY and order.delivery_agent_id is None:
            raise PreconditionFailedError(
                "A delivery agent must be assigned before dispatch",
                current_status=order.status,
                missing_step="assign_agent",
            )

        if (
            to_status == OrderStatus.CANCELLED
            and actor.role == ActorRole.CUSTOMER
            and order.status not in CUSTOMER_CANCELLABLE
        ):
            raise PreconditionFailedError(
                "Order has already been dispatched and can no longer be cancelled by the customer",
                current_status=order.status,
            )

        purpose = requires_otp(order.status, to_status)
        if purpose is not None and purpose != verified:
            if not await self._otp.has_verified(order.order_id, purpose):
                raise PreconditionFailedError(
                    f"The {purpose.value} OTP must be verified before this transition",
                    current_status=order.status,
                    missing_step=f"verify_{purpose.value}_otp",
                )
