"""Return request state machine service.

return_requested -> approved | rejected | cancelled
approved -> out_for_pickup -> pickup_near_location -> pickup_otp_generated
         -> pickup_completed -> refund_requested

``ReturnRequest.status`` is authoritative; ``Order.return_status`` mirrors
it and is cleared when the customer withdraws the return. Every command
locks the parent order row before the return row.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from handoff.core.clock import utcnow
from handoff.db.models.base import (
    ActorRole,
    OTPPurpose,
    RefundStatus,
    ReturnStatus,
    TrackingSubject,
)
from handoff.db.models.orders import Order
from handoff.db.models.refunds import RefundRecord
from handoff.db.models.returns import ReturnRequest
from handoff.services.authz import (
    Capability,
    primary_manufacturer,
    require,
    require_order_access,
    require_return_access,
)
from handoff.services.errors import (
    HandoffError,
    InvalidTransitionError,
    PreconditionFailedError,
)
from handoff.services.guards import (
    DEFAULT_RETURN_WINDOW_DAYS,
    RESOLVED_RETURN_STATUSES,
    allowed_next,
    check_advance,
    check_open_return,
    requires_otp,
)
from handoff.services.lifecycle import TransitionResult
from handoff.services.locking import check_expected_status, fetch_one, stale_guard
from handoff.services.tracking import TrackingLog

if TYPE_CHECKING:
    from datetime import date
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from handoff.core.clock import Clock
    from handoff.db.models.base import ReturnReason
    from handoff.services.authz import Actor
    from handoff.services.otp import OTPDispatch, OTPEngine

logger = logging.getLogger(__name__)

# Steps a delivery partner reports directly; the OTP steps have their own commands
PICKUP_PROGRESS = frozenset({ReturnStatus.OUT_FOR_PICKUP, ReturnStatus.PICKUP_NEAR_LOCATION})

OTP_ISSUABLE = frozenset({ReturnStatus.PICKUP_NEAR_LOCATION, ReturnStatus.PICKUP_OTP_GENERATED})


class ReturnService:
    """Opens returns and drives them through approval, pickup and refund request.

    Example:
        service = ReturnService(session, otp_engine)
        rr = await service.open_return(order_id, reason=ReturnReason.DAMAGED, actor=customer)
        await service.approve_return(rr.return_id, pickup_date=date(2026, 5, 2),
                                     pickup_window="10:00-12:00", actor=manufacturer)
    """

    def __init__(
        self,
        session: AsyncSession,
        otp: OTPEngine,
        *,
        window_days: int = DEFAULT_RETURN_WINDOW_DAYS,
        clock: Clock = utcnow,
    ) -> None:
        self._session = session
        self._otp = otp
        self._window_days = window_days
        self._clock = clock
        self._tracking = TrackingLog(session)

    async def get_return(self, return_id: uuid.UUID, *, lock: bool = False) -> ReturnRequest:
        return await fetch_one(
            self._session,
            ReturnRequest,
            ReturnRequest.return_id,
            return_id,
            entity="Return",
            lock=lock,
        )

    async def view_return(self, return_id: uuid.UUID, *, actor: Actor) -> ReturnRequest:
        require(actor, Capability.VIEW_ORDER)
        return_request = await self.get_return(return_id)
        order = await fetch_one(
            self._session, Order, Order.order_id, return_request.order_id, entity="Order"
        )
        require_return_access(actor, return_request, order)
        return return_request

    async def unresolved_return(self, order_id: uuid.UUID) -> ReturnRequest | None:
        """The order's return that still blocks a new one, if any."""
        query = (
            select(ReturnRequest)
            .where(
                ReturnRequest.order_id == order_id,
                ReturnRequest.status.not_in(RESOLVED_RETURN_STATUSES),
            )
            .order_by(ReturnRequest.requested_at.desc())
            .limit(1)
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    async def _load_for_update(
        self,
        return_id: uuid.UUID,
        expected_status: ReturnStatus | None,
    ) -> tuple[ReturnRequest, Order]:
        unlocked = await self.get_return(return_id)
        order = await fetch_one(
            self._session, Order, Order.order_id, unlocked.order_id, entity="Order", lock=True
        )
        return_request = await self.get_return(return_id, lock=True)
        check_expected_status(return_request, expected_status, entity="Return")
        return return_request, order

    # ------------------------------------------------------------------
    # Customer commands
    # ------------------------------------------------------------------

    async def open_return(
        self,
        order_id: uuid.UUID,
        *,
        reason: ReturnReason,
        actor: Actor,
        comment: str | None = None,
    ) -> ReturnRequest:
        """Open a return on a delivered order within the return window.

        Raises:
            PreconditionFailedError: Order not delivered, window closed, or an
                unresolved return already exists.
        """
        require(actor, Capability.OPEN_RETURN)
        order = await fetch_one(
            self._session, Order, Order.order_id, order_id, entity="Order", lock=True
        )
        require_order_access(actor, order)

        now = self._clock()
        existing = await self.unresolved_return(order_id)
        try:
            check_open_return(order, now, existing, self._window_days)
        except PreconditionFailedError as e:
            logger.warning(
                "Return refused",
                extra={"order_id": str(order_id), "actor_id": actor.actor_id, "reason": e.reason},
            )
            raise

        return_request = ReturnRequest(
            return_id=uuid.uuid4(),
            order_id=order.order_id,
            customer_id=order.customer_id,
            reason=reason,
            comment=comment,
            status=ReturnStatus.RETURN_REQUESTED,
            requested_at=now,
            updated_at=now,
        )
        self._session.add(return_request)
        order.return_status = ReturnStatus.RETURN_REQUESTED
        order.updated_at = now

        async with stale_guard("Order", order.order_id):
            await self._tracking.append(
                order_id=order.order_id,
                subject=TrackingSubject.RETURN,
                subject_id=return_request.return_id,
                previous_status=None,
                new_status=ReturnStatus.RETURN_REQUESTED,
                actor=actor,
                at=now,
                metadata={"reason": reason.value},
            )

        logger.info(
            "Return opened",
            extra={
                "order_id": str(order_id),
                "return_id": str(return_request.return_id),
                "reason": reason.value,
            },
        )
        return return_request

    async def cancel_return(
        self,
        return_id: uuid.UUID,
        *,
        actor: Actor,
        expected_status: ReturnStatus | None = None,
    ) -> ReturnRequest:
        """Withdraw a return that has not been decided yet."""
        require(actor, Capability.CANCEL_RETURN)
        return_request, order = await self._load_for_update(return_id, expected_status)
        require_return_access(actor, return_request, order)

        await self._advance(return_request, order, ReturnStatus.CANCELLED, actor)
        return_request.cancelled_at = return_request.updated_at
        # The order goes back to plain 'delivered'
        order.return_status = None
        await self._session.flush()
        return return_request

    # ------------------------------------------------------------------
    # Manufacturer / platform decisions
    # ------------------------------------------------------------------

    async def approve_return(
        self,
        return_id: uuid.UUID,
        *,
        pickup_date: date | None,
        pickup_window: str | None,
        actor: Actor,
        expected_status: ReturnStatus | None = None,
    ) -> ReturnRequest:
        """Approve a return and schedule its pickup.

        Raises:
            PreconditionFailedError: Pickup date or window missing.
        """
        require(actor, Capability.DECIDE_RETURN)
        if pickup_date is None or not (pickup_window or "").strip():
            raise PreconditionFailedError(
                "Approving a return requires a pickup date and time window",
                missing_step="schedule_pickup",
            )

        return_request, order = await self._load_for_update(return_id, expected_status)
        require_return_access(actor, return_request, order)
        await self._advance(
            return_request,
            order,
            ReturnStatus.APPROVED,
            actor,
            metadata={"pickup_date": pickup_date.isoformat(), "pickup_window": pickup_window},
        )
        return_request.pickup_date = pickup_date
        return_request.pickup_window = pickup_window.strip()
        return_request.decided_by = actor.actor_id
        return_request.decided_at = return_request.updated_at
        await self._session.flush()
        return return_request

    async def reject_return(
        self,
        return_id: uuid.UUID,
        *,
        notes: str | None,
        actor: Actor,
        expected_status: ReturnStatus | None = None,
    ) -> ReturnRequest:
        """Reject a return; notes are mandatory."""
        require(actor, Capability.DECIDE_RETURN)
        if not (notes or "").strip():
            raise PreconditionFailedError(
                "Rejecting a return requires notes for the customer",
                missing_step="rejection_notes",
            )

        return_request, order = await self._load_for_update(return_id, expected_status)
        require_return_access(actor, return_request, order)
        await self._advance(
            return_request,
            order,
            ReturnStatus.REJECTED,
            actor,
            message=f"Return rejected: {notes.strip()}",
        )
        return_request.rejection_notes = notes.strip()
        return_request.decided_by = actor.actor_id
        return_request.decided_at = return_request.updated_at
        await self._session.flush()
        return return_request

    # ------------------------------------------------------------------
    # Pickup pipeline
    # ------------------------------------------------------------------

    async def advance_pickup(
        self,
        return_id: uuid.UUID,
        to_status: ReturnStatus,
        *,
        actor: Actor,
        expected_status: ReturnStatus | None = None,
    ) -> ReturnRequest:
        """Report pickup progress (out for pickup, near pickup location).

        The first delivery partner to go out for pickup becomes the return's
        pickup agent.
        """
        require(actor, Capability.ADVANCE_PICKUP)
        return_request, order = await self._load_for_update(return_id, expected_status)
        require_return_access(actor, return_request, order)

        if to_status == ReturnStatus.PICKUP_OTP_GENERATED:
            raise PreconditionFailedError(
                "Issue the pickup OTP to reach pickup_otp_generated",
                current_status=return_request.status,
                missing_step="issue_pickup_otp",
            )
        if to_status not in PICKUP_PROGRESS and to_status != ReturnStatus.PICKUP_COMPLETED:
            raise InvalidTransitionError(
                return_request.status,
                to_status,
                allowed=allowed_next(return_request.status),
                reason=f"{to_status.value} is not a pickup step",
            )

        await self._advance(return_request, order, to_status, actor)
        if (
            to_status == ReturnStatus.OUT_FOR_PICKUP
            and actor.role == ActorRole.DELIVERY_PARTNER
            and return_request.pickup_agent_id is None
        ):
            return_request.pickup_agent_id = actor.actor_id
            await self._session.flush()
        return return_request

    async def issue_pickup_otp(self, return_id: uuid.UUID, *, actor: Actor) -> OTPDispatch:
        """Issue a pickup code, to be sent to the customer after commit.

        The first issue moves the return to ``pickup_otp_generated``; issuing
        again from that status replaces the code without a new event.
        """
        require(actor, Capability.ISSUE_PICKUP_OTP)
        return_request, order = await self._load_for_update(return_id, None)
        require_return_access(actor, return_request, order)
        if return_request.status not in OTP_ISSUABLE:
            raise PreconditionFailedError(
                "Pickup OTP can only be issued once the agent is near the pickup address",
                current_status=return_request.status,
                required_status=ReturnStatus.PICKUP_NEAR_LOCATION,
            )

        dispatch = await self._otp.issue(
            order.order_id,
            OTPPurpose.PICKUP,
            contact=order.customer_contact,
            reference=order.order_number,
            issued_by=actor.actor_id,
        )
        if return_request.status == ReturnStatus.PICKUP_NEAR_LOCATION:
            await self._advance(
                return_request,
                order,
                ReturnStatus.PICKUP_OTP_GENERATED,
                actor,
                metadata={"challenge_id": str(dispatch.challenge_id)},
            )
        return dispatch

    async def confirm_pickup(
        self,
        return_id: uuid.UUID,
        code: str,
        *,
        actor: Actor,
    ) -> ReturnRequest:
        """Verify the customer's pickup code and mark the pickup complete."""
        require(actor, Capability.VERIFY_PICKUP_OTP)
        return_request, order = await self._load_for_update(return_id, None)
        require_return_access(actor, return_request, order)
        check_advance(return_request.status, ReturnStatus.PICKUP_COMPLETED, "Return")

        verification = await self._otp.verify(order.order_id, OTPPurpose.PICKUP, code)
        await self._advance(
            return_request,
            order,
            ReturnStatus.PICKUP_COMPLETED,
            actor,
            verified=OTPPurpose.PICKUP,
            metadata={"challenge_id": str(verification.challenge_id)},
        )
        return_request.picked_up_at = return_request.updated_at
        await self._session.flush()
        return return_request

    async def request_refund(
        self,
        return_id: uuid.UUID,
        *,
        actor: Actor,
        destination_ref: str | None = None,
        amount: Decimal | None = None,
    ) -> RefundRecord:
        """Raise the refund for a completed pickup.

        Creates the single RefundRecord for this return in ``pending``.
        """
        require(actor, Capability.REQUEST_REFUND)
        return_request, order = await self._load_for_update(return_id, None)
        require_return_access(actor, return_request, order)

        refund = RefundRecord(
            refund_id=uuid.uuid4(),
            order_id=order.order_id,
            return_id=return_request.return_id,
            manufacturer_id=primary_manufacturer(order),
            amount=amount if amount is not None else order.total_amount,
            currency=order.currency,
            status=RefundStatus.PENDING,
            destination_ref=destination_ref or f"wallet:{order.customer_id}",
            payment_attempts=0,
        )
        await self._advance(
            return_request,
            order,
            ReturnStatus.REFUND_REQUESTED,
            actor,
            metadata={"refund_id": str(refund.refund_id), "amount": str(refund.amount)},
        )

        self._session.add(refund)
        return_request.refund_status = RefundStatus.PENDING
        return_request.refund_amount = refund.amount
        await self._session.flush()

        logger.info(
            "Refund requested",
            extra={
                "order_id": str(order.order_id),
                "return_id": str(return_id),
                "refund_id": str(refund.refund_id),
            },
        )
        return refund

    async def _advance(
        self,
        return_request: ReturnRequest,
        order: Order,
        to_status: ReturnStatus,
        actor: Actor,
        *,
        verified: OTPPurpose | None = None,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionResult:
        from_status = return_request.status
        try:
            check_advance(from_status, to_status, "Return")
            purpose = requires_otp(from_status, to_status)
            if (
                purpose is not None
                and purpose != verified
                and not await self._otp.has_verified(order.order_id, purpose)
            ):
                raise PreconditionFailedError(
                    f"The {purpose.value} OTP must be verified before this transition",
                    current_status=from_status,
                    missing_step=f"verify_{purpose.value}_otp",
                )
        except HandoffError as e:
            logger.warning(
                "Return transition rejected",
                extra={
                    "return_id": str(return_request.return_id),
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                    "actor_role": actor.role.value,
                    "actor_id": actor.actor_id,
                    "error": e.code,
                },
            )
            raise

        now = self._clock()
        return_request.status = to_status
        return_request.updated_at = now
        order.return_status = to_status
        order.updated_at = now

        async with stale_guard("Return", return_request.return_id):
            event = await self._tracking.append(
                order_id=order.order_id,
                subject=TrackingSubject.RETURN,
                subject_id=return_request.return_id,
                previous_status=from_status,
                new_status=to_status,
                actor=actor,
                at=now,
                message=message,
                metadata=metadata,
            )

        logger.info(
            "Return transition completed",
            extra={
                "return_id": str(return_request.return_id),
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
