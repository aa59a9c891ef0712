"""Refund state machine service.

pending -> approved -> processing -> completed
pending -> rejected
processing -> failed -> processing (manual retry)

The manufacturer decides and submits refunds; the payment itself runs in
the worker (``refund_payment`` job) and its outcome is recorded by the
worker or by the payment rail's signed callback, acting as ``system``.
Each submission uses a fresh idempotency key ``refund-<id>-<attempt>`` so
the rail executes at most one transfer per attempt.

Locks are taken order -> return -> refund, the same order the return
service uses.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from handoff.core.clock import utcnow
from handoff.db.models.base import ActorRole, RefundStatus, TrackingSubject
from handoff.db.models.orders import Order
from handoff.db.models.refunds import RefundRecord
from handoff.db.models.returns import ReturnRequest
from handoff.services.authz import Capability, require, require_refund_access
from handoff.services.errors import (
    ConcurrentModificationError,
    HandoffError,
    PreconditionFailedError,
)
from handoff.services.guards import check_advance, check_not_terminal
from handoff.services.job_queue import JobType
from handoff.services.lifecycle import TransitionResult
from handoff.services.locking import check_expected_status, fetch_one, stale_guard
from handoff.services.tracking import TrackingLog

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from handoff.core.clock import Clock
    from handoff.core.config import PaymentRailSettings
    from handoff.services.authz import Actor
    from handoff.services.job_queue import JobQueueService

logger = logging.getLogger(__name__)


def idempotency_key_for(refund_id: uuid.UUID, attempt: int) -> str:
    """Rail idempotency key for one submission of a refund."""
    return f"refund-{refund_id}-{attempt}"


class RefundService:
    """Manufacturer decisions and payment outcomes for refund records.

    Example:
        service = RefundService(session, JobQueueService(session))
        await service.approve_refund(refund_id, actor=manufacturer)
        await service.start_processing(refund_id, actor=manufacturer)
        # later, from the worker:
        await service.record_outcome(refund_id, succeeded=True,
                                     transaction_ref="txn_1", actor=Actor.system())
    """

    def __init__(
        self,
        session: AsyncSession,
        jobs: JobQueueService,
        *,
        payment_settings: PaymentRailSettings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session = session
        self._jobs = jobs
        self._payment_settings = payment_settings
        self._clock = clock
        self._tracking = TrackingLog(session)

    async def get_refund(self, refund_id: uuid.UUID, *, lock: bool = False) -> RefundRecord:
        return await fetch_one(
            self._session,
            RefundRecord,
            RefundRecord.refund_id,
            refund_id,
            entity="Refund",
            lock=lock,
        )

    async def view_refund(self, refund_id: uuid.UUID, *, actor: Actor) -> RefundRecord:
        require(actor, Capability.VIEW_REFUNDS)
        refund = await self.get_refund(refund_id)
        require_refund_access(actor, refund)
        return refund

    async def list_refunds(
        self,
        *,
        actor: Actor,
        status: RefundStatus | None = None,
        limit: int = 100,
    ) -> Sequence[RefundRecord]:
        """Refunds visible to ``actor``, newest first.

        Manufacturers see only refunds charged to them.
        """
        require(actor, Capability.VIEW_REFUNDS)
        query = select(RefundRecord).order_by(RefundRecord.created_at.desc()).limit(limit)
        if actor.role == ActorRole.MANUFACTURER:
            query = query.where(RefundRecord.manufacturer_id == actor.actor_id)
        if status is not None:
            query = query.where(RefundRecord.status == status)
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def find_by_idempotency_key(self, key: str) -> RefundRecord | None:
        """Refund whose current submission uses ``key``.

        Keys of earlier attempts no longer match, so late callbacks for a
        superseded submission resolve to None.
        """
        result = await self._session.execute(
            select(RefundRecord).where(RefundRecord.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    async def _load_for_update(
        self,
        refund_id: uuid.UUID,
        expected_status: RefundStatus | None,
    ) -> tuple[RefundRecord, ReturnRequest, Order]:
        unlocked = await self.get_refund(refund_id)
        order = await fetch_one(
            self._session, Order, Order.order_id, unlocked.order_id, entity="Order", lock=True
        )
        return_request = await fetch_one(
            self._session,
            ReturnRequest,
            ReturnRequest.return_id,
            unlocked.return_id,
            entity="Return",
            lock=True,
        )
        refund = await self.get_refund(refund_id, lock=True)
        check_expected_status(refund, expected_status, entity="Refund")
        return refund, return_request, order

    # ------------------------------------------------------------------
    # Manufacturer commands
    # ------------------------------------------------------------------

    async def approve_refund(
        self,
        refund_id: uuid.UUID,
        *,
        actor: Actor,
        notes: str | None = None,
        expected_status: RefundStatus | None = None,
    ) -> RefundRecord:
        require(actor, Capability.DECIDE_REFUND)
        refund, return_request, order = await self._load_for_update(refund_id, expected_status)
        require_refund_access(actor, refund)

        await self._advance(refund, return_request, order, RefundStatus.APPROVED, actor)
        refund.approved_by = actor.actor_id
        refund.approved_at = refund.updated_at
        if notes:
            refund.notes = notes.strip()
        await self._session.flush()
        return refund

    async def reject_refund(
        self,
        refund_id: uuid.UUID,
        *,
        notes: str | None,
        actor: Actor,
        expected_status: RefundStatus | None = None,
    ) -> RefundRecord:
        """Reject a pending refund; notes are mandatory."""
        require(actor, Capability.DECIDE_REFUND)
        if not (notes or "").strip():
            raise PreconditionFailedError(
                "Rejecting a refund requires notes",
                missing_step="rejection_notes",
            )

        refund, return_request, order = await self._load_for_update(refund_id, expected_status)
        require_refund_access(actor, refund)

        await self._advance(
            refund,
            return_request,
            order,
            RefundStatus.REJECTED,
            actor,
            message=f"Refund rejected: {notes.strip()}",
        )
        refund.notes = notes.strip()
        refund.rejected_by = actor.actor_id
        refund.rejected_at = refund.updated_at
        await self._session.flush()
        return refund

    async def start_processing(
        self,
        refund_id: uuid.UUID,
        *,
        actor: Actor,
        expected_status: RefundStatus | None = None,
    ) -> RefundRecord:
        """Submit an approved (or failed) refund for payment.

        Moves the refund to ``processing`` and enqueues the payment job in
        the same transaction, so a job exists iff the transition commits.
        """
        require(actor, Capability.PROCESS_REFUND)
        refund, return_request, order = await self._load_for_update(refund_id, expected_status)
        require_refund_access(actor, refund)

        attempt = refund.payment_attempts + 1
        key = idempotency_key_for(refund.refund_id, attempt)
        await self._advance(
            refund,
            return_request,
            order,
            RefundStatus.PROCESSING,
            actor,
            metadata={"attempt": attempt, "idempotency_key": key},
        )
        refund.payment_attempts = attempt
        refund.idempotency_key = key
        refund.processing_started_at = refund.updated_at
        refund.transaction_ref = None
        refund.failure_reason = None
        refund.failed_at = None

        settings = self._payment_settings
        await self._jobs.enqueue(
            JobType.REFUND_PAYMENT,
            payload={
                "refund_id": str(refund.refund_id),
                "idempotency_key": key,
                "attempt": attempt,
            },
            max_attempts=settings.poll_max_attempts if settings else None,
            base_backoff=settings.poll_base_backoff_seconds if settings else None,
            correlation_id=str(refund.refund_id),
        )
        await self._session.flush()
        return refund

    # ------------------------------------------------------------------
    # Payment outcomes (worker / rail callback)
    # ------------------------------------------------------------------

    async def attach_transaction_ref(
        self,
        refund_id: uuid.UUID,
        transaction_ref: str,
        *,
        actor: Actor,
    ) -> RefundRecord:
        """Remember the rail reference of a submission that is still pending."""
        require(actor, Capability.RECORD_REFUND_OUTCOME)
        refund = await self.get_refund(refund_id, lock=True)
        if refund.status == RefundStatus.PROCESSING and refund.transaction_ref != transaction_ref:
            refund.transaction_ref = transaction_ref
            async with stale_guard("Refund", refund_id):
                await self._session.flush()
        return refund

    async def record_outcome(
        self,
        refund_id: uuid.UUID,
        *,
        succeeded: bool,
        actor: Actor,
        transaction_ref: str | None = None,
        failure_reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> TransitionResult:
        """Record the rail's verdict for the current submission.

        ``processing -> completed`` needs a transaction reference;
        ``processing -> failed`` keeps the reason for the manufacturer.
        A replay of an outcome already recorded is a no-op.

        Raises:
            ConcurrentModificationError: ``idempotency_key`` names an older attempt.
            AlreadyFinalizedError: The refund is completed or rejected and the
                outcome differs.
            PreconditionFailedError: Success reported without a transaction reference.
        """
        require(actor, Capability.RECORD_REFUND_OUTCOME)
        if succeeded and not transaction_ref:
            raise PreconditionFailedError(
                "A completed refund needs the rail's transaction reference",
                missing_step="transaction_ref",
            )

        refund, return_request, order = await self._load_for_update(refund_id, None)
        target = RefundStatus.COMPLETED if succeeded else RefundStatus.FAILED
        current_key = idempotency_key is None or idempotency_key == refund.idempotency_key
        replay = refund.status == target and (
            not succeeded or refund.transaction_ref == transaction_ref
        )

        if not (current_key and replay):
            # Completed and rejected refunds never move, whichever attempt reports
            check_not_terminal(refund.status, "Refund")
        if not current_key:
            raise ConcurrentModificationError(
                "Outcome belongs to a superseded payment attempt",
                current_status=refund.status,
                idempotency_key=idempotency_key,
            )

        if replay:
            logger.info(
                "Refund outcome already recorded, nothing to do",
                extra={"refund_id": str(refund_id), "status": target.value},
            )
            return TransitionResult(
                previous_status=refund.status,
                new_status=refund.status,
                changed=False,
                tracking_event=None,
            )

        metadata: dict[str, Any] = {"attempt": refund.payment_attempts}
        if transaction_ref:
            metadata["transaction_ref"] = transaction_ref
        if failure_reason:
            metadata["failure_reason"] = failure_reason

        result = await self._advance(refund, return_request, order, target, actor, metadata=metadata)
        now = refund.updated_at
        if transaction_ref:
            refund.transaction_ref = transaction_ref
        if succeeded:
            refund.completed_at = now
            return_request.refund_transaction_ref = transaction_ref
            return_request.refund_processed_at = now
            await self._jobs.cancel_pending(JobType.REFUND_PAYMENT, str(refund.refund_id))
        else:
            refund.failed_at = now
            refund.failure_reason = failure_reason or "Payment rail reported failure"
        await self._session.flush()
        return result

    async def _advance(
        self,
        refund: RefundRecord,
        return_request: ReturnRequest,
        order: Order,
        to_status: RefundStatus,
        actor: Actor,
        *,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionResult:
        from_status = refund.status
        try:
            check_advance(from_status, to_status, "Refund")
        except HandoffError as e:
            logger.warning(
                "Refund transition rejected",
                extra={
                    "refund_id": str(refund.refund_id),
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                    "actor_role": actor.role.value,
                    "actor_id": actor.actor_id,
                    "error": e.code,
                },
            )
            raise

        now = self._clock()
        refund.status = to_status
        refund.updated_at = now
        return_request.refund_status = to_status
        return_request.updated_at = now

        async with stale_guard("Refund", refund.refund_id):
            event = await self._tracking.append(
                order_id=order.order_id,
                subject=TrackingSubject.REFUND,
                subject_id=refund.refund_id,
                previous_status=from_status,
                new_status=to_status,
                actor=actor,
                at=now,
                message=message,
                metadata=metadata,
            )

        logger.info(
            "Refund transition completed",
            extra={
                "refund_id": str(refund.refund_id),
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
