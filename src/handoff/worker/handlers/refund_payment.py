"""Refund payment job handler.

Submits a refund transfer to the payment rail and records the outcome:

- succeeded: refund -> completed with the rail's transaction reference
- failed, or refused outright: refund -> failed with the reason
- pending: keep the rail reference and poll again after backoff; once the
  job's attempts are spent the refund is marked failed so the manufacturer
  can resubmit

A job whose refund has moved on (outcome recorded by the rail callback, or
resubmitted under a newer idempotency key) finishes without touching it.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from handoff.db.models.base import RefundStatus
from handoff.services.authz import Actor
from handoff.services.job_queue import JobQueueService, RetryLater
from handoff.services.payment_rail import PaymentRailError, TransferStatus
from handoff.services.refunds import RefundService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from handoff.core.config import PaymentRailSettings
    from handoff.db.models.jobs import Job
    from handoff.db.models.refunds import RefundRecord
    from handoff.services.payment_rail import PaymentRail, TransferResult
    from handoff.worker.main import JobHandler

logger = logging.getLogger(__name__)

WORKER_ACTOR = Actor.system("payment-worker")


def make_refund_payment_handler(
    rail: PaymentRail,
    settings: PaymentRailSettings | None = None,
) -> JobHandler:
    """Bind the handler to a payment rail adapter."""

    async def refund_payment_handler(session: AsyncSession, job: Job) -> dict[str, Any] | None:
        """Handle refund_payment jobs.

        Expected job payload:
            refund_id: UUID of the refund being paid
            idempotency_key: key of the submission this job drives
            attempt: submission number
        """
        payload = job.payload_json or {}
        refund_id = uuid.UUID(payload["refund_id"])
        key = payload["idempotency_key"]

        refunds = RefundService(session, JobQueueService(session), payment_settings=settings)
        refund = await refunds.get_refund(refund_id)

        if refund.status != RefundStatus.PROCESSING or refund.idempotency_key != key:
            logger.info(
                "Refund payment job no longer current: refund_id=%s, status=%s, key=%s",
                refund_id,
                refund.status.value,
                key,
            )
            return {"skipped": True, "refund_status": refund.status.value}

        final_attempt = job.attempts >= job.max_attempts
        try:
            result = await _submit_or_poll(rail, refund, key)
        except PaymentRailError as e:
            if e.retryable and not final_attempt:
                raise
            logger.warning(
                "Refund payment abandoned: refund_id=%s, retryable=%s, error=%s",
                refund_id,
                e.retryable,
                e,
            )
            await refunds.record_outcome(
                refund_id,
                succeeded=False,
                failure_reason=str(e),
                idempotency_key=key,
                actor=WORKER_ACTOR,
            )
            return {"refund_status": RefundStatus.FAILED.value, "error": str(e)}

        if result.status == TransferStatus.SUCCEEDED:
            await refunds.record_outcome(
                refund_id,
                succeeded=True,
                transaction_ref=result.transaction_ref,
                idempotency_key=key,
                actor=WORKER_ACTOR,
            )
            return {
                "refund_status": RefundStatus.COMPLETED.value,
                "transaction_ref": result.transaction_ref,
            }

        if result.status == TransferStatus.FAILED:
            await refunds.record_outcome(
                refund_id,
                succeeded=False,
                transaction_ref=result.transaction_ref,
                failure_reason=result.detail,
                idempotency_key=key,
                actor=WORKER_ACTOR,
            )
            return {
                "refund_status": RefundStatus.FAILED.value,
                "transaction_ref": result.transaction_ref,
            }

        await refunds.attach_transaction_ref(
            refund_id, result.transaction_ref, actor=WORKER_ACTOR
        )
        if final_attempt:
            await refunds.record_outcome(
                refund_id,
                succeeded=False,
                transaction_ref=result.transaction_ref,
                failure_reason=f"Transfer still pending after {job.attempts} checks",
                idempotency_key=key,
                actor=WORKER_ACTOR,
            )
            return {
                "refund_status": RefundStatus.FAILED.value,
                "transaction_ref": result.transaction_ref,
            }

        raise RetryLater(
            "transfer pending",
            result={"transaction_ref": result.transaction_ref},
        )

    return refund_payment_handler


async def _submit_or_poll(rail: PaymentRail, refund: RefundRecord, key: str) -> TransferResult:
    # A known reference means this attempt was already submitted
    if refund.transaction_ref:
        return await rail.get_transfer(refund.transaction_ref)
    return await rail.transfer(
        destination=refund.destination_ref,
        amount=refund.amount,
        currency=refund.currency,
        idempotency_key=key,
    )
