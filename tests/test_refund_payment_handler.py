"""Tests for the refund_payment job handler.

Tests cover:
- Immediate success and failure from the rail
- Pending transfers: reference kept, job rescheduled, failure after the last poll
- Rail errors: retried while attempts remain, recorded as failure otherwise
- Jobs for a superseded attempt finish without touching the refund
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from factories import make_job, make_order, make_refund, make_return

from handoff.core.config import PaymentRailSettings
from handoff.db.models.base import OrderStatus, RefundStatus, ReturnStatus
from handoff.services.job_queue import RetryLater
from handoff.services.payment_rail import PaymentRailError, SandboxPaymentRail
from handoff.services.refunds import idempotency_key_for
from handoff.worker.handlers.refund_payment import make_refund_payment_handler


@pytest.fixture
def processing_refund(store):
    """Return a factory for a refund in processing with its first attempt submitted."""

    def _make(destination_ref="wallet:cust-1", attempt=1):
        order = make_order(OrderStatus.DELIVERED, return_status=ReturnStatus.REFUND_REQUESTED)
        return_request = make_return(order, ReturnStatus.REFUND_REQUESTED)
        refund = make_refund(
            order,
            return_request,
            RefundStatus.PROCESSING,
            destination_ref=destination_ref,
            payment_attempts=attempt,
        )
        refund.idempotency_key = idempotency_key_for(refund.refund_id, attempt)
        store.put(order, return_request, refund)
        return refund

    return _make


def _job_for(refund, attempts=1, max_attempts=3, key=None):
    return make_job(
        payload={
            "refund_id": str(refund.refund_id),
            "idempotency_key": key or refund.idempotency_key,
            "attempt": refund.payment_attempts,
        },
        attempts=attempts,
        max_attempts=max_attempts,
    )


class TestOutcomes:
    """Tests for rail outcomes."""

    @pytest.mark.asyncio
    async def test_success_completes_refund(self, session, processing_refund):
        """A settled transfer completes the refund."""
        refund = processing_refund()
        rail = SandboxPaymentRail()
        handler = make_refund_payment_handler(rail, PaymentRailSettings())

        result = await handler(session, _job_for(refund))

        assert refund.status == RefundStatus.COMPLETED
        assert refund.transaction_ref.startswith("sbx_")
        assert result == {
            "refund_status": "completed",
            "transaction_ref": refund.transaction_ref,
        }
        assert list(rail.transfers) == [refund.idempotency_key]

    @pytest.mark.asyncio
    async def test_rejected_destination_fails_refund(self, session, processing_refund):
        """A refused transfer marks the refund failed with the reason."""
        refund = processing_refund(destination_ref="fail:closed-account")
        handler = make_refund_payment_handler(SandboxPaymentRail())

        result = await handler(session, _job_for(refund))

        assert refund.status == RefundStatus.FAILED
        assert refund.failure_reason == "Destination rejected by sandbox"
        assert result["refund_status"] == "failed"

    @pytest.mark.asyncio
    async def test_pending_transfer_is_polled(self, session, processing_refund):
        """A pending transfer keeps its reference and settles on a later poll."""
        refund = processing_refund(destination_ref="pending:bank")
        rail = SandboxPaymentRail(pending_polls=1)
        handler = make_refund_payment_handler(rail)

        with pytest.raises(RetryLater) as exc_info:
            await handler(session, _job_for(refund, attempts=1))

        assert refund.status == RefundStatus.PROCESSING
        assert refund.transaction_ref == exc_info.value.result["transaction_ref"]

        await handler(session, _job_for(refund, attempts=2))
        assert refund.status == RefundStatus.COMPLETED
        assert len(rail.transfers) == 1

    @pytest.mark.asyncio
    async def test_pending_after_last_poll_fails(self, session, processing_refund):
        """A transfer still pending on the last attempt fails the refund."""
        refund = processing_refund(destination_ref="pending:bank")
        handler = make_refund_payment_handler(SandboxPaymentRail(pending_polls=99))

        result = await handler(session, _job_for(refund, attempts=3, max_attempts=3))

        assert refund.status == RefundStatus.FAILED
        assert "still pending" in refund.failure_reason
        assert result["refund_status"] == "failed"


class TestRailErrors:
    """Tests for transport and protocol failures."""

    def _failing_rail(self, error):
        rail = MagicMock()
        rail.transfer = AsyncMock(side_effect=error)
        return rail

    @pytest.mark.asyncio
    async def test_retryable_error_propagates(self, session, processing_refund):
        """The worker retries transient errors while attempts remain."""
        refund = processing_refund()
        handler = make_refund_payment_handler(self._failing_rail(PaymentRailError("502")))

        with pytest.raises(PaymentRailError):
            await handler(session, _job_for(refund, attempts=1))
        assert refund.status == RefundStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_retryable_error_on_last_attempt_fails_refund(self, session, processing_refund):
        """With no attempts left the refund is failed for manual resubmission."""
        refund = processing_refund()
        handler = make_refund_payment_handler(self._failing_rail(PaymentRailError("timeout")))

        await handler(session, _job_for(refund, attempts=3, max_attempts=3))

        assert refund.status == RefundStatus.FAILED
        assert refund.failure_reason == "timeout"

    @pytest.mark.asyncio
    async def test_refused_request_fails_refund(self, session, processing_refund):
        """A definitive refusal is not retried."""
        refund = processing_refund()
        rail = self._failing_rail(PaymentRailError("422 bad destination", retryable=False))
        handler = make_refund_payment_handler(rail)

        await handler(session, _job_for(refund, attempts=1))

        assert refund.status == RefundStatus.FAILED
        rail.transfer.assert_awaited_once()


class TestStaleJobs:
    """Tests for jobs that no longer drive the refund."""

    @pytest.mark.asyncio
    async def test_superseded_key_is_skipped(self, session, processing_refund):
        """A job for an earlier attempt does not submit anything."""
        refund = processing_refund(attempt=2)
        rail = MagicMock()
        rail.transfer = AsyncMock()
        handler = make_refund_payment_handler(rail)

        result = await handler(
            session, _job_for(refund, key=idempotency_key_for(refund.refund_id, 1))
        )

        assert result == {"skipped": True, "refund_status": "processing"}
        rail.transfer.assert_not_called()

    @pytest.mark.asyncio
    async def test_settled_refund_is_skipped(self, session, processing_refund):
        """A refund already completed by the callback is left alone."""
        refund = processing_refund()
        refund.status = RefundStatus.COMPLETED
        handler = make_refund_payment_handler(SandboxPaymentRail())

        result = await handler(session, _job_for(refund))

        assert result["skipped"] is True
