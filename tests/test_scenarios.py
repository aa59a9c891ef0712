"""End-to-end workflow scenarios against the in-memory store.

Each scenario drives the real services the way the API and the worker do:
delivery from confirmation to OTP handover, a return through pickup and a
paid refund, and the rules that stop a workflow from going backwards.
"""

from datetime import date, timedelta

import pytest
from factories import make_item, make_order

from handoff.core.config import PaymentRailSettings
from handoff.db.models.base import (
    JobStatus,
    OrderStatus,
    RefundStatus,
    ReturnReason,
    ReturnStatus,
    TrackingSubject,
)
from handoff.services.errors import (
    AlreadyFinalizedError,
    InvalidTransitionError,
    PreconditionFailedError,
)
from handoff.services.job_queue import JobQueueService
from handoff.services.lifecycle import OrderLifecycleService
from handoff.services.payment_rail import SandboxPaymentRail
from handoff.services.refunds import RefundService
from handoff.services.returns import ReturnService
from handoff.worker.handlers.refund_payment import make_refund_payment_handler

CODE = "482193"


@pytest.fixture
def lifecycle(session, otp_engine, clock):
    return OrderLifecycleService(session, otp_engine, clock=clock)


@pytest.fixture
def returns(session, otp_engine, clock):
    return ReturnService(session, otp_engine, clock=clock)


@pytest.fixture
def refunds(session, clock):
    return RefundService(
        session,
        JobQueueService(session, clock=clock),
        payment_settings=PaymentRailSettings(),
        clock=clock,
    )


async def _deliver(lifecycle, order, admin, agent, otp_engine=None):
    await lifecycle.transition(order.order_id, OrderStatus.CONFIRMED, actor=admin)
    await lifecycle.assign_agent(order.order_id, agent.actor_id, actor=agent)
    await lifecycle.transition(order.order_id, OrderStatus.OUT_FOR_DELIVERY, actor=agent)
    await lifecycle.transition(order.order_id, OrderStatus.NEAR_LOCATION, actor=agent)
    dispatch = await lifecycle.issue_delivery_otp(order.order_id, actor=agent)
    if otp_engine is not None:
        await otp_engine.send(dispatch)
    return await lifecycle.confirm_delivery(order.order_id, CODE, actor=agent)


class TestDeliveryScenario:
    """Order from placement to handover."""

    @pytest.mark.asyncio
    async def test_happy_path(
        self, lifecycle, store, admin, agent, customer, otp_engine, outbox, clock
    ):
        """Every step is tracked in order and the code reaches the customer only."""
        order = make_order()
        store.put(order)

        result = await _deliver(lifecycle, order, admin, agent, otp_engine)

        assert result.new_status == OrderStatus.DELIVERED
        assert order.status == OrderStatus.DELIVERED
        assert order.delivered_at == clock.now
        history = await lifecycle.tracking_history(order.order_id, actor=customer)
        assert [e.new_status for e in history] == [
            "confirmed",
            "out_for_delivery",
            "near_location",
            "delivered",
        ]
        assert [e.sequence for e in history] == [1, 2, 3, 4]
        ((contact, _),) = outbox.outbox
        assert contact == order.customer_contact

    @pytest.mark.asyncio
    async def test_delivery_code_is_single_use(self, lifecycle, store, admin, agent):
        """A delivered order cannot be delivered again with the same code."""
        order = make_order()
        store.put(order)
        await _deliver(lifecycle, order, admin, agent)

        with pytest.raises(AlreadyFinalizedError):
            await lifecycle.confirm_delivery(order.order_id, CODE, actor=agent)
        assert len(store.events_for(order.order_id)) == 4

    @pytest.mark.asyncio
    async def test_no_skipping_to_delivered(self, lifecycle, store, admin, agent):
        """Delivery requires the agent to be near the address first."""
        order = make_order()
        store.put(order)
        await lifecycle.transition(order.order_id, OrderStatus.CONFIRMED, actor=admin)
        await lifecycle.assign_agent(order.order_id, agent.actor_id, actor=agent)
        await lifecycle.transition(order.order_id, OrderStatus.OUT_FOR_DELIVERY, actor=agent)

        with pytest.raises(PreconditionFailedError):
            await lifecycle.issue_delivery_otp(order.order_id, actor=agent)
        with pytest.raises(InvalidTransitionError):
            await lifecycle.confirm_delivery(order.order_id, CODE, actor=agent)
        assert order.status == OrderStatus.OUT_FOR_DELIVERY


class TestReturnAndRefundScenario:
    """Return, pickup and refund payment through the sandbox rail."""

    @pytest.mark.asyncio
    async def test_return_to_paid_refund(
        self,
        lifecycle,
        returns,
        refunds,
        session,
        store,
        admin,
        agent,
        customer,
        manufacturer,
        clock,
    ):
        """A damaged item goes back and the customer is paid."""
        order = make_order()
        store.put(order, make_item(order))
        await _deliver(lifecycle, order, admin, agent)
        clock.advance(days=3)

        return_request = await returns.open_return(
            order.order_id, reason=ReturnReason.DAMAGED, actor=customer, comment="Lid cracked"
        )
        await returns.approve_return(
            return_request.return_id,
            pickup_date=date(2026, 10, 24),
            pickup_window="14:00-16:00",
            actor=manufacturer,
        )
        await returns.advance_pickup(
            return_request.return_id, ReturnStatus.OUT_FOR_PICKUP, actor=agent
        )
        await returns.advance_pickup(
            return_request.return_id, ReturnStatus.PICKUP_NEAR_LOCATION, actor=agent
        )
        await returns.issue_pickup_otp(return_request.return_id, actor=agent)
        await returns.confirm_pickup(return_request.return_id, CODE, actor=agent)
        refund = await returns.request_refund(return_request.return_id, actor=agent)

        assert refund.manufacturer_id == manufacturer.actor_id
        assert refund.destination_ref == "wallet:cust-1"
        assert order.return_status == ReturnStatus.REFUND_REQUESTED

        await refunds.approve_refund(refund.refund_id, actor=manufacturer)
        await refunds.start_processing(refund.refund_id, actor=manufacturer)

        (job,) = store.jobs(JobStatus.PENDING)
        job.status = JobStatus.RUNNING
        job.attempts = 1
        handler = make_refund_payment_handler(SandboxPaymentRail(), PaymentRailSettings())
        result = await handler(session, job)

        assert result["refund_status"] == "completed"
        assert refund.status == RefundStatus.COMPLETED
        assert return_request.refund_status == RefundStatus.COMPLETED
        assert return_request.refund_transaction_ref == refund.transaction_ref

        events = store.events_for(order.order_id)
        assert [e.sequence for e in events] == list(range(1, len(events) + 1))
        assert [e.subject for e in events[-3:]] == [
            TrackingSubject.REFUND,
            TrackingSubject.REFUND,
            TrackingSubject.REFUND,
        ]
        assert events[-1].new_status == "completed"

    @pytest.mark.asyncio
    async def test_pickup_code_is_single_use(self, returns, store, agent, manufacturer, customer, clock):
        """A second verification after pickup is refused."""
        order = make_order(
            OrderStatus.DELIVERED,
            delivery_agent_id=agent.actor_id,
            delivered_at=clock.now - timedelta(days=1),
        )
        store.put(order, make_item(order))
        return_request = await returns.open_return(
            order.order_id, reason=ReturnReason.WRONG_ITEM, actor=customer
        )
        await returns.approve_return(
            return_request.return_id,
            pickup_date=date(2026, 10, 20),
            pickup_window="10:00-12:00",
            actor=manufacturer,
        )
        for step in (ReturnStatus.OUT_FOR_PICKUP, ReturnStatus.PICKUP_NEAR_LOCATION):
            await returns.advance_pickup(return_request.return_id, step, actor=agent)
        await returns.issue_pickup_otp(return_request.return_id, actor=agent)
        await returns.confirm_pickup(return_request.return_id, CODE, actor=agent)

        with pytest.raises(InvalidTransitionError):
            await returns.confirm_pickup(return_request.return_id, CODE, actor=agent)
        assert return_request.status == ReturnStatus.PICKUP_COMPLETED

    @pytest.mark.asyncio
    async def test_return_after_window_refused(
        self, lifecycle, returns, store, admin, agent, customer, clock
    ):
        """Returns close once the window has passed."""
        order = make_order()
        store.put(order)
        await _deliver(lifecycle, order, admin, agent)
        clock.advance(days=15)

        with pytest.raises(PreconditionFailedError, match="window"):
            await returns.open_return(order.order_id, reason=ReturnReason.DAMAGED, actor=customer)
        assert order.return_status is None

    @pytest.mark.asyncio
    async def test_completed_refund_is_terminal(
        self, returns, refunds, store, agent, manufacturer, system_actor, clock, customer
    ):
        """Nothing moves a refund once it is paid."""
        order = make_order(
            OrderStatus.DELIVERED,
            delivery_agent_id=agent.actor_id,
            delivered_at=clock.now - timedelta(days=1),
        )
        store.put(order, make_item(order))
        return_request = await returns.open_return(
            order.order_id, reason=ReturnReason.DAMAGED, actor=customer
        )
        await returns.approve_return(
            return_request.return_id,
            pickup_date=date(2026, 10, 20),
            pickup_window="10:00-12:00",
            actor=manufacturer,
        )
        for step in (ReturnStatus.OUT_FOR_PICKUP, ReturnStatus.PICKUP_NEAR_LOCATION):
            await returns.advance_pickup(return_request.return_id, step, actor=agent)
        await returns.issue_pickup_otp(return_request.return_id, actor=agent)
        await returns.confirm_pickup(return_request.return_id, CODE, actor=agent)
        refund = await returns.request_refund(return_request.return_id, actor=agent)
        await refunds.approve_refund(refund.refund_id, actor=manufacturer)
        await refunds.start_processing(refund.refund_id, actor=manufacturer)
        await refunds.record_outcome(
            refund.refund_id, succeeded=True, transaction_ref="txn_1", actor=system_actor
        )

        with pytest.raises(AlreadyFinalizedError):
            await refunds.start_processing(refund.refund_id, actor=manufacturer)
        with pytest.raises(AlreadyFinalizedError):
            await refunds.reject_refund(refund.refund_id, notes="late", actor=manufacturer)
        with pytest.raises(AlreadyFinalizedError):
            await returns.request_refund(return_request.return_id, actor=agent)
        assert refund.status == RefundStatus.COMPLETED
