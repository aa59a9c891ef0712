"""Service queries against PostgreSQL.

Tests cover:
- The unresolved-return lookup behind the single active return rule
- Active challenge lookup, supersession and the partial unique index
- Tracking sequence numbers and history order
- Refund idempotency keys and pending payment job cancellation
- Order and refund listings
"""

from datetime import timedelta

import pytest
from factories import make_item, make_order, make_refund, make_return, persist
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from handoff.db.models.base import (
    JobStatus,
    OrderStatus,
    OTPPurpose,
    RefundStatus,
    ReturnReason,
    ReturnStatus,
)
from handoff.db.models.jobs import Job
from handoff.db.models.otp import OTPChallenge
from handoff.services.errors import PermissionDeniedError, PreconditionFailedError
from handoff.services.job_queue import JobQueueService, JobType
from handoff.services.lifecycle import OrderLifecycleService
from handoff.services.otp import digest_code
from handoff.services.refunds import RefundService, idempotency_key_for
from handoff.services.returns import ReturnService

pytestmark = pytest.mark.integration


def _order(status=OrderStatus.PENDING, number=1, **kwargs):
    return make_order(status, order_number=f"ORD-20261019-{number:04d}", **kwargs)


class TestReturnQueries:
    """Tests for ReturnService queries."""

    @pytest.mark.asyncio
    async def test_unresolved_return_ignores_resolved(self, session, otp_engine, clock):
        """Rejected and cancelled returns do not block; others do."""
        order = _order(OrderStatus.DELIVERED, delivered_at=clock.now - timedelta(days=1))
        rejected = make_return(order, ReturnStatus.REJECTED)
        approved = make_return(order, ReturnStatus.APPROVED)
        await persist(session, order, rejected, approved)

        service = ReturnService(session, otp_engine, clock=clock)
        found = await service.unresolved_return(order.order_id)

        assert found.return_id == approved.return_id

    @pytest.mark.asyncio
    async def test_second_return_refused(self, session, otp_engine, clock, customer):
        """An open return blocks another on the same order."""
        order = _order(OrderStatus.DELIVERED, delivered_at=clock.now - timedelta(days=1))
        await persist(session, order, make_item(order))
        service = ReturnService(session, otp_engine, clock=clock)

        await service.open_return(order.order_id, reason=ReturnReason.DAMAGED, actor=customer)
        await session.commit()

        with pytest.raises(PreconditionFailedError):
            await service.open_return(
                order.order_id, reason=ReturnReason.WRONG_ITEM, actor=customer
            )

    @pytest.mark.asyncio
    async def test_ownership_follows_stored_items(
        self, session, otp_engine, clock, agent, manufacturer
    ):
        """Loaded order items decide who may approve and who is charged."""
        order = _order(
            OrderStatus.DELIVERED,
            delivery_agent_id=agent.actor_id,
            delivered_at=clock.now - timedelta(days=3),
            return_status=ReturnStatus.PICKUP_COMPLETED,
        )
        requested = make_return(order)
        collected = make_return(
            order, ReturnStatus.PICKUP_COMPLETED, pickup_agent_id=agent.actor_id
        )
        await persist(session, order, make_item(order, "mfr-2"), requested, collected)
        # Rollback expires the instances
        collected_id = collected.return_id
        service = ReturnService(session, otp_engine, clock=clock)

        with pytest.raises(PermissionDeniedError):
            await service.reject_return(requested.return_id, notes="n/a", actor=manufacturer)
        await session.rollback()

        refund = await service.request_refund(collected_id, actor=agent)
        await session.commit()
        assert refund.manufacturer_id == "mfr-2"


class TestChallengeQueries:
    """Tests for OTP challenge rows."""

    @pytest.mark.asyncio
    async def test_reissue_leaves_one_active_challenge(self, session, otp_engine):
        """Issuing again supersedes the earlier challenge."""
        order = _order(OrderStatus.NEAR_LOCATION, delivery_agent_id="agent-7")
        await persist(session, order)

        first = await otp_engine.issue(order.order_id, OTPPurpose.DELIVERY, contact="c")
        second = await otp_engine.issue(order.order_id, OTPPurpose.DELIVERY, contact="c")
        await session.commit()

        active = await otp_engine.active_challenge(order.order_id, OTPPurpose.DELIVERY)
        assert active.challenge_id == second.challenge_id
        old = await session.get(OTPChallenge, first.challenge_id)
        assert old.superseded_at is not None

    @pytest.mark.asyncio
    async def test_has_verified_after_consumption(self, session, otp_engine):
        """Only a consumed challenge counts as verified."""
        order = _order(OrderStatus.NEAR_LOCATION, delivery_agent_id="agent-7")
        await persist(session, order)
        await otp_engine.issue(order.order_id, OTPPurpose.DELIVERY, contact="c")

        assert not await otp_engine.has_verified(order.order_id, OTPPurpose.DELIVERY)
        await otp_engine.verify(order.order_id, OTPPurpose.DELIVERY, "482193")
        assert await otp_engine.has_verified(order.order_id, OTPPurpose.DELIVERY)
        assert not await otp_engine.has_verified(order.order_id, OTPPurpose.PICKUP)

    @pytest.mark.asyncio
    async def test_index_refuses_second_active_challenge(self, session, clock):
        """At most one active challenge per order and purpose."""
        order = _order(OrderStatus.NEAR_LOCATION, delivery_agent_id="agent-7")
        await persist(session, order)

        def challenge(**kwargs):
            return OTPChallenge(
                order_id=order.order_id,
                purpose=OTPPurpose.DELIVERY,
                code_digest="0" * 64,
                issued_at=clock.now,
                expires_at=clock.now + timedelta(minutes=10),
                failed_attempts=0,
                **kwargs,
            )

        await persist(session, challenge(consumed_at=clock.now), challenge())

        session.add(challenge())
        with pytest.raises(IntegrityError):
            await session.flush()
        await session.rollback()

    @pytest.mark.asyncio
    async def test_digest_stored_not_code(self, session, otp_engine):
        """The row holds the salted digest only."""
        order = _order(OrderStatus.NEAR_LOCATION, delivery_agent_id="agent-7")
        await persist(session, order)
        dispatch = await otp_engine.issue(order.order_id, OTPPurpose.DELIVERY, contact="c")
        await session.commit()

        row = await session.get(OTPChallenge, dispatch.challenge_id)
        assert row.code_digest == digest_code(dispatch.challenge_id, "482193")
        assert "482193" not in row.code_digest


class TestTrackingQueries:
    """Tests for tracking sequence numbers."""

    @pytest.mark.asyncio
    async def test_sequences_follow_transitions(self, session, otp_engine, clock, admin, agent):
        """Each transition appends the next sequence number."""
        order = _order()
        await persist(session, order)
        service = OrderLifecycleService(session, otp_engine, clock=clock)

        await service.transition(order.order_id, OrderStatus.CONFIRMED, actor=admin)
        await service.transition(order.order_id, OrderStatus.PROCESSING, actor=admin)
        await service.assign_agent(order.order_id, agent.actor_id, actor=agent)
        await service.transition(order.order_id, OrderStatus.OUT_FOR_DELIVERY, actor=agent)
        await session.commit()

        events = await service.tracking_history(order.order_id, actor=admin)
        assert [e.sequence for e in events] == [1, 2, 3]
        assert [e.new_status for e in events] == ["confirmed", "processing", "out_for_delivery"]


class TestRefundQueries:
    """Tests for refund keys, payment jobs and refund listings."""

    @pytest.fixture
    async def approved_refund(self, session, clock):
        order = _order(
            OrderStatus.DELIVERED,
            delivered_at=clock.now - timedelta(days=2),
            return_status=ReturnStatus.REFUND_REQUESTED,
        )
        return_request = make_return(order, ReturnStatus.REFUND_REQUESTED)
        refund = make_refund(order, return_request, RefundStatus.APPROVED)
        await persist(session, order, make_item(order), return_request, refund)
        return refund

    @pytest.fixture
    def refunds(self, session, clock):
        return RefundService(session, JobQueueService(session, clock=clock), clock=clock)

    @pytest.mark.asyncio
    async def test_only_current_key_resolves(
        self, session, refunds, approved_refund, manufacturer, system_actor
    ):
        """A resubmission retires the earlier attempt's key."""
        refund_id = approved_refund.refund_id
        await refunds.start_processing(refund_id, actor=manufacturer)
        await refunds.record_outcome(
            refund_id,
            succeeded=False,
            failure_reason="account closed",
            idempotency_key=idempotency_key_for(refund_id, 1),
            actor=system_actor,
        )
        await refunds.start_processing(refund_id, actor=manufacturer)
        await session.commit()

        assert await refunds.find_by_idempotency_key(idempotency_key_for(refund_id, 1)) is None
        current = await refunds.find_by_idempotency_key(idempotency_key_for(refund_id, 2))
        assert current.refund_id == refund_id

    @pytest.mark.asyncio
    async def test_success_cancels_pending_payment_job(
        self, session, refunds, approved_refund, manufacturer, system_actor
    ):
        """A callback success leaves no queued payment job behind."""
        refund_id = approved_refund.refund_id
        await refunds.start_processing(refund_id, actor=manufacturer)
        await session.commit()

        await refunds.record_outcome(
            refund_id,
            succeeded=True,
            transaction_ref="txn_1",
            idempotency_key=idempotency_key_for(refund_id, 1),
            actor=system_actor,
        )
        await session.commit()

        jobs = (await session.execute(select(Job))).scalars().all()
        assert [j.job_type for j in jobs] == [JobType.REFUND_PAYMENT.value]
        assert jobs[0].status == JobStatus.CANCELLED
        assert jobs[0].correlation_id == str(refund_id)

    @pytest.mark.asyncio
    async def test_cancel_pending_matches_type_and_correlation(self, session, clock):
        """Other refunds' jobs and other job types stay queued."""
        jobs = JobQueueService(session, clock=clock)
        await jobs.enqueue(JobType.REFUND_PAYMENT, correlation_id="refund-a")
        await jobs.enqueue(JobType.REFUND_PAYMENT, correlation_id="refund-b")
        await jobs.enqueue("reconcile", correlation_id="refund-a")
        await session.commit()

        assert await jobs.cancel_pending(JobType.REFUND_PAYMENT, "refund-a") == 1
        await session.commit()

        pending = await session.execute(
            select(Job.job_type, Job.correlation_id).where(Job.status == JobStatus.PENDING)
        )
        assert sorted(tuple(row) for row in pending) == [
            ("reconcile", "refund-a"),
            ("refund_payment", "refund-b"),
        ]

    @pytest.mark.asyncio
    async def test_manufacturer_lists_own_refunds(
        self, session, refunds, approved_refund, manufacturer, admin, clock
    ):
        """Manufacturers see refunds charged to them; admins see all."""
        order = _order(OrderStatus.DELIVERED, number=2, delivered_at=clock.now)
        return_request = make_return(order, ReturnStatus.REFUND_REQUESTED)
        foreign = make_refund(order, return_request, manufacturer_id="mfr-2")
        await persist(session, order, return_request, foreign)

        mine = await refunds.list_refunds(actor=manufacturer)
        everything = await refunds.list_refunds(actor=admin)
        pending = await refunds.list_refunds(actor=admin, status=RefundStatus.PENDING)

        assert [r.refund_id for r in mine] == [approved_refund.refund_id]
        assert {r.refund_id for r in everything} == {
            approved_refund.refund_id,
            foreign.refund_id,
        }
        assert [r.refund_id for r in pending] == [foreign.refund_id]


class TestOrderListings:
    """Tests for the order listing queries."""

    @pytest.mark.asyncio
    async def test_listings(self, session, otp_engine, clock, customer, agent):
        """Customer lists, assignments, the unassigned pool and stats."""
        delivered_today = _order(
            OrderStatus.DELIVERED,
            number=1,
            delivery_agent_id=agent.actor_id,
            delivered_at=clock.now - timedelta(hours=1),
        )
        on_road = _order(OrderStatus.OUT_FOR_DELIVERY, number=2, delivery_agent_id=agent.actor_id)
        unassigned = _order(OrderStatus.CONFIRMED, number=3, customer_id="cust-2")
        await persist(session, delivered_today, on_road, unassigned)
        service = OrderLifecycleService(session, otp_engine, clock=clock)

        orders, total = await service.list_customer_orders(actor=customer, limit=1)
        assert total == 2
        assert len(orders) == 1

        orders, total = await service.list_assignments(actor=agent)
        assert [o.order_id for o in orders] == [on_road.order_id]

        orders, total = await service.list_unassigned(actor=agent)
        assert [o.order_id for o in orders] == [unassigned.order_id]

        stats = await service.delivery_stats(actor=agent)
        assert (stats.delivered_total, stats.delivered_today, stats.active) == (1, 1, 1)
