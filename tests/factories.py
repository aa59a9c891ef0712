"""Test data factories and in-memory doubles for Handoff.

Builders return plain ORM instances that are never attached to a session;
integration tests insert them with ``persist``.
``MemoryStore`` stands in for the database in service tests: the ``store``
fixture in conftest routes the services' row loaders to it, so locked and
unlocked reads of one row resolve to the same Python object.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from handoff.db.models.base import (
    JobStatus,
    OrderStatus,
    RefundStatus,
    ReturnReason,
    ReturnStatus,
)
from handoff.db.models.jobs import Job
from handoff.db.models.orders import Order, OrderItem
from handoff.db.models.otp import OTPChallenge
from handoff.db.models.refunds import RefundRecord
from handoff.db.models.returns import ReturnRequest
from handoff.db.models.tracking import TrackingEvent
from handoff.services.errors import NotFoundError
from handoff.services.lifecycle import OrderFilter
from handoff.services.otp import OTPEngine

FIXED_NOW = datetime(2026, 10, 19, 9, 30, tzinfo=UTC)

CALLBACK_SECRET = "test-callback-secret"


class FakeClock:
    """Settable time source."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class MemoryStore:
    """Rows keyed by (model, primary key), plus everything the services add."""

    _KEYS = {
        Order: "order_id",
        ReturnRequest: "return_id",
        RefundRecord: "refund_id",
        OTPChallenge: "challenge_id",
        Job: "job_id",
        TrackingEvent: "event_id",
    }

    def __init__(self) -> None:
        self.rows: dict[tuple[type, Any], Any] = {}
        self._sequences: dict[uuid.UUID, int] = {}

    def add(self, row: Any) -> None:
        if isinstance(row, OrderItem):
            # Reachable through order.items
            return
        key = self._KEYS[type(row)]
        if getattr(row, key) is None:
            setattr(row, key, uuid.uuid4())
        self.rows[(type(row), getattr(row, key))] = row

    def put(self, *rows: Any) -> None:
        for row in rows:
            self.add(row)

    def all(self, model: type) -> list[Any]:
        return [row for (kind, _), row in self.rows.items() if kind is model]

    def events_for(self, order_id: uuid.UUID) -> list[TrackingEvent]:
        return sorted(
            (e for e in self.all(TrackingEvent) if e.order_id == order_id),
            key=lambda e: e.sequence,
        )

    def jobs(self, status: JobStatus | None = None) -> list[Job]:
        return [j for j in self.all(Job) if status is None or j.status == status]

    def orders_matching(self, criteria: OrderFilter) -> list[Order]:
        def matches(order: Order) -> bool:
            delivered_at = order.delivered_at
            return (
                (criteria.customer_id is None or order.customer_id == criteria.customer_id)
                and (criteria.agent_id is None or order.delivery_agent_id == criteria.agent_id)
                and (not criteria.unassigned or order.delivery_agent_id is None)
                and (criteria.statuses is None or order.status in criteria.statuses)
                and (
                    criteria.delivered_since is None
                    or (delivered_at is not None and delivered_at >= criteria.delivered_since)
                )
            )

        return [o for o in self.all(Order) if matches(o)]

    async def fetch_one(
        self,
        session: Any,
        model: type,
        key: Any,
        value: Any,
        *,
        entity: str,
        lock: bool = False,
    ) -> Any:
        row = self.rows.get((model, value))
        if row is None:
            raise NotFoundError(entity, value)
        return row

    async def next_sequence(self, order_id: uuid.UUID) -> int:
        self._sequences[order_id] = self._sequences.get(order_id, 0) + 1
        return self._sequences[order_id]


class MemoryOTPEngine(OTPEngine):
    """OTP engine whose challenge lookups read the memory store."""

    def __init__(self, store: MemoryStore, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._store = store

    async def active_challenge(self, order_id, purpose):
        for challenge in self._store.all(OTPChallenge):
            if (
                challenge.order_id == order_id
                and challenge.purpose == purpose
                and challenge.is_active
            ):
                return challenge
        return None

    async def has_verified(self, order_id, purpose):
        return any(
            c.order_id == order_id and c.purpose == purpose and c.consumed_at is not None
            for c in self._store.all(OTPChallenge)
        )


def create_mock_session(store: MemoryStore | None = None) -> AsyncMock:
    """Create a mock SQLAlchemy async session.

    Args:
        store: Store that receives ``session.add()`` calls, if any.

    Returns:
        Mock async session.
    """
    session = AsyncMock()
    session.add = MagicMock(side_effect=store.add if store is not None else None)
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session


def principal(actor: Any) -> dict[str, str]:
    """Gateway headers for ``actor``."""
    return {"X-Principal-Id": actor.actor_id, "X-Principal-Role": actor.role.value}


def make_order(
    status: OrderStatus = OrderStatus.PENDING,
    *,
    customer_id: str = "cust-1",
    delivery_agent_id: str | None = None,
    delivered_at: datetime | None = None,
    return_status: ReturnStatus | None = None,
    order_number: str = "ORD-20261019-0042",
) -> Order:
    """Create an order.

    Args:
        status: Current delivery status.
        customer_id: Owning customer.
        delivery_agent_id: Assigned agent, if any.
        delivered_at: Delivery time for delivered orders.
        return_status: Mirror of the current return's status.
        order_number: Human reference; unique in the database.

    Returns:
        Detached Order instance.
    """
    return Order(
        order_id=uuid.uuid4(),
        order_number=order_number,
        customer_id=customer_id,
        customer_contact="asha@example.com",
        delivery_address={"line1": "12 MG Road", "city": "Bengaluru", "pin": "560001"},
        total_amount=Decimal("1499.00"),
        currency="INR",
        status=status,
        delivery_agent_id=delivery_agent_id,
        delivered_at=delivered_at,
        return_status=return_status,
        created_at=FIXED_NOW - timedelta(days=30),
        updated_at=FIXED_NOW - timedelta(days=30),
        version=1,
    )


def make_item(order: Order, manufacturer_id: str | None = "mfr-1") -> OrderItem:
    """Create an item and attach it to ``order.items``."""
    return OrderItem(
        order_item_id=uuid.uuid4(),
        order_id=order.order_id,
        order=order,
        product_id="sku-kettle-1l",
        product_name="Electric kettle 1L",
        manufacturer_id=manufacturer_id,
        quantity=1,
        unit_price=order.total_amount,
    )


def make_return(
    order: Order,
    status: ReturnStatus = ReturnStatus.RETURN_REQUESTED,
    *,
    pickup_agent_id: str | None = None,
) -> ReturnRequest:
    """Create a return request on ``order``; approved statuses get a pickup slot."""
    scheduled = status != ReturnStatus.RETURN_REQUESTED
    return ReturnRequest(
        return_id=uuid.uuid4(),
        order_id=order.order_id,
        customer_id=order.customer_id,
        reason=ReturnReason.DAMAGED,
        status=status,
        pickup_agent_id=pickup_agent_id,
        pickup_date=date(2026, 10, 21) if scheduled else None,
        pickup_window="10:00-12:00" if scheduled else None,
        requested_at=FIXED_NOW - timedelta(days=2),
        updated_at=FIXED_NOW - timedelta(days=2),
        version=1,
    )


def make_refund(
    order: Order,
    return_request: ReturnRequest,
    status: RefundStatus = RefundStatus.PENDING,
    *,
    manufacturer_id: str | None = "mfr-1",
    destination_ref: str = "wallet:cust-1",
    payment_attempts: int = 0,
    idempotency_key: str | None = None,
    transaction_ref: str | None = None,
) -> RefundRecord:
    return RefundRecord(
        refund_id=uuid.uuid4(),
        order_id=order.order_id,
        return_id=return_request.return_id,
        manufacturer_id=manufacturer_id,
        amount=order.total_amount,
        currency=order.currency,
        status=status,
        destination_ref=destination_ref,
        transaction_ref=transaction_ref,
        payment_attempts=payment_attempts,
        idempotency_key=idempotency_key,
        created_at=FIXED_NOW - timedelta(days=1),
        updated_at=FIXED_NOW - timedelta(days=1),
        version=1,
    )


def make_job(
    job_type: str = "refund_payment",
    *,
    payload: dict | None = None,
    attempts: int = 1,
    max_attempts: int = 3,
    status: JobStatus = JobStatus.RUNNING,
) -> Job:
    return Job(
        job_id=uuid.uuid4(),
        job_type=job_type,
        status=status,
        run_at=FIXED_NOW,
        queue="default",
        priority=100,
        attempts=attempts,
        max_attempts=max_attempts,
        lock_timeout_seconds=300,
        base_backoff_seconds=30,
        payload_json=payload,
    )


async def persist(session: Any, *rows: Any) -> None:
    """Insert rows into a real database, parents first, and commit."""
    for row in rows:
        session.add(row)
        await session.flush()
    await session.commit()
