"""SQLAlchemy ORM models for Handoff.

- base: metadata, column annotations and shared enums
- orders: the order aggregate and its line items
- returns: return requests
- refunds: manufacturer refund records
- otp: one-time code challenges
- tracking: append-only tracking log
- jobs: PostgreSQL-backed job queue
"""

from handoff.db.models.base import (
    ActorRole,
    Base,
    JobStatus,
    OrderStatus,
    OTPPurpose,
    RefundStatus,
    ReturnReason,
    ReturnStatus,
    TrackingSubject,
    metadata,
)
from handoff.db.models.jobs import Job
from handoff.db.models.orders import Order, OrderItem
from handoff.db.models.otp import OTPChallenge
from handoff.db.models.refunds import RefundRecord
from handoff.db.models.returns import ReturnRequest
from handoff.db.models.tracking import TrackingEvent, TrackingEventImmutableError

__all__ = [
    "ActorRole",
    "Base",
    "Job",
    "JobStatus",
    "OTPChallenge",
    "OTPPurpose",
    "Order",
    "OrderItem",
    "OrderStatus",
    "RefundRecord",
    "RefundStatus",
    "ReturnReason",
    "ReturnRequest",
    "ReturnStatus",
    "TrackingEvent",
    "TrackingEventImmutableError",
    "TrackingSubject",
    "metadata",
]
