"""Base model definitions, mixins, and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Common column type annotations
- Enum types used across multiple models
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, Enum, MetaData, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# UUID primary key, generated client-side when not supplied and server-side as a fallback
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    ),
]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

# Optional timestamp with timezone
OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]


class Base(DeclarativeBase):
    """Declarative base for all Handoff models."""

    metadata = metadata
    registry = type_registry


def enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    """Build a native enum column type that persists member values.

    Args:
        enum_cls: Python enum class backing the column.
        name: Database type name.

    Returns:
        SQLAlchemy Enum type.
    """
    return Enum(
        enum_cls,
        name=name,
        create_constraint=True,
        values_callable=lambda members: [m.value for m in members],
    )


# =============================================================================
# Common Enums
# =============================================================================


class OrderStatus(enum.Enum):
    """Order lifecycle states.

    States:
        PENDING: Order placed at checkout, awaiting confirmation
        CONFIRMED: Order accepted by the platform
        PROCESSING: Order being prepared for dispatch
        OUT_FOR_DELIVERY: Assigned agent has the parcel in transit
        NEAR_LOCATION: Agent is at the delivery address (enables OTP)
        DELIVERED: Handoff verified with the delivery OTP
        CANCELLED: Order cancelled before delivery
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    OUT_FOR_DELIVERY = "out_for_delivery"
    NEAR_LOCATION = "near_location"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ReturnStatus(enum.Enum):
    """Return request states.

    States:
        RETURN_REQUESTED: Customer opened the return
        APPROVED: Return accepted, pickup scheduled
        REJECTED: Return declined with notes
        CANCELLED: Customer withdrew the return before approval
        OUT_FOR_PICKUP: Agent travelling to collect the parcel
        PICKUP_NEAR_LOCATION: Agent at the pickup address
        PICKUP_OTP_GENERATED: Pickup code sent to the customer
        PICKUP_COMPLETED: Handoff verified with the pickup OTP
        REFUND_REQUESTED: Refund raised to the manufacturer
    """

    RETURN_REQUESTED = "return_requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    OUT_FOR_PICKUP = "out_for_pickup"
    PICKUP_NEAR_LOCATION = "pickup_near_location"
    PICKUP_OTP_GENERATED = "pickup_otp_generated"
    PICKUP_COMPLETED = "pickup_completed"
    REFUND_REQUESTED = "refund_requested"


class RefundStatus(enum.Enum):
    """Manufacturer refund states.

    States:
        PENDING: Refund raised, awaiting manufacturer review
        APPROVED: Manufacturer accepted the refund
        REJECTED: Manufacturer declined the refund
        PROCESSING: Transfer submitted (or about to be) to the payment rail
        COMPLETED: Transfer settled, transaction reference recorded
        FAILED: Transfer failed; may be resubmitted
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OTPPurpose(enum.Enum):
    """Handoff a one-time code proves."""

    DELIVERY = "delivery"
    PICKUP = "pickup"


class ReturnReason(enum.Enum):
    """Reasons a customer may give when opening a return."""

    DAMAGED = "damaged"
    DEFECTIVE = "defective"
    WRONG_ITEM = "wrong_item"
    NOT_AS_DESCRIBED = "not_as_described"
    QUALITY_ISSUES = "quality_issues"
    CHANGED_MIND = "changed_mind"
    OTHER = "other"


class ActorRole(enum.Enum):
    """Role of the actor requesting a transition.

    Values:
        CUSTOMER: The buyer
        DELIVERY_PARTNER: Delivery agent performing handoffs
        MANUFACTURER: Seller owning the refund workflow
        ADMIN: Platform operator
        SYSTEM: Automated action (worker, payment callback)
    """

    CUSTOMER = "customer"
    DELIVERY_PARTNER = "delivery_partner"
    MANUFACTURER = "manufacturer"
    ADMIN = "admin"
    SYSTEM = "system"


class TrackingSubject(enum.Enum):
    """Which state machine a tracking event belongs to."""

    ORDER = "order"
    RETURN = "return"
    REFUND = "refund"


class JobStatus(enum.Enum):
    """Status of a background job.

    Values:
        PENDING: Job is waiting to be processed
        RUNNING: Job is currently being executed
        COMPLETED: Job finished successfully
        FAILED: Job failed after max retries
        CANCELLED: Job was manually cancelled
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
