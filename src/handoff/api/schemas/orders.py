"""Pydantic schemas for order, tracking and OTP endpoints."""

from __future__ import annotations

# NOTE: datetime, Decimal and UUID must remain at runtime for Pydantic validation
from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003
from typing import Any
from uuid import UUID  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field

from handoff.db.models.base import (  # noqa: TC001
    ActorRole,
    OrderStatus,
    OTPPurpose,
    ReturnStatus,
    TrackingSubject,
)

# -----------------------------------------------------------------------------
# Orders
# -----------------------------------------------------------------------------


class OrderItemResponse(BaseModel):
    product_id: str
    product_name: str
    manufacturer_id: str | None = None
    quantity: int
    unit_price: Decimal

    model_config = ConfigDict(from_attributes=True)


class OrderResponse(BaseModel):
    """Order as seen by its customer, its delivery partner or an admin."""

    order_id: UUID = Field(..., description="Order identifier")
    order_number: str = Field(..., description="Human-facing order number")
    customer_id: str
    status: OrderStatus = Field(..., description="Current delivery status")
    return_status: ReturnStatus | None = Field(
        None, description="Status of the order's current return, if any"
    )
    delivery_agent_id: str | None = None
    delivery_address: dict[str, Any] | None = None
    total_amount: Decimal
    currency: str
    items: list[OrderItemResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class OrderListResponse(BaseModel):
    """One page of orders."""

    items: list[OrderResponse] = Field(..., description="Orders on this page")
    total: int = Field(..., description="Total number of matching orders")
    offset: int = Field(0, description="Pagination offset")
    limit: int = Field(20, description="Page size")


class DeliveryStatsResponse(BaseModel):
    delivered_total: int = Field(..., description="Orders this partner has handed over")
    delivered_today: int = Field(..., description="Handovers since midnight UTC")
    active: int = Field(..., description="Assigned orders not yet handed over")

    model_config = ConfigDict(from_attributes=True)


def order_list_response(
    orders: list[Any], total: int, offset: int, limit: int
) -> OrderListResponse:
    return OrderListResponse(
        items=[OrderResponse.model_validate(o) for o in orders],
        total=total,
        offset=offset,
        limit=limit,
    )


class TrackingEventResponse(BaseModel):
    sequence: int
    occurred_at: datetime
    subject: TrackingSubject
    subject_id: UUID | None = None
    previous_status: str | None = None
    new_status: str
    message: str
    actor_role: ActorRole
    metadata: dict[str, Any] | None = Field(None, validation_alias="event_metadata")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class TrackingResponse(BaseModel):
    order_id: UUID
    status: OrderStatus
    return_status: ReturnStatus | None = None
    events: list[TrackingEventResponse]


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------


class OrderStatusRequest(BaseModel):
    """Request a status change.

    ``expected_status`` is the status the caller last saw; the request fails
    with ``concurrent_modification`` if the order has moved on.
    """

    status: OrderStatus = Field(..., description="Requested status")
    expected_status: OrderStatus | None = Field(None, description="Status the caller last saw")
    message: str | None = Field(None, max_length=500, description="Tracking message override")

    model_config = ConfigDict(extra="forbid")


class CancelOrderRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)
    expected_status: OrderStatus | None = None

    model_config = ConfigDict(extra="forbid")


class AssignAgentRequest(BaseModel):
    """Assign a delivery agent; partners may omit ``agent_id`` to self-assign."""

    agent_id: str | None = Field(None, max_length=255)
    expected_status: OrderStatus | None = None

    model_config = ConfigDict(extra="forbid")


class TransitionResponse(BaseModel):
    previous_status: str
    new_status: str
    changed: bool = Field(..., description="False when the request was an idempotent no-op")
    sequence: int | None = Field(None, description="Tracking sequence of the appended event")


# -----------------------------------------------------------------------------
# OTP
# -----------------------------------------------------------------------------


class OTPIssuedResponse(BaseModel):
    """Acknowledgement that a code was sent. The code itself is never returned."""

    challenge_id: UUID
    purpose: OTPPurpose
    issued_at: datetime
    expires_at: datetime
    channel: str
    message_id: str


class OTPVerifyRequest(BaseModel):
    code: str = Field(
        ...,
        pattern=r"^\d{6}$",
        description="Six-digit code read out by the customer",
    )

    model_config = ConfigDict(extra="forbid")


def transition_response(result: Any) -> TransitionResponse:
    """Build the response for a ``TransitionResult``."""
    event = result.tracking_event
    return TransitionResponse(
        previous_status=result.previous_status.value,
        new_status=result.new_status.value,
        changed=result.changed,
        sequence=event.sequence if event is not None else None,
    )


def otp_issued_response(receipt: Any) -> OTPIssuedResponse:
    return OTPIssuedResponse(
        challenge_id=receipt.challenge_id,
        purpose=receipt.purpose,
        issued_at=receipt.issued_at,
        expires_at=receipt.expires_at,
        channel=getattr(receipt.channel, "value", str(receipt.channel)),
        message_id=receipt.message_id,
    )
