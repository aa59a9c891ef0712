"""Pydantic schemas for return and refund endpoints."""

from __future__ import annotations

# NOTE: date, datetime, Decimal and UUID must remain at runtime for Pydantic validation
from datetime import date, datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003
from uuid import UUID  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field

from handoff.db.models.base import RefundStatus, ReturnReason, ReturnStatus  # noqa: TC001

# -----------------------------------------------------------------------------
# Returns
# -----------------------------------------------------------------------------


class OpenReturnRequest(BaseModel):
    reason: ReturnReason = Field(..., description="Why the customer is returning the order")
    comment: str | None = Field(None, max_length=2000)

    model_config = ConfigDict(extra="forbid")


class ReturnResponse(BaseModel):
    """Return request with its pickup schedule and refund mirror."""

    return_id: UUID
    order_id: UUID
    customer_id: str
    reason: ReturnReason
    comment: str | None = None
    status: ReturnStatus
    requested_at: datetime
    updated_at: datetime
    pickup_date: date | None = None
    pickup_window: str | None = None
    pickup_agent_id: str | None = None
    rejection_notes: str | None = None
    decided_at: datetime | None = None
    picked_up_at: datetime | None = None
    cancelled_at: datetime | None = None
    refund_status: RefundStatus | None = None
    refund_amount: Decimal | None = None
    refund_transaction_ref: str | None = None
    refund_processed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class CancelReturnRequest(BaseModel):
    expected_status: ReturnStatus | None = None

    model_config = ConfigDict(extra="forbid")


class ApproveReturnRequest(BaseModel):
    """Approval must schedule the pickup."""

    pickup_date: date = Field(..., description="Day the agent collects the parcel")
    pickup_window: str = Field(
        ..., min_length=1, max_length=50, description="Time window, e.g. '10:00-12:00'"
    )
    expected_status: ReturnStatus | None = None

    model_config = ConfigDict(extra="forbid")


class RejectReturnRequest(BaseModel):
    notes: str = Field(..., min_length=1, max_length=2000, description="Shown to the customer")
    expected_status: ReturnStatus | None = None

    model_config = ConfigDict(extra="forbid")


class PickupStatusRequest(BaseModel):
    """Report pickup progress (out_for_pickup, pickup_near_location)."""

    status: ReturnStatus
    expected_status: ReturnStatus | None = None

    model_config = ConfigDict(extra="forbid")


class RefundRequestBody(BaseModel):
    destination_ref: str | None = Field(
        None, max_length=255, description="Refund destination; defaults to the customer wallet"
    )
    amount: Decimal | None = Field(None, gt=0, description="Defaults to the order total")

    model_config = ConfigDict(extra="forbid")


# -----------------------------------------------------------------------------
# Refunds
# -----------------------------------------------------------------------------


class RefundResponse(BaseModel):
    refund_id: UUID
    order_id: UUID
    return_id: UUID
    manufacturer_id: str | None = None
    amount: Decimal
    currency: str
    status: RefundStatus
    destination_ref: str
    transaction_ref: str | None = None
    notes: str | None = None
    failure_reason: str | None = None
    payment_attempts: int
    created_at: datetime
    updated_at: datetime
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    processing_started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class RefundListResponse(BaseModel):
    refunds: list[RefundResponse]
    total: int


class RefundDecisionRequest(BaseModel):
    notes: str | None = Field(None, max_length=2000)
    expected_status: RefundStatus | None = None

    model_config = ConfigDict(extra="forbid")


class RefundProcessRequest(BaseModel):
    expected_status: RefundStatus | None = None

    model_config = ConfigDict(extra="forbid")


class PaymentCallback(BaseModel):
    """Outcome notification posted by the payment rail."""

    id: str = Field(..., description="Rail transaction reference")
    status: str = Field(..., pattern=r"^(succeeded|failed|pending)$")
    idempotency_key: str = Field(..., description="Key the transfer was submitted with")
    failure_reason: str | None = None
