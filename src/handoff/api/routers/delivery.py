"""Delivery partner API router.

Delivery partners claim orders, report progress, hand over parcels against
the customer's OTP, and run return pickups up to the refund request.
"""

from __future__ import annotations

import logging
from typing import Annotated
from uuid import UUID  # noqa: TC003 - path parameter type resolved at runtime

from fastapi import APIRouter, Query, status

from handoff.api.deps import OTP, DbSession, Lifecycle, Returns
from handoff.api.middleware.auth import DeliveryActor
from handoff.api.schemas.orders import (
    AssignAgentRequest,
    DeliveryStatsResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatusRequest,
    OTPIssuedResponse,
    OTPVerifyRequest,
    TransitionResponse,
    order_list_response,
    otp_issued_response,
    transition_response,
)
from handoff.api.schemas.returns import (
    PickupStatusRequest,
    RefundRequestBody,
    RefundResponse,
    ReturnResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/delivery",
    tags=["delivery"],
    responses={
        401: {"description": "Authentication required"},
        403: {"description": "Order or pickup assigned to another partner"},
        404: {"description": "Order or return not found"},
    },
)

# -----------------------------------------------------------------------------
# Orders
# -----------------------------------------------------------------------------


@router.get(
    "/assignments",
    response_model=OrderListResponse,
    summary="List the partner's active assignments",
    description="Orders assigned to the caller that are not yet delivered, oldest first.",
)
async def list_assignments(
    actor: DeliveryActor,
    lifecycle: Lifecycle,
    offset: Annotated[int, Query(ge=0, description="Pagination offset")] = 0,
    limit: Annotated[int, Query(ge=1, le=100, description="Page size")] = 20,
) -> OrderListResponse:
    orders, total = await lifecycle.list_assignments(actor=actor, offset=offset, limit=limit)
    return order_list_response(orders, total, offset, limit)


@router.get(
    "/pending-orders",
    response_model=OrderListResponse,
    summary="List orders open for self-assignment",
    description="Confirmed or processing orders without an agent, longest waiting first.",
)
async def list_pending_orders(
    actor: DeliveryActor,
    lifecycle: Lifecycle,
    offset: Annotated[int, Query(ge=0, description="Pagination offset")] = 0,
    limit: Annotated[int, Query(ge=1, le=100, description="Page size")] = 20,
) -> OrderListResponse:
    orders, total = await lifecycle.list_unassigned(actor=actor, offset=offset, limit=limit)
    return order_list_response(orders, total, offset, limit)


@router.get("/stats", response_model=DeliveryStatsResponse, summary="Delivery counts")
async def get_stats(actor: DeliveryActor, lifecycle: Lifecycle) -> DeliveryStatsResponse:
    stats = await lifecycle.delivery_stats(actor=actor)
    return DeliveryStatsResponse.model_validate(stats)


@router.get("/orders/{order_id}", response_model=OrderResponse, summary="Get an assigned order")
async def get_order(order_id: UUID, actor: DeliveryActor, lifecycle: Lifecycle) -> OrderResponse:
    order = await lifecycle.view_order(order_id, actor=actor)
    return OrderResponse.model_validate(order)


@router.post(
    "/orders/{order_id}/assign",
    response_model=OrderResponse,
    summary="Claim an order for delivery",
)
async def assign_order(
    order_id: UUID,
    request: AssignAgentRequest,
    actor: DeliveryActor,
    lifecycle: Lifecycle,
    db: DbSession,
) -> OrderResponse:
    order = await lifecycle.assign_agent(
        order_id,
        request.agent_id or actor.actor_id,
        actor=actor,
        expected_status=request.expected_status,
    )
    await db.commit()
    return OrderResponse.model_validate(order)


@router.post(
    "/orders/{order_id}/status",
    response_model=TransitionResponse,
    summary="Report delivery progress",
    description="out_for_delivery and near_location; delivery itself goes through OTP verify.",
)
async def update_order_status(
    order_id: UUID,
    request: OrderStatusRequest,
    actor: DeliveryActor,
    lifecycle: Lifecycle,
    db: DbSession,
) -> TransitionResponse:
    result = await lifecycle.transition(
        order_id,
        request.status,
        actor=actor,
        expected_status=request.expected_status,
        message=request.message,
    )
    await db.commit()
    return transition_response(result)


@router.post(
    "/orders/{order_id}/otp",
    response_model=OTPIssuedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Send the delivery OTP to the customer",
)
async def issue_delivery_otp(
    order_id: UUID,
    actor: DeliveryActor,
    lifecycle: Lifecycle,
    otp: OTP,
    db: DbSession,
) -> OTPIssuedResponse:
    dispatch = await lifecycle.issue_delivery_otp(order_id, actor=actor)
    await db.commit()
    # Sent only once the challenge is committed and the order lock released
    receipt = await otp.send(dispatch)
    return otp_issued_response(receipt)


@router.post(
    "/orders/{order_id}/otp/verify",
    response_model=TransitionResponse,
    summary="Verify the customer's code and complete delivery",
)
async def verify_delivery_otp(
    order_id: UUID,
    request: OTPVerifyRequest,
    actor: DeliveryActor,
    lifecycle: Lifecycle,
    db: DbSession,
) -> TransitionResponse:
    result = await lifecycle.confirm_delivery(order_id, request.code, actor=actor)
    await db.commit()
    return transition_response(result)


# -----------------------------------------------------------------------------
# Return pickups
# -----------------------------------------------------------------------------


@router.post(
    "/returns/{return_id}/status",
    response_model=ReturnResponse,
    summary="Report pickup progress",
)
async def update_pickup_status(
    return_id: UUID,
    request: PickupStatusRequest,
    actor: DeliveryActor,
    returns: Returns,
    db: DbSession,
) -> ReturnResponse:
    return_request = await returns.advance_pickup(
        return_id, request.status, actor=actor, expected_status=request.expected_status
    )
    await db.commit()
    return ReturnResponse.model_validate(return_request)


@router.post(
    "/returns/{return_id}/otp",
    response_model=OTPIssuedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Send the pickup OTP to the customer",
)
async def issue_pickup_otp(
    return_id: UUID,
    actor: DeliveryActor,
    returns: Returns,
    otp: OTP,
    db: DbSession,
) -> OTPIssuedResponse:
    dispatch = await returns.issue_pickup_otp(return_id, actor=actor)
    await db.commit()
    receipt = await otp.send(dispatch)
    return otp_issued_response(receipt)


@router.post(
    "/returns/{return_id}/otp/verify",
    response_model=ReturnResponse,
    summary="Verify the customer's code and complete the pickup",
)
async def verify_pickup_otp(
    return_id: UUID,
    request: OTPVerifyRequest,
    actor: DeliveryActor,
    returns: Returns,
    db: DbSession,
) -> ReturnResponse:
    return_request = await returns.confirm_pickup(return_id, request.code, actor=actor)
    await db.commit()
    return ReturnResponse.model_validate(return_request)


@router.post(
    "/returns/{return_id}/refund-request",
    response_model=RefundResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Raise the refund for a completed pickup",
)
async def request_refund(
    return_id: UUID,
    request: RefundRequestBody,
    actor: DeliveryActor,
    returns: Returns,
    db: DbSession,
) -> RefundResponse:
    refund = await returns.request_refund(
        return_id,
        actor=actor,
        destination_ref=request.destination_ref,
        amount=request.amount,
    )
    await db.commit()
    return RefundResponse.model_validate(refund)
