"""Customer API router.

Customers read their orders and tracking history, cancel orders that have
not been dispatched, and open or withdraw returns. Ownership is enforced by
the services: a customer only ever sees their own orders.
"""

from __future__ import annotations

import logging
from typing import Annotated
from uuid import UUID  # noqa: TC003 - path parameter type resolved at runtime

from fastapi import APIRouter, Query, status

from handoff.api.deps import DbSession, Lifecycle, Returns
from handoff.api.middleware.auth import CustomerActor
from handoff.api.schemas.orders import (
    CancelOrderRequest,
    OrderListResponse,
    OrderResponse,
    TrackingEventResponse,
    TrackingResponse,
    TransitionResponse,
    order_list_response,
    transition_response,
)
from handoff.api.schemas.returns import CancelReturnRequest, OpenReturnRequest, ReturnResponse
from handoff.db.models.base import OrderStatus

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/customer",
    tags=["customer"],
    responses={
        401: {"description": "Authentication required"},
        403: {"description": "Not the customer's order"},
        404: {"description": "Order or return not found"},
    },
)


@router.get(
    "/orders",
    response_model=OrderListResponse,
    summary="List the customer's orders",
    description="Newest first, optionally narrowed to one status.",
)
async def list_orders(
    actor: CustomerActor,
    lifecycle: Lifecycle,
    offset: Annotated[int, Query(ge=0, description="Pagination offset")] = 0,
    limit: Annotated[int, Query(ge=1, le=100, description="Page size")] = 20,
    order_status: Annotated[
        OrderStatus | None, Query(alias="status", description="Filter by status")
    ] = None,
) -> OrderListResponse:
    orders, total = await lifecycle.list_customer_orders(
        actor=actor, status=order_status, offset=offset, limit=limit
    )
    return order_list_response(orders, total, offset, limit)


@router.get("/orders/{order_id}", response_model=OrderResponse, summary="Get an order")
async def get_order(order_id: UUID, actor: CustomerActor, lifecycle: Lifecycle) -> OrderResponse:
    order = await lifecycle.view_order(order_id, actor=actor)
    return OrderResponse.model_validate(order)


@router.get(
    "/orders/{order_id}/tracking",
    response_model=TrackingResponse,
    summary="Order tracking history",
    description="Chronological delivery, return and refund events for the order.",
)
async def get_tracking(
    order_id: UUID, actor: CustomerActor, lifecycle: Lifecycle
) -> TrackingResponse:
    events = await lifecycle.tracking_history(order_id, actor=actor)
    order = await lifecycle.get_order(order_id)
    return TrackingResponse(
        order_id=order.order_id,
        status=order.status,
        return_status=order.return_status,
        events=[TrackingEventResponse.model_validate(e) for e in events],
    )


@router.post(
    "/orders/{order_id}/cancel",
    response_model=TransitionResponse,
    summary="Cancel an order",
    description="Allowed until the order is out for delivery.",
)
async def cancel_order(
    order_id: UUID,
    request: CancelOrderRequest,
    actor: CustomerActor,
    lifecycle: Lifecycle,
    db: DbSession,
) -> TransitionResponse:
    result = await lifecycle.transition(
        order_id,
        OrderStatus.CANCELLED,
        actor=actor,
        expected_status=request.expected_status,
        metadata={"reason": request.reason} if request.reason else None,
    )
    await db.commit()
    return transition_response(result)


@router.post(
    "/orders/{order_id}/returns",
    response_model=ReturnResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a return",
    description="Delivered orders only, within the return window, one open return at a time.",
)
async def open_return(
    order_id: UUID,
    request: OpenReturnRequest,
    actor: CustomerActor,
    returns: Returns,
    db: DbSession,
) -> ReturnResponse:
    return_request = await returns.open_return(
        order_id, reason=request.reason, comment=request.comment, actor=actor
    )
    await db.commit()
    return ReturnResponse.model_validate(return_request)


@router.get("/returns/{return_id}", response_model=ReturnResponse, summary="Get a return")
async def get_return(return_id: UUID, actor: CustomerActor, returns: Returns) -> ReturnResponse:
    return_request = await returns.view_return(return_id, actor=actor)
    return ReturnResponse.model_validate(return_request)


@router.post(
    "/returns/{return_id}/cancel",
    response_model=ReturnResponse,
    summary="Withdraw a return",
    description="Only while the return has not been decided.",
)
async def cancel_return(
    return_id: UUID,
    request: CancelReturnRequest,
    actor: CustomerActor,
    returns: Returns,
    db: DbSession,
) -> ReturnResponse:
    return_request = await returns.cancel_return(
        return_id, actor=actor, expected_status=request.expected_status
    )
    await db.commit()
    return ReturnResponse.model_validate(return_request)
