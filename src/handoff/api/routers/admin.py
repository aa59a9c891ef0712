"""Admin API router.

Platform operators confirm and prepare orders, cancel any order that has not
been delivered, and (re)assign delivery agents. Delivery itself still needs
the customer's OTP; admins cannot force it.
"""

from __future__ import annotations

from uuid import UUID  # noqa: TC003 - path parameter type resolved at runtime

from fastapi import APIRouter

from handoff.api.deps import DbSession, Lifecycle
from handoff.api.middleware.auth import AdminActor
from handoff.api.middleware.errors import APIError
from handoff.api.schemas.orders import (
    AssignAgentRequest,
    OrderResponse,
    OrderStatusRequest,
    TrackingEventResponse,
    TrackingResponse,
    TransitionResponse,
    transition_response,
)

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    responses={
        401: {"description": "Authentication required"},
        403: {"description": "Admin role required"},
    },
)


@router.post(
    "/orders/{order_id}/status",
    response_model=TransitionResponse,
    summary="Move an order to a new status",
)
async def update_order_status(
    order_id: UUID,
    request: OrderStatusRequest,
    actor: AdminActor,
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
    "/orders/{order_id}/assign",
    response_model=OrderResponse,
    summary="Assign or reassign the delivery agent",
)
async def assign_order(
    order_id: UUID,
    request: AssignAgentRequest,
    actor: AdminActor,
    lifecycle: Lifecycle,
    db: DbSession,
) -> OrderResponse:
    if not request.agent_id:
        raise APIError("validation_error", "agent_id is required", status_code=422)
    order = await lifecycle.assign_agent(
        order_id, request.agent_id, actor=actor, expected_status=request.expected_status
    )
    await db.commit()
    return OrderResponse.model_validate(order)


@router.get(
    "/orders/{order_id}/tracking",
    response_model=TrackingResponse,
    summary="Full tracking history of an order",
)
async def get_tracking(order_id: UUID, actor: AdminActor, lifecycle: Lifecycle) -> TrackingResponse:
    events = await lifecycle.tracking_history(order_id, actor=actor)
    order = await lifecycle.get_order(order_id)
    return TrackingResponse(
        order_id=order.order_id,
        status=order.status,
        return_status=order.return_status,
        events=[TrackingEventResponse.model_validate(e) for e in events],
    )
