"""Manufacturer API router.

Manufacturers (and platform admins acting for them) decide returns and
refunds, and submit approved refunds for payment. Submission is
asynchronous: the refund enters ``processing`` and the worker records the
payment outcome.
"""

from __future__ import annotations

import logging
from typing import Annotated
from uuid import UUID  # noqa: TC003 - path parameter type resolved at runtime

from fastapi import APIRouter, Query, status

from handoff.api.deps import DbSession, Refunds, Returns
from handoff.api.middleware.auth import ManufacturerActor
from handoff.api.schemas.returns import (
    ApproveReturnRequest,
    RefundDecisionRequest,
    RefundListResponse,
    RefundProcessRequest,
    RefundResponse,
    RejectReturnRequest,
    ReturnResponse,
)
from handoff.db.models.base import RefundStatus

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/manufacturer",
    tags=["manufacturer"],
    responses={
        401: {"description": "Authentication required"},
        403: {"description": "Insufficient permissions"},
        404: {"description": "Return or refund not found"},
    },
)

# -----------------------------------------------------------------------------
# Return decisions
# -----------------------------------------------------------------------------


@router.post(
    "/returns/{return_id}/approve",
    response_model=ReturnResponse,
    summary="Approve a return and schedule pickup",
)
async def approve_return(
    return_id: UUID,
    request: ApproveReturnRequest,
    actor: ManufacturerActor,
    returns: Returns,
    db: DbSession,
) -> ReturnResponse:
    return_request = await returns.approve_return(
        return_id,
        pickup_date=request.pickup_date,
        pickup_window=request.pickup_window,
        actor=actor,
        expected_status=request.expected_status,
    )
    await db.commit()
    return ReturnResponse.model_validate(return_request)


@router.post(
    "/returns/{return_id}/reject",
    response_model=ReturnResponse,
    summary="Reject a return",
)
async def reject_return(
    return_id: UUID,
    request: RejectReturnRequest,
    actor: ManufacturerActor,
    returns: Returns,
    db: DbSession,
) -> ReturnResponse:
    return_request = await returns.reject_return(
        return_id,
        notes=request.notes,
        actor=actor,
        expected_status=request.expected_status,
    )
    await db.commit()
    return ReturnResponse.model_validate(return_request)


# -----------------------------------------------------------------------------
# Refunds
# -----------------------------------------------------------------------------


@router.get("/refunds", response_model=RefundListResponse, summary="List refunds")
async def list_refunds(
    actor: ManufacturerActor,
    refunds: Refunds,
    refund_status: Annotated[
        RefundStatus | None, Query(alias="status", description="Filter by status")
    ] = None,
    limit: Annotated[int, Query(ge=1, le=100, description="Page size")] = 50,
) -> RefundListResponse:
    records = await refunds.list_refunds(actor=actor, status=refund_status, limit=limit)
    return RefundListResponse(
        refunds=[RefundResponse.model_validate(r) for r in records],
        total=len(records),
    )


@router.get("/refunds/{refund_id}", response_model=RefundResponse, summary="Get a refund")
async def get_refund(
    refund_id: UUID, actor: ManufacturerActor, refunds: Refunds
) -> RefundResponse:
    refund = await refunds.view_refund(refund_id, actor=actor)
    return RefundResponse.model_validate(refund)


@router.post(
    "/refunds/{refund_id}/approve",
    response_model=RefundResponse,
    summary="Approve a pending refund",
)
async def approve_refund(
    refund_id: UUID,
    request: RefundDecisionRequest,
    actor: ManufacturerActor,
    refunds: Refunds,
    db: DbSession,
) -> RefundResponse:
    refund = await refunds.approve_refund(
        refund_id, actor=actor, notes=request.notes, expected_status=request.expected_status
    )
    await db.commit()
    return RefundResponse.model_validate(refund)


@router.post(
    "/refunds/{refund_id}/reject",
    response_model=RefundResponse,
    summary="Reject a pending refund",
)
async def reject_refund(
    refund_id: UUID,
    request: RefundDecisionRequest,
    actor: ManufacturerActor,
    refunds: Refunds,
    db: DbSession,
) -> RefundResponse:
    refund = await refunds.reject_refund(
        refund_id, notes=request.notes, actor=actor, expected_status=request.expected_status
    )
    await db.commit()
    return RefundResponse.model_validate(refund)


@router.post(
    "/refunds/{refund_id}/process",
    response_model=RefundResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a refund for payment",
    description="Approved or failed refunds only; the payment runs in the background.",
)
async def process_refund(
    refund_id: UUID,
    request: RefundProcessRequest,
    actor: ManufacturerActor,
    refunds: Refunds,
    db: DbSession,
) -> RefundResponse:
    refund = await refunds.start_processing(
        refund_id, actor=actor, expected_status=request.expected_status
    )
    await db.commit()
    logger.info(
        "Refund submitted for payment",
        extra={"refund_id": str(refund_id), "attempt": refund.payment_attempts},
    )
    return RefundResponse.model_validate(refund)
