"""Payment rail callback router.

The rail posts transfer outcomes here, signed with HMAC-SHA256 over the raw
body (``X-Signature-SHA256: sha256=<hex>``). Outcomes are matched to the
refund by the idempotency key of its current submission; callbacks for
superseded submissions are acknowledged and ignored.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request, status
from pydantic import ValidationError

from handoff.api.deps import AppSettings, DbSession, Refunds
from handoff.api.middleware.errors import APIError
from handoff.api.schemas.returns import PaymentCallback
from handoff.services.authz import Actor
from handoff.services.payment_rail import TransferStatus, verify_callback_signature

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature-SHA256"

CALLBACK_ACTOR = Actor.system("payment-rail-callback")

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/callback",
    status_code=status.HTTP_200_OK,
    summary="Payment rail outcome callback",
    responses={401: {"description": "Missing or invalid signature"}},
)
async def payment_callback(
    request: Request,
    settings: AppSettings,
    refunds: Refunds,
    db: DbSession,
) -> dict[str, Any]:
    body = await request.body()
    secret = settings.payments.callback_secret.get_secret_value()
    if not verify_callback_signature(body, request.headers.get(SIGNATURE_HEADER), secret):
        logger.warning("Rejected payment callback with invalid signature")
        raise APIError("invalid_signature", "Callback signature invalid", status_code=401)

    try:
        callback = PaymentCallback.model_validate_json(body)
    except ValidationError as e:
        raise APIError(
            "validation_error",
            "Malformed callback body",
            status_code=422,
            detail={"errors": e.errors(include_url=False)},
        ) from e

    refund = await refunds.find_by_idempotency_key(callback.idempotency_key)
    if refund is None:
        logger.info(
            "Payment callback for unknown or superseded submission: key=%s, ref=%s",
            callback.idempotency_key,
            callback.id,
        )
        return {"status": "ignored"}

    outcome = TransferStatus(callback.status)
    if outcome == TransferStatus.PENDING:
        await refunds.attach_transaction_ref(refund.refund_id, callback.id, actor=CALLBACK_ACTOR)
        await db.commit()
        return {"status": "pending", "refund_id": str(refund.refund_id)}

    result = await refunds.record_outcome(
        refund.refund_id,
        succeeded=outcome == TransferStatus.SUCCEEDED,
        transaction_ref=callback.id,
        failure_reason=callback.failure_reason,
        idempotency_key=callback.idempotency_key,
        actor=CALLBACK_ACTOR,
    )
    await db.commit()
    return {
        "status": "recorded" if result.changed else "duplicate",
        "refund_id": str(refund.refund_id),
        "refund_status": result.new_status.value,
    }
