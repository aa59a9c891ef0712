"""Eligibility and guard evaluator.

Pure functions consulted before every transition. Nothing here touches
the database or the clock; callers pass ``now`` explicitly.

The three transition tables below are the single source of truth for
which status may follow which. Services never compare status strings.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from handoff.db.models.base import OrderStatus, OTPPurpose, RefundStatus, ReturnStatus
from handoff.services.errors import (
    AlreadyFinalizedError,
    InvalidTransitionError,
    PreconditionFailedError,
)

if TYPE_CHECKING:
    from datetime import datetime

    from handoff.db.models.orders import Order
    from handoff.db.models.returns import ReturnRequest

DEFAULT_RETURN_WINDOW_DAYS = 14

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset(
        {OrderStatus.PROCESSING, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED}
    ),
    OrderStatus.PROCESSING: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.NEAR_LOCATION, OrderStatus.CANCELLED}),
    OrderStatus.NEAR_LOCATION: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

RETURN_TRANSITIONS: dict[ReturnStatus, frozenset[ReturnStatus]] = {
    ReturnStatus.RETURN_REQUESTED: frozenset(
        {ReturnStatus.APPROVED, ReturnStatus.REJECTED, ReturnStatus.CANCELLED}
    ),
    ReturnStatus.APPROVED: frozenset({ReturnStatus.OUT_FOR_PICKUP}),
    ReturnStatus.OUT_FOR_PICKUP: frozenset({ReturnStatus.PICKUP_NEAR_LOCATION}),
    ReturnStatus.PICKUP_NEAR_LOCATION: frozenset({ReturnStatus.PICKUP_OTP_GENERATED}),
    ReturnStatus.PICKUP_OTP_GENERATED: frozenset({ReturnStatus.PICKUP_COMPLETED}),
    ReturnStatus.PICKUP_COMPLETED: frozenset({ReturnStatus.REFUND_REQUESTED}),
    ReturnStatus.REFUND_REQUESTED: frozenset(),
    ReturnStatus.REJECTED: frozenset(),
    ReturnStatus.CANCELLED: frozenset(),
}

REFUND_TRANSITIONS: dict[RefundStatus, frozenset[RefundStatus]] = {
    RefundStatus.PENDING: frozenset({RefundStatus.APPROVED, RefundStatus.REJECTED}),
    RefundStatus.APPROVED: frozenset({RefundStatus.PROCESSING}),
    RefundStatus.PROCESSING: frozenset({RefundStatus.COMPLETED, RefundStatus.FAILED}),
    # Manual resubmission
    RefundStatus.FAILED: frozenset({RefundStatus.PROCESSING}),
    RefundStatus.COMPLETED: frozenset(),
    RefundStatus.REJECTED: frozenset(),
}

# Transitions that only commit after a successful OTP verification
OTP_GATED_TRANSITIONS: dict[tuple[Enum, Enum], OTPPurpose] = {
    (OrderStatus.NEAR_LOCATION, OrderStatus.DELIVERED): OTPPurpose.DELIVERY,
    (ReturnStatus.PICKUP_OTP_GENERATED, ReturnStatus.PICKUP_COMPLETED): OTPPurpose.PICKUP,
}

# Returns in these states no longer block a new return on the same order
RESOLVED_RETURN_STATUSES = frozenset({ReturnStatus.REJECTED, ReturnStatus.CANCELLED})

_TABLES: dict[type[Enum], dict] = {
    OrderStatus: ORDER_TRANSITIONS,
    ReturnStatus: RETURN_TRANSITIONS,
    RefundStatus: REFUND_TRANSITIONS,
}


@dataclass(frozen=True, slots=True)
class GuardResult:
    """Outcome of a guard; truthy when the request may proceed."""

    allowed: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOWED = GuardResult(allowed=True)


def transition_table_for(status: Enum) -> dict:
    """Return the transition table that owns ``status``."""
    try:
        return _TABLES[type(status)]
    except KeyError:
        msg = f"No transition table for {type(status).__name__}"
        raise TypeError(msg) from None


def can_advance(current: Enum, requested: Enum, table: dict | None = None) -> bool:
    """Table-driven adjacency check.

    Args:
        current: Status the entity is in now.
        requested: Status the caller wants.
        table: Transition table; inferred from ``current`` when omitted.

    Returns:
        True if ``requested`` directly follows ``current``.
    """
    if table is None:
        table = transition_table_for(current)
    return requested in table.get(current, frozenset())


def allowed_next(status: Enum) -> frozenset:
    """Statuses reachable in one step from ``status``."""
    return transition_table_for(status).get(status, frozenset())


def is_terminal(status: Enum) -> bool:
    """True if no transition leaves ``status``."""
    return not allowed_next(status)


def requires_otp(current: Enum, requested: Enum) -> OTPPurpose | None:
    """OTP purpose a transition must be proven with, if any."""
    return OTP_GATED_TRANSITIONS.get((current, requested))


def is_blocking_return(return_request: ReturnRequest | None) -> bool:
    """True if the return is unresolved and prevents opening another."""
    return return_request is not None and return_request.status not in RESOLVED_RETURN_STATUSES


def can_open_return(
    order: Order,
    now: datetime,
    existing_return: ReturnRequest | None = None,
    window_days: int = DEFAULT_RETURN_WINDOW_DAYS,
) -> GuardResult:
    """Check whether a return may be opened on ``order`` at ``now``.

    The elapsed time since delivery is counted in whole days (floored),
    so a request on day ``window_days`` is accepted and one on the
    following day is not.

    Args:
        order: Order the customer wants to return.
        now: Current time (timezone-aware).
        existing_return: Most recent return on the order, if any.
        window_days: Return window length.

    Returns:
        GuardResult carrying the refusal reason when not allowed.
    """
    if order.status != OrderStatus.DELIVERED:
        return GuardResult(False, f"Order is {order.status.value}, not delivered")
    if order.delivered_at is None:
        return GuardResult(False, "Order has no recorded delivery time")
    if is_blocking_return(existing_return):
        return GuardResult(
            False,
            f"An unresolved return already exists ({existing_return.status.value})",
        )

    elapsed_days = (now - order.delivered_at).days
    if elapsed_days > window_days:
        return GuardResult(
            False,
            f"Return window of {window_days} days has closed "
            f"({elapsed_days} days since delivery)",
        )
    return ALLOWED


# ---------------------------------------------------------------------------
# Raising variants used by the services
# ---------------------------------------------------------------------------


def check_not_terminal(status: Enum, entity: str) -> None:
    """Raise AlreadyFinalizedError if ``status`` is terminal."""
    if is_terminal(status):
        raise AlreadyFinalizedError(
            f"{entity} is already {status.value}",
            current_status=status,
        )


def check_advance(current: Enum, requested: Enum, entity: str) -> None:
    """Raise unless ``requested`` directly follows ``current``.

    Raises:
        AlreadyFinalizedError: If ``current`` is terminal.
        InvalidTransitionError: If the statuses are not adjacent.
    """
    check_not_terminal(current, entity)
    if not can_advance(current, requested):
        raise InvalidTransitionError(current, requested, allowed=allowed_next(current))


def check_open_return(
    order: Order,
    now: datetime,
    existing_return: ReturnRequest | None = None,
    window_days: int = DEFAULT_RETURN_WINDOW_DAYS,
) -> None:
    """Raise PreconditionFailedError unless a return may be opened."""
    result = can_open_return(order, now, existing_return, window_days)
    if not result:
        raise PreconditionFailedError(
            result.reason or "Return not allowed",
            current_status=order.status,
            return_status=existing_return.status if existing_return is not None else None,
        )
