"""Role-based capability checks.

Requests reach the core already authenticated with a role. The core
still decides which role may invoke which transition, and enforces
ownership on top of that: customers act only on their own orders and
delivery partners only on orders or returns assigned to them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from handoff.db.models.base import ActorRole
from handoff.services.errors import PermissionDeniedError

if TYPE_CHECKING:
    from handoff.db.models.orders import Order
    from handoff.db.models.refunds import RefundRecord
    from handoff.db.models.returns import ReturnRequest

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    """Workflow operations subject to authorization."""

    VIEW_ORDER = "view_order"
    CONFIRM_ORDER = "confirm_order"
    CANCEL_ORDER = "cancel_order"
    ASSIGN_AGENT = "assign_agent"
    ADVANCE_DELIVERY = "advance_delivery"
    REPORT_NEAR_LOCATION = "report_near_location"
    ISSUE_DELIVERY_OTP = "issue_delivery_otp"
    VERIFY_DELIVERY_OTP = "verify_delivery_otp"

    OPEN_RETURN = "open_return"
    CANCEL_RETURN = "cancel_return"
    DECIDE_RETURN = "decide_return"
    ADVANCE_PICKUP = "advance_pickup"
    ISSUE_PICKUP_OTP = "issue_pickup_otp"
    VERIFY_PICKUP_OTP = "verify_pickup_otp"
    REQUEST_REFUND = "request_refund"

    VIEW_REFUNDS = "view_refunds"
    DECIDE_REFUND = "decide_refund"
    PROCESS_REFUND = "process_refund"
    RECORD_REFUND_OUTCOME = "record_refund_outcome"


ROLE_CAPABILITIES: dict[ActorRole, frozenset[Capability]] = {
    ActorRole.CUSTOMER: frozenset(
        [
            Capability.VIEW_ORDER,
            Capability.CANCEL_ORDER,
            Capability.OPEN_RETURN,
            Capability.CANCEL_RETURN,
        ]
    ),
    ActorRole.DELIVERY_PARTNER: frozenset(
        [
            Capability.VIEW_ORDER,
            Capability.ASSIGN_AGENT,
            Capability.ADVANCE_DELIVERY,
            Capability.REPORT_NEAR_LOCATION,
            Capability.ISSUE_DELIVERY_OTP,
            Capability.VERIFY_DELIVERY_OTP,
            Capability.DECIDE_RETURN,
            Capability.ADVANCE_PICKUP,
            Capability.ISSUE_PICKUP_OTP,
            Capability.VERIFY_PICKUP_OTP,
            Capability.REQUEST_REFUND,
        ]
    ),
    ActorRole.MANUFACTURER: frozenset(
        [
            Capability.VIEW_ORDER,
            Capability.DECIDE_RETURN,
            Capability.VIEW_REFUNDS,
            Capability.DECIDE_REFUND,
            Capability.PROCESS_REFUND,
        ]
    ),
    ActorRole.ADMIN: frozenset(
        [
            Capability.VIEW_ORDER,
            Capability.CONFIRM_ORDER,
            Capability.CANCEL_ORDER,
            Capability.ASSIGN_AGENT,
            Capability.ADVANCE_DELIVERY,
            Capability.DECIDE_RETURN,
            Capability.VIEW_REFUNDS,
            Capability.DECIDE_REFUND,
        ]
    ),
    # Worker and payment-rail callbacks
    ActorRole.SYSTEM: frozenset(
        [
            Capability.VIEW_REFUNDS,
            Capability.RECORD_REFUND_OUTCOME,
        ]
    ),
}


@dataclass(frozen=True, slots=True)
class Actor:
    """An authenticated caller.

    Attributes:
        actor_id: Identity reference from the upstream identity provider.
        role: Role the caller acts under for this request.
    """

    actor_id: str
    role: ActorRole

    @classmethod
    def system(cls, name: str = "system") -> Actor:
        return cls(actor_id=name, role=ActorRole.SYSTEM)


def can_perform(role: ActorRole, capability: Capability) -> bool:
    """True if ``role`` holds ``capability``."""
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


def require(actor: Actor, capability: Capability) -> None:
    """Raise PermissionDeniedError unless the actor's role holds ``capability``."""
    if not can_perform(actor.role, capability):
        logger.warning(
            "Capability denied",
            extra={
                "actor_id": actor.actor_id,
                "role": actor.role.value,
                "capability": capability.value,
            },
        )
        raise PermissionDeniedError(
            f"Role {actor.role.value} may not {capability.value.replace('_', ' ')}",
            role=actor.role,
            capability=capability.value,
        )


def require_order_access(actor: Actor, order: Order) -> None:
    """Enforce ownership for customers and delivery partners.

    Customers may only touch their own orders. Delivery partners may only
    touch orders assigned to them. Other roles are unrestricted here.
    """
    if actor.role == ActorRole.CUSTOMER and order.customer_id != actor.actor_id:
        raise PermissionDeniedError(
            "Order belongs to another customer",
            order_id=str(order.order_id),
        )
    if actor.role == ActorRole.DELIVERY_PARTNER and order.delivery_agent_id != actor.actor_id:
        raise PermissionDeniedError(
            "Order is not assigned to this delivery partner",
            order_id=str(order.order_id),
        )


def require_refund_access(actor: Actor, refund: RefundRecord) -> None:
    """Manufacturers only see refunds charged to them."""
    if (
        actor.role == ActorRole.MANUFACTURER
        and refund.manufacturer_id is not None
        and refund.manufacturer_id != actor.actor_id
    ):
        raise PermissionDeniedError(
            "Refund belongs to another manufacturer",
            refund_id=str(refund.refund_id),
        )


def order_manufacturers(order: Order) -> set[str]:
    """Manufacturers with at least one item on ``order``."""
    return {item.manufacturer_id for item in order.items if item.manufacturer_id is not None}


def require_return_access(actor: Actor, return_request: ReturnRequest, order: Order) -> None:
    """Ownership check for return requests.

    Manufacturers decide returns only on orders carrying their items. A
    delivery partner acts on a return once it holds the pickup, or before
    anyone does if it delivered the order.
    """
    if actor.role == ActorRole.CUSTOMER and return_request.customer_id != actor.actor_id:
        raise PermissionDeniedError(
            "Return belongs to another customer",
            return_id=str(return_request.return_id),
        )
    if actor.role == ActorRole.MANUFACTURER and actor.actor_id not in order_manufacturers(order):
        raise PermissionDeniedError(
            "Return is on an order without this manufacturer's items",
            return_id=str(return_request.return_id),
        )
    if actor.role == ActorRole.DELIVERY_PARTNER:
        holder = return_request.pickup_agent_id or order.delivery_agent_id
        if holder != actor.actor_id:
            raise PermissionDeniedError(
                "Return pickup belongs to another delivery partner",
                return_id=str(return_request.return_id),
            )


def primary_manufacturer(order: Order) -> str | None:
    """Manufacturer a refund on ``order`` is charged to: the first item's that has one."""
    for item in order.items:
        if item.manufacturer_id is not None:
            return item.manufacturer_id
    return None
