"""Handoff API routers, one per caller namespace:

- customer: order view, tracking, cancellation, returns
- delivery: agent assignment, delivery progress, OTP handover, pickups
- manufacturer: return and refund decisions, refund submission
- admin: operator status changes and assignment
- payments: signed payment rail callbacks
"""

from handoff.api.routers.admin import router as admin_router
from handoff.api.routers.customer import router as customer_router
from handoff.api.routers.delivery import router as delivery_router
from handoff.api.routers.manufacturer import router as manufacturer_router
from handoff.api.routers.payments import router as payments_router

__all__ = [
    "admin_router",
    "customer_router",
    "delivery_router",
    "manufacturer_router",
    "payments_router",
]
