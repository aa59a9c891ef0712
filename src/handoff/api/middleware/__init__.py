"""Handoff API middleware components.

- Request ID tracking
- Consistent error response formatting
- Principal extraction from gateway headers
"""

from handoff.api.middleware.auth import (
    AdminActor,
    CustomerActor,
    DeliveryActor,
    ManufacturerActor,
    get_actor,
    require_roles,
)
from handoff.api.middleware.errors import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    ErrorHandlerMiddleware,
)
from handoff.api.middleware.request_id import RequestIDMiddleware, get_request_id

__all__ = [
    "APIError",
    "AdminActor",
    "AuthenticationError",
    "AuthorizationError",
    "CustomerActor",
    "DeliveryActor",
    "ErrorHandlerMiddleware",
    "ManufacturerActor",
    "RequestIDMiddleware",
    "get_actor",
    "get_request_id",
    "require_roles",
]
