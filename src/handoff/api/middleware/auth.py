"""Principal extraction.

Requests arrive already authenticated by the gateway, which forwards the
caller's identity and role in ``X-Principal-Id`` / ``X-Principal-Role``.
These dependencies turn the headers into an ``Actor`` and gate each API
namespace by role; finer capability and ownership checks happen in the
services.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, Request

from handoff.api.middleware.errors import AuthenticationError, AuthorizationError
from handoff.db.models.base import ActorRole
from handoff.services.authz import Actor

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

PRINCIPAL_ID_HEADER = "X-Principal-Id"
PRINCIPAL_ROLE_HEADER = "X-Principal-Role"

# Only internal callers act as system; the gateway never forwards it
EXTERNAL_ROLES = frozenset(
    {
        ActorRole.CUSTOMER,
        ActorRole.DELIVERY_PARTNER,
        ActorRole.MANUFACTURER,
        ActorRole.ADMIN,
    }
)


async def get_actor(request: Request) -> Actor:
    """Dependency returning the authenticated caller.

    Raises:
        AuthenticationError: Headers missing or role unknown.
    """
    actor_id = (request.headers.get(PRINCIPAL_ID_HEADER) or "").strip()
    role_name = (request.headers.get(PRINCIPAL_ROLE_HEADER) or "").strip().lower()
    if not actor_id or not role_name:
        raise AuthenticationError()

    try:
        role = ActorRole(role_name)
    except ValueError:
        raise AuthenticationError(
            "Unknown principal role", detail={"role": role_name}
        ) from None
    if role not in EXTERNAL_ROLES:
        raise AuthenticationError("Role not accepted from the gateway", detail={"role": role_name})

    return Actor(actor_id=actor_id, role=role)


def require_roles(*roles: ActorRole) -> Callable[..., Awaitable[Actor]]:
    """Factory for namespace guards.

    Usage:
        CustomerActor = Annotated[Actor, Depends(require_roles(ActorRole.CUSTOMER))]
    """
    allowed = frozenset(roles)

    async def _check_role(actor: Annotated[Actor, Depends(get_actor)]) -> Actor:
        if actor.role not in allowed:
            logger.warning(
                "Role rejected for namespace",
                extra={"actor_id": actor.actor_id, "role": actor.role.value},
            )
            raise AuthorizationError(
                f"Role {actor.role.value} cannot use this endpoint",
                detail={"allowed_roles": sorted(r.value for r in allowed)},
            )
        return actor

    return _check_role


CustomerActor = Annotated[Actor, Depends(require_roles(ActorRole.CUSTOMER))]
DeliveryActor = Annotated[Actor, Depends(require_roles(ActorRole.DELIVERY_PARTNER))]
ManufacturerActor = Annotated[
    Actor, Depends(require_roles(ActorRole.MANUFACTURER, ActorRole.ADMIN))
]
AdminActor = Annotated[Actor, Depends(require_roles(ActorRole.ADMIN))]
