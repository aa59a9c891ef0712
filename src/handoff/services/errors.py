"""Domain error taxonomy for the order, return and refund workflows.

Every error carries a stable machine ``code``, a human ``reason`` and a
``context`` dict (current status, allowed next statuses, attempts
remaining, ...). The API error middleware maps each class to an HTTP
status and serialises the three fields unchanged.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


def _plain(value: Any) -> Any:
    """Convert enums and collections of enums into JSON-friendly values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, list, tuple)):
        items = [_plain(v) for v in value]
        return sorted(items) if isinstance(value, (set, frozenset)) else items
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


class HandoffError(Exception):
    """Base class for workflow errors."""

    code = "handoff_error"
    # Set when the failing call recorded state that must be committed anyway
    preserve_writes = False

    def __init__(self, reason: str, **context: Any) -> None:
        self.reason = reason
        self.context = {k: _plain(v) for k, v in context.items() if v is not None}
        super().__init__(reason)


class InvalidTransitionError(HandoffError):
    """The requested status is not adjacent to the current one."""

    code = "invalid_transition"

    def __init__(
        self,
        from_status: Enum,
        to_status: Enum,
        allowed: set[Enum] | frozenset[Enum] | None = None,
        reason: str | None = None,
    ) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            reason or f"Cannot transition from {from_status.value} to {to_status.value}",
            current_status=from_status,
            requested_status=to_status,
            allowed_next=allowed if allowed is not None else set(),
        )


class PreconditionFailedError(HandoffError):
    """A guard rejected the request (window, agent, missing OTP step...)."""

    code = "precondition_failed"


class OTPMismatchError(HandoffError):
    """Submitted code is wrong, or no active challenge exists."""

    code = "otp_mismatch"


class OTPExpiredError(HandoffError):
    """The active challenge outlived its validity window."""

    code = "otp_expired"


class ConcurrentModificationError(HandoffError):
    """The row changed underneath the caller."""

    code = "concurrent_modification"


class AlreadyFinalizedError(HandoffError):
    """The entity is in a terminal status."""

    code = "already_finalized"


class ExternalDependencyError(HandoffError):
    """A notification channel or the payment rail failed."""

    code = "external_dependency_failure"


class NotFoundError(HandoffError):
    """Referenced entity does not exist."""

    code = "not_found"

    def __init__(self, entity: str, entity_id: Any) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found", entity=entity, id=str(entity_id))


class PermissionDeniedError(HandoffError):
    """The actor's role or identity may not perform this action."""

    code = "permission_denied"
