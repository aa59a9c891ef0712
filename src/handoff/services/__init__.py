"""Handoff service layer.

State machines and their collaborators:
- OrderLifecycleService: order delivery state machine
- ReturnService: return request, pickup and refund request
- RefundService: manufacturer refund decisions and payment outcomes
- OTPEngine: one-time delivery and pickup codes
- TrackingLog: append-only per-order event history
- JobQueueService: PostgreSQL-backed background jobs
"""

from handoff.services.authz import Actor, Capability, can_perform
from handoff.services.errors import (
    AlreadyFinalizedError,
    ConcurrentModificationError,
    ExternalDependencyError,
    HandoffError,
    InvalidTransitionError,
    NotFoundError,
    OTPExpiredError,
    OTPMismatchError,
    PermissionDeniedError,
    PreconditionFailedError,
)
from handoff.services.job_queue import JobQueueService, JobType
from handoff.services.lifecycle import OrderLifecycleService, TransitionResult
from handoff.services.otp import OTPEngine
from handoff.services.refunds import RefundService
from handoff.services.returns import ReturnService
from handoff.services.tracking import TrackingLog

__all__ = [
    "Actor",
    "AlreadyFinalizedError",
    "Capability",
    "ConcurrentModificationError",
    "ExternalDependencyError",
    "HandoffError",
    "InvalidTransitionError",
    "JobQueueService",
    "JobType",
    "NotFoundError",
    "OTPEngine",
    "OTPExpiredError",
    "OTPMismatchError",
    "OrderLifecycleService",
    "PermissionDeniedError",
    "PreconditionFailedError",
    "RefundService",
    "ReturnService",
    "TrackingLog",
    "TransitionResult",
    "can_perform",
]
