"""FastAPI dependencies: database session and service wiring.

Endpoints commit their own unit of work on success. On a workflow error the
session is rolled back, except for errors flagged ``preserve_writes`` (a
wrong OTP still consumes an attempt), whose writes are committed before the
error propagates to the error middleware.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from handoff.core.config import Settings  # noqa: TC001 - resolved by FastAPI at runtime
from handoff.services.errors import HandoffError
from handoff.services.job_queue import JobQueueService
from handoff.services.lifecycle import OrderLifecycleService
from handoff.services.notifications import NotificationChannel, build_notification_channel
from handoff.services.otp import OTPEngine
from handoff.services.refunds import RefundService
from handoff.services.returns import ReturnService

logger = logging.getLogger(__name__)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    from handoff.db import get_async_session

    async with get_async_session() as session:
        try:
            yield session
        except HandoffError as e:
            if e.preserve_writes:
                await session.commit()
                logger.debug("Committed partial writes before %s", e.code)
            raise


DbSession = Annotated[AsyncSession, Depends(get_db_session)]


def get_app_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        from handoff.core.settings import get_settings

        settings = get_settings()
        request.app.state.settings = settings
    return settings


AppSettings = Annotated[Settings, Depends(get_app_settings)]


def get_notification_channel(request: Request, settings: AppSettings) -> NotificationChannel:
    """The process-wide notification channel, built on first use."""
    channel = getattr(request.app.state, "notification_channel", None)
    if channel is None:
        channel = build_notification_channel(settings.notifications)
        request.app.state.notification_channel = channel
    return channel


def get_otp_engine(
    db: DbSession,
    settings: AppSettings,
    channel: Annotated[NotificationChannel, Depends(get_notification_channel)],
) -> OTPEngine:
    return OTPEngine.from_settings(db, channel, settings.otp)


OTP = Annotated[OTPEngine, Depends(get_otp_engine)]


def get_lifecycle_service(db: DbSession, otp: OTP) -> OrderLifecycleService:
    return OrderLifecycleService(db, otp)


def get_return_service(db: DbSession, settings: AppSettings, otp: OTP) -> ReturnService:
    return ReturnService(db, otp, window_days=settings.returns.window_days)


def get_refund_service(db: DbSession, settings: AppSettings) -> RefundService:
    return RefundService(db, JobQueueService(db), payment_settings=settings.payments)


Lifecycle = Annotated[OrderLifecycleService, Depends(get_lifecycle_service)]
Returns = Annotated[ReturnService, Depends(get_return_service)]
Refunds = Annotated[RefundService, Depends(get_refund_service)]
