"""Handoff API service.

FastAPI application exposing the order delivery, return and refund
workflows to customers, delivery partners, manufacturers and admins, plus
the payment rail's outcome callback.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from handoff import __version__
from handoff.api.middleware import ErrorHandlerMiddleware, RequestIDMiddleware
from handoff.api.routers import (
    admin_router,
    customer_router,
    delivery_router,
    manufacturer_router,
    payments_router,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from handoff.core.config import Settings

logger = logging.getLogger(__name__)

API_TITLE = "Handoff API"
API_DESCRIPTION = """
Order delivery, return and refund lifecycle service.

## Namespaces

- **/api/customer/** - Orders, tracking, cancellation and returns
- **/api/delivery/** - Assignment, delivery progress, OTP handover, pickups
- **/api/manufacturer/** - Return and refund decisions
- **/api/admin/** - Operator actions
- **/api/payments/** - Payment rail callbacks (signed)

Callers are authenticated by the gateway, which forwards
`X-Principal-Id` and `X-Principal-Role`.
"""


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    channel = getattr(app.state, "notification_channel", None)
    close = getattr(channel, "close", None)
    if close is not None:
        await close()

    from handoff.db import close_engine

    await close_engine()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create a configured FastAPI application.

    Args:
        settings: Explicit settings (tests, embedding). When omitted they are
            loaded from the environment on first use.

    Returns:
        Application with middleware and routers mounted under ``/api``.
    """
    version = settings.app_version if settings else __version__

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=version,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=_lifespan,
    )
    app.state.settings = settings

    _add_middleware(app, settings)
    _include_routers(app)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    logger.info("Handoff API application created (version=%s)", version)
    return app


def _add_middleware(app: FastAPI, settings: Settings | None) -> None:
    # Last added is outermost: request id must be set before errors are rendered
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIDMiddleware)

    allowed_origins = ["http://localhost:3000", "http://localhost:8000"]
    if settings and settings.is_production:
        allowed_origins = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )


def _include_routers(app: FastAPI) -> None:
    app.include_router(customer_router, prefix="/api")
    app.include_router(delivery_router, prefix="/api")
    app.include_router(manufacturer_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")
    app.include_router(payments_router, prefix="/api")
