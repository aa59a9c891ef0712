"""Handoff API entry point.

``app`` is what ASGI servers load (``handoff.api.main:app``); ``run()`` backs
the ``handoff-api`` console script.
"""

import logging

from handoff.api import create_app

logger = logging.getLogger(__name__)

app = create_app()


def run() -> None:
    """Serve the API with uvicorn using host and port from settings."""
    import uvicorn

    from handoff.api.middleware.request_id import RequestIDLogFilter
    from handoff.core.settings import get_settings

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s [%(request_id)s]: %(message)s",
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(RequestIDLogFilter())
    logger.info("Starting Handoff API on %s:%d", settings.api_host, settings.api_port)

    uvicorn.run(
        "handoff.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
