"""Process-wide settings accessor.

``get_settings()`` reads the environment once; the API dependencies, the
worker and the Alembic env all share the cached instance. Tests call
``clear_settings_cache()`` after changing the environment.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from handoff.core.config import ConfigValidationError, Settings, validate_settings

logger = logging.getLogger(__name__)


def _describe(error: ValidationError) -> str:
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "<root>"
        lines.append(f"  - {location}: {item['msg']}")
    return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load, validate and cache the settings.

    Raises:
        SystemExit: The environment does not describe a usable configuration.
    """
    try:
        settings = Settings()  # type: ignore[call-arg]
        validate_settings(settings)
    except ValidationError as e:
        logger.critical("Invalid configuration:\n%s", _describe(e))
        raise SystemExit(1) from e
    except ConfigValidationError as e:
        logger.critical("Invalid configuration: %s (field: %s)", e.message, e.field or "unknown")
        raise SystemExit(1) from e

    logger.info(
        "Settings loaded: environment=%s, notifications=%s, payment_rail=%s, policy=%s",
        settings.environment.value,
        settings.notifications.channel.value,
        settings.payments.mode.value,
        settings.get_policy_hash()[:12],
    )
    return settings


def clear_settings_cache() -> None:
    get_settings.cache_clear()


def get_settings_safe() -> Settings | None:
    """Like ``get_settings()`` but returns None instead of exiting."""
    try:
        return get_settings()
    except SystemExit:
        return None
