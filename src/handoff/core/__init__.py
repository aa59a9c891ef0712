"""Handoff core module.

Shared components used across all services:
- Configuration management
- Settings accessor
"""

from handoff.core.config import (
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    NotificationChannelKind,
    NotificationSettings,
    OTPSettings,
    PaymentRailMode,
    PaymentRailSettings,
    ReturnPolicySettings,
    Settings,
)
from handoff.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "NotificationChannelKind",
    "NotificationSettings",
    "OTPSettings",
    "PaymentRailMode",
    "PaymentRailSettings",
    "ReturnPolicySettings",
    "Settings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
