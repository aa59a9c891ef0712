"""Injectable time source.

Services take a ``clock`` argument so expiry and return-window arithmetic
can be exercised with a fixed instant.
"""

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)
