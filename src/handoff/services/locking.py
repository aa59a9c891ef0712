"""Per-row serialization helpers shared by the state machine services.

Rows are read with SELECT ... FOR UPDATE and carry a version column, so two
requests racing on the same order cannot both commit against the same
prior status. Callers may also pass the status they based their request on
(``expected_status``); a mismatch fails fast instead of applying a
transition the caller did not intend.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from handoff.services.errors import ConcurrentModificationError, NotFoundError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from enum import Enum

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.orm import InstrumentedAttribute

T = TypeVar("T")


async def fetch_one(
    session: AsyncSession,
    model: type[T],
    key: InstrumentedAttribute[Any],
    value: Any,
    *,
    entity: str,
    lock: bool = False,
) -> T:
    """Load one row by key, optionally locking it.

    Raises:
        NotFoundError: If no row matches.
    """
    query = select(model).where(key == value)
    if lock:
        # A locked read must not be served stale from the identity map
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(query)
    row = result.scalar_one_or_none()
    if row is None:
        raise NotFoundError(entity, value)
    return row


def check_expected_status(row: Any, expected_status: Enum | None, *, entity: str) -> None:
    """Raise ConcurrentModificationError if the row moved on."""
    if expected_status is not None and row.status != expected_status:
        raise ConcurrentModificationError(
            f"{entity} is {row.status.value}, expected {expected_status.value}; reload and retry",
            current_status=row.status,
            expected_status=expected_status,
        )


@asynccontextmanager
async def stale_guard(entity: str, entity_id: Any) -> AsyncIterator[None]:
    """Translate a version-column conflict at flush time."""
    try:
        yield
    except StaleDataError as e:
        raise ConcurrentModificationError(
            f"{entity} {entity_id} was modified concurrently; reload and retry",
            id=str(entity_id),
        ) from e
