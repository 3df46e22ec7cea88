"""Optimistic-concurrency helper for lead and deal updates.

Webhook deliveries and the sync job can write the same row at the same time.
Updates go through compare_and_set(): build the change from the row as read,
write it conditioned on that row's version, and on a conflict re-read and
rebuild once. A second conflict is raised to the caller.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from src.partner_portal.reconciliation.errors import ConcurrencyConflictError, EntityNotFoundError

logger = structlog.get_logger(__name__)

RecordT = TypeVar("RecordT")


async def compare_and_set(
    current: RecordT,
    reread: Callable[[str], Awaitable[RecordT | None]],
    write: Callable[[str, Any, int], Awaitable[RecordT]],
    build: Callable[[RecordT], Any | None],
) -> tuple[RecordT, RecordT | None]:
    """Apply ``build(current)`` with one retry on version conflict.

    Args:
        current: Record as last read (must expose ``id`` and ``version``).
        reread: Loads the record by id.
        write: Repository update taking (id, update, expected_version).
        build: Returns the update to apply, or None when nothing changes.

    Returns:
        Tuple of (record the update was based on, updated record or None
        when ``build`` found nothing to change).

    Raises:
        ConcurrencyConflictError: second conflict in a row.
        EntityNotFoundError: record disappeared between attempts.
    """
    change = build(current)
    if change is None:
        return current, None
    try:
        return current, await write(current.id, change, current.version)
    except ConcurrencyConflictError:
        logger.info(
            "versioning.conflict_retry",
            record_id=current.id,
            expected_version=current.version,
        )

    fresh = await reread(current.id)
    if fresh is None:
        raise EntityNotFoundError("Record deleted during update", record_id=current.id)
    change = build(fresh)
    if change is None:
        return fresh, None
    return fresh, await write(fresh.id, change, fresh.version)
