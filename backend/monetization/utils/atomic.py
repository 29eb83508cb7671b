from __future__ import annotations

import logging
from typing import Any, Callable

from ..config import settings
from ..database import fetch_one, get_db
from ..errors import ConcurrentUpdate, NotFound


logger = logging.getLogger(__name__)


def guarded_update(
    table: str,
    row_id: str,
    mutate: Callable[[dict[str, Any]], dict[str, Any]],
    *,
    attempts: int | None = None,
) -> dict[str, Any]:
    """Apply ``mutate`` to a row with optimistic concurrency on its ``version``.

    ``mutate`` receives the freshly read row and returns the columns to change;
    it may raise to abort. The write only lands if nobody bumped the version
    since the read, otherwise the row is re-read and ``mutate`` runs again.
    """
    db = get_db()
    max_attempts = max(1, attempts or settings.update_max_attempts)
    for attempt in range(1, max_attempts + 1):
        row = fetch_one(table, row_id)
        if row is None:
            raise NotFound(f"{table} row {row_id} not found.")

        changes = mutate(row)
        version = int(row.get("version") or 0)
        result = (
            db.table(table)
            .update({**changes, "version": version + 1})
            .eq("id", row_id)
            .eq("version", version)
            .execute()
        )
        if result.data:
            return result.data[0]
        logger.debug("Version conflict on %s %s (attempt %s/%s)", table, row_id, attempt, max_attempts)

    logger.warning("Giving up on %s %s after %s conflicting attempts", table, row_id, max_attempts)
    raise ConcurrentUpdate("The record is being modified concurrently. Please retry.")


def conditional_update(table: str, row_id: str, changes: dict[str, Any], **expected: Any) -> dict[str, Any] | None:
    """Update a row only if every ``expected`` column still holds its value."""
    query = get_db().table(table).update(changes).eq("id", row_id)
    for column, value in expected.items():
        query = query.eq(column, value)
    result = query.execute()
    if not result.data:
        return None
    return result.data[0]


def increment(function: str, **params: Any) -> dict[str, Any]:
    """Call a database function that adds to counters in a single UPDATE.

    Unconditional credits go through here so writers never race on a version.
    The function returns the updated row.
    """
    result = get_db().rpc(function, params).execute()
    rows = result.data
    if isinstance(rows, dict):
        rows = [rows]
    if not rows:
        raise NotFound(f"No row updated by {function}.")
    return rows[0]
