from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from postgrest.exceptions import APIError

from ..config import settings
from ..database import get_db, to_iso, utcnow
from ..errors import StateConflict, ValidationFailed


logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 128


def _lookup(user_id: str, scope: str, key: str) -> dict[str, Any] | None:
    result = (
        get_db()
        .table("idempotency_keys")
        .select("*")
        .eq("user_id", user_id)
        .eq("scope", scope)
        .eq("key", key)
        .limit(1)
        .execute()
    )
    if not result.data:
        return None
    return result.data[0]


def run_once(user_id: str, scope: str, key: str | None, operation: Callable[[], dict[str, Any]]) -> dict[str, Any]:
    """Run ``operation`` at most once per (user, scope, key).

    A retried request with the same key gets the stored response back. If
    ``operation`` raises, the key is freed so the client may retry; operations
    must therefore only raise before their financial write commits. Without a
    key the operation simply runs.
    """
    if not key:
        return operation()
    key = key.strip()
    if not key or len(key) > MAX_KEY_LENGTH:
        raise ValidationFailed("Invalid idempotency key.", code="invalid_idempotency_key")

    existing = _lookup(user_id, scope, key)
    if existing is not None:
        if existing.get("response") is None:
            raise StateConflict("A request with this key is still in progress.", code="request_in_progress")
        logger.info("Replaying %s response for user %s key %s", scope, user_id, key)
        return existing["response"]

    db = get_db()
    try:
        reserved = (
            db.table("idempotency_keys")
            .insert({"user_id": user_id, "scope": scope, "key": key, "response": None, "created_at": to_iso(utcnow())})
            .execute()
        )
    except APIError as exc:
        if exc.code == "23505":
            raise StateConflict("A request with this key is still in progress.", code="request_in_progress") from exc
        raise
    reservation_id = reserved.data[0]["id"]

    try:
        response = operation()
    except Exception:
        db.table("idempotency_keys").delete().eq("id", reservation_id).execute()
        raise

    try:
        db.table("idempotency_keys").update({"response": response}).eq("id", reservation_id).execute()
    except Exception:
        # The operation committed; the reservation stays so a retry cannot run it twice.
        logger.exception("Could not store %s response for user %s key %s", scope, user_id, key)
    return response


def purge_expired_keys(now: datetime | None = None) -> int:
    cutoff = (now or utcnow()) - timedelta(hours=settings.idempotency_ttl_hours)
    result = get_db().table("idempotency_keys").delete().lt("created_at", to_iso(cutoff)).execute()
    purged = len(result.data or [])
    if purged:
        logger.info("Purged %s expired idempotency keys", purged)
    return purged
