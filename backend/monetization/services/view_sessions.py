"""Per (video, viewer) monetization window.

Each pair owns exactly one ``view_sessions`` row (unique on ``video_id,
viewer_id``). A session is active for ``ad_cooldown_hours`` from
``session_start``; watching again after that renews the same row instead of
creating a second one, so ``last_ad_view`` always reflects the last monetized
impression of the pair. Rows untouched for ``session_retention_hours`` are
deleted by :func:`purge_stale_sessions`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from postgrest.exceptions import APIError

from ..config import settings
from ..database import get_db, parse_ts, to_iso, utcnow
from ..errors import StateConflict
from ..utils.anti_bot import RiskAssessment
from ..utils.atomic import guarded_update


logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


def cooldown_window() -> timedelta:
    return timedelta(hours=settings.ad_cooldown_hours)


def get_session(video_id: str, viewer_id: str) -> dict[str, Any] | None:
    result = (
        get_db()
        .table("view_sessions")
        .select("*")
        .eq("video_id", video_id)
        .eq("viewer_id", viewer_id)
        .limit(1)
        .execute()
    )
    if not result.data:
        return None
    return result.data[0]


def find_active_session(video_id: str, viewer_id: str, now: datetime | None = None) -> dict[str, Any] | None:
    now = now or utcnow()
    result = (
        get_db()
        .table("view_sessions")
        .select("*")
        .eq("video_id", video_id)
        .eq("viewer_id", viewer_id)
        .gte("session_start", to_iso(now - cooldown_window()))
        .order("session_start", desc=True)
        .limit(1)
        .execute()
    )
    if not result.data:
        return None
    return result.data[0]


def is_in_cooldown(session: dict[str, Any] | None, now: datetime | None = None) -> bool:
    if not session:
        return False
    last_ad_view = parse_ts(session.get("last_ad_view"))
    if last_ad_view is None:
        return False
    now = now or utcnow()
    return now - last_ad_view < cooldown_window()


def _risk_columns(risk: RiskAssessment | None) -> dict[str, Any]:
    if risk is None:
        return {}
    columns: dict[str, Any] = {"bot_score": risk.score}
    if risk.blocked:
        columns["is_blocked"] = True
        columns["block_reason"] = ",".join(risk.flags) or "risk_threshold_exceeded"
    return columns


def open_session(
    video_id: str,
    viewer_id: str,
    ip_address: str | None,
    user_agent: str | None,
    risk: RiskAssessment | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Return the pair's session, creating it or renewing a stale window."""
    now = now or utcnow()
    active = find_active_session(video_id, viewer_id, now)
    if active is not None:
        return active

    existing = get_session(video_id, viewer_id)
    if existing is None:
        payload = {
            "video_id": video_id,
            "viewer_id": viewer_id,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "session_start": to_iso(now),
            "last_ad_view": None,
            "ads_viewed_count": 0,
            "ad_shown": False,
            "bot_score": 0,
            "is_blocked": False,
            "block_reason": None,
            "version": 0,
            **_risk_columns(risk),
        }
        try:
            created = get_db().table("view_sessions").insert(payload).execute()
        except APIError as exc:
            if exc.code != UNIQUE_VIOLATION:
                raise
            logger.debug("Session for video %s viewer %s created concurrently", video_id, viewer_id)
            created = None
        if created and created.data:
            return created.data[0]
        existing = get_session(video_id, viewer_id)
        if existing is None:
            raise RuntimeError("Failed to create view session.")

    session_start = parse_ts(existing.get("session_start"))
    if session_start is not None and now - session_start < cooldown_window():
        return existing

    def renew(row: dict[str, Any]) -> dict[str, Any]:
        return {
            "session_start": to_iso(now),
            "ad_shown": False,
            "ip_address": ip_address or row.get("ip_address"),
            "user_agent": user_agent or row.get("user_agent"),
            **_risk_columns(risk),
        }

    return guarded_update("view_sessions", existing["id"], renew)


def claim_ad_slot(session_id: str, now: datetime | None = None) -> tuple[dict[str, Any], dict[str, Any]]:
    """Reserve the pair's monetized impression for the current window.

    Returns ``(previous_row, claimed_row)``. Concurrent claims for the same
    pair serialize on the row version; the losers see the winner's
    ``last_ad_view`` and fail with ``cooldown_active``.
    """
    now = now or utcnow()
    previous: dict[str, Any] = {}

    def claim(row: dict[str, Any]) -> dict[str, Any]:
        if row.get("is_blocked"):
            raise StateConflict("View session is blocked.", code="session_blocked")
        if is_in_cooldown(row, now):
            raise StateConflict("Ad already shown in last 24 hours for this video.", code="cooldown_active")
        previous.clear()
        previous.update(row)
        return {
            "last_ad_view": to_iso(now),
            "ads_viewed_count": int(row.get("ads_viewed_count") or 0) + 1,
            "ad_shown": True,
        }

    claimed = guarded_update("view_sessions", session_id, claim)
    return previous, claimed


def release_ad_slot(previous: dict[str, Any], claimed: dict[str, Any]) -> None:
    """Undo a claim whose ad view could not be persisted."""

    def release(row: dict[str, Any]) -> dict[str, Any]:
        if row.get("last_ad_view") != claimed.get("last_ad_view"):
            raise StateConflict("Ad slot was re-claimed.", code="cooldown_active")
        return {
            "last_ad_view": previous.get("last_ad_view"),
            "ads_viewed_count": int(previous.get("ads_viewed_count") or 0),
            "ad_shown": bool(previous.get("ad_shown")),
        }

    try:
        guarded_update("view_sessions", claimed["id"], release)
    except StateConflict:
        logger.warning("Ad slot on session %s changed before release", claimed["id"])


def purge_stale_sessions(now: datetime | None = None) -> int:
    now = now or utcnow()
    cutoff = to_iso(now - timedelta(hours=settings.session_retention_hours))
    db = get_db()
    stale = (
        db.table("view_sessions")
        .select("id, last_ad_view")
        .lt("session_start", cutoff)
        .execute()
        .data
        or []
    )
    stale_ids = [
        row["id"]
        for row in stale
        if row.get("last_ad_view") is None or parse_ts(row["last_ad_view"]) < parse_ts(cutoff)
    ]
    if not stale_ids:
        return 0
    db.table("view_sessions").delete().in_("id", stale_ids).execute()
    logger.info("Purged %s stale view sessions", len(stale_ids))
    return len(stale_ids)
