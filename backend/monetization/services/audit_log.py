from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any

from ..config import settings
from ..database import get_db, to_iso, utcnow
from ..schemas import AuditLogRecord


logger = logging.getLogger(__name__)


def _as_float(value: Any) -> float:
    return float(value or 0)


def append(
    event_type: str,
    user: dict[str, Any],
    *,
    status: str = "success",
    amount: Any = 0,
    ip_address: str | None = None,
    user_agent: str | None = None,
    video_id: str | None = None,
    transaction_id: str | None = None,
    ad_view_id: str | None = None,
    creator_share: Any = 0,
    platform_share: Any = 0,
    cpm: Any = 0,
    failure_reason: str | None = None,
    risk_score: int = 0,
    risk_flags: list[str] | None = None,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    entry = AuditLogRecord(
        event_type=event_type,
        user_id=user["id"],
        user_email=user.get("email"),
        ip_address=ip_address,
        user_agent=user_agent,
        amount=_as_float(amount),
        currency=settings.currency,
        video_id=video_id,
        transaction_id=transaction_id,
        ad_view_id=ad_view_id,
        creator_share=_as_float(creator_share),
        platform_share=_as_float(platform_share),
        cpm=_as_float(cpm),
        status=status,
        failure_reason=failure_reason,
        risk_score=int(risk_score),
        risk_flags=list(risk_flags or []),
        metadata=metadata or {},
        timestamp=to_iso(utcnow()),
    )
    created = get_db().table("audit_logs").insert(entry.model_dump()).execute()
    if not created.data:
        raise RuntimeError("Failed to write audit log entry.")
    return created.data[0]


def append_quietly(event_type: str, user: dict[str, Any], **fields: Any) -> dict[str, Any] | None:
    """Audit an attempt whose outcome is already decided.

    Used for rejections and for entries written after money has moved: a
    failing audit write must not mask the outcome. Missing success entries are
    picked up by the reconcile job.
    """
    try:
        return append(event_type, user, **fields)
    except Exception:
        logger.exception("Could not write %s audit entry for user %s", event_type, user.get("id"))
        return None


def query(
    page: int = 1,
    limit: int = 50,
    event_type: str | None = None,
    status: str | None = None,
    user_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict[str, Any]:
    page = max(page, 1)
    limit = min(max(limit, 1), 500)
    offset = (page - 1) * limit

    request = get_db().table("audit_logs").select("*", count="exact")
    if event_type:
        request = request.eq("event_type", event_type)
    if status:
        request = request.eq("status", status)
    if user_id:
        request = request.eq("user_id", user_id)
    if start:
        request = request.gte("timestamp", to_iso(start))
    if end:
        request = request.lte("timestamp", to_iso(end))

    result = request.order("timestamp", desc=True).range(offset, offset + limit - 1).execute()
    total = result.count or 0
    return {
        "logs": result.data or [],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


def flagged(limit: int = 100) -> list[dict[str, Any]]:
    result = (
        get_db()
        .table("audit_logs")
        .select("*")
        .eq("status", "flagged")
        .order("timestamp", desc=True)
        .limit(limit)
        .execute()
    )
    return result.data or []


def entries_for_ad_view(ad_view_id: str) -> list[dict[str, Any]]:
    result = get_db().table("audit_logs").select("id, status").eq("ad_view_id", ad_view_id).execute()
    return result.data or []
