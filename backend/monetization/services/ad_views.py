from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from ..database import fetch_all, fetch_one, get_db, to_iso, utcnow
from ..errors import NotFound, StateConflict, ValidationFailed
from ..schemas import AdViewRecord, TransactionRecord
from ..utils import anti_bot
from ..utils.atomic import guarded_update, increment
from . import audit_log, view_sessions
from .premium_service import is_premium_active
from .revenue import effective_cpm, revenue_per_view, split_revenue, to_decimal
from .wallet_service import credit_wallet


logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = Decimal("3600")


@dataclass
class ViewContext:
    ip_address: str | None = None
    user_agent: str | None = None
    ad_completed: bool = True


def get_video(video_id: str) -> dict[str, Any]:
    video = fetch_one("videos", video_id)
    if video is None:
        raise NotFound("Video not found.")
    return video


def revenue_upload(video_id: str) -> dict[str, Any] | None:
    """The upload entry that carries a video's revenue counters (its earliest)."""
    result = (
        get_db()
        .table("video_uploads")
        .select("*")
        .eq("video_id", video_id)
        .order("created_at", desc=False)
        .limit(1)
        .execute()
    )
    if not result.data:
        return None
    return result.data[0]


def start_view(video_id: str, viewer: dict[str, Any], context: ViewContext) -> dict[str, Any]:
    video = get_video(video_id)
    if not video.get("is_monetized"):
        return {"shouldShowAd": False, "videoId": video_id, "reason": "Video not monetized"}
    if is_premium_active(viewer):
        return {"shouldShowAd": False, "videoId": video_id, "reason": "User is premium"}

    risk = anti_bot.assess_user_agent(context.user_agent)
    session = view_sessions.open_session(video_id, viewer["id"], context.ip_address, context.user_agent, risk)
    cpm = effective_cpm(video)
    response: dict[str, Any] = {
        "shouldShowAd": True,
        "videoId": video_id,
        "cpm": float(cpm),
        "revenuePerView": float(revenue_per_view(cpm)),
    }
    if session.get("is_blocked"):
        response.update(shouldShowAd=False, reason="View session is blocked")
    elif view_sessions.is_in_cooldown(session):
        response.update(shouldShowAd=False, reason="Ad already shown in last 24 hours")
    return response


def _rejection(
    viewer: dict[str, Any], video_id: str, context: ViewContext, message: str, code: str, **fields: Any
) -> StateConflict:
    audit_log.append_quietly(
        "ad_view",
        viewer,
        status="failed",
        video_id=video_id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        failure_reason=code,
        **fields,
    )
    logger.info("Ad view on video %s by user %s rejected: %s", video_id, viewer["id"], code)
    return StateConflict(message, code=code)


def record_ad_view(video_id: str, viewer: dict[str, Any], context: ViewContext) -> dict[str, Any]:
    """Credit one monetized impression of ``video_id`` watched by ``viewer``.

    Rejections leave wallets, counters, sessions and ad views untouched and are
    audit-logged as failed attempts. On success the cooldown slot is claimed
    first so concurrent requests for the same pair cannot both be credited.
    """
    if not context.ad_completed:
        raise ValidationFailed("Ad was not completed.", code="ad_not_completed")

    now = utcnow()
    video = get_video(video_id)
    if not video.get("is_monetized"):
        raise _rejection(viewer, video_id, context, "Video not monetized.", "not_monetized")

    current_viewer = fetch_one("users", viewer["id"]) or viewer
    if is_premium_active(current_viewer, now):
        raise _rejection(viewer, video_id, context, "Premium users don't see ads.", "premium_user")

    upload = revenue_upload(video_id)
    if upload is None:
        raise _rejection(viewer, video_id, context, "Video has no data.", "no_video_data")

    creator = fetch_one("users", video.get("creator_id") or "")
    if creator is None:
        raise NotFound("Creator not found.")

    session = view_sessions.open_session(video_id, viewer["id"], context.ip_address, context.user_agent, now=now)
    if session.get("is_blocked"):
        raise _rejection(viewer, video_id, context, "View session is blocked.", "session_blocked")
    if view_sessions.is_in_cooldown(session, now):
        raise _rejection(
            viewer, video_id, context, "Ad already shown in last 24 hours for this video.", "cooldown_active"
        )

    risk = anti_bot.assess_ad_request(context.ip_address, context.user_agent, now)
    if risk.blocked:
        guarded_update(
            "view_sessions",
            session["id"],
            lambda row: {"is_blocked": True, "block_reason": ",".join(risk.flags), "bot_score": risk.score},
        )
        raise _rejection(
            viewer,
            video_id,
            context,
            "View session is blocked.",
            "session_blocked",
            risk_score=risk.score,
            risk_flags=risk.flags,
        )

    split = split_revenue(effective_cpm(video))

    try:
        previous, claimed = view_sessions.claim_ad_slot(session["id"], now)
    except StateConflict as exc:
        raise _rejection(viewer, video_id, context, exc.message, exc.code) from exc

    db = get_db()
    try:
        created = (
            db.table("ad_views")
            .insert(
                AdViewRecord(
                    video_id=video_id,
                    viewer_id=viewer["id"],
                    ad_revenue_generated=float(split.total),
                    creator_share=float(split.creator),
                    platform_share=float(split.platform),
                    cpm=float(split.cpm),
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                    is_monetized=True,
                    timestamp=to_iso(now),
                ).model_dump()
            )
            .execute()
        )
        if not created.data:
            raise RuntimeError("Failed to store ad view.")
    except Exception:
        logger.exception("Ad view insert failed for video %s viewer %s; releasing slot", video_id, viewer["id"])
        view_sessions.release_ad_slot(previous, claimed)
        raise
    ad_view = created.data[0]

    stage = "wallet"
    try:
        credit_wallet(creator["id"], split.creator, count_as_earnings=True)

        stage = "counters"
        increment("record_upload_revenue", p_upload_id=upload["id"], p_revenue=str(split.total))

        stage = "transaction"
        transaction = (
            db.table("transactions")
            .insert(
                TransactionRecord(
                    creator_id=creator["id"],
                    amount=float(split.creator),
                    type="earning",
                    status="completed",
                    video_id=video_id,
                    ad_view_id=ad_view["id"],
                    created_at=to_iso(now),
                    updated_at=to_iso(now),
                ).model_dump(exclude_none=True)
            )
            .execute()
            .data[0]
        )
    except Exception:
        logger.exception("Ad view %s left partially applied at stage %s", ad_view["id"], stage)
        audit_log.append_quietly(
            "ad_view",
            viewer,
            status="failed",
            video_id=video_id,
            ad_view_id=ad_view["id"],
            failure_reason=f"partial_failure:{stage}",
            metadata={"creator_id": creator["id"]},
        )
        raise

    audit_log.append_quietly(
        "ad_view",
        viewer,
        status="flagged" if risk.flagged else "success",
        amount=split.creator,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        video_id=video_id,
        transaction_id=transaction["id"],
        ad_view_id=ad_view["id"],
        creator_share=split.creator,
        platform_share=split.platform,
        cpm=split.cpm,
        risk_score=risk.score,
        risk_flags=risk.flags,
        metadata={"creator_id": creator["id"], "revenue_per_view": float(split.total)},
    )
    logger.info(
        "Ad view %s on video %s credited %s to creator %s", ad_view["id"], video_id, split.creator, creator["id"]
    )
    return {**split.as_floats(), "transactionId": transaction["id"], "adViewId": ad_view["id"]}


def track_watch_time(video_id: str, watch_time_seconds: object) -> dict[str, Any]:
    seconds = to_decimal(watch_time_seconds)
    if seconds <= 0:
        raise ValidationFailed("Video ID and watch time required.")

    video = get_video(video_id)
    hours = seconds / SECONDS_PER_HOUR
    if video.get("creator_id"):
        increment("add_watch_time", p_user_id=video["creator_id"], p_hours=str(hours))

    upload = revenue_upload(video_id)
    if upload is not None:
        increment("record_upload_view", p_upload_id=upload["id"])

    return {"watchTimeAdded": float(hours)}


def reconcile_orphan_ad_views(lookback_hours: int = 48, now: datetime | None = None) -> int:
    """Flag recent ad views missing their earning transaction or audit entry."""
    now = now or utcnow()
    db = get_db()
    recent = fetch_all(
        lambda: db.table("ad_views")
        .select("*")
        .gte("timestamp", to_iso(now - timedelta(hours=lookback_hours)))
        .order("id")
    )

    flagged = 0
    for ad_view in recent:
        missing = []
        earning = (
            db.table("transactions")
            .select("id")
            .eq("type", "earning")
            .eq("ad_view_id", ad_view["id"])
            .limit(1)
            .execute()
        )
        if not earning.data:
            missing.append("earning_transaction")

        entries = audit_log.entries_for_ad_view(ad_view["id"])
        if not any(entry.get("status") in {"success", "flagged"} for entry in entries):
            missing.append("audit_entry")
        if not missing:
            continue

        already_flagged = (
            db.table("audit_logs")
            .select("id")
            .eq("ad_view_id", ad_view["id"])
            .eq("failure_reason", "reconciliation_required")
            .limit(1)
            .execute()
        )
        if already_flagged.data:
            continue

        audit_log.append(
            "ad_view",
            {"id": ad_view["viewer_id"]},
            status="flagged",
            video_id=ad_view["video_id"],
            ad_view_id=ad_view["id"],
            amount=ad_view.get("creator_share"),
            failure_reason="reconciliation_required",
            metadata={"missing": missing},
        )
        flagged += 1

    if flagged:
        logger.warning("Flagged %s ad views for reconciliation", flagged)
    return flagged
