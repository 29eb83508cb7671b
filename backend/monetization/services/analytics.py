from __future__ import annotations

import math
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, get_args

from ..config import settings
from ..database import fetch_all, fetch_one, get_db, parse_ts, to_iso, utcnow
from ..errors import NotFound, StateConflict, ValidationFailed
from ..schemas import Role
from . import wallet_service
from .revenue import revenue_per_view, to_decimal, validate_cpm


ROLES = get_args(Role)
MONTHS_IN_DASHBOARD = 6


def _sum_amounts(rows: list[dict[str, Any]], column: str = "amount") -> Decimal:
    return sum((to_decimal(row.get(column)) for row in rows), Decimal("0"))


def _count(table: str, **filters: Any) -> int:
    request = get_db().table(table).select("id", count="exact")
    for column, value in filters.items():
        request = request.eq(column, value)
    return request.execute().count or 0


def _month_index(moment: datetime, now: datetime) -> int:
    """How many calendar months ``moment`` lies before ``now``."""
    return (now.year - moment.year) * 12 + now.month - moment.month


def _first_of_month_back(now: datetime, months_back: int) -> datetime:
    month_index = now.month - 1 - months_back
    year = now.year + month_index // 12
    month = month_index % 12 + 1
    return now.replace(year=year, month=month, day=1, hour=0, minute=0, second=0, microsecond=0)


def public_user(user: dict[str, Any]) -> dict[str, Any]:
    visible = {
        key: value
        for key, value in user.items()
        if not key.startswith("bank_") and key not in {"password", "refresh_token"}
    }
    visible["bankDetails"] = wallet_service.masked_bank_details(user)
    return visible


def creator_uploads(creator_id: str) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    db = get_db()
    videos = db.table("videos").select("*").eq("creator_id", creator_id).execute().data or []
    video_ids = [video["id"] for video in videos]
    if not video_ids:
        return videos, []
    uploads = db.table("video_uploads").select("*").in_("video_id", video_ids).execute().data or []
    return videos, uploads


def dashboard(creator: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    user = fetch_one("users", creator["id"])
    if user is None:
        raise NotFound("User not found.")

    _, uploads = creator_uploads(creator["id"])
    total_views = sum(int(upload.get("total_views") or 0) for upload in uploads)
    total_revenue = _sum_amounts(uploads, "total_revenue")
    video_stats = [
        {
            "videoId": upload.get("video_id"),
            "uploadId": upload["id"],
            "title": upload.get("title"),
            "thumbnail": upload.get("thumbnail_url"),
            "views": int(upload.get("total_views") or 0),
            "revenue": float(upload.get("total_revenue") or 0),
            "likes": int(upload.get("likes") or 0),
        }
        for upload in uploads
    ]
    video_stats.sort(key=lambda stat: stat["revenue"], reverse=True)

    window_start = _first_of_month_back(now, MONTHS_IN_DASHBOARD - 1)
    earnings = fetch_all(
        lambda: get_db()
        .table("transactions")
        .select("id, amount, created_at")
        .eq("creator_id", creator["id"])
        .eq("type", "earning")
        .eq("status", "completed")
        .gte("created_at", to_iso(window_start))
        .order("id")
    )
    monthly = [Decimal("0")] * MONTHS_IN_DASHBOARD
    for earning in earnings:
        created_at = parse_ts(earning.get("created_at"))
        if created_at is None:
            continue
        months_ago = _month_index(created_at, now)
        if 0 <= months_ago < MONTHS_IN_DASHBOARD:
            monthly[MONTHS_IN_DASHBOARD - 1 - months_ago] += to_decimal(earning.get("amount"))

    return {
        "walletBalance": float(user.get("wallet_balance") or 0),
        "totalEarnings": float(user.get("total_earnings") or 0),
        "totalViews": total_views,
        "totalRevenue": float(total_revenue),
        "videoStats": video_stats[:10],
        "monthlyEarnings": [float(amount) for amount in monthly],
        "isMonetized": user.get("role") == "creator" or bool(user.get("has_channel")),
    }


def video_analytics(creator: dict[str, Any], video_id: str, now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    db = get_db()
    video_res = (
        db.table("videos").select("*").eq("id", video_id).eq("creator_id", creator["id"]).limit(1).execute()
    )
    if not video_res.data:
        raise NotFound("Video not found.")
    video = video_res.data[0]

    uploads = (
        db.table("video_uploads")
        .select("*")
        .eq("video_id", video_id)
        .order("created_at", desc=False)
        .limit(1)
        .execute()
        .data
        or []
    )
    upload = uploads[0] if uploads else {}

    recent_ad_views = (
        db.table("ad_views")
        .select("*")
        .eq("video_id", video_id)
        .order("timestamp", desc=True)
        .limit(100)
        .execute()
        .data
        or []
    )
    month_ad_views = fetch_all(
        lambda: db.table("ad_views")
        .select("id, timestamp, creator_share")
        .eq("video_id", video_id)
        .gte("timestamp", to_iso(now - timedelta(days=30)))
        .order("id")
    )
    daily: dict[str, dict[str, Any]] = defaultdict(lambda: {"views": 0, "revenue": Decimal("0")})
    for ad_view in month_ad_views:
        day = parse_ts(ad_view["timestamp"]).date().isoformat()
        daily[day]["views"] += 1
        daily[day]["revenue"] += to_decimal(ad_view.get("creator_share"))

    return {
        "videoId": video_id,
        "title": upload.get("title") or video.get("title"),
        "totalViews": int(upload.get("total_views") or 0),
        "monetizedViews": int(upload.get("monetized_views") or 0),
        "totalRevenue": float(upload.get("total_revenue") or 0),
        "cpm": float(video.get("cpm") or settings.default_cpm),
        "dailyViews": [
            {"date": day, "views": stats["views"], "revenue": float(stats["revenue"])}
            for day, stats in sorted(daily.items())
        ],
        "recentAdViews": [
            {
                "timestamp": ad_view.get("timestamp"),
                "revenue": ad_view.get("creator_share"),
                "viewer": ad_view.get("viewer_id"),
            }
            for ad_view in recent_ad_views[:10]
        ],
    }


def meets_monetization_requirements(user: dict[str, Any]) -> bool:
    return (
        int(user.get("subscriber_count") or 0) >= settings.min_subscribers_for_monetization
        and float(user.get("total_watch_hours") or 0) >= settings.min_watch_hours_for_monetization
    )


def _requirements(user: dict[str, Any]) -> dict[str, Any]:
    return {
        "required_subscribers": settings.min_subscribers_for_monetization,
        "required_watch_hours": settings.min_watch_hours_for_monetization,
        "current_subscribers": int(user.get("subscriber_count") or 0),
        "current_watch_hours": float(user.get("total_watch_hours") or 0),
    }


def channel_stats(user: dict[str, Any]) -> dict[str, Any]:
    current = fetch_one("users", user["id"])
    if current is None:
        raise NotFound("User not found.")
    subscribers = int(current.get("subscriber_count") or 0)
    watch_hours = float(current.get("total_watch_hours") or 0)
    return {
        "stats": {
            "subscriber_count": subscribers,
            "total_watch_hours": watch_hours,
            "total_video_views": int(current.get("total_video_views") or 0),
            "meets_monetization_requirements": meets_monetization_requirements(current),
            "monetization_enabled_date": current.get("monetization_enabled_at"),
        },
        "requirements": {
            "MIN_SUBSCRIBERS": settings.min_subscribers_for_monetization,
            "MIN_WATCH_HOURS": settings.min_watch_hours_for_monetization,
        },
        "progress": {
            "subscribers": {
                "current": subscribers,
                "required": settings.min_subscribers_for_monetization,
                "percentage": min(100.0, subscribers / settings.min_subscribers_for_monetization * 100),
            },
            "watchHours": {
                "current": round(watch_hours, 1),
                "required": settings.min_watch_hours_for_monetization,
                "percentage": min(100.0, watch_hours / settings.min_watch_hours_for_monetization * 100),
            },
        },
    }


def set_monetization(user: dict[str, Any], enable: bool) -> dict[str, Any]:
    current = fetch_one("users", user["id"])
    if current is None:
        raise NotFound("User not found.")

    if enable and not meets_monetization_requirements(current):
        raise StateConflict(
            f"You need {settings.min_subscribers_for_monetization} subscribers and "
            f"{settings.min_watch_hours_for_monetization} watch hours to enable monetization.",
            code="not_eligible",
            extra={"requirements": _requirements(current)},
        )

    db = get_db()
    if enable:
        changes: dict[str, Any] = {
            "meets_monetization_requirements": True,
            "monetization_enabled_at": to_iso(utcnow()),
        }
        if current.get("role") not in {"creator", "admin"}:
            changes["role"] = "creator"
        db.table("users").update(changes).eq("id", current["id"]).execute()

    db.table("videos").update({"is_monetized": bool(enable)}).eq("creator_id", current["id"]).execute()
    return {
        "message": "Monetization enabled" if enable else "Monetization disabled",
        "requirements": {
            **_requirements(current),
            "meets_requirements": True if enable else meets_monetization_requirements(current),
        },
    }


def update_cpm(creator: dict[str, Any], video_id: str, cpm: object) -> dict[str, Any]:
    cpm_dec = validate_cpm(cpm)
    updated = (
        get_db()
        .table("videos")
        .update({"cpm": float(cpm_dec)})
        .eq("id", video_id)
        .eq("creator_id", creator["id"])
        .execute()
    )
    if not updated.data:
        raise NotFound("Video not found.")
    return {"newCpm": float(cpm_dec), "revenuePerView": float(revenue_per_view(cpm_dec))}


def platform_stats(now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    db = get_db()
    transactions = fetch_all(lambda: db.table("transactions").select("id, type, status, amount").order("id"))

    def total(tx_type: str, status: str) -> Decimal:
        return _sum_amounts([tx for tx in transactions if tx.get("type") == tx_type and tx.get("status") == status])

    total_earnings = total("earning", "completed")
    ad_views = fetch_all(lambda: db.table("ad_views").select("id, platform_share").order("id"))
    premium_users = (
        db.table("users")
        .select("id", count="exact")
        .eq("is_premium", True)
        .gt("premium_expiry_date", to_iso(now))
        .execute()
        .count
        or 0
    )
    platform_revenue = _sum_amounts(ad_views, "platform_share")

    return {
        "totalEarnings": float(total_earnings),
        "totalWithdrawals": float(total("withdrawal", "completed")),
        "totalPremiumRevenue": float(total("premium_subscription", "completed")),
        "platformRevenue": float(platform_revenue),
        "totalUsers": _count("users"),
        "totalCreators": _count("users", role="creator"),
        "totalPremiumUsers": premium_users,
        "totalVideos": _count("videos"),
        "totalAdViews": len(ad_views),
        "pendingWithdrawals": _count("transactions", type="withdrawal", status="pending"),
    }


def list_users(page: int = 1, limit: int = 20, role: str | None = None) -> dict[str, Any]:
    page = max(page, 1)
    limit = min(max(limit, 1), 200)
    offset = (page - 1) * limit
    request = get_db().table("users").select("*", count="exact")
    if role:
        request = request.eq("role", role)
    result = request.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
    total = result.count or 0
    return {
        "users": [public_user(user) for user in result.data or []],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


def update_user_role(user_id: str, new_role: str) -> dict[str, Any]:
    if not user_id or not new_role:
        raise ValidationFailed("User ID and new role required.")
    if new_role not in ROLES:
        raise ValidationFailed("Invalid role.", code="invalid_role")
    updated = get_db().table("users").update({"role": new_role}).eq("id", user_id).execute()
    if not updated.data:
        raise NotFound("User not found.")
    return public_user(updated.data[0])
