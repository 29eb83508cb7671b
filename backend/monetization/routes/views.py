from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from ..services import ad_views, idempotency
from .auth import get_current_user


router = APIRouter()


class StartViewRequest(BaseModel):
    videoId: str = Field(min_length=1)


class RecordAdViewRequest(BaseModel):
    videoId: str = Field(min_length=1)
    adCompleted: bool = True


class TrackWatchTimeRequest(BaseModel):
    videoId: str = Field(min_length=1)
    watchTimeSeconds: float


def _context(request: Request, ad_completed: bool = True) -> ad_views.ViewContext:
    return ad_views.ViewContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        ad_completed=ad_completed,
    )


@router.post("/start-view")
def start_view(
    payload: StartViewRequest,
    request: Request,
    current_user: dict = Depends(get_current_user),
):
    result = ad_views.start_view(payload.videoId, current_user, _context(request))
    return {"success": True, **result}


@router.post("/record-ad-view")
def record_ad_view(
    payload: RecordAdViewRequest,
    request: Request,
    current_user: dict = Depends(get_current_user),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    context = _context(request, payload.adCompleted)
    data = idempotency.run_once(
        current_user["id"],
        f"record-ad-view:{payload.videoId}",
        idempotency_key,
        lambda: ad_views.record_ad_view(payload.videoId, current_user, context),
    )
    return {"success": True, "message": "Ad view recorded", "data": data}


@router.post("/track-watch-time")
def track_watch_time(payload: TrackWatchTimeRequest, current_user: dict = Depends(get_current_user)):
    result = ad_views.track_watch_time(payload.videoId, payload.watchTimeSeconds)
    return {"success": True, "message": "Watch time tracked", **result}
