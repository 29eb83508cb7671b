from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..services import analytics
from .auth import get_current_user, require_creator


router = APIRouter()


class EnableMonetizationRequest(BaseModel):
    enable: bool


class UpdateCpmRequest(BaseModel):
    videoId: str = Field(min_length=1)
    cpm: float


@router.get("/dashboard")
def dashboard(current_user: dict = Depends(require_creator)):
    return {"success": True, "dashboard": analytics.dashboard(current_user)}


@router.get("/video-analytics/{video_id}")
def video_analytics(video_id: str, current_user: dict = Depends(require_creator)):
    return {"success": True, "analytics": analytics.video_analytics(current_user, video_id)}


@router.get("/channel-stats")
def channel_stats(current_user: dict = Depends(get_current_user)):
    return {"success": True, **analytics.channel_stats(current_user)}


@router.post("/enable-monetization")
def enable_monetization(payload: EnableMonetizationRequest, current_user: dict = Depends(get_current_user)):
    return {"success": True, **analytics.set_monetization(current_user, payload.enable)}


@router.post("/update-cpm")
def update_cpm(payload: UpdateCpmRequest, current_user: dict = Depends(require_creator)):
    result = analytics.update_cpm(current_user, payload.videoId, payload.cpm)
    return {"success": True, "message": "CPM updated", **result}
