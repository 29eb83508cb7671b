from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..services import premium_service
from ..services.premium_service import DEFAULT_PLAN_ID
from .auth import get_current_user


router = APIRouter()


class CreateOrderRequest(BaseModel):
    planId: str = DEFAULT_PLAN_ID


class VerifyPaymentRequest(BaseModel):
    razorpayOrderId: str = ""
    razorpayPaymentId: str = ""
    razorpaySignature: str = ""
    planId: str = DEFAULT_PLAN_ID


@router.get("/premium-plans")
def premium_plans():
    return {"success": True, **premium_service.list_plans()}


@router.post("/create-premium-order")
def create_premium_order(payload: CreateOrderRequest, current_user: dict = Depends(get_current_user)):
    return {"success": True, **premium_service.create_order(current_user, payload.planId)}


@router.post("/verify-premium-payment")
def verify_premium_payment(payload: VerifyPaymentRequest, current_user: dict = Depends(get_current_user)):
    result = premium_service.verify_payment(
        current_user,
        payload.razorpayOrderId,
        payload.razorpayPaymentId,
        payload.razorpaySignature,
        payload.planId,
    )
    return {"success": True, "message": "Premium subscription activated", **result}


@router.get("/premium-status")
def premium_status(current_user: dict = Depends(get_current_user)):
    return {"success": True, **premium_service.premium_status(current_user)}


@router.get("/config")
def payment_config():
    return {"success": True, **premium_service.public_config()}
