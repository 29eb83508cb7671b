from __future__ import annotations

import calendar
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from postgrest.exceptions import APIError

from ..config import settings
from ..database import fetch_one, get_db, parse_ts, to_iso, utcnow
from ..errors import (
    NotFound,
    PaymentNotConfigured,
    PaymentProviderError,
    PaymentProviderUnavailable,
    PaymentVerificationFailed,
    StateConflict,
    ValidationFailed,
)
from ..schemas import TransactionRecord
from ..utils.atomic import conditional_update, guarded_update
from . import audit_log
from .payment_provider import PaymentProvider, get_payment_provider


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PremiumPlan:
    id: str
    name: str
    price_inr: int
    months: int
    recommended: bool = False

    @property
    def amount_minor(self) -> int:
        return self.price_inr * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "priceInr": self.price_inr,
            "months": self.months,
            "recommended": self.recommended,
        }


PREMIUM_PLANS = (
    PremiumPlan(id="monthly", name="1 Month", price_inr=199, months=1),
    PremiumPlan(id="quarterly", name="3 Months", price_inr=499, months=3, recommended=True),
    PremiumPlan(id="yearly", name="12 Months", price_inr=1899, months=12),
)
DEFAULT_PLAN_ID = "monthly"


def get_plan(plan_id: str | None) -> PremiumPlan:
    wanted = plan_id or DEFAULT_PLAN_ID
    for plan in PREMIUM_PLANS:
        if plan.id == wanted:
            return plan
    raise ValidationFailed("Invalid premium plan selected.", code="invalid_plan")


def list_plans() -> dict[str, Any]:
    return {"defaultPlanId": DEFAULT_PLAN_ID, "plans": [plan.to_dict() for plan in PREMIUM_PLANS]}


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def is_premium_active(user: dict[str, Any], now: datetime | None = None) -> bool:
    if not user.get("is_premium"):
        return False
    expiry = parse_ts(user.get("premium_expiry_date"))
    if expiry is None:
        return False
    return expiry > (now or utcnow())


def _provider(provider: PaymentProvider | None) -> PaymentProvider:
    active = provider or get_payment_provider()
    if not active.enabled:
        raise PaymentNotConfigured(
            "Payment system not configured. Please contact admin.",
            extra={"needsSetup": True},
        )
    return active


def create_order(user: dict[str, Any], plan_id: str | None, provider: PaymentProvider | None = None) -> dict[str, Any]:
    plan = get_plan(plan_id)
    active_provider = _provider(provider)

    current = fetch_one("users", user["id"]) or user
    if is_premium_active(current):
        raise StateConflict(
            "Already a premium member.",
            code="already_premium",
            extra={"expiryDate": current.get("premium_expiry_date")},
        )

    try:
        order = active_provider.create_order(
            plan.amount_minor,
            settings.currency,
            f"premium_{str(user['id'])[:8]}_{int(time.time() * 1000)}",
            {
                "userId": str(user["id"]),
                "type": "premium_subscription",
                "planId": plan.id,
                "planMonths": str(plan.months),
            },
        )
    except PaymentProviderError as exc:
        raise PaymentProviderUnavailable("Could not create payment order. Please try again.") from exc

    logger.info("Premium order %s created for user %s (plan %s)", order.get("id"), user["id"], plan.id)
    return {
        "orderId": order.get("id"),
        "amount": order.get("amount"),
        "currency": order.get("currency"),
        "planId": plan.id,
        "planName": plan.name,
        "priceInr": plan.price_inr,
    }


def _reject(
    user: dict[str, Any], plan: PremiumPlan, message: str, code: str, payment_id: str
) -> PaymentVerificationFailed:
    audit_log.append_quietly(
        "premium_subscription",
        user,
        status="failed",
        amount=plan.price_inr,
        failure_reason=code,
        metadata={"plan_id": plan.id, "payment_id": payment_id},
    )
    logger.warning("Premium payment %s for user %s rejected: %s", payment_id, user["id"], code)
    return PaymentVerificationFailed(message, code=code)


def verify_payment(
    user: dict[str, Any],
    order_id: str,
    payment_id: str,
    signature: str,
    plan_id: str | None,
    provider: PaymentProvider | None = None,
) -> dict[str, Any]:
    plan = get_plan(plan_id)
    active_provider = _provider(provider)
    if not order_id or not payment_id or not signature:
        raise ValidationFailed("Order id, payment id and signature are required.")

    if not active_provider.verify_signature(order_id, payment_id, signature):
        raise _reject(user, plan, "Invalid signature.", "invalid_signature", payment_id)

    already_used = (
        get_db()
        .table("transactions")
        .select("id")
        .eq("type", "premium_subscription")
        .eq("provider_payment_id", payment_id)
        .limit(1)
        .execute()
    )
    if already_used.data:
        raise StateConflict("Payment has already been used.", code="payment_already_used")

    try:
        payment = active_provider.fetch_payment(payment_id)
    except PaymentProviderError:
        raise _reject(
            user, plan, "Failed to verify payment with payment provider.", "provider_unreachable", payment_id
        ) from None

    status = payment.get("status")
    if status != "captured":
        raise _reject(user, plan, f"Payment not successful. Status: {status}", "payment_not_captured", payment_id)
    if payment.get("amount") != plan.amount_minor:
        raise _reject(user, plan, "Payment amount mismatch.", "amount_mismatch", payment_id)
    if payment.get("order_id") and payment.get("order_id") != order_id:
        raise _reject(user, plan, "Payment does not belong to this order.", "order_mismatch", payment_id)

    now = utcnow()
    current = fetch_one("users", user["id"]) or user
    # Renewing before expiry extends the remaining entitlement.
    start = parse_ts(current.get("premium_expiry_date")) if is_premium_active(current, now) else now
    end = add_months(start, plan.months)
    try:
        created = (
            get_db()
            .table("transactions")
            .insert(
                TransactionRecord(
                    creator_id=user["id"],
                    amount=plan.price_inr,
                    type="premium_subscription",
                    status="completed",
                    subscriber_id=user["id"],
                    subscription_start=to_iso(start),
                    subscription_end=to_iso(end),
                    provider_order_id=order_id,
                    provider_payment_id=payment_id,
                    created_at=to_iso(now),
                    updated_at=to_iso(now),
                ).model_dump(exclude_none=True)
            )
            .execute()
        )
    except APIError as exc:
        if exc.code == "23505":
            raise StateConflict("Payment has already been used.", code="payment_already_used") from exc
        raise
    if not created.data:
        raise RuntimeError("Failed to record premium subscription.")
    transaction = created.data[0]

    try:
        guarded_update(
            "users",
            user["id"],
            lambda row: {"is_premium": True, "premium_expiry_date": to_iso(end)},
        )
    except Exception:
        logger.exception("Premium activation failed for user %s; marking %s failed", user["id"], transaction["id"])
        conditional_update(
            "transactions",
            transaction["id"],
            {"status": "failed", "failure_reason": "activation_failed", "updated_at": to_iso(utcnow())},
            status="completed",
        )
        raise

    audit_log.append_quietly(
        "premium_subscription",
        user,
        amount=plan.price_inr,
        transaction_id=transaction["id"],
        metadata={"plan_id": plan.id, "order_id": order_id, "payment_id": payment_id, "expires_at": to_iso(end)},
    )
    logger.info("Premium activated for user %s until %s", user["id"], to_iso(end))
    return {
        "premiumExpiryDate": to_iso(end),
        "planId": plan.id,
        "planName": plan.name,
        "transactionId": transaction["id"],
    }


def premium_status(user: dict[str, Any]) -> dict[str, Any]:
    current = fetch_one("users", user["id"])
    if current is None:
        raise NotFound("User not found.")
    return {
        "isPremium": is_premium_active(current),
        "premiumExpiryDate": current.get("premium_expiry_date"),
        "PREMIUM_PRICE_INR": get_plan(DEFAULT_PLAN_ID).price_inr,
        "plans": [plan.to_dict() for plan in PREMIUM_PLANS],
    }


def public_config(provider: PaymentProvider | None = None) -> dict[str, Any]:
    active_provider = provider or get_payment_provider()
    if not active_provider.enabled:
        raise PaymentNotConfigured("Payment system not configured", extra={"razorpayKeyId": ""})
    return {"razorpayKeyId": active_provider.key_id}


def expire_lapsed_premium(now: datetime | None = None) -> int:
    result = (
        get_db()
        .table("users")
        .update({"is_premium": False})
        .eq("is_premium", True)
        .lt("premium_expiry_date", to_iso(now or utcnow()))
        .execute()
    )
    expired = len(result.data or [])
    if expired:
        logger.info("Expired premium for %s users", expired)
    return expired
