from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["admin", "creator", "viewer"]
TransactionType = Literal["earning", "withdrawal", "premium_subscription"]
TransactionStatus = Literal["pending", "approved", "completed", "failed", "rejected"]
AuditEventType = Literal["ad_view", "earning", "withdrawal", "premium_subscription", "payout", "balance_update"]
AuditStatus = Literal["success", "failed", "pending", "flagged"]


class AdViewRecord(BaseModel):
    video_id: str
    viewer_id: str
    ad_revenue_generated: float
    creator_share: float
    platform_share: float
    cpm: float
    ip_address: str | None = None
    user_agent: str | None = None
    is_monetized: bool = True
    timestamp: str

    model_config = ConfigDict(from_attributes=True, frozen=True)


class TransactionRecord(BaseModel):
    creator_id: str
    amount: float
    type: TransactionType
    status: TransactionStatus = "pending"
    video_id: str | None = None
    ad_view_id: str | None = None
    bank_reference: str | None = None
    subscriber_id: str | None = None
    subscription_start: str | None = None
    subscription_end: str | None = None
    provider_order_id: str | None = None
    provider_payment_id: str | None = None
    created_at: str
    updated_at: str

    model_config = ConfigDict(from_attributes=True)


class AuditLogRecord(BaseModel):
    event_type: AuditEventType
    user_id: str
    user_email: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    amount: float = 0
    currency: str = "INR"
    video_id: str | None = None
    transaction_id: str | None = None
    ad_view_id: str | None = None
    creator_share: float = 0
    platform_share: float = 0
    cpm: float = 0
    status: AuditStatus = "success"
    failure_reason: str | None = None
    risk_score: int = Field(default=0, ge=0, le=100)
    risk_flags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: str

    model_config = ConfigDict(from_attributes=True, frozen=True)
