from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ..services import analytics, audit_log, wallet_service
from .auth import require_admin


router = APIRouter()


class ApproveWithdrawalRequest(BaseModel):
    transactionId: str
    approved: bool
    failureReason: str | None = None


class UpdateUserRoleRequest(BaseModel):
    userId: str = ""
    newRole: str = ""


@router.get("/pending-withdrawals")
def pending_withdrawals(current_user: dict = Depends(require_admin)):
    return {"success": True, "transactions": wallet_service.pending_withdrawals()}


@router.post("/approve-withdrawal")
def approve_withdrawal(payload: ApproveWithdrawalRequest, current_user: dict = Depends(require_admin)):
    transaction = wallet_service.decide_withdrawal(
        payload.transactionId,
        payload.approved,
        current_user,
        payload.failureReason,
    )
    return {
        "success": True,
        "message": "Withdrawal approved" if payload.approved else "Withdrawal rejected",
        "transaction": transaction,
    }


@router.get("/platform-stats")
def platform_stats(current_user: dict = Depends(require_admin)):
    return {"success": True, "stats": analytics.platform_stats()}


@router.get("/audit-logs")
def audit_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    eventType: str | None = None,
    status: str | None = None,
    userId: str | None = None,
    startDate: datetime | None = None,
    endDate: datetime | None = None,
    current_user: dict = Depends(require_admin),
):
    result = audit_log.query(page, limit, eventType, status, userId, startDate, endDate)
    return {"success": True, **result}


@router.get("/flagged-transactions")
def flagged_transactions(current_user: dict = Depends(require_admin)):
    return {"success": True, "flaggedTransactions": audit_log.flagged()}


@router.get("/all-users")
def all_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    role: str | None = None,
    current_user: dict = Depends(require_admin),
):
    return {"success": True, **analytics.list_users(page, limit, role)}


@router.post("/update-user-role")
def update_user_role(payload: UpdateUserRoleRequest, current_user: dict = Depends(require_admin)):
    user = analytics.update_user_role(payload.userId, payload.newRole)
    return {"success": True, "message": f"User role updated to {payload.newRole}", "user": user}
