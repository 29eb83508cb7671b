from __future__ import annotations

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel

from ..services import idempotency, wallet_service
from .auth import require_creator


router = APIRouter()


class WithdrawRequest(BaseModel):
    amount: float


class BankDetailsRequest(BaseModel):
    accountNumber: str = ""
    accountHolderName: str = ""
    ifscCode: str = ""
    bankName: str = ""


@router.post("/withdraw")
def withdraw(
    payload: WithdrawRequest,
    current_user: dict = Depends(require_creator),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    result = idempotency.run_once(
        current_user["id"],
        "withdraw",
        idempotency_key,
        lambda: wallet_service.request_withdrawal(current_user, payload.amount),
    )
    return {"success": True, "message": "Withdrawal request submitted", **result}


@router.get("/withdrawal-history")
def withdrawal_history(current_user: dict = Depends(require_creator)):
    return {"success": True, "transactions": wallet_service.withdrawal_history(current_user["id"])}


@router.post("/update-bank-details")
def update_bank_details(payload: BankDetailsRequest, current_user: dict = Depends(require_creator)):
    bank_details = wallet_service.update_bank_details(
        current_user,
        payload.accountNumber,
        payload.accountHolderName,
        payload.ifscCode,
        payload.bankName,
    )
    return {"success": True, "message": "Bank details updated successfully", "bankDetails": bank_details}
