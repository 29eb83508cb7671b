from __future__ import annotations

import logging
import re
import time
from decimal import Decimal
from typing import Any

from ..config import settings
from ..database import fetch_one, get_db, to_iso, utcnow
from ..errors import NotFound, StateConflict, ValidationFailed
from ..schemas import TransactionRecord
from ..utils.atomic import conditional_update, guarded_update, increment
from . import audit_log
from .revenue import to_decimal


logger = logging.getLogger(__name__)

IFSC_PATTERN = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
ACCOUNT_NUMBER_MIN_LENGTH = 9
ACCOUNT_NUMBER_MAX_LENGTH = 18


def _millis() -> int:
    return int(time.time() * 1000)


def _money(value: Decimal) -> float:
    return float(value)


def credit_wallet(user_id: str, amount: Decimal, *, count_as_earnings: bool) -> dict[str, Any]:
    """Add ``amount`` to the wallet; earnings also grow ``total_earnings``.

    The addition happens inside one UPDATE, so concurrent credits to the same
    creator all land. It still bumps ``version`` so a debit that read the old
    balance retries.
    """
    if amount <= 0:
        raise ValidationFailed("Credit amount must be positive.")
    return increment(
        "credit_wallet",
        p_user_id=user_id,
        p_amount=str(amount),
        p_count_as_earnings=count_as_earnings,
    )


def debit_wallet(user_id: str, amount: Decimal) -> dict[str, Any]:
    """Subtract ``amount`` only if the balance read in the same guarded write covers it."""

    def debit(row: dict[str, Any]) -> dict[str, Any]:
        balance = to_decimal(row.get("wallet_balance"))
        if balance < amount:
            raise StateConflict("Insufficient balance.", code="insufficient_balance")
        return {"wallet_balance": _money(balance - amount)}

    return guarded_update("users", user_id, debit)


def mask_account_number(account_number: str | None) -> str | None:
    if not account_number:
        return account_number
    visible = account_number[-4:]
    return visible.rjust(len(account_number), "*")


def masked_bank_details(user: dict[str, Any]) -> dict[str, Any]:
    return {
        "accountNumber": mask_account_number(user.get("bank_account_number")),
        "accountHolderName": user.get("bank_account_holder_name"),
        "ifscCode": user.get("bank_ifsc_code"),
        "bankName": user.get("bank_name"),
    }


def validate_bank_details(account_number: str, account_holder_name: str, ifsc_code: str, bank_name: str) -> None:
    if not all(value and value.strip() for value in (account_number, account_holder_name, ifsc_code, bank_name)):
        raise ValidationFailed("All bank details are required.", code="bank_details_incomplete")
    if not ACCOUNT_NUMBER_MIN_LENGTH <= len(account_number.strip()) <= ACCOUNT_NUMBER_MAX_LENGTH:
        raise ValidationFailed("Invalid account number.", code="invalid_account_number")
    if not IFSC_PATTERN.match(ifsc_code.strip()):
        raise ValidationFailed("Invalid IFSC code.", code="invalid_ifsc_code")


def update_bank_details(
    user: dict[str, Any],
    account_number: str,
    account_holder_name: str,
    ifsc_code: str,
    bank_name: str,
) -> dict[str, Any]:
    validate_bank_details(account_number, account_holder_name, ifsc_code, bank_name)
    updated = (
        get_db()
        .table("users")
        .update(
            {
                "bank_account_number": account_number.strip(),
                "bank_account_holder_name": account_holder_name.strip(),
                "bank_ifsc_code": ifsc_code.strip(),
                "bank_name": bank_name.strip(),
            }
        )
        .eq("id", user["id"])
        .execute()
    )
    if not updated.data:
        raise NotFound("User not found.")
    logger.info("Bank details updated for user %s", user["id"])
    return masked_bank_details(updated.data[0])


def request_withdrawal(creator: dict[str, Any], amount: object) -> dict[str, Any]:
    amount_dec = to_decimal(amount)
    if amount_dec < settings.min_withdrawal_amount:
        raise ValidationFailed(
            f"Minimum withdrawal amount is {settings.min_withdrawal_amount} {settings.currency}.",
            code="below_minimum_withdrawal",
        )

    current = fetch_one("users", creator["id"])
    if current is None:
        raise NotFound("User not found.")
    if not current.get("bank_account_number"):
        raise ValidationFailed("Please set up your bank details first.", code="bank_details_missing")

    try:
        debited = debit_wallet(creator["id"], amount_dec)
    except StateConflict as exc:
        if exc.code == "insufficient_balance":
            audit_log.append_quietly(
                "withdrawal",
                creator,
                status="failed",
                amount=amount_dec,
                failure_reason="insufficient_balance",
            )
        raise

    now = to_iso(utcnow())
    try:
        created = (
            get_db()
            .table("transactions")
            .insert(
                TransactionRecord(
                    creator_id=creator["id"],
                    amount=_money(amount_dec),
                    type="withdrawal",
                    status="pending",
                    bank_reference=f"BANK_{_millis()}",
                    created_at=now,
                    updated_at=now,
                ).model_dump(exclude_none=True)
            )
            .execute()
        )
        if not created.data:
            raise RuntimeError("Failed to create withdrawal transaction.")
    except Exception:
        logger.exception("Withdrawal record failed for user %s; restoring %s", creator["id"], amount_dec)
        credit_wallet(creator["id"], amount_dec, count_as_earnings=False)
        raise

    transaction = created.data[0]
    audit_log.append_quietly(
        "withdrawal",
        creator,
        status="pending",
        amount=amount_dec,
        transaction_id=transaction["id"],
        metadata={"remaining_balance": debited.get("wallet_balance")},
    )
    logger.info("Withdrawal %s of %s requested by user %s", transaction["id"], amount_dec, creator["id"])
    return {
        "transactionId": transaction["id"],
        "remainingBalance": float(debited.get("wallet_balance") or 0),
    }


def decide_withdrawal(
    transaction_id: str,
    approved: bool,
    admin: dict[str, Any],
    failure_reason: str | None = None,
) -> dict[str, Any]:
    transaction = fetch_one("transactions", transaction_id)
    if transaction is None:
        raise NotFound("Transaction not found.")
    if transaction.get("type") != "withdrawal" or transaction.get("status") != "pending":
        raise StateConflict("Invalid transaction.", code="invalid_transaction_state")

    now = to_iso(utcnow())
    amount = to_decimal(transaction.get("amount"))
    creator = fetch_one("users", transaction["creator_id"]) or {"id": transaction["creator_id"]}

    if approved:
        # Payout execution is manual; the reference only tracks the decision.
        updated = conditional_update(
            "transactions",
            transaction_id,
            {
                "status": "completed",
                "approved_by": admin["id"],
                "approved_at": now,
                "payout_reference": f"RZP_W_{_millis()}",
                "updated_at": now,
            },
            status="pending",
        )
        if updated is None:
            raise StateConflict("Invalid transaction.", code="invalid_transaction_state")
        audit_log.append_quietly(
            "payout",
            creator,
            amount=amount,
            transaction_id=transaction_id,
            metadata={"approved_by": admin["id"], "payout_reference": updated.get("payout_reference")},
        )
        logger.info("Withdrawal %s approved by admin %s", transaction_id, admin["id"])
        return updated

    reason = failure_reason or "Rejected by admin"
    updated = conditional_update(
        "transactions",
        transaction_id,
        {"status": "rejected", "failure_reason": reason, "updated_at": now},
        status="pending",
    )
    if updated is None:
        raise StateConflict("Invalid transaction.", code="invalid_transaction_state")

    try:
        refunded = credit_wallet(transaction["creator_id"], amount, count_as_earnings=False)
    except Exception:
        logger.exception("Refund for withdrawal %s failed; returning it to pending", transaction_id)
        conditional_update(
            "transactions",
            transaction_id,
            {"status": "pending", "failure_reason": None, "updated_at": to_iso(utcnow())},
            status="rejected",
        )
        raise

    audit_log.append_quietly(
        "balance_update",
        creator,
        amount=amount,
        transaction_id=transaction_id,
        metadata={
            "reason": "withdrawal_refund",
            "rejected_by": admin["id"],
            "failure_reason": reason,
            "wallet_balance": refunded.get("wallet_balance"),
        },
    )
    logger.info("Withdrawal %s rejected by admin %s; refunded %s", transaction_id, admin["id"], amount)
    return updated


def withdrawal_history(creator_id: str) -> list[dict[str, Any]]:
    result = (
        get_db()
        .table("transactions")
        .select("*")
        .eq("creator_id", creator_id)
        .eq("type", "withdrawal")
        .order("created_at", desc=True)
        .execute()
    )
    return result.data or []


def pending_withdrawals() -> list[dict[str, Any]]:
    db = get_db()
    transactions = (
        db.table("transactions")
        .select("*")
        .eq("type", "withdrawal")
        .eq("status", "pending")
        .order("created_at", desc=True)
        .execute()
        .data
        or []
    )
    creator_ids = sorted({tx["creator_id"] for tx in transactions})
    creators: dict[str, dict[str, Any]] = {}
    if creator_ids:
        rows = db.table("users").select("*").in_("id", creator_ids).execute().data or []
        creators = {row["id"]: row for row in rows}

    for tx in transactions:
        creator = creators.get(tx["creator_id"], {})
        tx["creator"] = {
            "id": tx["creator_id"],
            "name": creator.get("name"),
            "email": creator.get("email"),
            "bankDetails": masked_bank_details(creator),
        }
    return transactions
