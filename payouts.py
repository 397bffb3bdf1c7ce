"""
Creator payouts

Referrers request payouts of their approved earnings to a Stripe connected
account; admins approve (Stripe transfer), reject or complete them. A
request reserves earnings until it is rejected or fails. All amounts are
integer cents.
"""

import logging
import math
from typing import Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

import earnings
from auth import get_current_user
from database import create_document, get_db, paginate, serialize_doc, utcnow
from errors import create_error
from schemas import Payout, PayoutFees, PayoutStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payouts", tags=["payouts"])

MINIMUM_PAYOUT = 1000
INSTANT_FEE_RATE = 0.015
INSTANT_FEE_MINIMUM = 50

OPEN_STATUSES = [PayoutStatus.pending.value, PayoutStatus.processing.value]


def payouts():
    return get_db()["payout"]


def calculate_fees(amount: int, method: str) -> PayoutFees:
    stripe_fee = 0
    if method == "instant":
        stripe_fee = max(INSTANT_FEE_MINIMUM, math.floor(amount * INSTANT_FEE_RATE))
    return PayoutFees(stripe_fee=stripe_fee, platform_fee=0, total=stripe_fee)


def find_payout(payout_id: str) -> dict:
    if not ObjectId.is_valid(payout_id):
        raise create_error(400, "Invalid payout id")
    payout = payouts().find_one({"_id": ObjectId(payout_id)})
    if not payout:
        raise create_error(404, "Payout not found")
    return payout


def set_status(payout: dict, status: str, expected: str, **fields) -> dict:
    """Move a payout out of `expected`; 400 if someone else moved it first."""
    fields.update(status=status, updated_at=utcnow())
    result = payouts().update_one({"_id": payout["_id"], "status": expected}, {"$set": fields})
    if result.modified_count == 0:
        raise create_error(400, f"Payout is not {expected}")
    logger.info("Payout %s: %s -> %s", payout["_id"], expected, status)
    return payouts().find_one({"_id": payout["_id"]})


def payout_stats() -> dict:
    rows = list(payouts().aggregate([
        {
            "$group": {
                "_id": "$status",
                "count": {"$sum": 1},
                "totalAmount": {"$sum": "$amount"},
                "totalNet": {"$sum": "$net_amount"},
                "totalFees": {"$sum": "$fees.total"},
            }
        },
    ]))
    by_status = {row.pop("_id"): row for row in rows}
    return {
        "byStatus": by_status,
        "totalPayouts": sum(r["count"] for r in by_status.values()),
        "totalPaid": by_status.get(PayoutStatus.paid.value, {}).get("totalNet", 0),
        "totalPending": by_status.get(PayoutStatus.pending.value, {}).get("totalAmount", 0),
    }


# -----------------
# Creator endpoints
# -----------------

class PayoutRequest(BaseModel):
    amount: Optional[int] = None
    method: str = "standard"


@router.post("/request")
def request_payout(payload: PayoutRequest, user: dict = Depends(get_current_user)):
    account_id = user.get("stripe_connect_account_id")
    if not account_id:
        raise create_error(400, "Account not eligible for payouts. Please connect a Stripe account.")
    if payload.method not in ("standard", "instant"):
        raise create_error(400, "Payout method must be standard or instant")
    if not payload.amount or payload.amount < MINIMUM_PAYOUT:
        raise create_error(400, f"Minimum payout amount is {MINIMUM_PAYOUT / 100:.2f} USD")
    if payouts().find_one({"user": user["_id"], "status": {"$in": OPEN_STATUSES}}):
        raise create_error(400, "You have a pending payout request")

    available = earnings.available_balance(user["_id"])
    if available < payload.amount:
        raise create_error(400, f"Insufficient approved earnings. Available: {available / 100:.2f}")

    fees = calculate_fees(payload.amount, payload.method)
    payout_id = ObjectId(create_document("payout", Payout(
        user=user["_id"],
        amount=payload.amount,
        method=payload.method,
        stripe_connect_account_id=account_id,
        fees=fees,
        net_amount=payload.amount - fees.total,
    )))
    try:
        reserved = earnings.reserve_for_payout(user["_id"], payout_id, payload.amount)
    except HTTPException:
        payouts().delete_one({"_id": payout_id})
        raise
    payouts().update_one({"_id": payout_id}, {"$set": {"earnings": reserved}})
    logger.info("Payout %s requested by %s for %d cents", payout_id, user["_id"], payload.amount)
    payout = payouts().find_one({"_id": payout_id})
    return {
        "status": "success",
        "data": {"payout": serialize_doc(payout), "message": "Payout request created successfully"},
    }


@router.get("/history")
def payout_history(page: int = 1, limit: int = 10, user: dict = Depends(get_current_user)):
    paging = paginate(page, limit)
    query = {"user": user["_id"]}
    items = list(
        payouts().find(query).sort("requested_at", -1).skip(paging["skip"]).limit(paging["limit"])
    )
    total = payouts().count_documents(query)
    return {
        "status": "success",
        "results": len(items),
        "totalResults": total,
        "totalPages": math.ceil(total / paging["limit"]),
        "currentPage": paging["page"],
        "data": {"payouts": serialize_doc(items), "availableBalance": earnings.available_balance(user["_id"])},
    }
