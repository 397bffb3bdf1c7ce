"""
Referral earnings

A user who signed up with someone's referral code earns that referrer a
commission on every paid subscription charge. Admin-gifted subscriptions
never earn commission. Approved earnings without a payout are the
referrer's payable balance; a payout request reserves them oldest first.
All amounts are integer cents.
"""

import logging
import math
from typing import List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends
from pydantic import BaseModel

import notifications
from auth import get_current_user, require_admin
from database import create_document, get_db, paginate, serialize_doc, to_object_id, utcnow
from errors import create_error
from plans import calculate_commission, commission_rate, plan_display_name
from schemas import Earning, EarningSource, EarningStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/earnings", tags=["earnings"])

APPROVED = EarningStatus.approved.value
PAID = EarningStatus.paid.value


def earnings():
    return get_db()["earning"]


def record_subscription_earning(
    subscription: dict, source: str = EarningSource.subscription_purchase.value
) -> Optional[str]:
    """Create the referrer's commission for a subscription charge, if any."""
    if subscription.get("is_gifted"):
        logger.debug("No commission on gifted subscription %s", subscription.get("_id"))
        return None
    users = get_db()["user"]
    subscriber = users.find_one({"_id": subscription["user"]})
    if not subscriber or not subscriber.get("referred_by"):
        return None
    referrer = users.find_one({"_id": subscriber["referred_by"]})
    if not referrer:
        logger.warning("Referrer %s of user %s not found", subscriber["referred_by"], subscriber["_id"])
        return None

    renewal = source == EarningSource.subscription_renewal.value
    rate = commission_rate(subscription["plan"], renewal=renewal)
    amount = calculate_commission(subscription.get("amount", 0), rate)
    if amount <= 0:
        return None

    trialing = subscription.get("status") == "trialing"
    plan_name = plan_display_name(subscription["plan"])
    earning_id = create_document("earning", Earning(
        user=referrer["_id"],
        referred_user=subscriber["_id"],
        source=source,
        subscription=subscription.get("_id"),
        gross_amount=subscription["amount"],
        commission_rate=rate,
        commission_amount=amount,
        status=EarningStatus.pending if trialing else EarningStatus.approved,
        approved_at=None if trialing else utcnow(),
        description=f"{'Renewal' if renewal else 'Subscription'} commission for {plan_name} plan",
    ))
    logger.info("Earning %s: %d cents for referrer %s", earning_id, amount, referrer["_id"])
    notifications.notify_user(
        referrer["_id"],
        "New commission earned",
        f"You earned ${amount / 100:.2f} from a {plan_name} subscription.",
        "earning_created",
        {"earningId": earning_id, "amount": amount},
    )
    return earning_id


def payable_earnings(user_id: ObjectId) -> List[dict]:
    query = {"user": user_id, "status": APPROVED, "payout": None}
    return list(earnings().find(query).sort([("created_at", 1), ("_id", 1)]))


def available_balance(user_id: ObjectId) -> int:
    return sum(e.get("commission_amount", 0) for e in payable_earnings(user_id))


def earnings_summary(user_id: ObjectId) -> dict:
    rows = earnings().aggregate([
        {"$match": {"user": user_id}},
        {"$group": {"_id": "$status", "total": {"$sum": "$commission_amount"}, "count": {"$sum": 1}}},
    ])
    summary = {status.value: {"total": 0, "count": 0} for status in EarningStatus}
    for row in rows:
        if row["_id"] in summary:
            summary[row["_id"]] = {"total": row["total"], "count": row["count"]}
    return summary


def _split(earning: dict, needed: int, payout_id: ObjectId) -> bool:
    """Reserve `needed` cents of an earning and keep the rest payable."""
    result = earnings().update_one(
        {"_id": earning["_id"], "payout": None, "commission_amount": earning["commission_amount"]},
        {"$set": {"commission_amount": needed, "payout": payout_id, "updated_at": utcnow()}},
    )
    if result.modified_count == 0:
        return False
    remainder = {k: v for k, v in earning.items() if k not in ("_id", "updated_at")}
    remainder.update(
        commission_amount=earning["commission_amount"] - needed,
        split_from=earning["_id"],
        payout=None,
    )
    create_document("earning", remainder)
    return True


def reserve_for_payout(user_id: ObjectId, payout_id: ObjectId, amount: int) -> List[ObjectId]:
    """
    Attach payable earnings, oldest first, to a payout until they cover
    `amount`. An earning larger than what is still needed is split.

    Each earning is claimed with a conditional update; if another request
    took one first the reservation is undone and a 400 is raised.
    """
    reserved = []
    remaining = amount
    for earning in payable_earnings(user_id):
        if remaining <= 0:
            break
        if earning["commission_amount"] > remaining:
            claimed = _split(earning, remaining, payout_id)
            taken = remaining
        else:
            claimed = earnings().update_one(
                {"_id": earning["_id"], "payout": None},
                {"$set": {"payout": payout_id, "updated_at": utcnow()}},
            ).modified_count == 1
            taken = earning["commission_amount"]
        if not claimed:
            break
        reserved.append(earning["_id"])
        remaining -= taken

    if remaining > 0:
        release_earnings(payout_id)
        raise create_error(
            400, f"Insufficient approved earnings. Available: {available_balance(user_id) / 100:.2f}"
        )
    return reserved


def release_earnings(payout_id: ObjectId) -> int:
    result = earnings().update_many(
        {"payout": payout_id, "status": APPROVED},
        {"$set": {"payout": None, "updated_at": utcnow()}},
    )
    return result.modified_count


def mark_paid(payout_id: ObjectId, transfer_id: str) -> int:
    now = utcnow()
    result = earnings().update_many(
        {"payout": payout_id, "status": APPROVED},
        {"$set": {"status": PAID, "paid_at": now, "stripe_transfer_id": transfer_id, "updated_at": now}},
    )
    logger.info("Marked %d earnings paid for payout %s", result.modified_count, payout_id)
    return result.modified_count


def total_earned() -> dict:
    rows = list(earnings().aggregate([
        {"$match": {"status": {"$in": [APPROVED, PAID]}}},
        {"$group": {"_id": None, "total": {"$sum": "$commission_amount"}, "count": {"$sum": 1}}},
    ]))
    if not rows:
        return {"totalEarnings": 0, "totalEarningsCount": 0}
    return {"totalEarnings": rows[0]["total"], "totalEarningsCount": rows[0]["count"]}


def _filters(status: Optional[str], source: Optional[str]) -> dict:
    query = {}
    if status and status != "all":
        query["status"] = status
    if source and source != "all":
        query["source"] = source
    return query


def _page(query: dict, page: int, limit: int) -> dict:
    paging = paginate(page, limit, default_limit=20)
    items = list(earnings().find(query).sort("created_at", -1).skip(paging["skip"]).limit(paging["limit"]))
    total = earnings().count_documents(query)
    return {
        "status": "success",
        "results": len(items),
        "totalResults": total,
        "totalPages": math.ceil(total / paging["limit"]),
        "currentPage": paging["page"],
        "data": {"earnings": serialize_doc(items)},
    }


# -----------------
# Referrer endpoints
# -----------------

@router.get("")
def list_earnings(
    status: Optional[str] = None,
    source: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    user: dict = Depends(get_current_user),
):
    query = dict(_filters(status, source), user=user["_id"])
    body = _page(query, page, limit)
    body["data"]["summary"] = earnings_summary(user["_id"])
    return body


@router.get("/summary")
def summary(user: dict = Depends(get_current_user)):
    payable = payable_earnings(user["_id"])
    return {
        "status": "success",
        "data": {
            "summary": earnings_summary(user["_id"]),
            "availableBalance": sum(e["commission_amount"] for e in payable),
            "payableCount": len(payable),
            "referralCode": user.get("referral_code"),
            "canRequestPayout": bool(payable) and bool(user.get("stripe_connect_account_id")),
        },
    }


# -----------------
# Admin endpoints
# -----------------

class EarningNote(BaseModel):
    reason: Optional[str] = None


def _set_status(earning_id: str, status: str, expected: List[str], **fields) -> dict:
    oid = to_object_id(earning_id, "Invalid earning id")
    if not earnings().find_one({"_id": oid}):
        raise create_error(404, "Earning not found")
    fields.update(status=status, updated_at=utcnow())
    result = earnings().update_one(
        {"_id": oid, "status": {"$in": expected}, "payout": None},
        {"$set": fields},
    )
    if result.modified_count == 0:
        raise create_error(400, f"Only {' or '.join(expected)} earnings outside a payout can be {status}")
    logger.info("Earning %s -> %s", oid, status)
    return earnings().find_one({"_id": oid})


@router.get("/admin/all")
def all_earnings(
    status: Optional[str] = None,
    source: Optional[str] = None,
    userId: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    admin: dict = Depends(require_admin),
):
    query = _filters(status, source)
    if userId:
        query["user"] = to_object_id(userId, "Invalid user id")
    return _page(query, page, limit)


@router.put("/admin/{earning_id}/approve")
def approve_earning(earning_id: str, admin: dict = Depends(require_admin)):
    earning = _set_status(
        earning_id, APPROVED, [EarningStatus.pending.value], approved_at=utcnow(), approved_by=admin["_id"]
    )
    return {"status": "success", "data": {"earning": serialize_doc(earning)}}


@router.put("/admin/{earning_id}/dispute")
def dispute_earning(earning_id: str, payload: Optional[EarningNote] = None, admin: dict = Depends(require_admin)):
    earning = _set_status(
        earning_id, EarningStatus.disputed.value, [EarningStatus.pending.value, APPROVED],
        notes=(payload.reason if payload else None),
    )
    return {"status": "success", "data": {"earning": serialize_doc(earning)}}


@router.put("/admin/{earning_id}/cancel")
def cancel_earning(earning_id: str, payload: Optional[EarningNote] = None, admin: dict = Depends(require_admin)):
    earning = _set_status(
        earning_id, EarningStatus.cancelled.value,
        [EarningStatus.pending.value, APPROVED, EarningStatus.disputed.value],
        notes=(payload.reason if payload else None),
    )
    return {"status": "success", "data": {"earning": serialize_doc(earning)}}


@router.get("/{earning_id}")
def get_earning(earning_id: str, user: dict = Depends(get_current_user)):
    earning = earnings().find_one({"_id": to_object_id(earning_id, "Invalid earning id"), "user": user["_id"]})
    if not earning:
        raise create_error(404, "Earning not found")
    return {"status": "success", "data": {"earning": serialize_doc(earning)}}
