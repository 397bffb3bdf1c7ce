import calendar
import logging
import math
from datetime import datetime, timedelta
from typing import Optional

import stripe
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

import earnings
import notifications
import stripe_gateway
from auth import public_user, require_admin
from database import get_db, paginate, serialize_doc, to_object_id, utcnow
from errors import create_error
from payouts import find_payout, payout_stats, payouts, set_status
from plans import BILLING_CYCLES, PLAN_ORDER, plan_amount, plan_display_name
from products import platform_stats
from schemas import EarningSource, PayoutStatus, Subscription, UserSubscription, to_document

logger = logging.getLogger(__name__)

auth_router = APIRouter(prefix="/api/auth", tags=["admin"])
router = APIRouter(prefix="/api/admin", tags=["admin"])

ACTIVE_STATUSES = ["active", "trialing"]


def add_cycle(start: datetime, billing_cycle: str) -> datetime:
    if billing_cycle == "yearly":
        year, month = start.year + 1, start.month
    else:
        year, month = start.year + (start.month // 12), start.month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _days_until(end: datetime) -> int:
    return max(0, math.ceil((end - utcnow()).total_seconds() / 86400))


def _user_or_404(user_id: str) -> dict:
    user = get_db()["user"].find_one({"_id": to_object_id(user_id, "Invalid user id")})
    if not user:
        raise create_error(404, "User not found")
    return user


def _reset_to_free(user_id) -> None:
    get_db()["user"].update_one(
        {"_id": user_id},
        {"$set": {"subscription": to_document(UserSubscription()), "updated_at": utcnow()}},
    )


# -----------------
# Users and stats
# -----------------

@auth_router.get("/all-users")
def all_users(page: int = 1, limit: int = 10, admin: dict = Depends(require_admin)):
    paging = paginate(page, limit, max_limit=100)
    query = {"is_deleted": {"$ne": True}}
    users = get_db()["user"].find(query).sort("created_at", -1).skip(paging["skip"]).limit(paging["limit"])
    items = [public_user(u) for u in users]
    total = get_db()["user"].count_documents(query)
    return {
        "status": "success",
        "results": len(items),
        "totalResults": total,
        "totalPages": math.ceil(total / paging["limit"]),
        "currentPage": paging["page"],
        "data": {"users": items},
    }


@auth_router.get("/admin/stats")
def admin_stats(admin: dict = Depends(require_admin)):
    users = get_db()["user"]
    subscriptions = get_db()["subscription"]
    now = utcnow()
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    not_deleted = {"is_deleted": {"$ne": True}}

    revenue_rows = list(subscriptions.aggregate([
        {"$match": {"status": {"$in": ACTIVE_STATUSES}, "is_gifted": {"$ne": True}}},
        {"$group": {"_id": None, "totalRevenue": {"$sum": "$amount"}}},
    ]))
    total_revenue = "%.2f" % (revenue_rows[0]["totalRevenue"] / 100 if revenue_rows else 0)

    gifted = subscriptions.count_documents({"is_gifted": True, "status": {"$in": ACTIVE_STATUSES}})
    breakdown = list(subscriptions.aggregate([
        {"$match": {"status": {"$in": ACTIVE_STATUSES}}},
        {
            "$group": {
                "_id": "$plan",
                "count": {"$sum": 1},
                "isGifted": {"$sum": {"$cond": [{"$eq": ["$is_gifted", True]}, 1, 0]}},
                "isPaid": {"$sum": {"$cond": [{"$ne": ["$is_gifted", True]}, 1, 0]}},
            }
        },
    ]))

    revenue_note = None
    if gifted:
        revenue_note = f"Revenue excludes {gifted} admin-gifted subscription{'s' if gifted != 1 else ''}"

    return {
        "status": "success",
        "data": {
            "totalUsers": users.count_documents(not_deleted),
            "activeUsers": users.count_documents(dict(not_deleted, last_login={"$gte": now - timedelta(days=30)})),
            "newUsersToday": users.count_documents(dict(not_deleted, created_at={"$gte": start_of_day})),
            "totalRevenue": total_revenue,
            "giftedSubscriptions": gifted,
            "subscriptionBreakdown": breakdown,
            "revenueNote": revenue_note,
            "platformStats": platform_stats(),
        },
    }


# -----------------
# Subscriptions
# -----------------

class SubscriptionUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_name: Optional[str] = Field(None, alias="planName")
    billing_cycle: str = Field("monthly", alias="billingCycle")
    is_gifted: bool = Field(False, alias="isGifted")


@router.put("/users/{user_id}/subscription")
def update_user_subscription(user_id: str, payload: SubscriptionUpdate, admin: dict = Depends(require_admin)):
    if not payload.plan_name:
        raise create_error(400, "Plan name is required")
    if payload.plan_name not in PLAN_ORDER:
        raise create_error(400, "Invalid plan name")
    if payload.billing_cycle not in BILLING_CYCLES:
        raise create_error(400, "Invalid billing cycle")
    user = _user_or_404(user_id)
    subscriptions = get_db()["subscription"]

    if payload.plan_name == "free":
        subscriptions.delete_one({"user": user["_id"]})
        _reset_to_free(user["_id"])
        logger.info("Admin %s set user %s to the free plan", admin["_id"], user["_id"])
        return {
            "status": "success",
            "message": "Subscription removed, user set to free plan",
            "data": {"plan": "free", "isGifted": False},
        }

    now = utcnow()
    period_end = add_cycle(now, payload.billing_cycle)
    gifted = payload.is_gifted
    existing = subscriptions.find_one({"user": user["_id"]})

    subscription = to_document(Subscription(
        user=user["_id"],
        plan=payload.plan_name,
        billing_cycle=payload.billing_cycle,
        amount=plan_amount(payload.plan_name, payload.billing_cycle),
        status="active",
        current_period_start=now,
        current_period_end=period_end,
        is_gifted=gifted,
        gifted_by=admin["_id"] if gifted else None,
        gifted_at=now if gifted else None,
        stripe_customer_id=(existing or {}).get("stripe_customer_id"),
        stripe_subscription_id=None if gifted else (existing or {}).get("stripe_subscription_id"),
        stripe_price_id=None if gifted else (existing or {}).get("stripe_price_id"),
    ))
    subscription["updated_at"] = now
    subscriptions.update_one(
        {"user": user["_id"]},
        {"$set": subscription, "$setOnInsert": {"created_at": now}},
        upsert=True,
    )

    get_db()["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"subscription": to_document(UserSubscription(
            plan=payload.plan_name,
            status="active",
            is_active=True,
            is_gifted=gifted,
            start_date=now,
            end_date=period_end,
            days_remaining=_days_until(period_end),
        ))}},
    )

    name = plan_display_name(payload.plan_name)
    notifications.notify_user(
        user["_id"],
        "Subscription Gifted!" if gifted else "Subscription Updated",
        f"You've been gifted a {name} plan by admin! Enjoy your free access."
        if gifted else f"Your subscription has been updated to {name} ({payload.billing_cycle}).",
        "subscription_gifted" if gifted else "subscription_update",
        {"plan": payload.plan_name, "billingCycle": payload.billing_cycle, "isGifted": gifted},
    )
    logger.info("Admin %s set user %s to %s (gifted=%s)", admin["_id"], user["_id"], payload.plan_name, gifted)

    stored = subscriptions.find_one({"user": user["_id"]})
    earnings.record_subscription_earning(stored)
    return {
        "status": "success",
        "message": f"{name} plan gifted to user successfully" if gifted else f"User subscription updated to {name}",
        "data": {
            "subscription": serialize_doc(stored),
            "isGifted": gifted,
            "note": "This gifted subscription does not count toward revenue" if gifted else None,
        },
    }


@router.post("/users/{user_id}/subscription/cancel")
def cancel_user_subscription(user_id: str, admin: dict = Depends(require_admin)):
    user = _user_or_404(user_id)
    subscriptions = get_db()["subscription"]
    subscription = subscriptions.find_one({"user": user["_id"]})
    if not subscription:
        raise create_error(404, "No subscription found for this user")

    subscriptions.update_one(
        {"_id": subscription["_id"]},
        {"$set": {"status": "cancelled", "updated_at": utcnow()}},
    )
    _reset_to_free(user["_id"])
    notifications.notify_user(
        user["_id"], "Subscription Cancelled", "Your subscription has been cancelled by admin.",
        "subscription_cancelled",
    )
    return {"status": "success", "message": "User subscription cancelled successfully"}


@router.post("/users/{user_id}/subscription/reactivate")
def reactivate_user_subscription(user_id: str, admin: dict = Depends(require_admin)):
    user = _user_or_404(user_id)
    subscriptions = get_db()["subscription"]
    subscription = subscriptions.find_one({"user": user["_id"]})
    if not subscription:
        raise create_error(404, "No subscription found for this user")
    if subscription.get("status") == "active":
        raise create_error(400, "Subscription is already active")

    now = utcnow()
    period_end = add_cycle(now, subscription.get("billing_cycle", "monthly"))
    subscriptions.update_one(
        {"_id": subscription["_id"]},
        {"$set": {"status": "active", "current_period_end": period_end, "updated_at": now}},
    )
    subscription.update(status="active", current_period_end=period_end)
    earnings.record_subscription_earning(subscription, EarningSource.subscription_renewal.value)
    get_db()["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "subscription.plan": subscription["plan"],
            "subscription.status": "active",
            "subscription.is_active": True,
            "subscription.is_gifted": subscription.get("is_gifted", False),
            "subscription.end_date": period_end,
            "subscription.days_remaining": _days_until(period_end),
        }},
    )
    notifications.notify_user(
        user["_id"], "Subscription Reactivated", "Your subscription has been reactivated by admin.",
        "subscription_update",
    )
    return {
        "status": "success",
        "message": "User subscription reactivated successfully",
        "data": {"subscription": serialize_doc(subscriptions.find_one({"_id": subscription["_id"]}))},
    }


# -----------------
# Payouts
# -----------------

class RejectRequest(BaseModel):
    reason: Optional[str] = None


class NotesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    admin_notes: Optional[str] = Field(None, alias="adminNotes")


@router.get("/payouts")
def list_payouts(status: Optional[str] = None, page: int = 1, limit: int = 20, admin: dict = Depends(require_admin)):
    paging = paginate(page, limit, default_limit=20)
    query = {}
    if status and status != "all":
        query["status"] = status
    items = list(payouts().find(query).sort("requested_at", -1).skip(paging["skip"]).limit(paging["limit"]))
    total = payouts().count_documents(query)
    return {
        "status": "success",
        "results": len(items),
        "totalResults": total,
        "totalPages": math.ceil(total / paging["limit"]),
        "currentPage": paging["page"],
        "data": {"payouts": serialize_doc(items)},
    }


@router.get("/payouts/statistics")
def payout_statistics(admin: dict = Depends(require_admin)):
    connected = get_db()["user"].count_documents({"stripe_connect_account_id": {"$nin": [None, ""]}})
    return {
        "status": "success",
        "data": {
            "payoutStats": payout_stats(),
            "earningsStats": earnings.total_earned(),
            "userStats": {"totalConnectedUsers": connected},
        },
    }


@router.get("/payouts/{payout_id}")
def get_payout(payout_id: str, admin: dict = Depends(require_admin)):
    payout = find_payout(payout_id)
    user = get_db()["user"].find_one({"_id": payout["user"]})
    data = serialize_doc(payout)
    data["user"] = {"_id": str(payout["user"]), "name": (user or {}).get("name"), "email": (user or {}).get("email")}
    return {"status": "success", "data": {"payout": data}}


@router.put("/payouts/{payout_id}/approve")
def approve_payout(payout_id: str, payload: Optional[NotesRequest] = None, admin: dict = Depends(require_admin)):
    payout = find_payout(payout_id)
    if payout["status"] != PayoutStatus.pending.value:
        raise create_error(400, "Only pending payouts can be approved")

    # claim before transferring, a concurrent approval gets a 400 here
    set_status(
        payout, PayoutStatus.processing.value, PayoutStatus.pending.value,
        processed_at=utcnow(), processed_by=admin["_id"], admin_notes=payload.admin_notes if payload else None,
    )
    try:
        transfer = stripe_gateway.create_transfer(
            payout["net_amount"],
            payout["stripe_connect_account_id"],
            metadata={"payoutId": str(payout["_id"]), "userId": str(payout["user"])},
            idempotency_key=str(payout["_id"]),
        )
    except stripe.StripeError as e:
        logger.error("Stripe transfer failed for payout %s: %s", payout["_id"], e)
        set_status(
            payout, PayoutStatus.failed.value, PayoutStatus.processing.value,
            failed_at=utcnow(), failure_message=str(e),
        )
        earnings.release_earnings(payout["_id"])
        raise create_error(500, f"Failed to process payout: {e.user_message or str(e)}")

    payouts().update_one(
        {"_id": payout["_id"], "status": PayoutStatus.processing.value},
        {"$set": {"stripe_transfer_id": transfer["id"], "updated_at": utcnow()}},
    )
    earnings.mark_paid(payout["_id"], transfer["id"])
    updated = payouts().find_one({"_id": payout["_id"]})
    notifications.notify_user(
        payout["user"], "Payout approved",
        f"Your payout of ${payout['net_amount'] / 100:.2f} is on its way.",
        "payout_processed", {"payoutId": str(payout["_id"])},
    )
    return {
        "status": "success",
        "data": {"payout": serialize_doc(updated), "transfer": transfer, "message": "Payout processed successfully"},
    }


@router.put("/payouts/{payout_id}/reject")
def reject_payout(payout_id: str, payload: Optional[RejectRequest] = None, admin: dict = Depends(require_admin)):
    payout = find_payout(payout_id)
    if payout["status"] != PayoutStatus.pending.value:
        raise create_error(400, "Only pending payouts can be rejected")
    reason = (payload.reason if payload else None) or "Rejected by admin"
    updated = set_status(
        payout, PayoutStatus.cancelled.value, PayoutStatus.pending.value,
        failure_message=reason, processed_by=admin["_id"], processed_at=utcnow(),
    )
    earnings.release_earnings(payout["_id"])
    return {"status": "success", "data": {"payout": serialize_doc(updated), "message": "Payout rejected"}}


@router.put("/payouts/{payout_id}/complete")
def complete_payout(payout_id: str, admin: dict = Depends(require_admin)):
    payout = find_payout(payout_id)
    if payout["status"] != PayoutStatus.processing.value:
        raise create_error(400, "Only processing payouts can be completed")
    updated = set_status(payout, PayoutStatus.paid.value, PayoutStatus.processing.value, paid_at=utcnow())
    return {"status": "success", "data": {"payout": serialize_doc(updated), "message": "Payout marked as paid"}}
