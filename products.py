"""
Digital product persistence

Queries and atomic updates over the `digitalproduct` collection. Purchases
live embedded in the product document so that appending a purchase and
moving the `sales` / `revenue` counters happen in one document update.
"""

import logging
import re
from collections import defaultdict
from typing import Iterable, List, Optional, Tuple

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

import config
from database import get_db, is_object_id, serialize_doc, to_object_id, utcnow
from schemas import DigitalProduct, PurchaseStatus, to_document

logger = logging.getLogger(__name__)

COLLECTION = "digitalproduct"
COMPLETED = PurchaseStatus.completed.value

_SLUG_RE = re.compile(r"[^a-z0-9]+")
_TRANSITION_ATTEMPTS = 3


def products():
    return get_db()[COLLECTION]


def scoped(query: Optional[dict] = None) -> dict:
    """Hide soft-deleted products unless the caller asks about `is_deleted`."""
    query = dict(query or {})
    if "is_deleted" not in query:
        query["is_deleted"] = {"$ne": True}
    return query


# -----------------
# Slugs
# -----------------

def slugify(name: str) -> str:
    return _SLUG_RE.sub("-", (name or "").lower()).strip("-")


def unique_slug(name: str, exclude_id: Optional[ObjectId] = None) -> str:
    # deleted products keep their slug, so they are checked too
    base = slugify(name) or "product"
    slug = base
    counter = 1
    while True:
        query = {"slug": slug}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        if products().find_one(query, {"_id": 1}) is None:
            return slug
        slug = f"{base}-{counter}"
        counter += 1


def insert_product(product: DigitalProduct, attempts: int = 5) -> dict:
    doc = to_document(product)
    now = utcnow()
    doc["created_at"] = now
    doc["updated_at"] = now
    for _ in range(attempts):
        doc["slug"] = unique_slug(doc["name"])
        try:
            result = products().insert_one(doc)
        except DuplicateKeyError:
            # another request took the slug between the check and the insert
            logger.info("Slug %s taken concurrently, retrying", doc["slug"])
            doc.pop("_id", None)
            doc["_id"] = ObjectId()
            continue
        doc["_id"] = result.inserted_id
        logger.info("Created product %s (%s)", doc["_id"], doc["slug"])
        return doc
    raise DuplicateKeyError(f"Could not allocate a unique slug for {doc['name']}")


def update_product(product_id: ObjectId, changes: dict) -> Optional[dict]:
    if "name" in changes:
        changes["slug"] = unique_slug(changes["name"], exclude_id=product_id)
    changes["updated_at"] = utcnow()
    products().update_one(scoped({"_id": product_id}), {"$set": changes})
    logger.info("Updated product %s: %s", product_id, sorted(changes))
    return products().find_one({"_id": product_id})


# -----------------
# Lookups
# -----------------

def find_owned_product(product_id: str, user_id: ObjectId) -> Optional[dict]:
    return products().find_one(scoped({"_id": to_object_id(product_id), "creator": user_id}))


def find_public_product(identifier: str) -> Optional[dict]:
    query = {"published": True}
    if is_object_id(identifier):
        query["_id"] = ObjectId(identifier)
    else:
        query["slug"] = identifier
    return products().find_one(scoped(query))


def find_product_by_id_or_slug(identifier: str, published_only: bool = True) -> Optional[dict]:
    """Resolve by id first, then by slug."""
    query = {"published": True} if published_only else {}
    if is_object_id(identifier):
        product = products().find_one(scoped(dict(query, _id=ObjectId(identifier))))
        if product:
            return product
    return products().find_one(scoped(dict(query, slug=identifier)))


def record_view(product_id: ObjectId) -> None:
    products().update_one(
        {"_id": product_id},
        {"$inc": {"views": 1}, "$set": {"last_viewed_at": utcnow()}},
    )


def soft_delete(product_id: ObjectId) -> None:
    now = utcnow()
    products().update_one(
        {"_id": product_id},
        {"$set": {"is_deleted": True, "deleted_at": now, "published": False, "updated_at": now}},
    )
    logger.info("Soft deleted product %s", product_id)


def toggle_published(product: dict) -> bool:
    published = not product.get("published", False)
    products().update_one(
        {"_id": product["_id"]},
        {"$set": {"published": published, "updated_at": utcnow()}},
    )
    return published


# -----------------
# Purchases
# -----------------

def find_purchase(product: dict, stripe_session_id: str) -> Optional[dict]:
    for purchase in product.get("purchases", []):
        if purchase.get("stripe_session_id") == stripe_session_id:
            return purchase
    return None


def add_purchase(product_id: ObjectId, purchase: dict) -> bool:
    """
    Append a purchase unless one with the same Stripe session is already
    recorded. Completed purchases move the counters in the same update.
    Returns False when the session was already recorded.
    """
    update = {"$push": {"purchases": purchase}, "$set": {"updated_at": utcnow()}}
    if purchase.get("status") == COMPLETED:
        update["$inc"] = {"sales": 1, "revenue": purchase["amount"]}
    result = products().update_one(
        {"_id": product_id, "purchases.stripe_session_id": {"$ne": purchase["stripe_session_id"]}},
        update,
    )
    return result.modified_count == 1


def _counter_delta(old_status: str, new_status: str, amount: float) -> dict:
    if old_status != COMPLETED and new_status == COMPLETED:
        return {"sales": 1, "revenue": amount}
    if old_status == COMPLETED and new_status != COMPLETED:
        return {"sales": -1, "revenue": -amount}
    return {}


def transition_purchase(
    key_field: str,
    key_value: str,
    from_statuses: Iterable[str],
    to_status: str,
    extra: Optional[dict] = None,
) -> Optional[Tuple[dict, dict]]:
    """
    Move the purchase identified by `key_field == key_value` from one of
    `from_statuses` to `to_status`, adjusting the counters atomically.

    The update is conditional on the purchase still sitting at the same
    array index with the status that was read, so two concurrent
    transitions cannot both apply. Returns (product, purchase) as they
    were before the change, or None when nothing matched.
    """
    from_statuses = list(from_statuses)
    for _ in range(_TRANSITION_ATTEMPTS):
        product = products().find_one({
            "purchases": {"$elemMatch": {key_field: key_value, "status": {"$in": from_statuses}}},
        })
        if not product:
            return None

        index, purchase = next(
            (
                (i, p) for i, p in enumerate(product.get("purchases", []))
                if p.get(key_field) == key_value and p.get("status") in from_statuses
            ),
            (None, None),
        )
        if purchase is None:
            return None

        prefix = f"purchases.{index}"
        changes = {f"{prefix}.status": to_status, "updated_at": utcnow()}
        for field, value in (extra or {}).items():
            changes[f"{prefix}.{field}"] = value
        update = {"$set": changes}
        delta = _counter_delta(purchase["status"], to_status, purchase.get("amount", 0))
        if delta:
            update["$inc"] = delta

        result = products().update_one(
            {
                "_id": product["_id"],
                f"{prefix}.{key_field}": key_value,
                f"{prefix}.status": purchase["status"],
            },
            update,
        )
        if result.modified_count == 1:
            logger.info(
                "Purchase %s on product %s: %s -> %s",
                key_value, product["_id"], purchase["status"], to_status,
            )
            return product, purchase
    logger.warning("Gave up moving purchase %s to %s after concurrent updates", key_value, to_status)
    return None


def complete_purchase(key_field: str, key_value: str):
    return transition_purchase(key_field, key_value, ["pending", "failed"], COMPLETED)


def fail_purchase(key_field: str, key_value: str):
    return transition_purchase(key_field, key_value, ["pending", COMPLETED], "failed")


def dispute_purchase(payment_intent_id: str, dispute_id: str, reason: Optional[str]):
    return transition_purchase(
        "stripe_payment_intent_id",
        payment_intent_id,
        [COMPLETED],
        "disputed",
        extra={"dispute_id": dispute_id, "dispute_reason": reason, "disputed_at": utcnow()},
    )


def refund_purchase(payment_intent_id: str):
    return transition_purchase(
        "stripe_payment_intent_id",
        payment_intent_id,
        [COMPLETED],
        "refunded",
        extra={"refunded_at": utcnow()},
    )


# -----------------
# Stats
# -----------------

EMPTY_STATS = {"totalProducts": 0, "totalRevenue": 0, "publishedProducts": 0, "totalSales": 0}


def _stats(match: dict) -> dict:
    rows = list(products().aggregate([
        {"$match": match},
        {
            "$group": {
                "_id": None,
                "totalProducts": {"$sum": 1},
                "totalRevenue": {"$sum": "$revenue"},
                "totalSales": {"$sum": "$sales"},
                "publishedProducts": {"$sum": {"$cond": [{"$eq": ["$published", True]}, 1, 0]}},
            }
        },
    ]))
    if not rows:
        return dict(EMPTY_STATS)
    row = rows[0]
    row.pop("_id", None)
    return row


def creator_stats(creator_id: ObjectId) -> dict:
    return _stats({"creator": creator_id, "is_deleted": {"$ne": True}})


def platform_stats() -> dict:
    return _stats({"is_deleted": {"$ne": True}})


def checkout_url(product: dict) -> Optional[str]:
    if not product.get("published") or not product.get("slug"):
        return None
    return f"{config.FRONTEND_URL}/product/checkout/{product['slug']}"


def conversion_rate(product: dict) -> float:
    views = product.get("views") or 0
    if views == 0:
        return 0
    return round(product.get("sales", 0) / views * 100, 2)


def product_analytics(product: dict) -> dict:
    completed = [p for p in product.get("purchases", []) if p.get("status") == COMPLETED]
    total_revenue = sum(p.get("amount", 0) for p in completed)

    purchases_by_month = defaultdict(int)
    revenue_by_month = defaultdict(float)
    for p in completed:
        month = p["purchased_at"].strftime("%Y-%m")
        purchases_by_month[month] += 1
        revenue_by_month[month] += p.get("amount", 0)

    recent = sorted(completed, key=lambda p: p["purchased_at"], reverse=True)[:10]
    return {
        "analytics": {
            "totalPurchases": len(completed),
            "totalRevenue": total_revenue,
            "totalViews": product.get("views", 0),
            "conversionRate": conversion_rate(product),
            "averageOrderValue": total_revenue / len(completed) if completed else 0,
        },
        "chartData": {
            "purchasesByMonth": dict(purchases_by_month),
            "revenueByMonth": dict(revenue_by_month),
        },
        "recentPurchases": serialize_doc([
            {
                "_id": p["_id"],
                "customerName": p.get("name"),
                "customerEmail": p.get("email"),
                "amount": p.get("amount"),
                "purchased_at": p["purchased_at"],
            }
            for p in recent
        ]),
    }


# -----------------
# Projections
# -----------------

def safe_files(files: List[dict]) -> List[dict]:
    return [
        {
            "_id": str(f["_id"]),
            "name": f.get("name"),
            "original_name": f.get("original_name"),
            "type": f.get("type"),
            "size": f.get("size"),
        }
        for f in files or []
    ]


def owner_view(product: dict) -> dict:
    data = serialize_doc(product)
    data["checkout_url"] = checkout_url(product)
    data["conversion_rate"] = conversion_rate(product)
    return data


def public_view(product: dict, creator: Optional[dict] = None) -> dict:
    data = serialize_doc({k: v for k, v in product.items() if k not in ("purchases", "creator")})
    data["files"] = safe_files(product.get("files"))
    data["creator"] = {"name": creator.get("name")} if creator else None
    data["checkout_url"] = checkout_url(product)
    return data
