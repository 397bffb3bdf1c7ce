"""
Purchase recording

Shared by checkout verification and the Stripe webhook: both paths record
a paid checkout session against its product exactly once, keyed by the
Stripe session id.
"""

import hashlib
import hmac
import logging
import time
from typing import Optional, Tuple

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

import config
import notifications
from database import create_document, get_db, is_object_id, serialize_doc, utcnow
from errors import create_error
from products import COMPLETED, add_purchase, find_purchase, products, safe_files
from schemas import Purchase, User, to_document

logger = logging.getLogger(__name__)


def find_or_create_buyer(email: str, name: str) -> dict:
    users = get_db()["user"]
    user = users.find_one({"email": email})
    if user:
        return user
    try:
        user_id = create_document("user", User(name=name, email=email))
        logger.info("Created buyer account for %s", email)
        return users.find_one({"_id": ObjectId(user_id)})
    except DuplicateKeyError:
        # created by a concurrent request for the same email
        user = users.find_one({"email": email})
        if not user:
            raise create_error(500, "Failed to create or find user account")
        return user


def _customer(session: dict) -> Tuple[str, str]:
    metadata = session.get("metadata") or {}
    email = (metadata.get("customerEmail") or session.get("customer_email") or "").strip().lower()
    name = " ".join(
        part for part in (metadata.get("customerFirstName"), metadata.get("customerLastName")) if part
    ).strip()
    return email, name or email


def record_session_purchase(session: dict, status: str = COMPLETED) -> Tuple[dict, dict, bool]:
    """
    Record the purchase for a Stripe checkout session.

    Returns (product, purchase, created). When the session was already
    recorded the stored purchase is returned with created=False.
    """
    product_id = (session.get("metadata") or {}).get("productId")
    if not product_id or not is_object_id(product_id):
        raise create_error(400, "Checkout session has no product")
    product = products().find_one({"_id": ObjectId(product_id)})
    if not product:
        raise create_error(404, "Product not found")

    existing = find_purchase(product, session["id"])
    if existing:
        logger.info("Purchase already processed for session %s", session["id"])
        return product, existing, False

    email, name = _customer(session)
    if not email:
        raise create_error(400, "Checkout session has no customer email")
    buyer = find_or_create_buyer(email, name)

    amount_total = session.get("amount_total")
    amount = amount_total / 100 if amount_total is not None else product.get("price", 0)

    purchase = to_document(Purchase(
        user=buyer["_id"],
        email=email,
        name=name,
        amount=amount,
        stripe_session_id=session["id"],
        stripe_payment_intent_id=session.get("payment_intent"),
        status=status,
    ))

    if not add_purchase(product["_id"], purchase):
        # lost a race with another recorder of the same session
        product = products().find_one({"_id": product["_id"]})
        logger.info("Purchase for session %s recorded concurrently", session["id"])
        return product, find_purchase(product, session["id"]), False

    logger.info("Recorded %s purchase %s for product %s", status, session["id"], product["_id"])
    product = products().find_one({"_id": product["_id"]})
    if status == COMPLETED:
        notifications.purchase_confirmation(purchase, product)
    return product, purchase, True


def purchase_summary(product: dict, purchase: dict, message: str) -> dict:
    return {
        "purchase": serialize_doc(purchase),
        "product": {
            "_id": str(product["_id"]),
            "name": product.get("name"),
            "slug": product.get("slug"),
            "files": safe_files(product.get("files")),
        },
        "downloadToken": generate_download_token(purchase["user"], product["_id"]),
        "message": message,
    }


# -----------------
# Download tokens
# -----------------

def _signature(user_id: str, product_id: str, expires: int) -> str:
    message = f"{user_id}:{product_id}:{expires}".encode()
    return hmac.new(config.DOWNLOAD_TOKEN_SECRET.encode(), message, hashlib.sha256).hexdigest()


def generate_download_token(user_id, product_id, now: Optional[float] = None) -> str:
    expires = int((now or time.time()) + config.DOWNLOAD_TOKEN_TTL_HOURS * 3600)
    return f"{user_id}.{expires}.{_signature(str(user_id), str(product_id), expires)}"


def verify_download_token(token: str, product: dict, now: Optional[float] = None) -> bool:
    """Valid when signed for this product, unexpired, and backed by a completed purchase."""
    try:
        user_id, expires_raw, signature = token.split(".")
        expires = int(expires_raw)
    except (AttributeError, ValueError):
        return False
    if expires < (now or time.time()):
        return False
    expected = _signature(user_id, str(product["_id"]), expires)
    if not hmac.compare_digest(expected, signature):
        return False
    return any(
        str(p.get("user")) == user_id and p.get("status") == COMPLETED
        for p in product.get("purchases", [])
    )


def has_completed_purchase(product: dict, email: str) -> bool:
    email = (email or "").strip().lower()
    return any(
        p.get("email") == email and p.get("status") == COMPLETED
        for p in product.get("purchases", [])
    )


def purchases_for_email(email: str) -> list:
    email = email.strip().lower()
    cursor = products().find(
        {"is_deleted": {"$ne": True}, "purchases": {"$elemMatch": {"email": email, "status": COMPLETED}}}
    )
    items = []
    for product in cursor:
        for p in product.get("purchases", []):
            if p.get("email") != email or p.get("status") != COMPLETED:
                continue
            items.append({
                "_id": p["_id"],
                "amount": p.get("amount"),
                "purchased_at": p.get("purchased_at"),
                "stripe_session_id": p.get("stripe_session_id"),
                "product": {
                    "_id": product["_id"],
                    "name": product.get("name"),
                    "slug": product.get("slug"),
                    "category": product.get("category"),
                    "files": safe_files(product.get("files")),
                },
            })
    items.sort(key=lambda item: item["purchased_at"] or utcnow(), reverse=True)
    return serialize_doc(items)
