import logging
from typing import Optional

from bson import ObjectId

from database import create_document
from schemas import Notification

logger = logging.getLogger(__name__)


def notify_user(user_id: ObjectId, title: str, message: str, type: str, data: Optional[dict] = None) -> Optional[str]:
    """Store an in-app notification. Failures are logged, never raised."""
    try:
        return create_document("notification", Notification(
            user=user_id,
            type=type,
            title=title[:100],
            message=message[:500],
            data=data or {},
        ))
    except Exception:
        logger.exception("Failed to create %s notification for user %s", type, user_id)
        return None


def send_email(to: str, subject: str, body: str) -> bool:
    # no mail transport configured, outbound mail is only logged
    logger.info("Email to %s: %s\n%s", to, subject, body)
    return True


def purchase_confirmation(purchase: dict, product: dict) -> None:
    notify_user(
        purchase["user"],
        "Purchase confirmed",
        f"Thanks for buying {product.get('name')}. Your files are ready to download.",
        "payment_successful",
        {"productId": str(product["_id"]), "amount": purchase.get("amount")},
    )
    send_email(
        purchase.get("email"),
        f"Your purchase: {product.get('name')}",
        f"Hi {purchase.get('name')},\n\nYour payment of ${purchase.get('amount', 0):.2f} was received.",
    )


def payment_failed(purchase: dict, product: dict) -> None:
    notify_user(
        purchase["user"],
        "Payment failed",
        f"Your payment for {product.get('name')} could not be completed.",
        "payment_failed",
        {"productId": str(product["_id"])},
    )


def dispute_opened(purchase: dict, product: dict, reason: Optional[str]) -> None:
    notify_user(
        product["creator"],
        "Payment disputed",
        f"A purchase of {product.get('name')} was disputed ({reason or 'no reason given'}).",
        "payment_update",
        {"productId": str(product["_id"]), "purchaseId": str(purchase["_id"])},
    )
