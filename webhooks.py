import logging
from enum import Enum

import stripe
from bson import ObjectId
from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

import notifications
import stripe_gateway
from database import is_object_id
from errors import create_error
from products import (
    COMPLETED,
    complete_purchase,
    dispute_purchase,
    fail_purchase,
    products,
    refund_purchase,
)
from purchases import record_session_purchase

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class StripeEventType(str, Enum):
    checkout_session_completed = "checkout.session.completed"
    payment_intent_succeeded = "payment_intent.succeeded"
    payment_intent_payment_failed = "payment_intent.payment_failed"
    charge_dispute_created = "charge.dispute.created"
    charge_refunded = "charge.refunded"
    invoice_payment_failed = "invoice.payment_failed"


def _ref(value):
    # Stripe sends either an id or the expanded object
    if isinstance(value, dict):
        return value.get("id")
    return value


def handle_checkout_session_completed(session: dict) -> None:
    logger.info("Processing checkout session completed: %s", session.get("id"))
    product_id = (session.get("metadata") or {}).get("productId")
    if not product_id or not is_object_id(product_id):
        logger.error("No product ID in session metadata for %s", session.get("id"))
        return
    if not products().find_one({"_id": ObjectId(product_id)}, {"_id": 1}):
        logger.error("Product not found: %s", product_id)
        return

    session = dict(session, payment_intent=_ref(session.get("payment_intent")))
    status = COMPLETED if session.get("payment_status") == "paid" else "pending"
    product, purchase, created = record_session_purchase(session, status=status)
    if not created:
        logger.info("Purchase already exists for session: %s", session["id"])


def handle_payment_succeeded(payment_intent: dict) -> None:
    moved = complete_purchase("stripe_payment_intent_id", payment_intent["id"])
    if not moved:
        logger.info("No pending purchase for payment intent %s", payment_intent["id"])
        return
    product, purchase = moved
    notifications.purchase_confirmation(purchase, product)


def handle_payment_failed(payment_intent: dict) -> None:
    moved = fail_purchase("stripe_payment_intent_id", payment_intent["id"])
    if not moved:
        logger.info("No purchase found for payment intent %s", payment_intent["id"])
        return
    product, purchase = moved
    notifications.payment_failed(purchase, product)


def handle_charge_dispute(dispute: dict) -> None:
    charge = dispute.get("charge")
    payment_intent = _ref(dispute.get("payment_intent")) or (
        _ref(charge.get("payment_intent")) if isinstance(charge, dict) else None
    )
    if not payment_intent:
        logger.error("Dispute %s carries no payment intent", dispute.get("id"))
        return
    moved = dispute_purchase(payment_intent, dispute.get("id"), dispute.get("reason"))
    if not moved:
        logger.info("No completed purchase for disputed payment intent %s", payment_intent)
        return
    product, purchase = moved
    notifications.dispute_opened(purchase, product, dispute.get("reason"))


def handle_charge_refunded(charge: dict) -> None:
    payment_intent = _ref(charge.get("payment_intent"))
    if not payment_intent:
        logger.error("Refunded charge %s carries no payment intent", charge.get("id"))
        return
    if not refund_purchase(payment_intent):
        logger.info("No completed purchase for refunded payment intent %s", payment_intent)


def handle_invoice_payment_failed(invoice: dict) -> None:
    # one-time purchases have no invoices to retry
    logger.info("Invoice payment failed: %s", invoice.get("id"))


HANDLERS = {
    StripeEventType.checkout_session_completed: handle_checkout_session_completed,
    StripeEventType.payment_intent_succeeded: handle_payment_succeeded,
    StripeEventType.payment_intent_payment_failed: handle_payment_failed,
    StripeEventType.charge_dispute_created: handle_charge_dispute,
    StripeEventType.charge_refunded: handle_charge_refunded,
    StripeEventType.invoice_payment_failed: handle_invoice_payment_failed,
}


@router.post("/stripe-digital-products")
async def stripe_digital_products_webhook(request: Request):
    payload = await request.body()
    try:
        event = stripe_gateway.construct_event(payload, request.headers.get("stripe-signature"))
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("Webhook signature verification failed: %s", e)
        raise create_error(400, f"Webhook Error: {e}")

    event_type = event.get("type")
    logger.info("Received event: %s", event_type)
    try:
        handler = HANDLERS.get(StripeEventType(event_type))
    except ValueError:
        handler = None

    if handler is None:
        logger.info("Unhandled event type %s", event_type)
        return {"received": True}

    try:
        await run_in_threadpool(handler, event["data"]["object"])
    except Exception:
        logger.exception("Error processing webhook %s", event.get("id"))
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})
    return {"received": True}
