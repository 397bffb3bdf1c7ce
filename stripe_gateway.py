"""
Thin wrapper around the Stripe API.

Everything the rest of the service needs from Stripe goes through here and
comes back as plain dicts. Stripe's own exceptions propagate to callers.
"""

import json
import logging
from typing import Optional

import stripe

import config
from errors import create_error

logger = logging.getLogger(__name__)


def ensure_configured() -> None:
    if not config.STRIPE_SECRET_KEY:
        raise create_error(500, "Stripe not configured")
    stripe.api_key = config.STRIPE_SECRET_KEY


def _id(value) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


def find_or_create_customer(email: str, name: str) -> str:
    ensure_configured()
    existing = stripe.Customer.list(email=email, limit=1)
    if existing.data:
        customer = existing.data[0]
        if customer.name != name:
            stripe.Customer.modify(customer.id, name=name)
        return customer.id
    customer = stripe.Customer.create(email=email, name=name)
    logger.info("Created Stripe customer %s", customer.id)
    return customer.id


def create_checkout_session(**params) -> dict:
    ensure_configured()
    session = stripe.checkout.Session.create(**params)
    return {"id": session.id, "url": session.url}


def retrieve_checkout_session(session_id: str) -> dict:
    ensure_configured()
    session = stripe.checkout.Session.retrieve(session_id)
    details = getattr(session, "customer_details", None)
    return {
        "id": session.id,
        "payment_status": session.payment_status,
        "status": session.status,
        "amount_total": session.amount_total,
        "currency": session.currency,
        "customer": _id(getattr(session, "customer", None)),
        "customer_email": getattr(session, "customer_email", None)
        or (getattr(details, "email", None) if details else None),
        "payment_intent": _id(getattr(session, "payment_intent", None)),
        "metadata": dict(session.metadata or {}),
    }


def create_transfer(
    amount: int, destination: str, metadata: Optional[dict] = None, idempotency_key: Optional[str] = None
) -> dict:
    """Stripe replays the first result for a repeated `idempotency_key`."""
    ensure_configured()
    transfer = stripe.Transfer.create(
        amount=amount,
        currency="usd",
        destination=destination,
        metadata=metadata or {},
        idempotency_key=idempotency_key,
    )
    return {"id": transfer.id}


def construct_event(payload: bytes, signature: Optional[str]) -> dict:
    """Verify the Stripe-Signature header and return the event as a dict."""
    secret = config.STRIPE_DIGITAL_PRODUCT_WEBHOOK_SECRET
    if not secret:
        raise ValueError("Webhook secret not configured")
    if not signature:
        raise ValueError("Missing Stripe-Signature header")
    body = payload.decode("utf-8")
    stripe.WebhookSignature.verify_header(body, signature, secret, config.STRIPE_WEBHOOK_TOLERANCE)
    return json.loads(body)
