import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

import config
import stripe_gateway
from auth import get_current_user, get_optional_user
from errors import create_error
from products import (
    complete_purchase,
    find_owned_product,
    find_product_by_id_or_slug,
    find_public_product,
    find_purchase,
    product_analytics,
    products,
)
from purchases import (
    has_completed_purchase,
    purchase_summary,
    purchases_for_email,
    record_session_purchase,
    verify_download_token,
)
from uploads import file_response, find_file

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/digital-products", tags=["checkout"])


class CustomerInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = None
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: Optional[str] = Field(None, alias="productId")
    product_identifier: Optional[str] = Field(None, alias="productIdentifier")
    product_slug: Optional[str] = Field(None, alias="productSlug")
    slug: Optional[str] = None
    customer_info: Optional[CustomerInfo] = Field(None, alias="customerInfo")

    @property
    def identifier(self) -> Optional[str]:
        return self.product_slug or self.product_identifier or self.slug or self.product_id


class VerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(None, alias="sessionId")


@router.post("/checkout/create-session")
def create_checkout_session(payload: CheckoutRequest):
    identifier = payload.identifier
    if not identifier:
        raise create_error(400, "Product identifier is required")
    customer = payload.customer_info
    if not customer or not customer.email or not customer.first_name or not customer.last_name:
        raise create_error(400, "Customer information (email, firstName, lastName) is required")

    product = find_product_by_id_or_slug(identifier)
    if not product:
        raise create_error(404, "Product not found or not available")

    stripe_gateway.ensure_configured()
    email = customer.email.strip().lower()
    full_name = f"{customer.first_name} {customer.last_name}"
    try:
        customer_id = stripe_gateway.find_or_create_customer(email, full_name)
    except stripe.StripeError:
        logger.exception("Stripe customer error for %s", email)
        raise create_error(500, "Failed to process customer information")

    product_id = str(product["_id"])
    creator_id = str(product["creator"])
    try:
        session = stripe_gateway.create_checkout_session(
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": "usd",
                    "product_data": {
                        "name": product["name"],
                        "description": product.get("description"),
                        "metadata": {"productId": product_id, "creatorId": creator_id},
                    },
                    "unit_amount": round(product["price"] * 100),
                },
                "quantity": 1,
            }],
            mode="payment",
            success_url=f"{config.FRONTEND_URL}/product/success?session_id={{CHECKOUT_SESSION_ID}}&product={product_id}",
            cancel_url=f"{config.FRONTEND_URL}/product/checkout/{product_id}?canceled=true",
            metadata={
                "productId": product_id,
                "productSlug": product.get("slug"),
                "creatorId": creator_id,
                "customerEmail": email,
                "customerFirstName": customer.first_name,
                "customerLastName": customer.last_name,
            },
            billing_address_collection="auto",
            allow_promotion_codes=True,
            payment_intent_data={"metadata": {"productId": product_id, "customerEmail": email}},
            invoice_creation={"enabled": True, "invoice_data": {"metadata": {"productId": product_id}}},
        )
    except stripe.InvalidRequestError as e:
        raise create_error(400, f"Stripe error: {e.user_message or str(e)}")
    except stripe.StripeError as e:
        logger.exception("Failed to create checkout session for product %s", product_id)
        raise create_error(500, f"Failed to create checkout session: {e.user_message or str(e)}")

    logger.info("Stripe checkout session created: %s", session["id"])
    return {
        "status": "success",
        "data": {
            "sessionId": session["id"],
            "url": session["url"],
            "product": {
                "_id": product_id,
                "name": product["name"],
                "price": product["price"],
                "slug": product.get("slug"),
            },
        },
    }


@router.post("/checkout/verify-session")
def verify_checkout_session(payload: VerifyRequest):
    if not payload.session_id:
        raise create_error(400, "Session ID is required")

    try:
        session = stripe_gateway.retrieve_checkout_session(payload.session_id)
    except stripe.InvalidRequestError as e:
        raise create_error(400, f"Stripe error: {e.user_message or str(e)}")
    except stripe.StripeError as e:
        raise create_error(500, f"Failed to verify checkout session: {e.user_message or str(e)}")

    if session.get("payment_status") != "paid":
        raise create_error(400, "Payment not completed")

    product, purchase, created = record_session_purchase(session)
    if purchase.get("status") != "completed":
        # recorded as pending by the webhook before payment settled
        complete_purchase("stripe_session_id", session["id"])
        product = products().find_one({"_id": product["_id"]})
        purchase = find_purchase(product, session["id"])
    message = "Purchase completed successfully" if created else "Purchase already processed"
    return {"status": "success", "data": purchase_summary(product, purchase, message)}


@router.get("/purchases")
def list_purchases(email: Optional[str] = None, user: Optional[dict] = Depends(get_optional_user)):
    email = (user or {}).get("email") or email
    if not email:
        raise create_error(400, "Email is required")
    items = purchases_for_email(email)
    return {"status": "success", "results": len(items), "data": {"purchases": items}}


@router.get("/download/{product_slug}/{file_id}")
def download_purchased_file(
    product_slug: str,
    file_id: str,
    token: Optional[str] = None,
    email: Optional[str] = None,
):
    if not token and not email:
        raise create_error(400, "Download token or email is required")

    product = find_public_product(product_slug)
    if not product:
        raise create_error(404, "Product not found")
    file = find_file(product, file_id)
    if not file:
        raise create_error(404, "File not found")

    has_access = bool(email) and has_completed_purchase(product, email)
    if not has_access and token:
        has_access = verify_download_token(token, product)
    if not has_access:
        raise create_error(403, "Access denied. Purchase required.")

    logger.info("File download initiated for %s", file.get("original_name"))
    return file_response(file, no_cache=True)


@router.get("/{product_id}/analytics")
def get_product_analytics(product_id: str, user: dict = Depends(get_current_user)):
    product = find_owned_product(product_id, user["_id"])
    if not product:
        raise create_error(404, "Product not found")
    return {"status": "success", "data": product_analytics(product)}
