import time

import pytest
import stripe
from bson import ObjectId

from conftest import create_product, signed_webhook

import purchases
import stripe_gateway


class FakeStripe:
    def __init__(self):
        self.sessions = {}
        self.created = []

    def customer(self, email, name):
        return "cus_test_1"

    def create_session(self, **params):
        session_id = f"cs_test_{len(self.created) + 1}"
        self.created.append(params)
        self.sessions[session_id] = {
            "id": session_id,
            "payment_status": "unpaid",
            "status": "open",
            "amount_total": params["line_items"][0]["price_data"]["unit_amount"],
            "currency": "usd",
            "customer": params["customer"],
            "customer_email": None,
            "payment_intent": f"pi_test_{len(self.created)}",
            "metadata": params["metadata"],
        }
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def pay(self, session_id):
        self.sessions[session_id].update(payment_status="paid", status="complete")
        return self.sessions[session_id]

    def retrieve(self, session_id):
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError("No such checkout.session", "id")
        return dict(self.sessions[session_id])


@pytest.fixture
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    monkeypatch.setattr(stripe_gateway, "find_or_create_customer", fake.customer)
    monkeypatch.setattr(stripe_gateway, "create_checkout_session", fake.create_session)
    monkeypatch.setattr(stripe_gateway, "retrieve_checkout_session", fake.retrieve)
    return fake


@pytest.fixture
def published(client, creator):
    product = create_product(client, creator["headers"])
    res = client.post(
        f"/api/digital-products/{product['_id']}/files",
        files=[("files", ("course.pdf", b"%PDF-1.4 course", "application/pdf"))],
        headers=creator["headers"],
    )
    product["file_id"] = res.json()["data"]["files"][0]["_id"]
    client.patch(f"/api/digital-products/{product['_id']}/toggle-published", headers=creator["headers"])
    return product


CUSTOMER = {"email": "Buyer@Example.com", "firstName": "Bea", "lastName": "Buyer"}


def checkout(client, identifier, **fields):
    body = {"productSlug": identifier, "customerInfo": CUSTOMER}
    body.update(fields)
    return client.post("/api/digital-products/checkout/create-session", json=body)


def test_create_session(client, published, fake_stripe):
    res = checkout(client, "test-course")
    assert res.status_code == 200, res.text
    data = res.json()["data"]
    assert data["sessionId"] == "cs_test_1"
    assert data["url"] == "https://checkout.stripe.test/cs_test_1"
    assert data["product"]["slug"] == "test-course"

    params = fake_stripe.created[0]
    assert params["mode"] == "payment"
    assert params["line_items"][0]["price_data"]["unit_amount"] == 2999
    assert params["metadata"]["productId"] == published["_id"]
    assert params["metadata"]["customerEmail"] == "buyer@example.com"
    assert params["success_url"].startswith("http://frontend.test/product/success?session_id={CHECKOUT_SESSION_ID}")
    assert params["cancel_url"] == f"http://frontend.test/product/checkout/{published['_id']}?canceled=true"


def test_create_session_by_id(client, published, fake_stripe):
    res = client.post(
        "/api/digital-products/checkout/create-session",
        json={"productId": published["_id"], "customerInfo": CUSTOMER},
    )
    assert res.status_code == 200


def test_create_session_validation(client, published, fake_stripe):
    res = client.post("/api/digital-products/checkout/create-session", json={"customerInfo": CUSTOMER})
    assert res.status_code == 400

    res = checkout(client, "test-course", customerInfo={"email": "a@b.c"})
    assert res.status_code == 400

    assert checkout(client, "no-such-product").status_code == 404


def test_unpublished_product_cannot_be_bought(client, creator, fake_stripe):
    create_product(client, creator["headers"], name="Draft")
    res = checkout(client, "draft")
    assert res.status_code == 404
    assert fake_stripe.created == []


def test_stripe_error_on_create(client, published, fake_stripe, monkeypatch):
    def fail(**params):
        raise stripe.InvalidRequestError("Amount too small", "amount")

    monkeypatch.setattr(stripe_gateway, "create_checkout_session", fail)
    res = checkout(client, "test-course")
    assert res.status_code == 400
    assert res.json()["message"].startswith("Stripe error:")


def test_verify_requires_session_and_payment(client, published, fake_stripe):
    res = client.post("/api/digital-products/checkout/verify-session", json={})
    assert res.status_code == 400
    assert res.json()["message"] == "Session ID is required"

    checkout(client, "test-course")
    res = client.post("/api/digital-products/checkout/verify-session", json={"sessionId": "cs_test_1"})
    assert res.status_code == 400
    assert res.json()["message"] == "Payment not completed"

    res = client.post("/api/digital-products/checkout/verify-session", json={"sessionId": "cs_missing"})
    assert res.status_code == 400


def test_end_to_end_purchase(client, creator, published, fake_stripe, db):
    checkout(client, "test-course")
    session = fake_stripe.pay("cs_test_1")

    res = client.post("/api/digital-products/checkout/verify-session", json={"sessionId": "cs_test_1"})
    assert res.status_code == 200, res.text
    data = res.json()["data"]
    assert data["message"] == "Purchase completed successfully"
    assert data["purchase"]["status"] == "completed"
    assert data["purchase"]["amount"] == 29.99
    assert data["product"]["files"][0]["original_name"] == "course.pdf"

    stored = db["digitalproduct"].find_one({"_id": ObjectId(published["_id"])})
    assert len(stored["purchases"]) == 1
    assert stored["sales"] == 1
    assert stored["revenue"] == 29.99

    buyer = db["user"].find_one({"email": "buyer@example.com"})
    assert buyer["name"] == "Bea Buyer"
    assert buyer["password_hash"] is None

    res = client.post("/api/digital-products/checkout/verify-session", json={"sessionId": "cs_test_1"})
    assert res.json()["data"]["message"] == "Purchase already processed"

    event = {"id": "evt_1", "type": "checkout.session.completed", "data": {"object": session}}
    assert signed_webhook(client, event).status_code == 200
    assert signed_webhook(client, event).status_code == 200

    stored = db["digitalproduct"].find_one({"_id": ObjectId(published["_id"])})
    assert len(stored["purchases"]) == 1
    assert stored["sales"] == 1
    assert stored["revenue"] == 29.99

    notes = list(db["notification"].find({"user": buyer["_id"]}))
    assert [n["type"] for n in notes] == ["payment_successful"]

    token = data["downloadToken"]
    res = client.get(f"/api/digital-products/download/test-course/{published['file_id']}?token={token}")
    assert res.status_code == 200
    assert res.content == b"%PDF-1.4 course"
    assert res.headers["cache-control"] == "no-cache, no-store, must-revalidate"

    res = client.get(f"/api/digital-products/download/test-course/{published['file_id']}?email=buyer@example.com")
    assert res.status_code == 200

    res = client.get("/api/digital-products/purchases?email=buyer@example.com")
    items = res.json()["data"]["purchases"]
    assert len(items) == 1
    assert items[0]["product"]["slug"] == "test-course"

    res = client.get(f"/api/digital-products/{published['_id']}/analytics", headers=creator["headers"])
    analytics = res.json()["data"]["analytics"]
    assert analytics["totalPurchases"] == 1
    assert analytics["totalRevenue"] == 29.99
    assert res.json()["data"]["recentPurchases"][0]["customerEmail"] == "buyer@example.com"


def test_download_access_denied(client, published, fake_stripe):
    url = f"/api/digital-products/download/test-course/{published['file_id']}"
    assert client.get(url).status_code == 400

    res = client.get(f"{url}?email=stranger@example.com")
    assert res.status_code == 403
    assert res.json()["message"] == "Access denied. Purchase required."

    res = client.get(f"{url}?token=anything")
    assert res.status_code == 403

    forged = purchases.generate_download_token(ObjectId(), published["_id"])
    assert client.get(f"{url}?token={forged}").status_code == 403


def test_download_token_checks(client, published, fake_stripe, db):
    checkout(client, "test-course")
    fake_stripe.pay("cs_test_1")
    client.post("/api/digital-products/checkout/verify-session", json={"sessionId": "cs_test_1"})
    product = db["digitalproduct"].find_one({"_id": ObjectId(published["_id"])})
    buyer_id = product["purchases"][0]["user"]

    token = purchases.generate_download_token(buyer_id, product["_id"])
    assert purchases.verify_download_token(token, product)

    expired = purchases.generate_download_token(buyer_id, product["_id"], now=time.time() - 10 * 24 * 3600)
    assert not purchases.verify_download_token(expired, product)

    user_id, expires, signature = token.split(".")
    tampered = f"{user_id}.{int(expires) + 1}.{signature}"
    assert not purchases.verify_download_token(tampered, product)

    other = dict(product, _id=ObjectId())
    assert not purchases.verify_download_token(token, other)
    assert not purchases.verify_download_token("garbage", product)


def test_purchases_requires_email(client):
    res = client.get("/api/digital-products/purchases")
    assert res.status_code == 400
    assert res.json()["message"] == "Email is required"


def test_analytics_owner_only(client, published, admin):
    res = client.get(f"/api/digital-products/{published['_id']}/analytics", headers=admin["headers"])
    assert res.status_code == 404
