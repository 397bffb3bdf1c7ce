import logging

import pytest
from bson import ObjectId

from conftest import create_product, signed_webhook

import notifications
import products
import webhooks


@pytest.fixture
def product(client, creator):
    product = create_product(client, creator["headers"])
    client.patch(f"/api/digital-products/{product['_id']}/toggle-published", headers=creator["headers"])
    return product


def session_event(product_id, session_id="cs_hook_1", payment_status="paid", payment_intent="pi_hook_1"):
    return {
        "id": f"evt_{session_id}",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_status": payment_status,
                "amount_total": 2999,
                "customer_email": "hook@example.com",
                "payment_intent": payment_intent,
                "metadata": {
                    "productId": product_id,
                    "customerEmail": "hook@example.com",
                    "customerFirstName": "Hook",
                    "customerLastName": "Buyer",
                },
            }
        },
    }


def event(event_type, obj):
    return {"id": "evt_x", "type": event_type, "data": {"object": obj}}


def stored(db, product):
    return db["digitalproduct"].find_one({"_id": ObjectId(product["_id"])})


def test_bad_signature_rejected(client, product, db):
    res = signed_webhook(client, session_event(product["_id"]), secret="whsec_wrong")
    assert res.status_code == 400
    assert res.json()["message"].startswith("Webhook Error:")
    assert stored(db, product)["purchases"] == []


def test_missing_signature_rejected(client, product):
    res = client.post("/api/webhooks/stripe-digital-products", content=b"{}")
    assert res.status_code == 400


def test_unhandled_event_acknowledged(client, product):
    res = signed_webhook(client, event("customer.created", {"id": "cus_1"}))
    assert res.status_code == 200
    assert res.json() == {"received": True}


def test_checkout_completed_records_once(client, product, db):
    assert signed_webhook(client, session_event(product["_id"])).json() == {"received": True}
    assert signed_webhook(client, session_event(product["_id"])).status_code == 200

    doc = stored(db, product)
    assert len(doc["purchases"]) == 1
    assert doc["purchases"][0]["status"] == "completed"
    assert doc["purchases"][0]["stripe_payment_intent_id"] == "pi_hook_1"
    assert doc["sales"] == 1
    assert doc["revenue"] == 29.99


def test_unknown_product_is_acknowledged(client, product, db):
    res = signed_webhook(client, session_event(str(ObjectId())))
    assert res.status_code == 200
    assert stored(db, product)["purchases"] == []


def test_unpaid_session_then_payment_succeeded(client, product, db):
    signed_webhook(client, session_event(product["_id"], payment_status="unpaid"))
    doc = stored(db, product)
    assert doc["purchases"][0]["status"] == "pending"
    assert doc["sales"] == 0

    signed_webhook(client, event("payment_intent.succeeded", {"id": "pi_hook_1"}))
    signed_webhook(client, event("payment_intent.succeeded", {"id": "pi_hook_1"}))
    doc = stored(db, product)
    assert doc["purchases"][0]["status"] == "completed"
    assert doc["sales"] == 1
    assert doc["revenue"] == 29.99


def test_payment_failed_reverses_counters(client, product, db):
    signed_webhook(client, session_event(product["_id"]))
    signed_webhook(client, event("payment_intent.payment_failed", {"id": "pi_hook_1"}))

    doc = stored(db, product)
    assert doc["purchases"][0]["status"] == "failed"
    assert doc["sales"] == 0
    assert doc["revenue"] == 0

    buyer = db["user"].find_one({"email": "hook@example.com"})
    types = sorted(n["type"] for n in db["notification"].find({"user": buyer["_id"]}))
    assert types == ["payment_failed", "payment_successful"]


def test_dispute_reverses_counters(client, product, creator, db):
    signed_webhook(client, session_event(product["_id"]))
    dispute = {"id": "dp_1", "reason": "fraudulent", "charge": {"id": "ch_1", "payment_intent": "pi_hook_1"}}
    signed_webhook(client, event("charge.dispute.created", dispute))
    signed_webhook(client, event("charge.dispute.created", dispute))

    doc = stored(db, product)
    purchase = doc["purchases"][0]
    assert purchase["status"] == "disputed"
    assert purchase["dispute_id"] == "dp_1"
    assert purchase["dispute_reason"] == "fraudulent"
    assert doc["sales"] == 0
    assert doc["revenue"] == 0

    creator_id = ObjectId(creator["user"]["_id"])
    assert db["notification"].count_documents({"user": creator_id, "type": "payment_update"}) == 1


def test_refund_reverses_counters(client, product, db):
    signed_webhook(client, session_event(product["_id"]))
    signed_webhook(client, event("charge.refunded", {"id": "ch_1", "payment_intent": "pi_hook_1"}))

    doc = stored(db, product)
    assert doc["purchases"][0]["status"] == "refunded"
    assert doc["sales"] == 0


def test_sessions_are_independent(client, product, db):
    signed_webhook(client, session_event(product["_id"], session_id="cs_a", payment_intent="pi_a"))
    signed_webhook(client, session_event(product["_id"], session_id="cs_b", payment_intent="pi_b"))
    signed_webhook(client, event("charge.refunded", {"id": "ch_b", "payment_intent": "pi_b"}))

    doc = stored(db, product)
    assert [p["status"] for p in doc["purchases"]] == ["completed", "refunded"]
    assert doc["sales"] == 1
    assert doc["revenue"] == 29.99


def seeded_product(db, purchases, sales=0, revenue=0.0):
    doc = {
        "_id": ObjectId(),
        "name": "Seeded",
        "creator": ObjectId(),
        "sales": sales,
        "revenue": revenue,
        "purchases": [
            {"_id": ObjectId(), "stripe_payment_intent_id": pi, "status": status, "amount": 10.0}
            for pi, status in purchases
        ],
    }
    db["digitalproduct"].insert_one(doc)
    return doc


def test_transition_matches_key_and_status_on_the_same_purchase(db):
    # key on one purchase and a pending status on another must not match
    decoy = seeded_product(db, [("pi_shared", "completed"), ("pi_other", "pending")], sales=1, revenue=10.0)
    target = seeded_product(db, [("pi_shared", "pending")])

    result = products.transition_purchase("stripe_payment_intent_id", "pi_shared", ["pending"], "completed")
    assert result is not None
    product, purchase = result
    assert product["_id"] == target["_id"]
    assert purchase["status"] == "pending"

    stored = db["digitalproduct"].find_one({"_id": target["_id"]})
    assert stored["purchases"][0]["status"] == "completed"
    assert stored["sales"] == 1
    untouched = db["digitalproduct"].find_one({"_id": decoy["_id"]})
    assert [p["status"] for p in untouched["purchases"]] == ["completed", "pending"]
    assert untouched["sales"] == 1


def test_handler_failure_returns_500(client, product, monkeypatch):
    def boom(obj):
        raise RuntimeError("database down")

    monkeypatch.setitem(webhooks.HANDLERS, webhooks.StripeEventType.charge_refunded, boom)
    res = signed_webhook(client, event("charge.refunded", {"id": "ch_1", "payment_intent": "pi_1"}))
    assert res.status_code == 500
    assert res.json() == {"error": "Webhook processing failed"}


def test_purchase_confirmation_email_is_logged(client, product, caplog):
    with caplog.at_level(logging.INFO, logger="notifications"):
        signed_webhook(client, session_event(product["_id"]))
    assert any("Email to hook@example.com" in r.getMessage() for r in caplog.records)
    assert notifications.send_email("x@example.com", "Hi", "Body") is True
