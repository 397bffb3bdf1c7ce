import pytest
from bson import ObjectId

from conftest import auth

import plans
from database import utcnow


@pytest.fixture
def referred(client, creator, db):
    code = creator["user"]["referral_code"]
    res = client.post(
        "/api/auth/signup",
        json={"name": "Friend", "email": "friend@example.com", "password": "password123", "referralCode": code.lower()},
    )
    assert res.status_code == 200, res.text
    body = res.json()
    return {"token": body["token"], "user": body["user"], "headers": auth(body["token"])}


def set_plan(client, admin, user_id, **body):
    return client.put(f"/api/admin/users/{user_id}/subscription", json=body, headers=admin["headers"])


def seed_earning(db, user_id, status="pending", cents=1000):
    return db["earning"].insert_one({
        "user": user_id,
        "referred_user": ObjectId(),
        "source": "subscription_purchase",
        "gross_amount": cents * 10,
        "commission_rate": 0.1,
        "commission_amount": cents,
        "status": status,
        "payout": None,
        "created_at": utcnow(),
    }).inserted_id


def test_commission_rates():
    assert plans.calculate_commission(1200, plans.commission_rate("pro")) == 480
    assert plans.calculate_commission(1200, plans.commission_rate("pro", renewal=True)) == 240
    assert plans.commission_rate("free") == 0


def test_signup_with_referral_code(creator, referred, db):
    assert creator["user"]["referral_code"]
    friend = db["user"].find_one({"email": "friend@example.com"})
    assert friend["referred_by"] == ObjectId(creator["user"]["_id"])
    assert friend["referral_code"] != creator["user"]["referral_code"]


def test_signup_with_unknown_referral_code(client):
    res = client.post(
        "/api/auth/signup",
        json={"name": "X", "email": "x@example.com", "password": "password123", "referralCode": "NOPE"},
    )
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid referral code"


def test_paid_subscription_earns_commission(client, admin, creator, referred, db):
    assert set_plan(client, admin, referred["user"]["_id"], planName="pro").status_code == 200

    earning = db["earning"].find_one({})
    assert earning["user"] == ObjectId(creator["user"]["_id"])
    assert earning["referred_user"] == ObjectId(referred["user"]["_id"])
    assert earning["source"] == "subscription_purchase"
    assert earning["gross_amount"] == 1200
    assert earning["commission_amount"] == 480
    assert earning["status"] == "approved"
    assert db["notification"].count_documents({"type": "earning_created"}) == 1

    res = client.get("/api/earnings/summary", headers=creator["headers"])
    data = res.json()["data"]
    assert data["summary"]["approved"] == {"total": 480, "count": 1}
    assert data["availableBalance"] == 480
    assert data["canRequestPayout"] is False


def test_gifted_subscription_earns_nothing(client, admin, referred, db):
    set_plan(client, admin, referred["user"]["_id"], planName="empire", isGifted=True)
    assert db["earning"].count_documents({}) == 0

    url = f"/api/admin/users/{referred['user']['_id']}/subscription"
    client.post(f"{url}/cancel", headers=admin["headers"])
    client.post(f"{url}/reactivate", headers=admin["headers"])
    assert db["earning"].count_documents({}) == 0


def test_unreferred_subscription_earns_nothing(client, admin, creator, db):
    set_plan(client, admin, creator["user"]["_id"], planName="pro")
    assert db["earning"].count_documents({}) == 0


def test_reactivation_earns_renewal_commission(client, admin, referred, db):
    set_plan(client, admin, referred["user"]["_id"], planName="pro")
    url = f"/api/admin/users/{referred['user']['_id']}/subscription"
    client.post(f"{url}/cancel", headers=admin["headers"])
    assert client.post(f"{url}/reactivate", headers=admin["headers"]).status_code == 200

    renewal = db["earning"].find_one({"source": "subscription_renewal"})
    assert renewal["commission_amount"] == 240
    assert renewal["commission_rate"] == 0.2


def test_list_and_get_earnings(client, admin, creator, referred, db):
    set_plan(client, admin, referred["user"]["_id"], planName="starter")
    seed_earning(db, ObjectId(creator["user"]["_id"]), status="pending")

    body = client.get("/api/earnings", headers=creator["headers"]).json()
    assert body["totalResults"] == 2
    assert body["data"]["summary"]["pending"]["count"] == 1

    approved = client.get("/api/earnings?status=approved", headers=creator["headers"]).json()
    assert approved["totalResults"] == 1
    earning = approved["data"]["earnings"][0]
    assert earning["commission_amount"] == 200

    res = client.get(f"/api/earnings/{earning['_id']}", headers=creator["headers"])
    assert res.json()["data"]["earning"]["description"] == "Subscription commission for Starter plan"
    assert client.get(f"/api/earnings/{earning['_id']}", headers=referred["headers"]).status_code == 404


def test_admin_earning_review(client, admin, creator, db):
    user_id = ObjectId(creator["user"]["_id"])
    pending = seed_earning(db, user_id, status="pending")
    base = f"/api/earnings/admin/{pending}"

    res = client.put(f"{base}/approve", headers=admin["headers"])
    assert res.status_code == 200
    assert res.json()["data"]["earning"]["approved_by"] == admin["user"]["_id"]
    assert client.put(f"{base}/approve", headers=admin["headers"]).status_code == 400

    res = client.put(f"{base}/dispute", json={"reason": "chargeback"}, headers=admin["headers"])
    assert res.json()["data"]["earning"]["notes"] == "chargeback"
    assert client.put(f"{base}/cancel", headers=admin["headers"]).status_code == 200

    reserved = seed_earning(db, user_id, status="approved")
    db["earning"].update_one({"_id": reserved}, {"$set": {"payout": ObjectId()}})
    assert client.put(f"/api/earnings/admin/{reserved}/cancel", headers=admin["headers"]).status_code == 400

    res = client.get(f"/api/earnings/admin/all?userId={creator['user']['_id']}", headers=admin["headers"])
    assert res.json()["totalResults"] == 2
    assert client.put(f"/api/earnings/admin/{ObjectId()}/approve", headers=admin["headers"]).status_code == 404
    assert client.get("/api/earnings/admin/all", headers=creator["headers"]).status_code == 403


def test_payout_statistics_include_earnings(client, admin, creator, db):
    seed_earning(db, ObjectId(creator["user"]["_id"]), status="approved", cents=700)
    seed_earning(db, ObjectId(creator["user"]["_id"]), status="cancelled", cents=300)
    res = client.get("/api/admin/payouts/statistics", headers=admin["headers"])
    assert res.json()["data"]["earningsStats"] == {"totalEarnings": 700, "totalEarningsCount": 1}
