import hashlib
import hmac
import json
import time

import mongomock
import pytest
from fastapi.testclient import TestClient

import config
import database
import main

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def db(monkeypatch):
    test_db = mongomock.MongoClient()["ascend_test"]
    monkeypatch.setattr(database, "db", test_db)
    return test_db


@pytest.fixture
def settings(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "UPLOAD_ROOT", str(tmp_path / "uploads"))
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(config, "STRIPE_DIGITAL_PRODUCT_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(config, "DOWNLOAD_TOKEN_SECRET", "download-secret")
    monkeypatch.setattr(config, "FRONTEND_URL", "http://frontend.test")
    return config


@pytest.fixture
def client(db, settings):
    return TestClient(main.app)


def signup(client, email="creator@example.com", name="Creator", password="password123"):
    res = client.post("/api/auth/signup", json={"name": name, "email": email, "password": password})
    assert res.status_code == 200, res.text
    body = res.json()
    return body["token"], body["user"]


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def creator(client):
    token, user = signup(client)
    return {"token": token, "user": user, "headers": auth(token)}


@pytest.fixture
def admin(client, db):
    token, user = signup(client, email="admin@example.com", name="Admin")
    db["user"].update_one({"email": "admin@example.com"}, {"$set": {"role": "admin"}})
    return {"token": token, "user": user, "headers": auth(token)}


def signed_webhook(client, event, secret=WEBHOOK_SECRET, timestamp=None):
    payload = json.dumps(event)
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return client.post(
        "/api/webhooks/stripe-digital-products",
        content=payload,
        headers={"stripe-signature": f"t={timestamp},v1={signature}", "content-type": "application/json"},
    )


def create_product(client, headers, **overrides):
    data = {
        "name": "Test Course",
        "description": "Learn everything about testing",
        "price": 29.99,
        "category": "Course",
    }
    data.update(overrides)
    res = client.post("/api/digital-products", json=data, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()["data"]["product"]
