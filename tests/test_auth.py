import pytest
from pymongo.errors import DuplicateKeyError

from conftest import auth, signup

from auth import hash_password, verify_password
from database import ensure_indexes


def test_password_hashing():
    password_hash, salt = hash_password("correct horse")
    assert verify_password("correct horse", password_hash, salt)
    assert not verify_password("wrong horse", password_hash, salt)
    assert not verify_password("correct horse", None, None)


def test_signup_returns_token_without_secrets(client):
    token, user = signup(client, email="Someone@Example.com")
    assert token
    assert user["email"] == "someone@example.com"
    assert "password_hash" not in user
    assert "salt" not in user
    assert user["subscription"]["plan"] == "free"


def test_signup_rejects_duplicates_and_short_passwords(client):
    signup(client)
    res = client.post("/api/auth/signup", json={"name": "X", "email": "creator@example.com", "password": "password123"})
    assert res.status_code == 400
    assert res.json() == {"status": "error", "statusCode": 400, "message": "Email already registered"}

    res = client.post("/api/auth/signup", json={"name": "X", "email": "new@example.com", "password": "short"})
    assert res.status_code == 400


def test_login_and_me(client):
    signup(client)
    res = client.post("/api/auth/login", json={"email": "creator@example.com", "password": "wrong-password"})
    assert res.status_code == 401

    res = client.post("/api/auth/login", json={"email": "creator@example.com", "password": "password123"})
    assert res.status_code == 200
    token = res.json()["token"]

    res = client.get("/api/auth/me", headers=auth(token))
    assert res.status_code == 200
    assert res.json()["data"]["user"]["email"] == "creator@example.com"


def test_missing_and_invalid_tokens(client):
    assert client.get("/api/auth/me").json()["message"] == "Missing token"
    res = client.get("/api/auth/me", headers=auth("nope"))
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid token"


def test_admin_routes_require_admin(client, creator):
    res = client.get("/api/auth/all-users", headers=creator["headers"])
    assert res.status_code == 403
    assert res.json()["message"] == "Admin access required"


def test_validation_errors_use_error_envelope(client):
    res = client.post("/api/auth/login", json={"email": "x@example.com"})
    assert res.status_code == 400
    assert res.json()["status"] == "error"


def test_unique_email_index(db):
    ensure_indexes(db)
    db["user"].insert_one({"email": "dup@example.com"})
    with pytest.raises(DuplicateKeyError):
        db["user"].insert_one({"email": "dup@example.com"})
