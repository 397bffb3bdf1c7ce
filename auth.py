import hashlib
import logging
import secrets
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, ConfigDict, Field
from pymongo.errors import DuplicateKeyError

from database import create_document, get_db, serialize_doc, to_object_id, utcnow
from errors import create_error
from schemas import Session, User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

PRIVATE_USER_FIELDS = ("password_hash", "salt")


# -----------------
# Utility functions
# -----------------

def hash_password(password: str, salt: Optional[str] = None) -> tuple[str, str]:
    salt = salt or secrets.token_hex(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 100_000)
    return dk.hex(), salt


def verify_password(password: str, password_hash: Optional[str], salt: Optional[str]) -> bool:
    if not password_hash or not salt:
        return False
    computed, _ = hash_password(password, salt)
    return secrets.compare_digest(computed, password_hash)


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return serialize_doc({k: v for k, v in user.items() if k not in PRIVATE_USER_FIELDS})


def new_referral_code() -> str:
    return secrets.token_hex(4).upper()


def issue_token(user_id: str) -> str:
    token = secrets.token_urlsafe(32)
    create_document("session", Session(user_id=user_id, token=token))
    return token


# --------------
# Dependencies
# --------------

def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):].strip() or None


def _user_for_token(token: str) -> dict:
    sess = get_db()["session"].find_one({"token": token})
    if not sess:
        raise create_error(401, "Invalid token")
    user = get_db()["user"].find_one({"_id": to_object_id(sess.get("user_id")), "is_deleted": {"$ne": True}})
    if not user:
        raise create_error(401, "Invalid token")
    return user


def get_current_user(authorization: Optional[str] = Header(default=None)) -> dict:
    token = _bearer_token(authorization)
    if not token:
        raise create_error(401, "Missing token")
    return _user_for_token(token)


def get_optional_user(authorization: Optional[str] = Header(default=None)) -> Optional[dict]:
    token = _bearer_token(authorization)
    if not token:
        return None
    return _user_for_token(token)


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise create_error(403, "Admin access required")
    return user


# -----------------
# Endpoints
# -----------------

class SignupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    email: str
    password: str
    referral_code: Optional[str] = Field(None, alias="referralCode")


class LoginRequest(BaseModel):
    email: str
    password: str


@router.post("/signup")
def signup(payload: SignupRequest):
    email = payload.email.strip().lower()
    if len(payload.password) < 8:
        raise create_error(400, "Password must be at least 8 characters long")
    if get_db()["user"].find_one({"email": email}):
        raise create_error(400, "Email already registered")

    referred_by = None
    if payload.referral_code and payload.referral_code.strip():
        referrer = get_db()["user"].find_one({"referral_code": payload.referral_code.strip().upper()})
        if not referrer:
            raise create_error(400, "Invalid referral code")
        referred_by = referrer["_id"]

    password_hash, salt = hash_password(payload.password)
    try:
        user_id = create_document("user", User(
            name=payload.name.strip(),
            email=email,
            password_hash=password_hash,
            salt=salt,
            referral_code=new_referral_code(),
            referred_by=referred_by,
            last_login=utcnow(),
        ))
    except DuplicateKeyError:
        raise create_error(400, "Email already registered")

    user = get_db()["user"].find_one({"_id": to_object_id(user_id)})
    return {"token": issue_token(user_id), "user": public_user(user)}


@router.post("/login")
def login(payload: LoginRequest):
    user = get_db()["user"].find_one({"email": payload.email.strip().lower(), "is_deleted": {"$ne": True}})
    if not user or not verify_password(payload.password, user.get("password_hash"), user.get("salt")):
        raise create_error(401, "Invalid credentials")

    get_db()["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login": utcnow()}})
    return {"token": issue_token(str(user["_id"])), "user": public_user(user)}


@router.get("/me")
def me(user: dict = Depends(get_current_user)):
    return {"status": "success", "data": {"user": public_user(user)}}


@router.get("/notifications")
def list_notifications(user: dict = Depends(get_current_user)):
    items = list(
        get_db()["notification"].find({"user": user["_id"]}).sort("created_at", -1).limit(50)
    )
    return {"status": "success", "results": len(items), "data": {"notifications": serialize_doc(items)}}
