"""
Database helpers

MongoDB access for the API. The connection is configured from the
environment (DATABASE_URL / DATABASE_NAME); when either is missing `db`
stays None and request handlers fail with a 500 through `get_db()`.
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from errors import create_error

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def utcnow() -> datetime:
    # Mongo hands back naive UTC datetimes, keep everything in that form
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    if db is None:
        raise create_error(500, "Database not configured")
    return db


def to_object_id(value: Union[str, ObjectId], message: str = "Invalid id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise create_error(400, message)


def is_object_id(value: str) -> bool:
    return isinstance(value, str) and ObjectId.is_valid(value) and len(value) == 24


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True)
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = get_db()[collection_name].insert_one(doc)
    return str(result.inserted_id)


def serialize_doc(value: Any) -> Any:
    """Make a Mongo document JSON friendly (ObjectIds become strings)."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize_doc(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_doc(v) for v in value]
    return value


def ensure_indexes(database=None) -> None:
    database = database if database is not None else get_db()
    database["user"].create_index("email", unique=True)
    database["user"].create_index("referral_code")
    database["session"].create_index("token", unique=True)
    database["digitalproduct"].create_index("slug", unique=True, sparse=True)
    database["digitalproduct"].create_index([("creator", ASCENDING), ("is_deleted", ASCENDING)])
    database["digitalproduct"].create_index([("published", ASCENDING), ("is_deleted", ASCENDING)])
    database["digitalproduct"].create_index("purchases.stripe_session_id")
    database["digitalproduct"].create_index("purchases.stripe_payment_intent_id")
    database["chat"].create_index([("user", ASCENDING), ("last_activity", DESCENDING)])
    database["subscription"].create_index("user", unique=True)
    database["payout"].create_index([("user", ASCENDING), ("status", ASCENDING)])
    database["earning"].create_index([("user", ASCENDING), ("status", ASCENDING), ("created_at", ASCENDING)])
    database["earning"].create_index("payout")
    database["notification"].create_index([("user", ASCENDING), ("created_at", DESCENDING)])


def paginate(page: Optional[int], limit: Optional[int], default_limit: int = 10, max_limit: int = 50) -> Dict[str, int]:
    page_num = max(1, int(page or 1))
    limit_num = min(max_limit, max(1, int(limit or default_limit)))
    return {"page": page_num, "limit": limit_num, "skip": (page_num - 1) * limit_num}
