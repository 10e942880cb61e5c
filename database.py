"""
MongoDB helpers.

Collections are named after the lowercased schema class (User -> "user").
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import Settings

logger = logging.getLogger(__name__)


def connect(settings: Settings) -> Database:
    client = MongoClient(settings.database_url, tz_aware=True)
    return client[settings.database_name]


def ensure_indexes(db: Database) -> None:
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["user"].create_index([("reset_password_token", ASCENDING)])
    db["order"].create_index([("order_number", ASCENDING)], unique=True)
    db["order"].create_index([("idempotency_key", ASCENDING)], unique=True)
    # set only once an order is paid, so unpaid orders stay out of the index
    db["order"].create_index([("payment_reference", ASCENDING)], unique=True, sparse=True)
    db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["product"].create_index([("category", ASCENDING)])
    db["coupon"].create_index([("code", ASCENDING)], unique=True)
    db["cart"].create_index([("user_id", ASCENDING)], unique=True)
    db["checkout"].create_index([("user_id", ASCENDING)], unique=True)
    logger.info("Indexes ensured on %s", db.name)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive datetimes unless the client is tz-aware."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc
