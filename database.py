"""
MongoDB access

The client is created from DATABASE_URL / DATABASE_NAME. When either is
missing ``db`` stays ``None`` and the API reports the database as unavailable.
Collection name = lowercase model name (Customer -> "customer").
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson.objectid import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

import config
from errors import ValidationError

logger = logging.getLogger(__name__)

CUSTOMERS = "customer"
PRODUCTS = "product"
ORDERS = "order"
MEAL_ORDERS = "meal_order"
PAYMENTS = "payment"

db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    try:
        _client = MongoClient(config.DATABASE_URL)
        db = _client[config.DATABASE_NAME]
    except Exception as e:
        logger.error("Could not create MongoDB client: %s", e)
        db = None


def ensure_indexes(database) -> None:
    database[CUSTOMERS].create_index([("phone", ASCENDING)], unique=True)
    database[PRODUCTS].create_index([("slug", ASCENDING)], unique=True)
    database[ORDERS].create_index([("customer", ASCENDING)])
    database[ORDERS].create_index([("items.product", ASCENDING)])
    database[MEAL_ORDERS].create_index([("customer", ASCENDING), ("date", ASCENDING), ("item", ASCENDING)])
    database[PAYMENTS].create_index([("customer", ASCENDING)])


def now_utc() -> datetime:
    # MongoDB keeps naive UTC datetimes at millisecond precision
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to the naive-UTC form used in storage."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def oid(id_str: Any, field: str = "id") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError("Invalid ID", fields=[{"name": field, "message": "Invalid MongoDB ID format"}])


def is_oid(value: Any) -> bool:
    return isinstance(value, str) and ObjectId.is_valid(value)


def create_document(database, collection_name: str, data) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    doc = dict(data)
    now = now_utc()
    doc.setdefault("createdAt", now)
    doc.setdefault("updatedAt", now)
    res = database[collection_name].insert_one(doc)
    doc["_id"] = res.inserted_id
    return doc
