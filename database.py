"""
MongoDB connection and collection helpers.

Collections (lowercase of the schema class names in ``schemas``):
- User -> user
- Video -> video
- Comment -> comment
- Like -> like
- Subscription -> subscription
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database

from config import Settings
from errors import ValidationError

logger = logging.getLogger(__name__)

USER = "user"
VIDEO = "video"
COMMENT = "comment"
LIKE = "like"
SUBSCRIPTION = "subscription"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def connect(settings: Settings) -> MongoClient:
    client = MongoClient(settings.mongodb_uri, tz_aware=True)
    logger.info("MongoDB client created for database %s", settings.database_name)
    return client


def ensure_indexes(db: Database) -> None:
    """Create the indexes the uniqueness invariants and the report pipelines rely on."""
    db[USER].create_index("username", unique=True)
    db[USER].create_index("email", unique=True)
    db[VIDEO].create_index([("owner", ASCENDING), ("createdAt", DESCENDING)])
    db[COMMENT].create_index([("video", ASCENDING), ("createdAt", DESCENDING)])
    db[LIKE].create_index(
        [("likedBy", ASCENDING), ("kind", ASCENDING), ("target", ASCENDING)],
        unique=True,
    )
    db[LIKE].create_index([("target", ASCENDING), ("kind", ASCENDING)])
    db[SUBSCRIPTION].create_index(
        [("subscriber", ASCENDING), ("channel", ASCENDING)],
        unique=True,
    )
    db[SUBSCRIPTION].create_index("channel")


def create_document(collection: Collection, data: dict) -> dict:
    """Insert ``data`` with timestamps and return it with its new ``_id``."""
    now = utcnow()
    doc = {**data, "createdAt": now, "updatedAt": now}
    doc["_id"] = collection.insert_one(doc).inserted_id
    return doc


def is_object_id(value: Optional[str]) -> bool:
    return isinstance(value, str) and len(value) == 24 and ObjectId.is_valid(value)


def objid(id_str: str, label: str = "") -> ObjectId:
    if not is_object_id(id_str):
        raise ValidationError(f"Invalid {label} ID" if label else "Invalid id format")
    return ObjectId(id_str)
