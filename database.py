"""
MongoDB access for the store.

A single process-wide client is created from DATABASE_URL/DATABASE_NAME.
When either is unset ``db`` stays None and request handlers report the
datastore as unavailable.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

import config
from errors import InvalidIdError, ServiceUnavailableError

logger = logging.getLogger(__name__)

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(
        config.DATABASE_URL,
        serverSelectionTimeoutMS=config.DB_TIMEOUT_MS,
        timeoutMS=config.DB_TIMEOUT_MS,
    )
    db = _client[config.DATABASE_NAME]


def get_db():
    """FastAPI dependency returning the database handle."""
    if db is None:
        raise ServiceUnavailableError()
    return db


def get_optional_db():
    """Like get_db, but hands None to callers that have a degraded path."""
    return db


def utcnow() -> datetime:
    # Naive UTC, matching what pymongo hands back on reads
    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_object_id(value: Any) -> bool:
    if isinstance(value, ObjectId):
        return True
    return isinstance(value, str) and ObjectId.is_valid(value)


def parse_object_id(value: Any, what: str = "ID") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not is_object_id(value):
        raise InvalidIdError(str(value), what)
    return ObjectId(value)


def serialize_doc(doc: Any) -> Any:
    """Make a stored document JSON friendly: _id -> id, ObjectId -> str."""
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    if isinstance(doc, dict):
        out = {}
        for key, value in doc.items():
            if key == "_id":
                out["id"] = serialize_doc(value)
            else:
                out[key] = serialize_doc(value)
        return out
    return doc


def create_document(database, collection_name: str, data) -> str:
    """Insert a model or dict, stamping createdAt/updatedAt. Returns the new id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True, exclude_none=True)
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("createdAt", now)
    doc["updatedAt"] = now
    inserted_id = database[collection_name].insert_one(doc).inserted_id
    return str(inserted_id)


def paginate(collection, filt: Dict[str, Any], page: int, limit: int, sort, projection=None) -> tuple[list, dict]:
    """Run a paged query; returns (documents, pagination block)."""
    total = collection.count_documents(filt)
    cursor = collection.find(filt, projection).sort(sort).skip((page - 1) * limit).limit(limit)
    items = list(cursor)
    total_pages = (total + limit - 1) // limit
    return items, {
        "currentPage": page,
        "totalPages": total_pages,
        "totalItems": total,
        "itemsPerPage": limit,
        "hasNextPage": page < total_pages,
        "hasPrevPage": page > 1,
    }


def ensure_indexes(database) -> None:
    database["order"].create_index("orderNumber", unique=True)
    database["order"].create_index("customerId")
    database["order"].create_index([("createdAt", DESCENDING)])
    database["order"].create_index("orderStatus")
    database["order"].create_index("paymentStatus")
    database["product"].create_index([("category", ASCENDING), ("status", ASCENDING)])
    database["product"].create_index("seo.slug")
    database["user"].create_index("email", unique=True)


def ping(database) -> bool:
    try:
        database.command("ping")
        return True
    except Exception as e:
        logger.warning("Database ping failed: %s", e)
        return False
