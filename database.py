"""
MongoDB access for the directory backend.

Collections: user, shop, product, review, activity (append-only).
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, TEXT, MongoClient
from pymongo.database import Database

from errors import NotFoundError

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "eastlify")

# MongoClient connects lazily, so importing this module never blocks
client = MongoClient(DATABASE_URL, tz_aware=True)
db = client[DATABASE_NAME]


def get_db() -> Database:
    """FastAPI dependency; tests override it with a mongomock database."""
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Union[str, ObjectId], what: str = "Document") -> ObjectId:
    # An id that does not parse cannot exist in the store
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFoundError(f"{what} not found")


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    out = {}
    for key, value in doc.items():
        if key == "_id":
            out["id"] = str(value)
        else:
            out[key] = _serialize_value(value)
    return out


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    """Insert a document stamped with created_at/updated_at and return it with its _id."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc.setdefault("updated_at", stamp)
    result = database[collection_name].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {}).sort("created_at", DESCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["shop"].create_index([("name", TEXT), ("description", TEXT), ("categories", TEXT)])
    database["shop"].create_index([("street", ASCENDING), ("categories", ASCENDING)])
    database["shop"].create_index([("owner_id", ASCENDING)], unique=True)
    database["product"].create_index([("name", TEXT), ("description", TEXT), ("tags", TEXT)])
    database["product"].create_index([("shop_id", ASCENDING), ("category", ASCENDING)])
    database["product"].create_index([("price", ASCENDING)])
    database["review"].create_index([("shop_id", ASCENDING), ("created_at", DESCENDING)])
    database["review"].create_index([("shop_id", ASCENDING), ("rating", ASCENDING)])
    database["activity"].create_index([("shop_id", ASCENDING), ("created_at", DESCENDING)])
