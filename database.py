"""
MongoDB access for the Dose Schedule service

The connection is configured from DATABASE_URL and DATABASE_NAME. When they
are not set ``db`` stays None and every helper raises, which the API turns
into a 500 response.
"""
import logging
import os
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None

if DATABASE_URL and DATABASE_NAME:
    try:
        _client = MongoClient(DATABASE_URL, tz_aware=False)
        db = _client[DATABASE_NAME]
        db["doselog"].create_index([("regimen_id", ASCENDING), ("scheduled_time", ASCENDING)])
        db["regimen"].create_index([("is_active", ASCENDING), ("start_date", ASCENDING)])
        logger.info("MongoDB connected: %s", DATABASE_NAME)
    except Exception as e:
        logger.error("Failed to connect to MongoDB: %s", e)
        db = None
else:
    logger.warning("DATABASE_URL/DATABASE_NAME not set; database operations will be disabled")


def _require_db():
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def _to_bson(value):
    if isinstance(value, dict):
        return {k: _to_bson(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_bson(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time())
    return value


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id."""
    database = _require_db()
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(mode="python", exclude_none=True)
    else:
        data_dict = dict(data)
    data_dict = _to_bson(data_dict)
    data_dict.pop("id", None)
    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None) -> List[Dict[str, Any]]:
    database = _require_db()
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def update_document(collection_name: str, filter_dict: Dict[str, Any], updates: Dict[str, Any]) -> int:
    """Set ``updates`` on the first matching document; returns the match count."""
    database = _require_db()
    data_dict = _to_bson(dict(updates))
    data_dict.pop("id", None)
    data_dict["updated_at"] = datetime.now(timezone.utc)
    result = database[collection_name].update_one(filter_dict, {"$set": data_dict})
    return result.matched_count


def delete_document(collection_name: str, filter_dict: Dict[str, Any]) -> int:
    database = _require_db()
    result = database[collection_name].delete_one(filter_dict)
    return result.deleted_count
