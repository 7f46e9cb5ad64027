"""
MongoDB access helpers.

`db` is the process-wide database handle. Routes receive it through the
`get_db` dependency so tests can swap in an in-memory database.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import DATABASE_NAME, DATABASE_URL
from errors import InvalidArgument

logger = structlog.get_logger(__name__)

client = MongoClient(DATABASE_URL, tz_aware=True, connect=False)
db = client[DATABASE_NAME]


def get_db() -> Database:
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(id_str: Any) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(str(id_str))
    except (InvalidId, TypeError):
        raise InvalidArgument("Invalid id")


def serialize(doc: Optional[Dict]) -> Optional[Dict]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc["updated_at"] = stamp
    res = database[collection_name].insert_one(doc)
    return str(res.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict] = None,
                  limit: Optional[int] = None, sort: Optional[List] = None) -> List[Dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(d) for d in cursor]


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["user"].create_index([("firebase_uid", ASCENDING)])
    database["address"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["shop"].create_index([("owner_id", ASCENDING)])
    database["shop"].create_index([("is_verified", ASCENDING), ("is_active", ASCENDING)])
    database["shop"].create_index([("categories", ASCENDING)])
    database["shop"].create_index([("location.coordinates", ASCENDING)])
    database["product"].create_index([("shop_id", ASCENDING)])
    database["order"].create_index([("order_number", ASCENDING)], unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("items.shop_id", ASCENDING)])
    database["reservation"].create_index([("reservation_number", ASCENDING)], unique=True)
    database["reservation"].create_index([("shop_id", ASCENDING), ("status", ASCENDING)])
    database["reservation"].create_index([("status", ASCENDING), ("expiry_date", ASCENDING)])
    logger.info("indexes_ensured", database=database.name)
