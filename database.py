"""
MongoDB access for the storefront.

`db` is None when DATABASE_URL / DATABASE_NAME are not configured; routes
reach the database through the `get_db` dependency so tests can swap it.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Union

from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

import config

logger = logging.getLogger(__name__)

client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]


def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database=None) -> str:
    """Insert one document, stamping created_at/updated_at. Returns the new id as a string."""
    database = database if database is not None else get_db()
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    stamp = now_utc()
    doc.setdefault("created_at", stamp)
    doc["updated_at"] = stamp
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def ensure_indexes(database) -> None:
    """Create the uniqueness and lookup indexes the collections rely on."""
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["category"].create_index([("name", ASCENDING)], unique=True)
    database["category"].create_index([("slug", ASCENDING)], unique=True)
    database["category"].create_index([("parent", ASCENDING)])
    database["product"].create_index([("slug", ASCENDING)], unique=True)
    database["product"].create_index([("category", ASCENDING)])
    database["review"].create_index([("product", ASCENDING), ("user", ASCENDING)], unique=True)
    logger.info("Database indexes ensured")
