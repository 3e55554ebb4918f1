"""
MongoDB access for the marketplace.

Collections:
- account    -> Account documents (schemas.Account)
- restaurant -> Restaurant documents, unique on owner_id
- product    -> Product documents
- order      -> Order documents, versioned for compare-and-swap updates
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import Unavailable

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL, tz_aware=True)
    db = _client[DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise Unavailable("Database not configured")
    return db


def ensure_indexes(database: Database) -> None:
    """Create the indexes the services rely on. Safe to call repeatedly."""
    database["account"].create_index("email", unique=True)
    # one restaurant per merchant; closes the lookup-then-insert race
    database["restaurant"].create_index("owner_id", unique=True)
    database["product"].create_index("restaurant_id")
    database["order"].create_index([("customer_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index("items.restaurant_id")
    logger.info("Indexes ensured on %s", database.name)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id as a string."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  sort: Optional[List] = None, skip: int = 0, limit: int = 0) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
