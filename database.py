"""
MongoDB connection and document helpers.

The module-level ``db`` is None when DATABASE_URL / DATABASE_NAME are not
configured; routes report that as a database error instead of crashing.
"""
import logging
import re
from datetime import datetime
from typing import Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from exceptions import DatabaseError, NotFoundError
from settings import get_settings

logger = logging.getLogger(__name__)


def _connect() -> Optional[Database]:
    settings = get_settings()
    if not settings.database_url or not settings.database_name:
        logger.warning("DATABASE_URL or DATABASE_NAME not set, running without a database")
        return None
    client = MongoClient(settings.database_url, tz_aware=False)
    return client[settings.database_name]


db: Optional[Database] = _connect()


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise DatabaseError("Database not configured")
    return db


def collection_name(model: Union[type, BaseModel]) -> str:
    """ReadHistory -> read_history."""
    name = model.__name__ if isinstance(model, type) else type(model).__name__
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def create_document(database: Database, data: BaseModel, **extra) -> dict:
    """Insert a validated model into its collection and return the stored doc."""
    now = datetime.utcnow()
    doc = data.model_dump()
    doc.update(extra)
    doc.update({"created_at": now, "updated_at": now})
    res = database[collection_name(data)].insert_one(doc)
    doc["_id"] = res.inserted_id
    return doc


def get_documents(database: Database, collection: str, filters: Optional[dict] = None,
                  sort=None, limit: int = 0, skip: int = 0) -> list:
    cursor = database[collection].find(filters or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def to_object_id(value: str, kind: str = "Record") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFoundError(f"{kind} not found", {"id": value})


def find_by_id(database: Database, collection: str, doc_id: str, kind: str) -> dict:
    doc = database[collection].find_one({"_id": to_object_id(doc_id, kind)})
    if not doc:
        raise NotFoundError(f"{kind} not found", {"id": doc_id})
    return doc


def serialize_doc(doc: dict) -> dict:
    doc["id"] = str(doc.pop("_id"))
    return doc


def ensure_indexes(database: Database) -> None:
    """Create collection indexes (idempotent)."""
    database["user"].create_index("email", unique=True)
    database["user"].create_index("wallet.account_id")

    database["comic"].create_index([("creator", ASCENDING), ("created_at", DESCENDING)])
    database["comic"].create_index("status")
    database["comic"].create_index("genres")

    database["episode"].create_index([("comic", ASCENDING), ("episode_number", ASCENDING)], unique=True)
    database["episode"].create_index("collection_token_id")
    database["episode"].create_index([("creator", ASCENDING), ("status", ASCENDING)])
    database["episode"].create_index([("status", ASCENDING), ("is_live", ASCENDING)])
    database["episode"].create_index([("published_at", DESCENDING)])
    database["episode"].create_index("minted_nfts.owner")

    # One record per (user, comic, episode); episode None tracks the whole comic
    database["read_history"].create_index(
        [("user", ASCENDING), ("comic", ASCENDING), ("episode", ASCENDING)], unique=True
    )
    database["read_history"].create_index([("user", ASCENDING), ("last_accessed_at", DESCENDING)])

    database["listing"].create_index([("status", ASCENDING), ("listing_type", ASCENDING)])
    database["listing"].create_index([("episode_id", ASCENDING), ("serial_number", ASCENDING)])
    database["listing"].create_index("seller")

    database["marketplace_transaction"].create_index([("status", ASCENDING), ("type", ASCENDING)])

    database["reconciliation_entry"].create_index([("status", ASCENDING), ("episode_id", ASCENDING)])
    logger.debug("Indexes ensured on %s", database.name)
