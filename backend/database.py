import logging
import math
import re
import time
from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

import config
from errors import NotFound

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
_db = None

INDEXES = {
    "user": [("username", ASCENDING), ("email", ASCENDING), ("status", ASCENDING)],
    "question": [
        ("type", ASCENDING), ("difficulty", ASCENDING), ("category", ASCENDING),
        ("tags", ASCENDING), ("creator", ASCENDING), ("status", ASCENDING),
        ("isPublic", ASCENDING), ("createdAt", DESCENDING), ("usage.totalAttempts", DESCENDING),
    ],
    "mistake": [
        ("user", ASCENDING), ("question", ASCENDING), ("reviewStatus", ASCENDING),
        ("reviewInfo.nextReviewDate", ASCENDING), ("importance", ASCENDING),
        ("masteryLevel", ASCENDING), ("tags", ASCENDING), ("metadata.isArchived", ASCENDING),
        ("questionSnapshot.type", ASCENDING), ("questionSnapshot.category", ASCENDING),
    ],
    "exam_record": [
        ("user", ASCENDING), ("result.score", ASCENDING), ("result.grade", ASCENDING),
        ("startTime", DESCENDING), ("metadata.source", ASCENDING),
    ],
}


def get_db():
    global _client, _db
    if _db is None:
        _client = MongoClient(config.DATABASE_URL)
        _db = _client[config.DATABASE_NAME]
    return _db


def set_db(db) -> None:
    """Use an already-built database handle (a mongomock one in tests)."""
    global _db
    _db = db


def mask_url(url: str) -> str:
    return re.sub(r":[^:@/]+@", ":****@", url or "")


def connect_with_retry(max_retries: int | None = None, delay: float | None = None):
    """Ping the server a fixed number of times, then give up and exit."""
    global _client, _db
    max_retries = config.DB_MAX_RETRIES if max_retries is None else max_retries
    delay = config.DB_RETRY_DELAY_SECONDS if delay is None else delay
    logger.info("Connecting to database: %s", mask_url(config.DATABASE_URL))
    for attempt in range(1, max_retries + 1):
        try:
            client = MongoClient(config.DATABASE_URL, serverSelectionTimeoutMS=5000)
            client.admin.command("ping")
            _client = client
            _db = client[config.DATABASE_NAME]
            logger.info("Database connected (%s)", config.DATABASE_NAME)
            return _db
        except PyMongoError as e:
            logger.warning("Database connection failed (attempt %d/%d): %s", attempt, max_retries, e)
            if attempt < max_retries:
                time.sleep(delay)
    logger.error("Giving up on database after %d attempts", max_retries)
    raise SystemExit(1)


def ensure_indexes(db=None) -> None:
    db = db if db is not None else get_db()
    for collection_name, keys in INDEXES.items():
        for key in keys:
            db[collection_name].create_index([key])
    db["exam_record"].create_index("sharing.shareCode", unique=True, sparse=True)
    db["user_data"].create_index("userId", unique=True)


def to_object_id(value: Any, what: str = "Document") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Turn ObjectIds into strings, recursively, so documents can go out as JSON."""
    if doc is None:
        return None
    return _stringify_ids(doc)


def _stringify_ids(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: _stringify_ids(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_stringify_ids(v) for v in value]
    return value


def create_document(collection_name: str, data: Dict[str, Any]) -> ObjectId:
    db = get_db()
    now = datetime.utcnow()
    data.setdefault("createdAt", now)
    data.setdefault("updatedAt", now)
    result = db[collection_name].insert_one(data)
    return result.inserted_id


def paginate(
    collection_name: str,
    query: Dict[str, Any],
    page: int = 1,
    limit: int = 20,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
    projection: Dict[str, Any] | None = None,
) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    db = get_db()
    page = max(1, int(page))
    limit = max(1, int(limit))
    direction = DESCENDING if sort_order == "desc" else ASCENDING
    cursor = (
        db[collection_name]
        .find(query, projection)
        .sort(sort_by, direction)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    docs = [serialize(doc) for doc in cursor]
    total = db[collection_name].count_documents(query)
    return docs, {"total": total, "page": page, "limit": limit, "pages": math.ceil(total / limit)}


def regex_any(fields: List[str], search: str) -> List[Dict[str, Any]]:
    pattern = re.escape(search)
    return [{field: {"$regex": pattern, "$options": "i"}} for field in fields]
