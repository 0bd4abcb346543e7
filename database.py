"""
MongoDB access for the AI Music Player.

``db`` is published once a connection has been verified. Routes reach it
through ``get_db`` so tests can substitute their own database handle.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_fixed,
)

from errors import ApiError

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored datetimes may come back naive depending on the client; they are UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def connect(uri: str, name: str) -> Database:
    global client, db
    candidate = MongoClient(
        uri,
        tz_aware=True,
        serverSelectionTimeoutMS=5000,
        socketTimeoutMS=45000,
    )
    try:
        candidate.admin.command("ping")
    except PyMongoError:
        candidate.close()
        raise
    client = candidate
    db = candidate[name]
    logger.info("MongoDB connected (database=%s)", name)
    return db


def _attempt_connect(uri: str, name: str) -> Database:
    logger.info("Connecting to MongoDB...")
    return connect(uri, name)


def connect_with_retry(uri: str, name: str, delay: float = 5, attempts: Optional[int] = None) -> Optional[Database]:
    """Keep trying every ``delay`` seconds; forever unless ``attempts`` is given."""
    retrying = Retrying(
        stop=stop_after_attempt(attempts) if attempts else stop_never,
        wait=wait_fixed(delay),
        retry=retry_if_exception_type(PyMongoError),
        before_sleep=before_sleep_log(logger, logging.ERROR),
        sleep=time.sleep,
        reraise=True,
    )
    try:
        connected = retrying(_attempt_connect, uri, name)
    except PyMongoError as e:
        logger.error("MongoDB unreachable after %s attempts: %s", attempts, e)
        return None
    ensure_indexes(connected)
    return connected


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["session"].create_index("sid", unique=True)
    database["session"].create_index("expires_at", expireAfterSeconds=0)
    database["testotp"].create_index("created_at", expireAfterSeconds=600)
    database["song"].create_index([("created_at", DESCENDING)])
    database["song"].create_index([("user_email", ASCENDING), ("created_at", DESCENDING)])


def is_connected() -> bool:
    return db is not None


def close() -> None:
    global client, db
    if client is not None:
        client.close()
        logger.info("MongoDB connection closed")
    client = None
    db = None


def get_db() -> Database:
    if db is None:
        raise ApiError(503, "Database not connected. Please try again shortly.")
    return db


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    target = database if database is not None else get_db()
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = target[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    database: Optional[Database] = None,
) -> List[Dict[str, Any]]:
    target = database if database is not None else get_db()
    cursor = target[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
