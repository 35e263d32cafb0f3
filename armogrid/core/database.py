# backend/armogrid/core/database.py

import logging
from typing import Any, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConfigurationError, InvalidURI
from pymongo.uri_parser import parse_uri

from armogrid.core.config import settings

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


def _get_db_name_from_uri(uri: str) -> str:
    # A /dbname in the URI wins over MONGODB_DB.
    try:
        name = parse_uri(uri).get("database")
        if name:
            return name
    except (InvalidURI, ConfigurationError) as e:
        logger.warning(f"Could not parse Mongo URI for a database name: {e}")
    return settings.get_mongo_db()


async def connect_to_mongo() -> AsyncIOMotorDatabase:
    global _client, _db

    if _client is not None and _db is not None:
        return _db

    mongo_url = settings.get_mongo_uri()
    db_name = _get_db_name_from_uri(mongo_url)
    logger.info(f"Connecting to MongoDB (db={db_name})")

    _client = AsyncIOMotorClient(mongo_url, tz_aware=True)
    _db = _client[db_name]

    await _db.command("ping")
    logger.info("MongoDB connection OK")

    await ensure_indexes(_db)
    return _db


async def ensure_indexes(database: Any) -> None:
    """Create the unique keys the sync and webhook paths rely on."""
    await database.meter_credentials.create_index([("room_no", ASCENDING)], unique=True)
    await database.transactions.create_index([("paystack_reference", ASCENDING)], unique=True)
    await database.webhook_logs.create_index([("reference", ASCENDING)])
    await database.power_readings.create_index([("recorded_at", DESCENDING)])
    await database.admin_settings.create_index([("key", ASCENDING)], unique=True)
    logger.info("MongoDB indexes ensured")


async def close_mongo_connection() -> None:
    global _client, _db
    if _client:
        _client.close()
    _client = None
    _db = None
    logger.info("MongoDB connection closed")


class _DBProxy:
    """Lets you keep using: from armogrid.core.database import db; await db.meter_credentials.find_one(...)"""

    def __getattr__(self, item: str) -> Any:
        if _db is None:
            raise RuntimeError("Database not initialized. Call connect_to_mongo() at startup.")
        return getattr(_db, item)


db = _DBProxy()
