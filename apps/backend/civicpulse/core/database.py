"""
MongoDB connection management using Motor (async driver).

A single DatabaseClient instance is shared across requests via a
module-level holder; routes reach it through the get_db dependency.

MongoDB is optional for CivicPulse: observations are written to the
`observations` collection when the database is reachable and replayed
into the training store at startup. When it is down the engine keeps
running purely in memory.
"""

import logging
import re

import certifi
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from civicpulse.core.config import settings

logger = logging.getLogger(__name__)

OBSERVATIONS = "observations"


class DatabaseClient:
    """Holds the Motor client and selected database (replaceable in tests)."""

    client: AsyncIOMotorClient | None = None
    db: AsyncIOMotorDatabase | None = None


db_client = DatabaseClient()


async def connect_to_mongo() -> None:
    """
    Create the MongoDB connection, validate it with a ping and make sure
    the observation indexes exist.

    Fails gracefully: on any error the client stays None and the engine
    runs without persistence.
    """
    logger.info("Connecting to MongoDB at %s", _redact_uri(settings.mongo_uri))
    try:
        db_client.client = AsyncIOMotorClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            tlsCAFile=certifi.where(),
        )
        db_client.db = db_client.client[settings.mongo_db_name]
        await db_client.client.admin.command("ping")
        await ensure_indexes(db_client.db)
        logger.info("MongoDB connection established (db: %s)", settings.mongo_db_name)
    except Exception as exc:
        logger.warning(
            "MongoDB unavailable at startup: %s. "
            "Running in memory only, observations will not be persisted.",
            exc,
        )
        db_client.client = None
        db_client.db = None


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    """Idempotent index creation for the observations collection."""
    await db[OBSERVATIONS].create_index([("timestamp", -1)], name="ts_desc")
    await db[OBSERVATIONS].create_index([("geo", "2dsphere")], name="geo_2dsphere")


async def close_mongo_connection() -> None:
    """Close the MongoDB connection gracefully on app shutdown."""
    if db_client.client is not None:
        db_client.client.close()
        logger.info("MongoDB connection closed")


def get_db() -> AsyncIOMotorDatabase | None:
    """
    FastAPI dependency: inject the database into route handlers.

    Returns None when MongoDB is unavailable so routes skip persistence
    rather than returning 500 errors.
    """
    return db_client.db


def _redact_uri(uri: str) -> str:
    """Strip credentials from URI before logging."""
    return re.sub(r"://[^:]+:[^@]+@", "://<redacted>@", uri)
