"""Motor client factory and index definitions for every collection.

Uniqueness constraints here are what make identity creation and membership
opening race-safe; :func:`ensure_indexes` must run before the first write.
"""

from __future__ import annotations

import logging
import os

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, IndexModel

logger = logging.getLogger(__name__)

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
MONGO_DATABASE = os.getenv("MONGO_DATABASE", "growth")
MONGO_MAX_POOL_SIZE = int(os.getenv("MONGO_MAX_POOL_SIZE", "50"))
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))

PERSONS = "persons"
IDENTITY_LINKS = "identity_links"
EVENTS = "events"
ATTRIBUTION = "attribution"
PERSON_FEATURES = "person_features"
SEGMENTS = "segments"
SEGMENT_MEMBERSHIPS = "segment_memberships"
AUTOMATION_DELIVERIES = "automation_deliveries"

INDEXES: dict[str, list[IndexModel]] = {
    PERSONS: [
        IndexModel("person_id", unique=True),
        # Sparse: persons without an email omit the field entirely.
        IndexModel("email", unique=True, sparse=True),
        IndexModel("account_id"),
        IndexModel("billing_customer_id"),
        IndexModel("email_hash"),
    ],
    IDENTITY_LINKS: [
        IndexModel(
            [("identity_type", ASCENDING), ("identity_value", ASCENDING)],
            unique=True,
        ),
        IndexModel("person_id"),
    ],
    EVENTS: [
        IndexModel("event_id", unique=True),
        IndexModel("idempotency_key", unique=True, sparse=True),
        IndexModel([("person_id", ASCENDING), ("created_at", ASCENDING)]),
        IndexModel("anonymous_id"),
        IndexModel("session_id"),
        IndexModel([("event_name", ASCENDING), ("created_at", DESCENDING)]),
    ],
    ATTRIBUTION: [
        IndexModel(
            [("anonymous_id", ASCENDING), ("session_id", ASCENDING)],
            unique=True,
        ),
        # TTL: documents vanish once expires_at has passed.
        IndexModel("expires_at", expireAfterSeconds=0),
    ],
    PERSON_FEATURES: [
        IndexModel("person_id", unique=True),
        IndexModel("computed_at"),
    ],
    SEGMENTS: [
        IndexModel("segment_id", unique=True),
        IndexModel("name", unique=True),
        IndexModel("is_active"),
    ],
    SEGMENT_MEMBERSHIPS: [
        IndexModel("membership_id", unique=True),
        # At most one open row per (person, segment): only open rows carry
        # active_key, closed rows are history.
        IndexModel("active_key", unique=True, sparse=True, name="one_active_membership"),
        IndexModel([("person_id", ASCENDING), ("segment_id", ASCENDING)]),
        IndexModel([("segment_id", ASCENDING), ("is_active", ASCENDING)]),
    ],
    AUTOMATION_DELIVERIES: [
        IndexModel("dedup_key", unique=True),
    ],
}


def get_database(
    connection_uri: str = MONGO_URI,
    database: str = MONGO_DATABASE,
    max_pool_size: int = MONGO_MAX_POOL_SIZE,
) -> AsyncIOMotorDatabase:  # type: ignore[type-arg]
    """Return a handle on the data-plane database with bounded timeouts."""
    client: AsyncIOMotorClient = AsyncIOMotorClient(  # type: ignore[type-arg]
        connection_uri,
        maxPoolSize=max_pool_size,
        serverSelectionTimeoutMS=MONGO_TIMEOUT_MS,
        socketTimeoutMS=MONGO_TIMEOUT_MS * 2,
        tz_aware=True,
    )
    return client[database]


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:  # type: ignore[type-arg]
    """Create every index the stores rely on.  Safe to re-run."""
    for collection, indexes in INDEXES.items():
        await db[collection].create_indexes(indexes)
        logger.info("Indexes ensured on collection %s", collection)
