"""Append-only event stream over the ``events`` collection."""

from __future__ import annotations

import logging

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from src.common.metrics import events_stitched_total, events_tracked_total
from src.storage.models.event import Event
from src.storage.mongo import EVENTS

logger = logging.getLogger(__name__)


class MongoEventStore:
    """Writes are inserts only; stitching is the single permitted update."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:  # type: ignore[type-arg]
        self._col = db[EVENTS]

    async def append(self, event: Event) -> Event:
        """Store *event* and return it.

        An event whose ``idempotency_key`` was already stored is a replay:
        the stored copy is returned and nothing new is written.
        """
        try:
            await self._col.insert_one(event.to_document())
        except DuplicateKeyError:
            if event.idempotency_key is None:
                raise
            doc = await self._col.find_one({"idempotency_key": event.idempotency_key})
            if doc is None:
                raise
            logger.debug("Replay of event %s ignored", event.idempotency_key)
            return Event.from_document(doc)
        events_tracked_total.labels(
            source=event.source.value, event_name=event.event_name
        ).inc()
        return event

    async def history(self, person_id: str) -> list[Event]:
        """Every event attributed to *person_id*, oldest first."""
        cursor = self._col.find({"person_id": person_id}).sort("created_at", 1)
        return [Event.from_document(doc) async for doc in cursor]

    async def recent_by_name(self, event_name: str, limit: int = 100) -> list[Event]:
        cursor = (
            self._col.find({"event_name": event_name, "person_id": {"$ne": None}})
            .sort("created_at", -1)
            .limit(limit)
        )
        return [Event.from_document(doc) async for doc in cursor]

    async def stitch(
        self, person_id: str, anonymous_id: str, session_id: str | None = None
    ) -> int:
        """Back-fill *person_id* onto anonymous events from this browser.

        Only rows without a person are touched, so re-running is a no-op.
        """
        match = [{"anonymous_id": anonymous_id}]
        if session_id:
            match.append({"session_id": session_id})
        result = await self._col.update_many(
            {"person_id": None, "$or": match},
            {"$set": {"person_id": person_id}},
        )
        if result.modified_count:
            events_stitched_total.inc(result.modified_count)
        return result.modified_count
