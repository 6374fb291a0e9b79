"""Persistence for per-cookie attribution data."""

from __future__ import annotations

from datetime import datetime

from motor.motor_asyncio import AsyncIOMotorDatabase

from src.storage.models.base import utcnow
from src.storage.models.event import AttributionData
from src.storage.mongo import ATTRIBUTION


class MongoAttributionStore:
    """Last writer wins per cookie; no cross-request coordination needed."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:  # type: ignore[type-arg]
        self._col = db[ATTRIBUTION]

    async def get(
        self, anonymous_id: str, session_id: str, now: datetime | None = None
    ) -> AttributionData | None:
        doc = await self._col.find_one(
            {"anonymous_id": anonymous_id, "session_id": session_id}
        )
        if doc is None:
            return None
        data = AttributionData.from_document(doc)
        # The TTL monitor runs about once a minute; don't serve stale rows.
        if data.expires_at <= (now or utcnow()):
            return None
        return data

    async def save(self, data: AttributionData) -> None:
        await self._col.replace_one(
            {"anonymous_id": data.anonymous_id, "session_id": data.session_id},
            data.to_document(),
            upsert=True,
        )
