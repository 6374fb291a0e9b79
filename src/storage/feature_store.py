"""Snapshot storage for computed person features."""

from __future__ import annotations

from motor.motor_asyncio import AsyncIOMotorDatabase

from src.storage.models.features import PersonFeatures
from src.storage.mongo import PERSON_FEATURES


class MongoFeatureStore:
    def __init__(self, db: AsyncIOMotorDatabase) -> None:  # type: ignore[type-arg]
        self._col = db[PERSON_FEATURES]

    async def get(self, person_id: str) -> PersonFeatures | None:
        doc = await self._col.find_one({"person_id": person_id})
        return None if doc is None else PersonFeatures.from_document(doc)

    async def put(self, features: PersonFeatures) -> None:
        """Overwrite the snapshot wholesale."""
        await self._col.replace_one(
            {"person_id": features.person_id},
            features.to_document(),
            upsert=True,
        )
