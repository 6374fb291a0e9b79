"""Segment definitions and membership history.

Membership rows are opened by insert and closed by a conditional update on
``is_active``.  Open rows carry an ``active_key`` under a sparse unique index
(:mod:`src.storage.mongo`), which keeps two concurrent evaluators from both
opening a row for the same pair; closing a row removes the key.
"""

from __future__ import annotations

import logging
from datetime import datetime

import pydantic
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from src.common.errors import ValidationError
from src.storage.models.segment import Segment, SegmentMembership
from src.storage.mongo import SEGMENT_MEMBERSHIPS, SEGMENTS

logger = logging.getLogger(__name__)


class MongoSegmentStore:
    def __init__(self, db: AsyncIOMotorDatabase) -> None:  # type: ignore[type-arg]
        self._segments = db[SEGMENTS]
        self._memberships = db[SEGMENT_MEMBERSHIPS]

    # ── segments ──────────────────────────────────────────────────────

    async def get_segment(self, segment_id: str) -> Segment | None:
        doc = await self._segments.find_one({"segment_id": segment_id})
        return None if doc is None else Segment.from_document(doc)

    async def active_segments(self) -> list[Segment]:
        """Active segments with their conditions parsed.

        A malformed definition is logged here and still returned, so each
        evaluation reports it without blocking the others.
        """
        cursor = self._segments.find({"is_active": True}).sort("name", 1)
        segments = [Segment.from_document(doc) async for doc in cursor]
        for segment in segments:
            try:
                segment.parsed_conditions()
            except pydantic.ValidationError as exc:
                logger.warning(
                    "Segment %s has malformed conditions: %d errors",
                    segment.segment_id,
                    exc.error_count(),
                )
        return segments

    async def save_segment(self, segment: Segment) -> None:
        """Upsert *segment* by id.

        Raises:
            ValidationError: the conditions are malformed.
        """
        try:
            segment.parsed_conditions()
        except pydantic.ValidationError as exc:
            raise ValidationError(
                f"segment {segment.name}: malformed conditions ({exc.error_count()} errors)"
            ) from exc
        await self._segments.replace_one(
            {"segment_id": segment.segment_id},
            segment.to_document(),
            upsert=True,
        )

    async def ensure_segment(self, segment: Segment) -> bool:
        """Insert *segment* unless one with the same name exists.

        Returns True if it was inserted.
        """
        result = await self._segments.update_one(
            {"name": segment.name},
            {"$setOnInsert": segment.to_document()},
            upsert=True,
        )
        return result.upserted_id is not None

    # ── memberships ───────────────────────────────────────────────────

    async def active_membership(
        self, person_id: str, segment_id: str
    ) -> SegmentMembership | None:
        doc = await self._memberships.find_one(
            {"person_id": person_id, "segment_id": segment_id, "is_active": True}
        )
        return None if doc is None else SegmentMembership.from_document(doc)

    async def open_membership(
        self, person_id: str, segment_id: str, now: datetime
    ) -> SegmentMembership | None:
        """Open a row; None if a concurrent evaluator already opened one."""
        membership = SegmentMembership(
            person_id=person_id, segment_id=segment_id, entered_at=now
        )
        try:
            await self._memberships.insert_one(membership.to_document())
        except DuplicateKeyError:
            logger.info(
                "Membership %s/%s opened concurrently", person_id, segment_id
            )
            return None
        return membership

    async def close_membership(
        self, person_id: str, segment_id: str, now: datetime
    ) -> SegmentMembership | None:
        """Close the active row; None if there was none left to close."""
        doc = await self._memberships.find_one_and_update(
            {"person_id": person_id, "segment_id": segment_id, "is_active": True},
            {"$set": {"is_active": False, "exited_at": now}, "$unset": {"active_key": ""}},
            return_document=ReturnDocument.AFTER,
        )
        return None if doc is None else SegmentMembership.from_document(doc)

    async def members(self, segment_id: str) -> list[SegmentMembership]:
        cursor = self._memberships.find(
            {"segment_id": segment_id, "is_active": True}
        ).sort("entered_at", -1)
        return [SegmentMembership.from_document(doc) async for doc in cursor]

    async def member_count(self, segment_id: str) -> int:
        return await self._memberships.count_documents(
            {"segment_id": segment_id, "is_active": True}
        )

    async def history(self, person_id: str, segment_id: str) -> list[SegmentMembership]:
        """All rows for the pair, open and closed, oldest first."""
        cursor = self._memberships.find(
            {"person_id": person_id, "segment_id": segment_id}
        ).sort("entered_at", 1)
        return [SegmentMembership.from_document(doc) async for doc in cursor]
