"""Race-safe person and identity-link persistence.

:class:`IdentityStore` is the seam the resolver depends on.  The Mongo
implementation claims identity keys with a plain insert against the unique
``(identity_type, identity_value)`` index: whoever inserts first owns the
key, everyone else re-reads the winner.  There is no read-then-write window.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any, Protocol

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from src.common.errors import ConflictError
from src.common.metrics import identity_conflicts_total
from src.storage.models.person import IdentityKey, IdentityLink, Person
from src.storage.mongo import IDENTITY_LINKS, PERSONS

logger = logging.getLogger(__name__)


class IdentityStore(Protocol):
    async def find_person_id(self, key: IdentityKey) -> str | None: ...

    async def find_or_create(self, key: IdentityKey, person: Person) -> tuple[str, bool]: ...

    async def link(self, key: IdentityKey, person_id: str) -> str: ...

    async def get_person(self, person_id: str) -> Person | None: ...

    async def update_person(
        self, person_id: str, fields: dict[str, Any], now: datetime
    ) -> None: ...

    def iter_person_ids(self) -> AsyncIterator[str]: ...


class MongoIdentityStore:
    """IdentityStore backed by the ``persons`` and ``identity_links`` collections."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:  # type: ignore[type-arg]
        self._persons = db[PERSONS]
        self._links = db[IDENTITY_LINKS]

    # ── reads ─────────────────────────────────────────────────────────

    async def find_person_id(self, key: IdentityKey) -> str | None:
        doc = await self._links.find_one(
            {"identity_type": key.identity_type.value, "identity_value": key.identity_value},
            projection={"person_id": 1},
        )
        return None if doc is None else str(doc["person_id"])

    async def get_person(self, person_id: str) -> Person | None:
        doc = await self._persons.find_one({"person_id": person_id})
        return None if doc is None else Person.from_document(doc)

    async def iter_person_ids(self) -> AsyncIterator[str]:
        cursor = self._persons.find({}, projection={"person_id": 1}).sort("person_id", 1)
        async for doc in cursor:
            yield str(doc["person_id"])

    async def links_for_person(self, person_id: str) -> list[IdentityLink]:
        cursor = self._links.find({"person_id": person_id}).sort("created_at", 1)
        return [IdentityLink.from_document(doc) async for doc in cursor]

    # ── writes ────────────────────────────────────────────────────────

    async def find_or_create(self, key: IdentityKey, person: Person) -> tuple[str, bool]:
        """Return ``(person_id, created)`` for *key*.

        *person* is the record to create if nobody owns the key yet.  A
        losing concurrent caller gets the winner's id and ``created=False``.

        Raises:
            ConflictError: the insert collided but the winning link could not
                be read back.
        """
        existing = await self.find_person_id(key)
        if existing is not None:
            return existing, False

        link = IdentityLink(
            identity_type=key.identity_type,
            identity_value=key.identity_value,
            person_id=person.person_id,
        )
        try:
            await self._links.insert_one(link.to_document())
        except DuplicateKeyError:
            identity_conflicts_total.inc()
            winner = await self.find_person_id(key)
            if winner is None:
                raise ConflictError(f"identity {key} claimed but not readable") from None
            logger.info("Lost identity race on %s to person %s", key.identity_type, winner)
            return winner, False

        doc = person.to_document()
        try:
            await self._persons.update_one(
                {"person_id": person.person_id},
                {"$setOnInsert": doc},
                upsert=True,
            )
        except DuplicateKeyError as exc:
            raise ConflictError(f"person record for {key.identity_type} collided") from exc
        logger.info("Created person %s from %s", person.person_id, key.identity_type)
        return person.person_id, True

    async def link(self, key: IdentityKey, person_id: str) -> str:
        """Attach *key* to *person_id* unless already linked.

        Links never re-point: the returned id is the key's owner, which may
        be a different person than requested.
        """
        link = IdentityLink(
            identity_type=key.identity_type,
            identity_value=key.identity_value,
            person_id=person_id,
        )
        try:
            await self._links.insert_one(link.to_document())
            return person_id
        except DuplicateKeyError:
            owner = await self.find_person_id(key)
            if owner is None:
                raise ConflictError(f"identity {key} claimed but not readable") from None
            if owner != person_id:
                logger.warning(
                    "Identity %s already linked to %s; not re-pointing to %s",
                    key.identity_type,
                    owner,
                    person_id,
                )
            return owner

    async def update_person(
        self, person_id: str, fields: dict[str, Any], now: datetime
    ) -> None:
        """Set *fields* on the person, creating the record if a crash left
        only its identity link behind."""
        await self._persons.update_one(
            {"person_id": person_id},
            {
                "$set": {**fields, "updated_at": now, "last_seen_at": now},
                "$setOnInsert": {"person_id": person_id, "created_at": now},
            },
            upsert=True,
        )
