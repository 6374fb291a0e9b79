"""Identity Resolution Engine for the Growth Data Plane.

Links identity signals (email, account id, billing customer id) to one
canonical Person.  Matching is deterministic only: keys are looked up in a
fixed order and the first hit wins.  Anonymous cookie ids never resolve a
person; they are attached afterwards by stitching.

Identity links are immutable once created.  Two people who later turn out
to be the same human stay two Persons; no merge operation exists.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

import pydantic
from tenacity import retry, retry_if_exception_type, stop_after_attempt

from src.common.errors import ConflictError, NotFoundError, ValidationError
from src.common.metrics import identity_resolution_total, processing_latency_seconds
from src.storage.identity_store import IdentityStore
from src.storage.models.base import utcnow
from src.storage.models.person import (
    IDENTITY_FIELD_BY_TYPE,
    IdentityKey,
    IdentitySignals,
    IdentityType,
    Person,
)

logger = logging.getLogger(__name__)


def parse_signals(raw: dict[str, Any] | IdentitySignals) -> IdentitySignals:
    """Validate raw resolution input into :class:`IdentitySignals`."""
    if isinstance(raw, IdentitySignals):
        return raw
    try:
        return IdentitySignals.model_validate(raw)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            "; ".join(err["msg"] for err in exc.errors())
        ) from exc


class IdentityResolver:
    """Resolves identity signals to a single person_id."""

    def __init__(
        self,
        store: IdentityStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._clock = clock

    # ── public entry point ───────────────────────────────────────────
    async def resolve_person(self, signals: dict[str, Any] | IdentitySignals) -> str:
        """Return the person_id for *signals*, creating the Person if needed.

        Raises:
            ValidationError: no primary key, or a malformed email.
            ConflictError: a creation race could not be settled after one retry.
        """
        parsed = parse_signals(signals)
        with processing_latency_seconds.labels(pipeline_stage="identity").time():
            return await self._resolve(parsed)

    @retry(
        retry=retry_if_exception_type(ConflictError),
        stop=stop_after_attempt(2),
        reraise=True,
    )
    async def _resolve(self, signals: IdentitySignals) -> str:
        now = self._clock()
        keys = signals.primary_keys()

        person_id, matched_on = await self._deterministic_match(keys)
        if person_id is None:
            candidate = Person(created_at=now, updated_at=now, last_seen_at=now)
            # Only the creating key is stored up front; the rest go through
            # the same link-then-merge path as for an existing person.
            person_id, created = await self._store.find_or_create(keys[0], candidate)
            matched_on = "created" if created else keys[0].identity_type.value

        identity_resolution_total.labels(outcome=matched_on).inc()
        logger.debug("Resolved person %s (%s)", person_id, matched_on)
        await self._attach(person_id, signals, now)
        return person_id

    async def get_person(self, person_id: str) -> Person:
        person = await self._store.get_person(person_id)
        if person is None:
            raise NotFoundError(f"person {person_id} not found")
        return person

    async def find_person_by_identity(
        self, identity_type: IdentityType | str, identity_value: str
    ) -> str | None:
        key = IdentityKey(
            identity_type=IdentityType(identity_type), identity_value=identity_value
        )
        return await self._store.find_person_id(key)

    # ── deterministic (exact) ────────────────────────────────────────
    async def _deterministic_match(
        self, keys: list[IdentityKey]
    ) -> tuple[str | None, str]:
        for key in keys:
            person_id = await self._store.find_person_id(key)
            if person_id is not None:
                return person_id, key.identity_type.value
        return None, ""

    # ── link + merge ─────────────────────────────────────────────────
    async def _attach(self, person_id: str, signals: IdentitySignals, now: datetime) -> None:
        """Link every supplied key and merge profile fields.

        Fields backed by an identity key are only written when the key now
        belongs to this person, so a Person never carries an email that
        another Person owns.
        """
        fields = signals.person_fields()
        for key in [*signals.primary_keys(), *signals.secondary_keys()]:
            owner = await self._store.link(key, person_id)
            if owner != person_id:
                fields.pop(IDENTITY_FIELD_BY_TYPE[key.identity_type], None)
                if key.identity_type is IdentityType.EMAIL:
                    fields.pop("email_hash", None)
        # Blank values were dropped during parsing, so nothing here can
        # overwrite a present value with an empty one.
        await self._store.update_person(person_id, fields, now)
