"""Folds email-provider engagement into the event stream.

Provider webhooks are parsed elsewhere; this module receives the already
normalised :class:`EmailEngagement`, resolves the recipient to a Person and
appends an ``email.<type>`` event.  Replays of the same provider callback
collapse onto one stored event through its idempotency key.

Apple Mail Privacy Protection (MPP) opens are detected by user-agent
heuristics and flagged so the feature aggregator can ignore them.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from src.processing.identity_resolution import IdentityResolver
from src.storage.event_store import MongoEventStore
from src.storage.identity_store import IdentityStore
from src.storage.models.event import Event, EventSource
from src.storage.models.person import IdentityKey, IdentityType

logger = logging.getLogger(__name__)

_APPLE_MPP_INDICATORS = ("apple", "cfnetwork")


class EmailEngagement(BaseModel):
    """Canonical shape for one email-provider event."""

    email: str
    event_type: Literal["delivered", "opened", "clicked", "bounced", "complained"]
    provider_message_id: str = Field(..., min_length=1)
    subject: str | None = None
    link_url: str | None = None
    user_agent: str | None = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("occurred_at", mode="before")
    @classmethod
    def _ensure_utc(cls, v: object) -> object:
        """Coerce naive datetimes to UTC."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


def detect_machine_open(user_agent: str | None) -> bool:
    """Heuristic: flag likely Apple Mail Privacy Protection opens."""
    if not user_agent:
        return False
    ua_lower = user_agent.lower()
    return any(ind in ua_lower for ind in _APPLE_MPP_INDICATORS)


class EmailEventRecorder:
    def __init__(
        self,
        resolver: IdentityResolver,
        event_store: MongoEventStore,
        identity_store: IdentityStore,
    ) -> None:
        self._resolver = resolver
        self._events = event_store
        self._identities = identity_store

    async def record(self, engagement: EmailEngagement) -> Event:
        person_id = await self._resolver.resolve_person({"email": engagement.email})
        is_machine = engagement.event_type == "opened" and detect_machine_open(
            engagement.user_agent
        )
        event = await self._events.append(
            Event(
                event_name=f"email.{engagement.event_type}",
                person_id=person_id,
                source=EventSource.EMAIL,
                properties={
                    "provider_message_id": engagement.provider_message_id,
                    "subject": engagement.subject,
                    "link_url": engagement.link_url,
                    "is_machine_open": is_machine,
                },
                context={"user_agent": engagement.user_agent},
                idempotency_key=(
                    f"email:{engagement.provider_message_id}:{engagement.event_type}:"
                    f"{engagement.occurred_at.isoformat()}"
                ),
                created_at=engagement.occurred_at,
            )
        )
        await self._identities.link(
            IdentityKey(
                identity_type=IdentityType.EMAIL_PROVIDER,
                identity_value=engagement.provider_message_id,
            ),
            person_id,
        )
        logger.info(
            "Recorded email.%s for person %s (machine_open=%s)",
            engagement.event_type,
            person_id,
            is_machine,
        )
        return event
