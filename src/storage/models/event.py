"""Event stream and attribution models."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from src.storage.models.base import DocumentModel, utcnow

ATTRIBUTION_TTL = timedelta(days=30)

UTM_FIELDS: tuple[str, ...] = (
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_content",
    "utm_term",
)


class EventSource(StrEnum):
    """Originating system for an event."""

    WEB = "web"
    APP = "app"
    EMAIL = "email"
    BILLING = "billing"


class Event(DocumentModel):
    """Immutable entry in the unified event stream.

    ``created_at`` is when the event happened, which may precede when it was
    stored: backfills and replays supply it explicitly.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_name: str = Field(..., min_length=1)
    person_id: str | None = None
    anonymous_id: str | None = None
    session_id: str | None = None
    source: EventSource = EventSource.WEB
    properties: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    def to_document(self) -> dict[str, Any]:
        doc = super().to_document()
        # Sparse unique index: absent, not null, when unset.
        if doc["idempotency_key"] is None:
            del doc["idempotency_key"]
        return doc


class AttributionCookie(BaseModel):
    """Payload of the attribution cookie: two opaque ids, nothing else."""

    anonymous_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))


class UtmParams(BaseModel):
    source: str | None = None
    medium: str | None = None
    campaign: str | None = None
    content: str | None = None
    term: str | None = None

    def as_fields(self) -> dict[str, str | None]:
        return {f"utm_{k}": v for k, v in self.model_dump().items()}


class AttributionData(DocumentModel):
    """Server-side marketing context for one cookie.

    First-touch fields are written once; UTM and email fields hold the most
    recent touch.
    """

    anonymous_id: str
    session_id: str
    email_message_id: str | None = None
    link_url: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_content: str | None = None
    utm_term: str | None = None
    first_landing_page: str | None = None
    first_referrer: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    last_touch_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(default_factory=lambda: utcnow() + ATTRIBUTION_TTL)


class AttributionSnapshot(BaseModel):
    """Frozen attribution chain attached to a conversion event."""

    model_config = {"frozen": True}

    first_landing_page: str | None = None
    first_referrer: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_content: str | None = None
    utm_term: str | None = None
    email_message_id: str | None = None
    link_url: str | None = None
