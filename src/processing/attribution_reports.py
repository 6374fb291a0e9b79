"""Read-side attribution reports over the event stream."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from src.processing.attribution import EMAIL_CLICK
from src.storage.event_store import MongoEventStore
from src.storage.feature_store import MongoFeatureStore
from src.storage.models.event import Event

TOUCH_POINT_LIMIT = 100


class TouchPoint(BaseModel):
    event_name: str
    created_at: str
    source: str
    properties: dict[str, Any] = Field(default_factory=dict)


class PersonAttribution(BaseModel):
    features: dict[str, str | None] | None = None
    touch_points: list[TouchPoint] = Field(default_factory=list)
    email_attribution: dict[str, str | None] | None = None


class ConversionPath(BaseModel):
    person_id: str
    path: list[str]
    time_to_convert_seconds: float


def _touch_point(event: Event) -> TouchPoint:
    return TouchPoint(
        event_name=event.event_name,
        created_at=event.created_at.isoformat(),
        source=event.source.value,
        properties=event.properties,
    )


async def person_attribution(
    person_id: str,
    event_store: MongoEventStore,
    feature_store: MongoFeatureStore,
) -> PersonAttribution:
    """Attribution fields, ordered touch points and the first email click."""
    features = await feature_store.get(person_id)
    history = await event_store.history(person_id)
    report = PersonAttribution(
        touch_points=[_touch_point(e) for e in history[:TOUCH_POINT_LIMIT]],
    )
    if features is not None:
        report.features = {
            "utm_source": features.utm_source,
            "utm_medium": features.utm_medium,
            "utm_campaign": features.utm_campaign,
            "first_landing_page": features.first_landing_page,
            "first_referrer": features.first_referrer,
        }
    click = next((e for e in history if e.event_name == EMAIL_CLICK), None)
    if click is not None:
        report.email_attribution = {
            "email_message_id": click.properties.get("email_message_id"),
            "link_url": click.properties.get("link_url"),
        }
    return report


async def conversion_paths(
    event_name: str, event_store: MongoEventStore, limit: int = 100
) -> list[ConversionPath]:
    """For the latest *limit* conversions, the events leading up to each."""
    paths: list[ConversionPath] = []
    for conversion in await event_store.recent_by_name(event_name, limit):
        assert conversion.person_id is not None
        history = [
            e
            for e in await event_store.history(conversion.person_id)
            if e.created_at <= conversion.created_at
        ]
        if not history:
            continue
        paths.append(
            ConversionPath(
                person_id=conversion.person_id,
                path=[e.event_name for e in history],
                time_to_convert_seconds=(
                    conversion.created_at - history[0].created_at
                ).total_seconds(),
            )
        )
    return paths
