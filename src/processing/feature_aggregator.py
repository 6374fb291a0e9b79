"""Person feature computation from the raw event stream.

Features are a pure function of a person's full event history and are
recomputed wholesale every time.  Nothing is accumulated incrementally, so
late, out-of-order, replayed or back-filled events simply show up correctly
on the next recompute.  Windowed counters are evaluated against the compute
time, not maintained as running totals.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from src.common.errors import NotFoundError
from src.common.metrics import feature_computations_total, processing_latency_seconds
from src.storage.event_store import MongoEventStore
from src.storage.feature_store import MongoFeatureStore
from src.storage.identity_store import IdentityStore
from src.storage.models.base import BatchSummary, utcnow
from src.storage.models.event import Event
from src.storage.models.features import PersonFeatures

logger = logging.getLogger(__name__)

FEATURE_WINDOW = timedelta(days=30)

_ATTRIBUTION_FEATURES = (
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "first_landing_page",
    "first_referrer",
)


def _earliest(current: datetime | None, ts: datetime) -> datetime:
    return ts if current is None or ts < current else current


def _latest(current: datetime | None, ts: datetime) -> datetime:
    return ts if current is None or ts > current else current


def compute_features(
    person_id: str, events: Iterable[Event], now: datetime
) -> PersonFeatures:
    """Fold *events* into a fresh :class:`PersonFeatures` snapshot.

    Duplicate deliveries (same ``event_id``) count once and arrival order is
    irrelevant: events are de-duplicated and sorted before folding.
    """
    unique = {event.event_id: event for event in events}
    ordered = sorted(unique.values(), key=lambda e: (e.created_at, e.event_id))
    window_start = now - FEATURE_WINDOW

    f = PersonFeatures(person_id=person_id, computed_at=now)
    last_conversion: dict[str, Any] | None = None
    first_landing: dict[str, Any] | None = None

    for event in ordered:
        ts = event.created_at
        in_window = ts > window_start
        props = event.properties
        f.total_events += 1
        f.first_seen_at = _earliest(f.first_seen_at, ts)
        f.last_seen_at = _latest(f.last_seen_at, ts)

        match event.event_name:
            case "course.created":
                f.courses_created += 1
                f.first_course_created_at = _earliest(f.first_course_created_at, ts)
            case "course.published":
                f.courses_published += 1
                f.first_course_published_at = _earliest(f.first_course_published_at, ts)
            case "course.sale":
                f.total_course_sales += 1
                # Amounts arrive in minor units (cents).
                f.total_revenue += float(props.get("amount") or 0) / 100
                f.first_sale_at = _earliest(f.first_sale_at, ts)
                f.last_sale_at = _latest(f.last_sale_at, ts)
            case "enrollment.created":
                f.courses_enrolled += 1
                f.first_enrollment_at = _earliest(f.first_enrollment_at, ts)
            case "lesson.completed":
                f.lessons_completed += 1
                if in_window:
                    f.lessons_completed_30d += 1
                f.last_lesson_completed_at = _latest(f.last_lesson_completed_at, ts)
            case "certificate.earned":
                f.certificates_earned += 1
            case "email.opened":
                if not props.get("is_machine_open"):
                    if in_window:
                        f.email_opens_30d += 1
                    f.last_email_opened_at = _latest(f.last_email_opened_at, ts)
            case "email.clicked":
                if in_window:
                    f.email_clicks_30d += 1
                f.last_email_clicked_at = _latest(f.last_email_clicked_at, ts)
            case "login":
                if in_window:
                    f.login_count_30d += 1
                f.last_login_at = _latest(f.last_login_at, ts)
            case "landing_view":
                if first_landing is None:
                    first_landing = event.context

        if isinstance(props.get("attribution"), dict):
            f.conversions += 1
            last_conversion = props["attribution"]

    f.total_revenue = round(f.total_revenue, 2)
    source = last_conversion or first_landing or {}
    for name in _ATTRIBUTION_FEATURES:
        setattr(f, name, source.get(name))
    return f


class FeatureAggregator:
    """Recomputes and stores feature snapshots for one or all persons."""

    def __init__(
        self,
        identity_store: IdentityStore,
        event_store: MongoEventStore,
        feature_store: MongoFeatureStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._identities = identity_store
        self._events = event_store
        self._features = feature_store
        self._clock = clock

    async def compute_person_features(self, person_id: str) -> PersonFeatures:
        """Recompute and overwrite the snapshot for *person_id*.

        Raises:
            NotFoundError: no such person.
        """
        if await self._identities.get_person(person_id) is None:
            raise NotFoundError(f"person {person_id} not found")
        with processing_latency_seconds.labels(pipeline_stage="features").time():
            history = await self._events.history(person_id)
            features = compute_features(person_id, history, self._clock())
            await self._features.put(features)
        feature_computations_total.labels(status="success").inc()
        logger.debug(
            "Computed features for %s from %d events", person_id, features.total_events
        )
        return features

    async def compute_all(self) -> BatchSummary:
        """Recompute every person; one failure never aborts the batch."""
        summary = BatchSummary()
        async for person_id in self._identities.iter_person_ids():
            summary.total += 1
            try:
                await self.compute_person_features(person_id)
                summary.successful += 1
            except Exception as exc:
                summary.failed += 1
                summary.errors.append(f"{person_id}: {exc}")
                feature_computations_total.labels(status="failure").inc()
                logger.exception("Feature computation failed for person %s", person_id)
        logger.info(
            "Feature batch done: %d total, %d ok, %d failed",
            summary.total,
            summary.successful,
            summary.failed,
        )
        return summary
