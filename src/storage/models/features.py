"""Per-person rollup features used by segment conditions."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from src.storage.models.base import DocumentModel, utcnow


class PersonFeatures(DocumentModel):
    """Snapshot recomputed wholesale from a person's event history.

    Windowed counters (``*_30d``) are relative to ``computed_at``.
    """

    person_id: str

    # Creator funnel
    courses_created: int = 0
    courses_published: int = 0
    total_course_sales: int = 0
    total_revenue: float = 0.0
    first_course_created_at: datetime | None = None
    first_course_published_at: datetime | None = None
    first_sale_at: datetime | None = None
    last_sale_at: datetime | None = None

    # Student funnel
    courses_enrolled: int = 0
    lessons_completed: int = 0
    lessons_completed_30d: int = 0
    certificates_earned: int = 0
    first_enrollment_at: datetime | None = None
    last_lesson_completed_at: datetime | None = None

    # Engagement
    email_opens_30d: int = 0
    email_clicks_30d: int = 0
    last_email_opened_at: datetime | None = None
    last_email_clicked_at: datetime | None = None
    login_count_30d: int = 0
    last_login_at: datetime | None = None
    total_events: int = 0
    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None
    conversions: int = 0

    # Attribution
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    first_landing_page: str | None = None
    first_referrer: str | None = None

    computed_at: datetime = Field(default_factory=utcnow)


FEATURE_FIELDS: frozenset[str] = frozenset(PersonFeatures.model_fields) - {"person_id"}
