"""Unit tests for person feature computation."""

from datetime import UTC, datetime, timedelta

import pytest

from src.common.errors import NotFoundError
from src.processing.feature_aggregator import FeatureAggregator, compute_features
from src.processing.identity_resolution import IdentityResolver
from src.storage.event_store import MongoEventStore
from src.storage.feature_store import MongoFeatureStore
from src.storage.identity_store import MongoIdentityStore
from src.storage.models.event import Event

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def _event(name: str, days_ago: float = 0, **properties) -> Event:
    return Event(
        event_name=name,
        person_id="p1",
        properties=properties,
        created_at=NOW - timedelta(days=days_ago),
    )


class TestComputeFeatures:
    """The pure fold over an event history."""

    def test_empty_history(self) -> None:
        features = compute_features("p1", [], NOW)
        assert features.total_events == 0
        assert features.first_seen_at is None
        assert features.computed_at == NOW

    def test_creator_funnel(self) -> None:
        events = [
            _event("course.created", 10),
            _event("course.created", 9),
            _event("course.published", 8),
            _event("course.sale", 5, amount=4900),
            _event("course.sale", 1, amount=10100),
        ]
        features = compute_features("p1", events, NOW)
        assert features.courses_created == 2
        assert features.courses_published == 1
        assert features.total_course_sales == 2
        assert features.total_revenue == 150.0
        assert features.first_course_created_at == NOW - timedelta(days=10)
        assert features.last_sale_at == NOW - timedelta(days=1)

    def test_windowed_counters_use_compute_time(self) -> None:
        events = [_event("lesson.completed", d) for d in (1, 2, 29, 31, 60)]
        features = compute_features("p1", events, NOW)
        assert features.lessons_completed == 5
        assert features.lessons_completed_30d == 3

    def test_machine_opens_are_excluded(self) -> None:
        events = [
            _event("email.opened", 1, is_machine_open=False),
            _event("email.opened", 1, is_machine_open=True),
            _event("email.clicked", 1),
        ]
        features = compute_features("p1", events, NOW)
        assert features.email_opens_30d == 1
        assert features.email_clicks_30d == 1

    def test_order_and_duplicates_do_not_matter(self) -> None:
        events = [_event("login", 3), _event("login", 1), _event("course.sale", 2, amount=500)]
        shuffled = [events[2], events[0], events[1], events[0]]
        assert compute_features("p1", events, NOW) == compute_features("p1", shuffled, NOW)

    def test_attribution_from_latest_conversion(self) -> None:
        landing = _event("landing_view", 5)
        landing.context = {"first_landing_page": "https://site.test/landing", "utm_source": "ads"}
        conversion = _event(
            "course.purchased",
            1,
            attribution={"first_landing_page": "https://site.test/landing", "utm_source": "email"},
        )
        features = compute_features("p1", [landing, conversion], NOW)
        assert features.utm_source == "email"
        assert features.conversions == 1

    def test_attribution_falls_back_to_first_landing(self) -> None:
        first = _event("landing_view", 5)
        first.context = {"first_landing_page": "https://site.test/a", "utm_source": "ads"}
        later = _event("landing_view", 1)
        later.context = {"first_landing_page": "https://site.test/a", "utm_source": "social"}
        features = compute_features("p1", [later, first], NOW)
        assert features.utm_source == "ads"
        assert features.first_landing_page == "https://site.test/a"


class TestFeatureAggregator:
    """Recompute-and-store against MongoDB."""

    @pytest.fixture
    def aggregator(self, db, clock) -> FeatureAggregator:
        return FeatureAggregator(
            MongoIdentityStore(db), MongoEventStore(db), MongoFeatureStore(db), clock=clock
        )

    @pytest.mark.asyncio
    async def test_unknown_person_raises(self, aggregator: FeatureAggregator) -> None:
        with pytest.raises(NotFoundError):
            await aggregator.compute_person_features("missing")

    @pytest.mark.asyncio
    async def test_snapshot_is_overwritten(self, aggregator: FeatureAggregator, db, clock) -> None:
        person_id = await IdentityResolver(MongoIdentityStore(db), clock=clock).resolve_person(
            {"email": "learner@example.com"}
        )
        events = MongoEventStore(db)
        await events.append(Event(event_name="lesson.completed", person_id=person_id, created_at=clock()))
        first = await aggregator.compute_person_features(person_id)
        assert first.lessons_completed == 1

        await events.append(Event(event_name="lesson.completed", person_id=person_id, created_at=clock()))
        await aggregator.compute_person_features(person_id)
        stored = await MongoFeatureStore(db).get(person_id)
        assert stored is not None
        assert stored.lessons_completed == 2
        assert await db["person_features"].count_documents({"person_id": person_id}) == 1

    @pytest.mark.asyncio
    async def test_compute_all_isolates_failures(self, aggregator: FeatureAggregator, db, clock) -> None:
        resolver = IdentityResolver(MongoIdentityStore(db), clock=clock)
        for n in range(3):
            await resolver.resolve_person({"email": f"user{n}@example.com"})
        summary = await aggregator.compute_all()
        assert summary.total == 3
        assert summary.successful == 3
        assert summary.failed == 0
