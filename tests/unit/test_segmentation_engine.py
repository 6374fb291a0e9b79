"""Unit tests for segment evaluation and membership transitions."""

from unittest.mock import AsyncMock

import pydantic
import pytest

from src.common.errors import DownstreamError, EvaluationError, NotFoundError, ValidationError
from src.processing.identity_resolution import IdentityResolver
from src.serving.segmentation_engine import (
    BUILTIN_SEGMENTS,
    SegmentationEngine,
    evaluate_rule,
    evaluate_segment_membership,
    seed_builtin_segments,
)
from src.storage.feature_store import MongoFeatureStore
from src.storage.identity_store import MongoIdentityStore
from src.storage.models.features import PersonFeatures
from src.storage.models.segment import RulesCondition, Segment, SqlCondition, Transition
from src.storage.segment_store import MongoSegmentStore

POWER_USERS = {
    "type": "rules",
    "rules": [{"field": "lessons_completed_30d", "operator": "greater_than", "value": 10}],
}


@pytest.fixture
def dispatcher() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def segments(db) -> MongoSegmentStore:
    return MongoSegmentStore(db)


@pytest.fixture
def features(db) -> MongoFeatureStore:
    return MongoFeatureStore(db)


@pytest.fixture
def engine(db, segments, features, dispatcher, clock) -> SegmentationEngine:
    return SegmentationEngine(segments, features, MongoIdentityStore(db), dispatcher, clock=clock)


@pytest.fixture
def resolver(db, clock) -> IdentityResolver:
    return IdentityResolver(MongoIdentityStore(db), clock=clock)


async def _person(resolver: IdentityResolver, features: MongoFeatureStore, email: str, **values) -> str:
    person_id = await resolver.resolve_person({"email": email})
    await features.put(PersonFeatures(person_id=person_id, **values))
    return person_id


async def _segment(store: MongoSegmentStore, name: str, conditions: dict) -> Segment:
    segment = Segment(name=name, conditions=conditions)
    await store.save_segment(segment)
    return segment


class TestRuleOperators:
    """Single-rule semantics."""

    @pytest.mark.parametrize(
        ("actual", "operator", "expected", "result"),
        [
            (3, "equals", 3, True),
            (3, "not_equals", 3, False),
            (11, "greater_than", 10, True),
            (10, "greater_than", 10, False),
            (None, "greater_than", 10, False),
            ("abc", "less_than", 10, False),
            ("newsletter", "contains", "news", True),
            (None, "contains", "news", False),
            (None, "not_contains", "news", True),
            (None, "is_null", None, True),
            ("x", "is_not_null", None, True),
        ],
    )
    def test_operator(self, actual, operator: str, expected, result: bool) -> None:
        assert evaluate_rule(actual, operator, expected) is result

    def test_datetime_against_iso_string(self) -> None:
        features = PersonFeatures(person_id="p1")
        features.last_login_at = features.computed_at
        assert evaluate_rule(features.last_login_at, "greater_than", "2000-01-01T00:00:00+00:00")

    def test_unknown_field_rejected_at_load(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            Segment(name="bad", conditions={"type": "rules", "rules": [{"field": "nope", "operator": "equals"}]}).parsed_conditions()


class TestMembershipPredicate:
    """Rules and SQL predicates over one snapshot."""

    def test_rules_are_and_combined(self) -> None:
        conditions = RulesCondition.model_validate(
            {
                "rules": [
                    {"field": "courses_published", "operator": "greater_than", "value": 0},
                    {"field": "total_course_sales", "operator": "equals", "value": 0},
                ]
            }
        )
        assert evaluate_segment_membership(PersonFeatures(person_id="p", courses_published=1), conditions)
        assert not evaluate_segment_membership(
            PersonFeatures(person_id="p", courses_published=1, total_course_sales=2), conditions
        )

    def test_sql_predicate(self) -> None:
        conditions = SqlCondition(sql="pf.total_revenue >= 1000 AND pf.utm_source = 'email'")
        rich = PersonFeatures(person_id="p", total_revenue=1200.0, utm_source="email")
        assert evaluate_segment_membership(rich, conditions)
        assert not evaluate_segment_membership(PersonFeatures(person_id="p"), conditions)

    @pytest.mark.parametrize("sql", ["pf.no_such_column > 1", "pf.total_revenue >>> 3"])
    def test_broken_sql_raises_evaluation_error(self, sql: str) -> None:
        with pytest.raises(EvaluationError) as exc_info:
            evaluate_segment_membership(PersonFeatures(person_id="p"), SqlCondition(sql=sql), "seg-1")
        assert exc_info.value.segment_id == "seg-1"

    def test_statement_separator_rejected(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            SqlCondition(sql="pf.total_revenue > 0; DROP TABLE pf")

    @pytest.mark.parametrize(
        ("sql", "expected"),
        [
            ("pf.utm_source LIKE 'news%' OR pf.courses_created = 0", True),
            ("lower(pf.utm_campaign) = 'launch' OR pf.total_events = 0", True),
            ("pf.last_login_at IS NULL AND pf.first_landing_page IS NULL", True),
            ("pf.utm_source = 'email'", False),
        ],
    )
    def test_unset_nullable_features_are_typed_nulls(self, sql: str, expected: bool) -> None:
        assert evaluate_segment_membership(PersonFeatures(person_id="p"), SqlCondition(sql=sql)) is expected

    def test_predicate_cannot_break_out_of_where_clause(self) -> None:
        conditions = SqlCondition(sql="1=1) UNION ALL SELECT 5 AS matched FROM pf WHERE (1=1")
        with pytest.raises(EvaluationError) as exc_info:
            evaluate_segment_membership(PersonFeatures(person_id="p"), conditions, "seg-1")
        assert exc_info.value.segment_id == "seg-1"


class TestStateMachine:
    """Entry, exit and re-entry bookkeeping."""

    @pytest.mark.asyncio
    async def test_entry_is_recorded_once(self, engine, resolver, features, segments, dispatcher) -> None:
        segment = await _segment(segments, "power_users", POWER_USERS)
        person_id = await _person(resolver, features, "a@example.com", lessons_completed_30d=12)

        first = await engine.evaluate_all_segments_for_person(person_id)
        second = await engine.evaluate_all_segments_for_person(person_id)

        assert (first.entered, second.entered) == (1, 0)
        assert len(await segments.history(person_id, segment.segment_id)) == 1
        dispatcher.notify.assert_awaited_once()
        assert dispatcher.notify.await_args.args[2] is Transition.ENTERED

    @pytest.mark.asyncio
    async def test_exit_then_reentry_opens_new_row(self, engine, resolver, features, segments, dispatcher, clock) -> None:
        segment = await _segment(segments, "power_users", POWER_USERS)
        person_id = await _person(resolver, features, "a@example.com", lessons_completed_30d=12)
        await engine.evaluate_all_segments_for_person(person_id)

        clock.advance(days=1)
        await features.put(PersonFeatures(person_id=person_id, lessons_completed_30d=2))
        exited = await engine.evaluate_all_segments_for_person(person_id)
        assert exited.exited == 1

        clock.advance(days=1)
        await features.put(PersonFeatures(person_id=person_id, lessons_completed_30d=20))
        await engine.evaluate_all_segments_for_person(person_id)

        rows = await segments.history(person_id, segment.segment_id)
        assert [r.is_active for r in rows] == [False, True]
        assert rows[0].exited_at is not None
        assert await engine.segment_member_count(segment.segment_id) == 1
        transitions = [call.args[2] for call in dispatcher.notify.await_args_list]
        assert transitions == [Transition.ENTERED, Transition.EXITED, Transition.ENTERED]

    @pytest.mark.asyncio
    async def test_missing_snapshot_matches_nothing(self, engine, resolver, segments) -> None:
        await _segment(segments, "everyone_unengaged", {
            "type": "rules",
            "rules": [{"field": "email_opens_30d", "operator": "equals", "value": 0}],
        })
        person_id = await resolver.resolve_person({"email": "fresh@example.com"})
        result = await engine.evaluate_all_segments_for_person(person_id)
        assert result.evaluated == 1
        assert result.entered == 0

    @pytest.mark.asyncio
    async def test_unknown_person_raises(self, engine) -> None:
        with pytest.raises(NotFoundError):
            await engine.evaluate_all_segments_for_person("missing")

    @pytest.mark.asyncio
    async def test_malformed_segment_does_not_block_others(self, db, engine, resolver, features, segments) -> None:
        bad = Segment(name="bad_rules", conditions={"type": "rules", "rules": [{"field": "nope", "operator": "equals"}]})
        await db["segments"].insert_one(bad.to_document())
        await _segment(segments, "bad_sql", {"type": "sql", "sql": "pf.missing_column = 1"})
        good = await _segment(segments, "power_users", POWER_USERS)
        person_id = await _person(resolver, features, "a@example.com", lessons_completed_30d=15)

        result = await engine.evaluate_all_segments_for_person(person_id)

        assert result.evaluated == 3
        assert result.entered == 1
        assert len(result.errors) == 2
        assert await segments.active_membership(person_id, good.segment_id) is not None

    @pytest.mark.asyncio
    async def test_predicate_breakout_does_not_block_others(self, engine, resolver, features, segments) -> None:
        await _segment(segments, "a_bad", {"type": "sql", "sql": "1=1) UNION ALL SELECT 5 AS matched FROM pf WHERE (1=1"})
        good = await _segment(segments, "z_power", POWER_USERS)
        person_id = await _person(resolver, features, "a@example.com", lessons_completed_30d=11)

        result = await engine.evaluate_all_segments_for_person(person_id)

        assert result.entered == 1
        assert len(result.errors) == 1
        assert await segments.active_membership(person_id, good.segment_id) is not None

    @pytest.mark.asyncio
    async def test_dispatch_failure_keeps_transition(self, engine, resolver, features, segments, dispatcher) -> None:
        segment = await _segment(segments, "power_users", POWER_USERS)
        person_id = await _person(resolver, features, "a@example.com", lessons_completed_30d=15)
        dispatcher.notify.side_effect = DownstreamError("broker down")

        result = await engine.evaluate_all_segments_for_person(person_id)

        assert result.entered == 1
        assert await segments.active_membership(person_id, segment.segment_id) is not None


class TestBatchEvaluation:
    """Sweeps over every person."""

    @pytest.mark.asyncio
    async def test_power_users_scenario(self, engine, resolver, features, segments) -> None:
        segment = await _segment(segments, "power_users", POWER_USERS)
        for n in range(11):
            await _person(resolver, features, f"power{n}@example.com", lessons_completed_30d=11 + n)
        for n in range(5):
            await _person(resolver, features, f"casual{n}@example.com", lessons_completed_30d=(0, 3, 5, 8, 10)[n])

        summary = await engine.evaluate_all_persons()

        assert summary.total == 16
        assert summary.failed == 0
        members = await engine.segment_members(segment.segment_id)
        assert len(members) == 11

        again = await engine.evaluate_all_persons()
        assert again.successful == 16
        assert await engine.segment_member_count(segment.segment_id) == 11

    @pytest.mark.asyncio
    async def test_members_of_unknown_segment(self, engine) -> None:
        with pytest.raises(NotFoundError):
            await engine.segment_members("missing")


class TestBuiltinSegments:
    """Seeding the predefined catalogue."""

    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self, segments) -> None:
        assert await seed_builtin_segments(segments) == len(BUILTIN_SEGMENTS)
        assert await seed_builtin_segments(segments) == 0
        names = {s.name for s in await segments.active_segments()}
        assert "power_users" in names

    def test_builtin_conditions_are_valid(self) -> None:
        for item in BUILTIN_SEGMENTS:
            Segment.model_validate(item).parsed_conditions()


class TestMembershipStore:
    """The unique open-row guarantee at the storage layer."""

    @pytest.mark.asyncio
    async def test_second_open_row_refused(self, segments, clock) -> None:
        assert await segments.open_membership("p1", "s1", clock()) is not None
        assert await segments.open_membership("p1", "s1", clock()) is None

    @pytest.mark.asyncio
    async def test_closing_twice_is_a_noop(self, segments, clock) -> None:
        await segments.open_membership("p1", "s1", clock())
        assert await segments.close_membership("p1", "s1", clock()) is not None
        assert await segments.close_membership("p1", "s1", clock()) is None


class TestSegmentDefinitions:
    """Conditions are validated on save and parsed once per load."""

    @pytest.mark.asyncio
    async def test_malformed_conditions_refused_on_save(self, segments) -> None:
        bad = Segment(name="bad", conditions={"type": "rules", "rules": [{"field": "nope", "operator": "equals"}]})
        with pytest.raises(ValidationError):
            await segments.save_segment(bad)
        assert await segments.get_segment(bad.segment_id) is None

    @pytest.mark.asyncio
    async def test_loaded_segments_parse_once(self, segments) -> None:
        await _segment(segments, "power_users", POWER_USERS)
        (loaded,) = await segments.active_segments()
        assert loaded.parsed_conditions() is loaded.parsed_conditions()
        assert isinstance(loaded.parsed_conditions(), RulesCondition)
