"""Segment evaluation engine for the Growth Data Plane.

Evaluates each person's feature snapshot against every active segment and
tracks membership as a two-state machine (not-member <-> member).  Entering
opens a membership row, leaving closes it; closed rows are kept as history.
Every committed transition is handed to the automation dispatcher, whose
failures never undo the transition.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, get_args

import polars as pl
import pydantic
from pydantic import BaseModel, Field

from src.common.errors import DownstreamError, EvaluationError, NotFoundError
from src.common.metrics import (
    dispatch_failures_total,
    processing_latency_seconds,
    segment_evaluation_errors_total,
    segment_transitions_total,
)
from src.serving.automation_dispatcher import AutomationDispatcher
from src.storage.feature_store import MongoFeatureStore
from src.storage.identity_store import IdentityStore
from src.storage.models.base import BatchSummary, utcnow
from src.storage.models.features import PersonFeatures
from src.storage.models.segment import (
    RulesCondition,
    Segment,
    SegmentMembership,
    SegmentRule,
    SqlCondition,
    Transition,
)
from src.storage.segment_store import MongoSegmentStore

logger = logging.getLogger(__name__)

PREDICATE_TABLE = "pf"

# Seeded by name; an existing segment with the same name is left alone.
BUILTIN_SEGMENTS: list[dict[str, Any]] = [
    {
        "name": "creator_signup_no_course",
        "description": "Creators who signed up but have not created a course",
        "segment_type": "creator",
        "conditions": {
            "type": "rules",
            "rules": [{"field": "courses_created", "operator": "equals", "value": 0}],
        },
    },
    {
        "name": "course_ready_not_published",
        "description": "Creators with a course that is not published yet",
        "segment_type": "creator",
        "conditions": {
            "type": "sql",
            "sql": "pf.courses_created > 0 AND pf.courses_published = 0",
        },
    },
    {
        "name": "published_no_sales",
        "description": "Creators with a published course and no sales",
        "segment_type": "creator",
        "conditions": {
            "type": "rules",
            "rules": [
                {"field": "courses_published", "operator": "greater_than", "value": 0},
                {"field": "total_course_sales", "operator": "equals", "value": 0},
            ],
        },
    },
    {
        "name": "enrolled_no_progress",
        "description": "Students enrolled who have not completed a lesson",
        "segment_type": "student",
        "conditions": {
            "type": "rules",
            "rules": [
                {"field": "courses_enrolled", "operator": "greater_than", "value": 0},
                {"field": "lessons_completed", "operator": "equals", "value": 0},
            ],
        },
    },
    {
        "name": "active_learners",
        "description": "Students who completed lessons in the last 30 days",
        "segment_type": "student",
        "conditions": {"type": "sql", "sql": "pf.lessons_completed_30d > 0"},
    },
    {
        "name": "power_users",
        "description": "More than ten lessons completed in the last 30 days",
        "segment_type": "student",
        "conditions": {
            "type": "rules",
            "rules": [
                {"field": "lessons_completed_30d", "operator": "greater_than", "value": 10}
            ],
        },
    },
    {
        "name": "course_completed",
        "description": "Students who earned a certificate",
        "segment_type": "student",
        "conditions": {
            "type": "rules",
            "rules": [{"field": "certificates_earned", "operator": "greater_than", "value": 0}],
        },
    },
    {
        "name": "email_engaged",
        "description": "Clicked an email in the last 30 days",
        "segment_type": "engagement",
        "conditions": {
            "type": "rules",
            "rules": [{"field": "email_clicks_30d", "operator": "greater_than", "value": 0}],
        },
    },
    {
        "name": "email_unengaged",
        "description": "No email opens in the last 30 days",
        "segment_type": "engagement",
        "conditions": {
            "type": "rules",
            "rules": [{"field": "email_opens_30d", "operator": "equals", "value": 0}],
        },
    },
    {
        "name": "high_revenue",
        "description": "Creators with 1000+ in total revenue",
        "segment_type": "revenue",
        "conditions": {"type": "sql", "sql": "pf.total_revenue >= 1000"},
    },
]


class EvaluationResult(BaseModel):
    person_id: str
    evaluated: int = 0
    entered: int = 0
    exited: int = 0
    errors: list[str] = Field(default_factory=list)


# ── Rule evaluation ───────────────────────────────────────────────────


def _coerce(actual: Any, expected: Any) -> Any:
    """Let rules compare timestamp features against ISO strings."""
    if isinstance(actual, datetime) and isinstance(expected, str):
        try:
            parsed = datetime.fromisoformat(expected)
        except ValueError:
            return expected
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=actual.tzinfo)
    return expected


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, (list, tuple, set)):
        return expected in actual
    return str(expected) in str(actual)


def evaluate_rule(actual: Any, operator: str, expected: Any) -> bool:
    """Apply one operator; incomparable values simply do not match."""
    expected = _coerce(actual, expected)
    match operator:
        case "equals":
            return actual == expected
        case "not_equals":
            return actual != expected
        case "greater_than" | "less_than":
            if actual is None or expected is None:
                return False
            try:
                return actual > expected if operator == "greater_than" else actual < expected
            except TypeError:
                return False
        case "contains":
            return _contains(actual, expected)
        case "not_contains":
            return not _contains(actual, expected)
        case "is_null":
            return actual is None
        case "is_not_null":
            return actual is not None
    raise ValueError(f"unknown operator {operator!r}")


def evaluate_rules(features: PersonFeatures, rules: list[SegmentRule]) -> bool:
    """AND-combine *rules*, stopping at the first that fails."""
    return all(
        evaluate_rule(getattr(features, rule.field), rule.operator, rule.value)
        for rule in rules
    )


def _polars_dtype(annotation: Any) -> Any:
    base = next(
        (a for a in get_args(annotation) if a is not type(None)), annotation
    )
    if base is bool:
        return pl.Boolean
    if base is int:
        return pl.Int64
    if base is float:
        return pl.Float64
    if base is datetime:
        return pl.Datetime("us", "UTC")
    return pl.Utf8


# Declared up front so an unset feature is a typed null, not a Null column.
FEATURE_SCHEMA: dict[str, Any] = {
    name: _polars_dtype(field.annotation)
    for name, field in PersonFeatures.model_fields.items()
}


def evaluate_predicate(features: PersonFeatures, sql: str) -> bool:
    """Run a boolean SQL predicate against a one-row frame named ``pf``.

    The frame lives only in memory, so a predicate cannot have side effects.

    Raises:
        ValueError: the predicate did not reduce to a single row count.
    """
    frame = pl.DataFrame([features.model_dump()], schema=FEATURE_SCHEMA)
    ctx = pl.SQLContext(frames={PREDICATE_TABLE: frame})
    result = ctx.execute(
        f"SELECT COUNT(*) AS matched FROM {PREDICATE_TABLE} WHERE ({sql})",
        eager=True,
    )
    if result.shape != (1, 1):
        raise ValueError("predicate must be a single boolean expression")
    return int(result.item()) > 0


def evaluate_segment_membership(
    features: PersonFeatures,
    conditions: RulesCondition | SqlCondition,
    segment_id: str | None = None,
) -> bool:
    """Decide membership for one snapshot.

    Raises:
        EvaluationError: the predicate could not be evaluated.
    """
    if isinstance(conditions, RulesCondition):
        return evaluate_rules(features, conditions.rules)
    try:
        return evaluate_predicate(features, conditions.sql)
    except Exception as exc:
        raise EvaluationError(segment_id, f"predicate failed: {exc}") from exc


async def seed_builtin_segments(store: MongoSegmentStore) -> int:
    """Insert missing built-in segments; returns how many were added."""
    added = 0
    for item in BUILTIN_SEGMENTS:
        segment = Segment.model_validate(item)
        if await store.ensure_segment(segment):
            added += 1
    logger.info("Seeded %d built-in segments", added)
    return added


async def segment_members(
    store: MongoSegmentStore, segment_id: str
) -> list[SegmentMembership]:
    """Active members of *segment_id*, newest first.

    Raises:
        NotFoundError: no such segment.
    """
    if await store.get_segment(segment_id) is None:
        raise NotFoundError(f"segment {segment_id} not found")
    return await store.members(segment_id)


async def segment_member_count(store: MongoSegmentStore, segment_id: str) -> int:
    if await store.get_segment(segment_id) is None:
        raise NotFoundError(f"segment {segment_id} not found")
    return await store.member_count(segment_id)


# ── Engine ────────────────────────────────────────────────────────────


class SegmentationEngine:
    """Evaluates persons against active segments and records transitions."""

    def __init__(
        self,
        segment_store: MongoSegmentStore,
        feature_store: MongoFeatureStore,
        identity_store: IdentityStore,
        dispatcher: AutomationDispatcher,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._segments = segment_store
        self._features = feature_store
        self._identities = identity_store
        self._dispatcher = dispatcher
        self._clock = clock

    # ── evaluation ────────────────────────────────────────────────────

    def _matches(self, segment: Segment, features: PersonFeatures | None) -> bool:
        try:
            conditions = segment.parsed_conditions()
        except pydantic.ValidationError as exc:
            raise EvaluationError(
                segment.segment_id, f"malformed conditions: {exc.error_count()} errors"
            ) from exc
        if features is None:
            return False
        return evaluate_segment_membership(features, conditions, segment.segment_id)

    async def evaluate_all_segments_for_person(self, person_id: str) -> EvaluationResult:
        """Evaluate every active segment for *person_id* and apply transitions.

        A segment whose condition fails is logged and skipped; the others
        are still evaluated.

        Raises:
            NotFoundError: no such person.
        """
        return await self._evaluate_person(
            person_id, await self._segments.active_segments()
        )

    async def _evaluate_person(
        self, person_id: str, segments: list[Segment]
    ) -> EvaluationResult:
        if await self._identities.get_person(person_id) is None:
            raise NotFoundError(f"person {person_id} not found")

        result = EvaluationResult(person_id=person_id)
        with processing_latency_seconds.labels(pipeline_stage="segments").time():
            features = await self._features.get(person_id)
            for segment in segments:
                result.evaluated += 1
                try:
                    matches = self._matches(segment, features)
                except EvaluationError as exc:
                    segment_evaluation_errors_total.inc()
                    result.errors.append(str(exc))
                    logger.warning(
                        "Segment %s evaluation failed for %s: %s",
                        segment.segment_id,
                        person_id,
                        exc,
                    )
                    continue
                await self._apply(segment, person_id, matches, result)
        return result

    async def _apply(
        self, segment: Segment, person_id: str, matches: bool, result: EvaluationResult
    ) -> None:
        current = await self._segments.active_membership(person_id, segment.segment_id)
        now = self._clock()
        if matches and current is None:
            opened = await self._segments.open_membership(person_id, segment.segment_id, now)
            if opened is not None:
                result.entered += 1
                await self._notify(segment, person_id, Transition.ENTERED, now)
        elif not matches and current is not None:
            closed = await self._segments.close_membership(person_id, segment.segment_id, now)
            if closed is not None:
                result.exited += 1
                await self._notify(segment, person_id, Transition.EXITED, now)

    async def _notify(
        self, segment: Segment, person_id: str, transition: Transition, timestamp: datetime
    ) -> None:
        segment_transitions_total.labels(transition=transition.value).inc()
        logger.info("Person %s %s segment %s", person_id, transition.value, segment.name)
        try:
            await self._dispatcher.notify(
                person_id,
                segment.segment_id,
                transition,
                timestamp,
                segment_name=segment.name,
            )
        except DownstreamError as exc:
            # The membership row is the system of record; it stays committed.
            dispatch_failures_total.labels(transition=transition.value).inc()
            logger.error(
                "Dispatch of %s for person %s segment %s failed: %s",
                transition.value,
                person_id,
                segment.segment_id,
                exc,
            )

    async def evaluate_all_persons(self) -> BatchSummary:
        """Sweep every person.  Each person commits independently, so stopping
        part-way loses nothing already recorded."""
        summary = BatchSummary()
        segments = await self._segments.active_segments()
        async for person_id in self._identities.iter_person_ids():
            summary.total += 1
            try:
                result = await self._evaluate_person(person_id, segments)
            except Exception as exc:
                summary.failed += 1
                summary.errors.append(f"{person_id}: {exc}")
                logger.exception("Segment evaluation failed for person %s", person_id)
                continue
            summary.successful += 1
            summary.errors.extend(f"{person_id}: {err}" for err in result.errors)
        logger.info(
            "Segment sweep done: %d total, %d ok, %d failed",
            summary.total,
            summary.successful,
            summary.failed,
        )
        return summary

    # ── membership reads ──────────────────────────────────────────────

    async def segment_members(self, segment_id: str) -> list[SegmentMembership]:
        return await segment_members(self._segments, segment_id)

    async def segment_member_count(self, segment_id: str) -> int:
        return await segment_member_count(self._segments, segment_id)
