"""Segment definitions, membership rows and transition messages.

Segment conditions are persisted as JSON and validated into a tagged union
when loaded, so evaluation never has to guess at their shape.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, PrivateAttr, TypeAdapter, field_validator

from src.storage.models.base import DocumentModel, utcnow
from src.storage.models.features import FEATURE_FIELDS

RuleOperator = Literal[
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "contains",
    "not_contains",
    "is_null",
    "is_not_null",
]


class SegmentRule(BaseModel):
    field: str
    operator: RuleOperator
    value: Any = None

    @field_validator("field")
    @classmethod
    def _known_feature(cls, v: str) -> str:
        if v not in FEATURE_FIELDS:
            raise ValueError(f"unknown feature field {v!r}")
        return v


class RulesCondition(BaseModel):
    """AND-combined rules over the feature snapshot."""

    type: Literal["rules"] = "rules"
    rules: list[SegmentRule] = Field(..., min_length=1)


class SqlCondition(BaseModel):
    """Boolean SQL predicate over the feature snapshot, aliased ``pf``."""

    type: Literal["sql"] = "sql"
    sql: str = Field(..., min_length=1)

    @field_validator("sql")
    @classmethod
    def _single_expression(cls, v: str) -> str:
        v = v.strip()
        if ";" in v:
            raise ValueError("predicate must be a single expression")
        return v


SegmentConditions = Annotated[
    RulesCondition | SqlCondition,
    Field(discriminator="type"),
]

conditions_adapter: TypeAdapter[RulesCondition | SqlCondition] = TypeAdapter(
    SegmentConditions
)


class Segment(DocumentModel):
    segment_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(..., min_length=1)
    description: str | None = None
    segment_type: str = "custom"
    # Kept raw so one malformed definition cannot stop the others loading.
    conditions: dict[str, Any]
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    _parsed: RulesCondition | SqlCondition | None = PrivateAttr(default=None)

    def parsed_conditions(self) -> RulesCondition | SqlCondition:
        """Validate ``conditions`` once per loaded instance.

        Raises:
            pydantic.ValidationError: the conditions are malformed.
        """
        if self._parsed is None:
            self._parsed = conditions_adapter.validate_python(self.conditions)
        return self._parsed


class SegmentMembership(DocumentModel):
    membership_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    person_id: str
    segment_id: str
    entered_at: datetime = Field(default_factory=utcnow)
    exited_at: datetime | None = None
    is_active: bool = True

    def to_document(self) -> dict[str, Any]:
        doc = super().to_document()
        if self.is_active:
            doc["active_key"] = f"{self.person_id}:{self.segment_id}"
        return doc


class Transition(StrEnum):
    ENTERED = "entered"
    EXITED = "exited"


def transition_dedup_key(
    person_id: str, segment_id: str, transition: Transition, timestamp: datetime
) -> str:
    raw = f"{person_id}|{segment_id}|{transition.value}|{timestamp.isoformat()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class SegmentTransition(BaseModel):
    """Message handed to the automation dispatcher."""

    person_id: str
    segment_id: str
    segment_name: str | None = None
    transition: Transition
    timestamp: datetime

    @property
    def dedup_key(self) -> str:
        return transition_dedup_key(
            self.person_id, self.segment_id, self.transition, self.timestamp
        )
