"""Shared base for models persisted as MongoDB documents."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


class DocumentModel(BaseModel):
    """Pydantic model with a Mongo round-trip and UTC-normalised datetimes."""

    model_config = ConfigDict(extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _ensure_utc(cls, v: Any) -> Any:
        """Coerce naive datetimes (as BSON hands them back) to UTC."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="python")

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> Self:
        doc = dict(doc)
        doc.pop("_id", None)
        return cls.model_validate(doc)


class BatchSummary(BaseModel):
    """Outcome of a batch run over many persons."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
