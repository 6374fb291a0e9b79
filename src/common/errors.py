"""Error taxonomy shared by every Growth Data Plane component.

Callers catch the narrow type they can act on; HTTP handlers map each type
to a status code in one place.
"""

from __future__ import annotations


class GrowthDataPlaneError(Exception):
    """Base class for all domain errors."""


class ValidationError(GrowthDataPlaneError):
    """Malformed input (bad email, empty signal set, invalid condition)."""


class NotFoundError(GrowthDataPlaneError):
    """Unknown person or segment."""


class ConflictError(GrowthDataPlaneError):
    """A uniqueness race could not be settled by re-reading the winner."""


class EvaluationError(GrowthDataPlaneError):
    """A segment condition could not be evaluated."""

    def __init__(self, segment_id: str | None, message: str) -> None:
        super().__init__(f"segment {segment_id}: {message}")
        self.segment_id = segment_id


class DownstreamError(GrowthDataPlaneError):
    """The automation dispatcher failed to accept a transition."""
