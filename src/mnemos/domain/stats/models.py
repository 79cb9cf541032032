"""
Domain models for rating history and curator analytics.

These are pure data structures with no I/O or external dependencies.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from mnemos.domain.models import CardState, Rating


class Classification(str, Enum):
    OPTIMAL = "optimal"
    HARD = "hard"
    VARIABLE = "variable"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class RatingEvent:
    """
    A single append-only rating log entry.

    Attributes:
        id: ULID of the event.
        rating: Button pressed.
        occurred_at: When the rating was applied.
        state_before / state_after: Scheduler transition.
        ease_before / ease_after: Ease around the transition, for drift analysis.
    """

    id: str
    learner_id: str
    card_id: str
    rating: Rating
    occurred_at: datetime
    state_before: CardState
    state_after: CardState
    ease_before: float
    ease_after: float
    interval_before: timedelta = timedelta(0)
    interval_after: timedelta = timedelta(0)

    @property
    def is_lapse(self) -> bool:
        return self.rating == Rating.AGAIN


@dataclass(frozen=True)
class AnalyticsWindow:
    """
    Half-open [start, end) time range; a missing bound is unbounded.

    Naive bounds are taken as UTC so they compare against stored timestamps.
    """

    start: datetime | None = None
    end: datetime | None = None

    def __post_init__(self):
        for name in ("start", "end"):
            bound = getattr(self, name)
            if bound is not None and bound.tzinfo is None:
                object.__setattr__(self, name, bound.replace(tzinfo=UTC))

    def contains(self, moment: datetime) -> bool:
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment >= self.end:
            return False
        return True


@dataclass(frozen=True)
class ProblemScore:
    """
    Derived difficulty/ambiguity signal for one card.
    """

    card_id: str
    total_ratings: int
    lapse_rate: float
    avg_ease_drift: float
    success_rate_stddev: float
    learners: int
    problem_score: float
    severity: Severity
    classification: Classification
