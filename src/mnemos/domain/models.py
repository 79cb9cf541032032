"""
Domain models for scheduling and study sessions.

These are pure data structures with no I/O or external dependencies.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum, IntEnum

from .constants import DEFAULT_STARTING_EASE, DEFAULT_TIMEZONE
from .errors import InvalidRating


class Rating(IntEnum):
    """
    Learner self-assessment after a card is shown, ordered by strength.
    """

    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4

    @classmethod
    def parse(cls, value: "Rating | str | int") -> "Rating":
        """
        Accept a Rating, its lowercase name ("good") or its integer value (3).

        Raises InvalidRating for anything outside the four-value domain.
        """
        if isinstance(value, Rating):
            return value
        if isinstance(value, bool):
            raise InvalidRating(value)
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                raise InvalidRating(value) from None
        if isinstance(value, str):
            key = value.strip().upper()
            if key in cls.__members__:
                return cls[key]
        raise InvalidRating(value)

    @property
    def label(self) -> str:
        return self.name.lower()


class CardState(str, Enum):
    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"


class Tier(str, Enum):
    FREE = "free"
    PAID = "paid"
    ADMIN = "admin"


@dataclass(frozen=True)
class CardTemplate:
    """
    A content unit owned by the curation subsystem. Read-only to the core.

    Attributes:
        id: Card identifier.
        subject_id: Subject the card is filed under (None if unassigned).
        is_public: Visibility flag; hidden cards are never offered.
        flagged_for_review: Held back by a curator pending review.
        position: Curator-defined ordering inside the subject.
    """

    id: str
    subject_id: str | None
    front: str = ""
    back: str = ""
    is_public: bool = True
    flagged_for_review: bool = False
    position: int = 0
    creator_id: str | None = None
    created_at: datetime | None = None

    @property
    def is_eligible(self) -> bool:
        return self.is_public and not self.flagged_for_review


@dataclass(frozen=True)
class Learner:
    id: str
    tier: Tier = Tier.FREE
    timezone: str | None = None


@dataclass(frozen=True)
class Subject:
    """
    A node in the subject taxonomy, addressed by its materialized path.

    Attributes:
        id: Label used as the last path segment.
        name: Display name.
        path: Dot-joined chain of ancestor ids ending with this id.
    """

    id: str
    name: str
    path: str
    is_active: bool = True

    @property
    def depth(self) -> int:
        return self.path.count(".") + 1

    @property
    def parent_path(self) -> str | None:
        head, sep, _ = self.path.rpartition(".")
        return head if sep else None


@dataclass(frozen=True)
class Deck:
    """
    A named collection of cards: explicit cards plus whole subject subtrees.
    """

    id: str
    name: str
    subject_ids: frozenset[str] = frozenset()
    card_ids: frozenset[str] = frozenset()


@dataclass(frozen=True)
class DeckSelector:
    """
    Which decks a session draws from. An empty selector matches every deck.

    subject_ids select subject subtrees directly, without going through a deck.
    """

    deck_ids: frozenset[str] = frozenset()
    subject_ids: frozenset[str] = frozenset()

    @classmethod
    def of(
        cls,
        deck_ids: list[str] | None = None,
        subject_ids: list[str] | None = None,
    ) -> "DeckSelector":
        return cls(frozenset(deck_ids or ()), frozenset(subject_ids or ()))

    @property
    def is_empty(self) -> bool:
        return not self.deck_ids and not self.subject_ids


@dataclass(frozen=True)
class CardProgress:
    """
    Mutable SRS state for one learner x card pair. Only the scheduler produces
    new values; rows are replaced, never edited in place.

    Attributes:
        interval: Time until next due (learning steps are minutes, reviews days).
        ease: Multiplicative growth factor, floored at the policy minimum.
        repetitions: Consecutive non-again outcomes.
        lapses: Number of again ratings.
        step: Index of the current learning step.
        version: Optimistic concurrency stamp, bumped by every save.
    """

    learner_id: str
    card_id: str
    state: CardState = CardState.NEW
    interval: timedelta = timedelta(0)
    ease: float = DEFAULT_STARTING_EASE
    due_at: datetime | None = None
    repetitions: int = 0
    lapses: int = 0
    last_reviewed_at: datetime | None = None
    step: int = 0
    version: int = 0

    @classmethod
    def new(
        cls, learner_id: str, card_id: str, ease: float = DEFAULT_STARTING_EASE
    ) -> "CardProgress":
        return cls(learner_id=learner_id, card_id=card_id, ease=ease)

    def is_due(self, now: datetime) -> bool:
        return self.due_at is None or self.due_at <= now


@dataclass(frozen=True)
class TierLimits:
    """Daily quotas. None means unbounded."""

    max_new_per_day: int | None = None
    max_reviews_per_day: int | None = None


@dataclass(frozen=True)
class SessionState:
    """
    Per learner, per local calendar day counters used for quota enforcement.

    ratings counts every accepted rating, learning steps included; a day with
    ratings > 0 is an active day for streaks.
    """

    learner_id: str
    day: date
    new_introduced: int = 0
    reviews_done: int = 0
    ratings: int = 0
    version: int = 0

    def new_remaining(self, limits: TierLimits) -> int | None:
        if limits.max_new_per_day is None:
            return None
        return max(0, limits.max_new_per_day - self.new_introduced)

    def reviews_remaining(self, limits: TierLimits) -> int | None:
        if limits.max_reviews_per_day is None:
            return None
        return max(0, limits.max_reviews_per_day - self.reviews_done)


@dataclass(frozen=True)
class CardRef:
    """
    One entry of a study queue.

    presented_version is the progress version at build time; a rating that
    quotes an older version is a resubmission.
    """

    card_id: str
    state: CardState
    due_at: datetime | None
    presented_version: int = 0


@dataclass
class StudySession:
    """An ordered, size-bounded queue for one learner."""

    token: str
    learner_id: str
    tier: Tier
    selector: DeckSelector
    day: date
    created_at: datetime
    timezone: str = DEFAULT_TIMEZONE
    cards: list[CardRef] = field(default_factory=list)
    limit_reached: bool = False

    @property
    def continues(self) -> bool:
        return bool(self.cards) and not self.limit_reached

    def find(self, card_id: str) -> CardRef | None:
        for ref in self.cards:
            if ref.card_id == card_id:
                return ref
        return None


@dataclass(frozen=True)
class AdvanceResult:
    """
    Outcome of feeding one rating into a session.

    accepted is False when the rating was withheld because the card's quota
    category was already exhausted for the day; nothing was persisted then.
    milestones lists streak milestones (in days) first reached by this rating.
    """

    updated_progress: CardProgress | None
    session_continues: bool
    limit_reached: bool
    accepted: bool
    session: StudySession
    milestones: tuple[int, ...] = ()


class FlagReason(str, Enum):
    INCORRECT = "incorrect"
    SPELLING = "spelling"
    CONFUSING = "confusing"
    OTHER = "other"

    @classmethod
    def parse(cls, value: "FlagReason | str | None") -> "FlagReason":
        """Unrecognised reasons are filed as OTHER rather than rejected."""
        if isinstance(value, FlagReason):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True)
class CardFlag:
    """
    A learner's report that a card is wrong or unclear.

    Attributes:
        reason: Category picked by the learner.
        comment: Optional free text; never empty when present.
    """

    id: str
    learner_id: str
    card_id: str
    reason: FlagReason
    created_at: datetime
    comment: str | None = None


@dataclass(frozen=True)
class StreakMilestone:
    learner_id: str
    days: int
    reached_on: date


@dataclass(frozen=True)
class StreakSummary:
    """
    Consecutive-day study streak for one learner.

    Attributes:
        current: Run of active days ending today, or yesterday when nothing
            has been rated yet today.
        longest: Longest run ever recorded.
        last_active_day: Most recent day with an accepted rating.
        active: current > 0, i.e. the streak can still be extended today.
        next_milestone: Smallest configured milestone above current, if any.
        milestones: Milestones already reached, ascending.
    """

    learner_id: str
    current: int
    longest: int
    last_active_day: date | None
    active: bool
    next_milestone: int | None
    milestones: tuple[int, ...] = ()
