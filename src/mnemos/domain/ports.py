"""
Ports (interfaces) for the backing store.

These define the contract that infrastructure adapters must implement.
Application services depend on these abstractions, not concrete implementations.
"""

from abc import ABC, abstractmethod
from datetime import date

from .models import CardFlag, CardProgress, CardTemplate, Learner, SessionState, StreakMilestone


class ProgressRepository(ABC):
    """
    Port for card_progress rows keyed by (learner_id, card_id).

    Implementations:
        - InMemoryStore: dict-backed, for tests and single-process use.
        - SqliteStore: stdlib sqlite3 rows.
    """

    @abstractmethod
    async def get_progress(self, learner_id: str, card_id: str) -> CardProgress | None:
        pass

    @abstractmethod
    async def get_progress_many(
        self, learner_id: str, card_ids: list[str]
    ) -> dict[str, CardProgress]:
        """
        Fetch stored progress for a set of cards. Cards without a row are absent.
        """
        pass

    @abstractmethod
    async def save_progress(self, progress: CardProgress, expected_version: int) -> CardProgress:
        """
        Compare-and-swap write.

        Args:
            progress: The new row.
            expected_version: Version the caller read (0 for a row that did not exist).

        Returns:
            The stored row with its version bumped.

        Raises:
            VersionConflict: The stored version differs from expected_version.
        """
        pass


class SessionStateRepository(ABC):
    @abstractmethod
    async def get_session_state(self, learner_id: str, day: date) -> SessionState:
        """Return the counters for the day, zeroed when no row exists yet."""
        pass

    @abstractmethod
    async def save_session_state(self, state: SessionState, expected_version: int) -> SessionState:
        pass

    @abstractmethod
    async def active_days(self, learner_id: str, until: date) -> list[date]:
        """Days up to and including `until` with at least one accepted rating, newest first."""
        pass


class ContentRepository(ABC):
    """
    Read-only port onto curated content and learner profiles.
    """

    @abstractmethod
    async def get_template(self, card_id: str) -> CardTemplate | None:
        pass

    @abstractmethod
    async def get_templates(self, card_ids: list[str]) -> dict[str, CardTemplate]:
        pass

    @abstractmethod
    async def get_learner(self, learner_id: str) -> Learner | None:
        pass


class FlagRepository(ABC):
    """
    Port for learner-raised card flags. One open flag per learner and card.
    """

    @abstractmethod
    async def add_flag(self, flag: CardFlag) -> None:
        """
        Raises:
            DuplicateFlag: The learner already flagged this card.
        """
        pass

    @abstractmethod
    async def flag_counts(self, card_ids: list[str]) -> dict[str, int]:
        """Number of flags per card. Cards nobody flagged are absent."""
        pass

    @abstractmethod
    async def list_flags(self, card_id: str) -> list[CardFlag]:
        pass


class MilestoneRepository(ABC):
    @abstractmethod
    async def add_milestone(self, milestone: StreakMilestone) -> bool:
        """Record a reached milestone. Returns False if the learner already had it."""
        pass

    @abstractmethod
    async def list_milestones(self, learner_id: str) -> list[StreakMilestone]:
        pass
