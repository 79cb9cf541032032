"""
Ports (interfaces) for the rating event log.

These define the contract that infrastructure adapters must implement.
Application services depend on these abstractions, not concrete implementations.
"""

from abc import ABC, abstractmethod

from .models import AnalyticsWindow, RatingEvent


class RatingEventLog(ABC):
    """
    Append-only source of truth for the analytics aggregator.

    Implementations:
        - InMemoryStore: list-backed.
        - SqliteStore: rating_event table.
    """

    @abstractmethod
    async def append(self, event: RatingEvent) -> None:
        pass

    @abstractmethod
    async def list_events(self, window: AnalyticsWindow | None = None) -> list[RatingEvent]:
        """
        Fetch events inside the window, sorted by occurred_at ascending.

        Args:
            window: Time range; None returns the whole log.
        """
        pass
