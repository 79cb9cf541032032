"""
Problem Score Service: Application layer orchestrator.

Coordinates fetching rating history from the event log and scoring it.
"""

import logging

from mnemos.domain.stats.models import AnalyticsWindow, Classification, ProblemScore
from mnemos.domain.stats.ports import RatingEventLog

from .metrics_calculator import MetricsCalculator

logger = logging.getLogger(__name__)


class ProblemScoreService:
    """
    Application service for curator analytics.

    Follows Dependency Inversion: depends on the RatingEventLog abstraction,
    not concrete adapter implementations.
    """

    def __init__(
        self,
        event_log: RatingEventLog,
        calculator: MetricsCalculator | None = None,
    ):
        """
        Args:
            event_log: The repository (port) for rating history.
            calculator: Optional custom calculator; uses default thresholds if not provided.
        """
        self._log = event_log
        self._calc = calculator or MetricsCalculator()

    async def compute_problem_scores(
        self, window: AnalyticsWindow | None = None
    ) -> dict[str, ProblemScore]:
        """
        Score every card rated inside the window.

        Returns:
            Mapping of card id to ProblemScore.
        """
        events = await self._log.list_events(window)
        scores = self._calc.compute(events)
        logger.info(
            f"Computed problem scores for {len(scores)} card(s) from {len(events)} event(s)"
        )
        return scores

    async def get_problem_cards(
        self,
        window: AnalyticsWindow | None = None,
        classification: Classification | None = None,
        limit: int | None = None,
    ) -> list[ProblemScore]:
        """
        Problem scores ordered worst first, optionally filtered.

        Args:
            window: Time range of events to consider.
            classification: Keep only cards with this classification.
            limit: Maximum number of cards returned.
        """
        scores = list((await self.compute_problem_scores(window)).values())
        if classification is not None:
            scores = [s for s in scores if s.classification == classification]

        scores.sort(key=lambda s: (-s.problem_score, -s.total_ratings, s.card_id))
        if limit is not None:
            scores = scores[:limit]
        return scores
