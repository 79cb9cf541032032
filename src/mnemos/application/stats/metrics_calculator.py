"""
Metrics calculator for deriving problem scores from rating history.

This is a pure computation module with no I/O.
"""

import math
from collections import defaultdict
from dataclasses import dataclass, field

from mnemos.application.config import AnalyticsThresholds
from mnemos.domain.models import CardState
from mnemos.domain.stats.models import Classification, ProblemScore, RatingEvent, Severity


@dataclass
class CardRatingStats:
    """
    Running totals for one card, accumulated event by event.
    """

    card_id: str
    total: int = 0
    lapses: int = 0
    review_drift_sum: float = 0.0
    review_transitions: int = 0
    # learner_id -> [ratings, successes]
    per_learner: dict[str, list[int]] = field(default_factory=lambda: defaultdict(lambda: [0, 0]))

    def add(self, event: RatingEvent) -> None:
        self.total += 1
        counts = self.per_learner[event.learner_id]
        counts[0] += 1
        if event.is_lapse:
            self.lapses += 1
        else:
            counts[1] += 1
        if event.state_before == CardState.REVIEW:
            self.review_drift_sum += event.ease_after - event.ease_before
            self.review_transitions += 1


class MetricsCalculator:
    """
    Computes problem scores and classifications from rating events.

    Stateless and side-effect free.
    """

    def __init__(self, thresholds: AnalyticsThresholds | None = None):
        self.thresholds = thresholds or AnalyticsThresholds()

    def aggregate(self, events: list[RatingEvent]) -> dict[str, CardRatingStats]:
        stats: dict[str, CardRatingStats] = {}
        for event in events:
            card = stats.get(event.card_id)
            if card is None:
                card = stats[event.card_id] = CardRatingStats(card_id=event.card_id)
            card.add(event)
        return stats

    def score(self, card: CardRatingStats) -> ProblemScore:
        lapse_rate = self._compute_lapse_rate(card)
        drift = self._compute_ease_drift(card)
        stddev, learners = self._compute_success_stddev(card)
        classification = self.classify(lapse_rate, stddev)
        problem_score = self._compute_problem_score(lapse_rate, stddev)

        return ProblemScore(
            card_id=card.card_id,
            total_ratings=card.total,
            lapse_rate=lapse_rate,
            avg_ease_drift=drift,
            success_rate_stddev=stddev,
            learners=learners,
            problem_score=problem_score,
            severity=self.severity(problem_score),
            classification=classification,
        )

    def compute(self, events: list[RatingEvent]) -> dict[str, ProblemScore]:
        """
        Score every card with at least min_ratings events.
        """
        return {
            card_id: self.score(card)
            for card_id, card in self.aggregate(events).items()
            if card.total >= self.thresholds.min_ratings
        }

    def classify(self, lapse_rate: float, success_rate_stddev: float) -> Classification:
        """
        Tie-break order matters: a card that most learners fail is hard even if
        their success rates also disagree.
        """
        if lapse_rate >= self.thresholds.high_lapse_threshold:
            return Classification.HARD
        if success_rate_stddev > self.thresholds.variability_threshold:
            return Classification.VARIABLE
        return Classification.OPTIMAL

    def severity(self, problem_score: float) -> Severity:
        if problem_score >= self.thresholds.severity_high:
            return Severity.HIGH
        if problem_score >= self.thresholds.severity_medium:
            return Severity.MEDIUM
        return Severity.LOW

    def _compute_lapse_rate(self, card: CardRatingStats) -> float:
        if card.total == 0:
            return 0.0
        return card.lapses / card.total

    def _compute_ease_drift(self, card: CardRatingStats) -> float:
        """
        Mean ease change across review-state transitions.
        """
        if card.review_transitions == 0:
            return 0.0
        return card.review_drift_sum / card.review_transitions

    def _compute_success_stddev(self, card: CardRatingStats) -> tuple[float, int]:
        """
        Population standard deviation of per-learner success rates.

        High values mean some learners consistently fail the card while others
        don't, which points at an ambiguous card rather than a hard one.
        """
        rates = [
            successes / ratings
            for ratings, successes in card.per_learner.values()
            if ratings >= self.thresholds.min_ratings_per_learner
        ]
        if len(rates) < 2:
            return 0.0, len(rates)

        mean = sum(rates) / len(rates)
        variance = sum((r - mean) ** 2 for r in rates) / len(rates)
        return math.sqrt(variance), len(rates)

    def _compute_problem_score(self, lapse_rate: float, stddev: float) -> float:
        """
        0..100 blend of lapse rate and learner disagreement.

        Disagreement saturates at twice the variability threshold.
        """
        t = self.thresholds
        variability = min(1.0, stddev / (2.0 * t.variability_threshold))
        score = 100.0 * (t.lapse_weight * lapse_rate + t.variability_weight * variability)
        return round(max(0.0, min(100.0, score)), 2)
