# Application Stats Package
from .metrics_calculator import CardRatingStats, MetricsCalculator
from .service import ProblemScoreService

__all__ = ["MetricsCalculator", "CardRatingStats", "ProblemScoreService"]
