# Domain Stats Package
from .models import AnalyticsWindow, Classification, ProblemScore, RatingEvent, Severity
from .ports import RatingEventLog

__all__ = [
    "AnalyticsWindow",
    "Classification",
    "ProblemScore",
    "RatingEvent",
    "RatingEventLog",
    "Severity",
]
