"""Centralized constants for the mnemos core.

Policy defaults live here so every layer imports from a single source of truth.
The values are only defaults: the configuration layer can override all of them.
"""

# ---------- Scheduler ----------
DEFAULT_STARTING_EASE = 2.5
DEFAULT_MINIMUM_EASE = 1.3
DEFAULT_AGAIN_EASE_PENALTY = 0.2
DEFAULT_HARD_EASE_PENALTY = 0.15
DEFAULT_EASY_EASE_BONUS = 0.15
DEFAULT_EASY_BONUS = 1.3
DEFAULT_HARD_INTERVAL_FACTOR = 0.8
DEFAULT_LEARNING_STEPS_MINUTES = (1, 10)
DEFAULT_GRADUATION_STEPS = 2
DEFAULT_GRADUATING_INTERVAL_DAYS = 1
DEFAULT_MINIMUM_REVIEW_INTERVAL_DAYS = 1
DEFAULT_MAXIMUM_INTERVAL_DAYS = 36500
DEFAULT_FUZZ_FACTOR = 0.05
MAX_FUZZ_FACTOR = 0.1
DEFAULT_FUZZ_MINIMUM_INTERVAL_DAYS = 3

# ---------- Sessions ----------
DEFAULT_SESSION_SIZE = 20
DEFAULT_LEARN_AHEAD_MINUTES = 20
DEFAULT_TIMEZONE = "UTC"

# ---------- Hierarchy ----------
PATH_SEPARATOR = "."
PATH_RANGE_SENTINEL = "\U0010ffff"
DEFAULT_STALENESS_TOLERANCE_SECONDS = 30.0

# ---------- Analytics ----------
DEFAULT_HIGH_LAPSE_THRESHOLD = 0.4
DEFAULT_VARIABILITY_THRESHOLD = 0.25
DEFAULT_MIN_RATINGS = 1
DEFAULT_MIN_RATINGS_PER_LEARNER = 1
SEVERITY_HIGH_SCORE = 50.0
SEVERITY_MEDIUM_SCORE = 20.0

# ---------- Engagement ----------
DEFAULT_STREAK_MILESTONES = (3, 7, 14, 30, 50, 100, 365)
DEFAULT_FLAG_HOLD_THRESHOLD = 1
FLAG_COMMENT_MAX_LENGTH = 500
