import logging
from datetime import UTC, datetime, timedelta

import pytest

from mnemos.application.config import AppConfig, TierQuota
from mnemos.application.hierarchy_resolver import HierarchyResolver
from mnemos.application.session_builder import SessionBuilder
from mnemos.application.stats import MetricsCalculator, ProblemScoreService
from mnemos.application.streak_tracker import StreakTracker
from mnemos.application.study_service import StudyService
from mnemos.domain.models import CardTemplate, Deck, Learner, Tier
from mnemos.infrastructure.adapters.memory_store import InMemoryStore

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)

SUBJECTS = [
    ("bio", "Biology", None),
    ("cell", "Cell", "bio"),
    ("mito", "Mitochondria", "cell"),
    ("chem", "Chemistry", None),
]

TEMPLATES = [
    CardTemplate(id="c1", subject_id="cell", front="What is a cell?", position=2),
    CardTemplate(id="c2", subject_id="cell", front="Cell membrane?", position=1),
    CardTemplate(id="c3", subject_id="mito", front="ATP?", position=0),
    CardTemplate(id="c4", subject_id="chem", front="pH?", position=0),
    CardTemplate(id="c5", subject_id="bio", front="Hidden", is_public=False),
    CardTemplate(id="c6", subject_id="bio", front="Flagged", flagged_for_review=True),
]

DECKS = [
    Deck(id="biology", name="Biology", subject_ids=frozenset({"bio"})),
    Deck(id="chemistry", name="Chemistry", subject_ids=frozenset({"chem"})),
]

LEARNERS = [
    Learner(id="alice", tier=Tier.FREE),
    Learner(id="bob", tier=Tier.PAID),
    Learner(id="root", tier=Tier.ADMIN),
    Learner(id="kenji", tier=Tier.FREE, timezone="Asia/Tokyo"),
]


class Clock:
    """Mutable test clock."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        log_dir=tmp_path / "logs",
        tiers={
            Tier.FREE: TierQuota(max_new_per_day=2, max_reviews_per_day=3),
            Tier.PAID: TierQuota(max_new_per_day=50, max_reviews_per_day=500),
            Tier.ADMIN: TierQuota(),
        },
    )


@pytest.fixture
def store():
    store = InMemoryStore()
    for template in TEMPLATES:
        store.put_template(template)
    for learner in LEARNERS:
        store.put_learner(learner)
    return store


@pytest.fixture
def resolver(clock):
    resolver = HierarchyResolver(clock=clock)
    resolver.load(SUBJECTS, TEMPLATES, DECKS)
    return resolver


@pytest.fixture
def streaks(store, config):
    return StreakTracker(store, store, config)


@pytest.fixture
def builder(resolver, store, config, clock, streaks):
    return SessionBuilder(
        resolver,
        store,
        store,
        store,
        store,
        config=config,
        clock=clock,
        flags=store,
        streaks=streaks,
    )


@pytest.fixture
def service(builder, store, config, streaks):
    analytics = ProblemScoreService(store, MetricsCalculator(config.analytics))
    return StudyService(builder, store, analytics, store, streaks, config=config)


@pytest.fixture
def mock_home(tmp_path, monkeypatch):
    """Mocks Path.home() to point to a temp dir."""
    home = tmp_path / "home"
    home.mkdir()

    # Mocking HOME to a temp directory to isolate config/logs
    monkeypatch.setenv("HOME", str(home))
    return home


@pytest.fixture(autouse=True)
def reset_mnemos_logger():
    """setup_logging() detaches the package logger from root; undo that between tests."""
    yield
    logger = logging.getLogger("mnemos")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
