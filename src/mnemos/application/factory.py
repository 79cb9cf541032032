"""
Study Service Factory
Centralizes the logic for selecting the storage adapter and wiring services.
"""

import logging
from dataclasses import dataclass

from mnemos.application.config import AppConfig
from mnemos.application.hierarchy_resolver import HierarchyResolver
from mnemos.application.session_builder import SessionBuilder
from mnemos.application.stats import MetricsCalculator, ProblemScoreService
from mnemos.application.streak_tracker import StreakTracker
from mnemos.application.study_service import StudyService
from mnemos.domain.ports import (
    FlagRepository,
    MilestoneRepository,
    ProgressRepository,
    SessionStateRepository,
)
from mnemos.domain.stats.ports import RatingEventLog
from mnemos.infrastructure.adapters.memory_store import InMemoryStore
from mnemos.infrastructure.adapters.sqlite_store import SqliteStore
from mnemos.infrastructure.catalog import load_catalog

logger = logging.getLogger(__name__)


@dataclass
class Stores:
    content: InMemoryStore
    progress: ProgressRepository
    session_states: SessionStateRepository
    event_log: RatingEventLog
    flags: FlagRepository
    milestones: MilestoneRepository


def get_stores(config: AppConfig) -> Stores:
    """
    Returns the appropriate store implementations based on config.

    Content always lives in memory (loaded from the catalog); learner state
    goes to SQLite when a database path is configured.
    """
    content = InMemoryStore()
    if config.database_path is None:
        logger.debug("Backend: in-memory")
        return Stores(content, content, content, content, content, content)

    logger.debug(f"Backend: sqlite ({config.database_path})")
    sqlite = SqliteStore(config.database_path)
    return Stores(content, sqlite, sqlite, sqlite, sqlite, sqlite)


def build_resolver(config: AppConfig) -> HierarchyResolver:
    return HierarchyResolver(staleness_tolerance=config.staleness_tolerance)


def build_study_service(config: AppConfig, stores: Stores | None = None) -> StudyService:
    """
    Wire a StudyService from configuration, loading the catalog if one is set.
    """
    stores = stores or get_stores(config)
    resolver = build_resolver(config)
    if config.catalog_path is not None:
        load_catalog(config.catalog_path, stores.content, resolver)
    else:
        logger.warning("No catalog configured; starting with an empty content store")

    streaks = StreakTracker(stores.session_states, stores.milestones, config)
    builder = SessionBuilder(
        resolver,
        stores.content,
        stores.progress,
        stores.session_states,
        stores.event_log,
        config=config,
        flags=stores.flags,
        streaks=streaks,
    )
    analytics = ProblemScoreService(stores.event_log, MetricsCalculator(config.analytics))
    return StudyService(builder, stores.content, analytics, stores.flags, streaks, config=config)
