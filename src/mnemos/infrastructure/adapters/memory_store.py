"""
In-Memory Store: Infrastructure adapter backed by plain dicts.

Implements every port in one object so tests and single-process runs can share
a single backing store. Rows are immutable dataclasses replaced on write.
"""

import logging
from collections import Counter
from dataclasses import replace
from datetime import date

from mnemos.domain.errors import DuplicateFlag, VersionConflict
from mnemos.domain.models import (
    CardFlag,
    CardProgress,
    CardTemplate,
    Learner,
    SessionState,
    StreakMilestone,
)
from mnemos.domain.ports import (
    ContentRepository,
    FlagRepository,
    MilestoneRepository,
    ProgressRepository,
    SessionStateRepository,
)
from mnemos.domain.stats.models import AnalyticsWindow, RatingEvent
from mnemos.domain.stats.ports import RatingEventLog

logger = logging.getLogger(__name__)


class InMemoryStore(
    ProgressRepository,
    SessionStateRepository,
    ContentRepository,
    RatingEventLog,
    FlagRepository,
    MilestoneRepository,
):
    def __init__(self):
        self._progress: dict[tuple[str, str], CardProgress] = {}
        self._session_states: dict[tuple[str, date], SessionState] = {}
        self._events: list[RatingEvent] = []
        self._templates: dict[str, CardTemplate] = {}
        self._learners: dict[str, Learner] = {}
        self._flags: dict[tuple[str, str], CardFlag] = {}
        self._milestones: dict[tuple[str, int], StreakMilestone] = {}

    # ---------- Content ----------

    def put_template(self, template: CardTemplate) -> None:
        self._templates[template.id] = template

    def put_learner(self, learner: Learner) -> None:
        self._learners[learner.id] = learner

    async def get_template(self, card_id: str) -> CardTemplate | None:
        return self._templates.get(card_id)

    async def get_templates(self, card_ids: list[str]) -> dict[str, CardTemplate]:
        return {cid: self._templates[cid] for cid in card_ids if cid in self._templates}

    async def get_learner(self, learner_id: str) -> Learner | None:
        return self._learners.get(learner_id)

    # ---------- Progress ----------

    async def get_progress(self, learner_id: str, card_id: str) -> CardProgress | None:
        return self._progress.get((learner_id, card_id))

    async def get_progress_many(
        self, learner_id: str, card_ids: list[str]
    ) -> dict[str, CardProgress]:
        found = {}
        for card_id in card_ids:
            row = self._progress.get((learner_id, card_id))
            if row is not None:
                found[card_id] = row
        return found

    async def save_progress(self, progress: CardProgress, expected_version: int) -> CardProgress:
        key = (progress.learner_id, progress.card_id)
        current = self._progress.get(key)
        actual = current.version if current else 0
        if actual != expected_version:
            raise VersionConflict(key, expected_version, actual)
        stored = replace(progress, version=actual + 1)
        self._progress[key] = stored
        return stored

    # ---------- Session state ----------

    async def get_session_state(self, learner_id: str, day: date) -> SessionState:
        return self._session_states.get((learner_id, day)) or SessionState(learner_id, day)

    async def save_session_state(self, state: SessionState, expected_version: int) -> SessionState:
        key = (state.learner_id, state.day)
        current = self._session_states.get(key)
        actual = current.version if current else 0
        if actual != expected_version:
            raise VersionConflict(key, expected_version, actual)
        stored = replace(state, version=actual + 1)
        self._session_states[key] = stored
        return stored

    async def active_days(self, learner_id: str, until: date) -> list[date]:
        days = [
            day
            for (owner, day), state in self._session_states.items()
            if owner == learner_id and day <= until and state.ratings > 0
        ]
        return sorted(days, reverse=True)

    # ---------- Rating events ----------

    async def append(self, event: RatingEvent) -> None:
        self._events.append(event)

    async def list_events(self, window: AnalyticsWindow | None = None) -> list[RatingEvent]:
        events = [e for e in self._events if window is None or window.contains(e.occurred_at)]
        return sorted(events, key=lambda e: (e.occurred_at, e.id))

    # ---------- Flags ----------

    async def add_flag(self, flag: CardFlag) -> None:
        key = (flag.learner_id, flag.card_id)
        if key in self._flags:
            raise DuplicateFlag(flag.learner_id, flag.card_id)
        self._flags[key] = flag

    async def flag_counts(self, card_ids: list[str]) -> dict[str, int]:
        wanted = set(card_ids)
        return dict(Counter(f.card_id for f in self._flags.values() if f.card_id in wanted))

    async def list_flags(self, card_id: str) -> list[CardFlag]:
        flags = [f for f in self._flags.values() if f.card_id == card_id]
        return sorted(flags, key=lambda f: (f.created_at, f.id))

    # ---------- Streak milestones ----------

    async def add_milestone(self, milestone: StreakMilestone) -> bool:
        key = (milestone.learner_id, milestone.days)
        if key in self._milestones:
            return False
        self._milestones[key] = milestone
        return True

    async def list_milestones(self, learner_id: str) -> list[StreakMilestone]:
        found = [m for (owner, _), m in self._milestones.items() if owner == learner_id]
        return sorted(found, key=lambda m: m.days)
