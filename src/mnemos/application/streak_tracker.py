"""
Streak Tracker: consecutive study days and milestone awards.

Active days come from the per-day session counters, so a streak is derived
from what was actually rated rather than kept as a separate running total.
"""

import logging
from datetime import date, timedelta

from mnemos.application.config import AppConfig
from mnemos.domain.models import StreakMilestone, StreakSummary
from mnemos.domain.ports import MilestoneRepository, SessionStateRepository

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


def current_streak(active_days: list[date], today: date) -> int:
    """
    Length of the run of active days ending today.

    A run ending yesterday still counts: the learner has until the end of
    today to extend it.
    """
    days = set(active_days)
    cursor = today if today in days else today - ONE_DAY
    run = 0
    while cursor in days:
        run += 1
        cursor -= ONE_DAY
    return run


def longest_streak(active_days: list[date]) -> int:
    longest = run = 0
    previous: date | None = None
    for day in sorted(set(active_days)):
        run = run + 1 if previous is not None and day - previous == ONE_DAY else 1
        longest = max(longest, run)
        previous = day
    return longest


class StreakTracker:
    def __init__(
        self,
        session_states: SessionStateRepository,
        milestones: MilestoneRepository,
        config: AppConfig | None = None,
    ):
        self.config = config or AppConfig()
        self._states = session_states
        self._milestones = milestones

    async def summary(self, learner_id: str, today: date) -> StreakSummary:
        days = await self._states.active_days(learner_id, today)
        current = current_streak(days, today)
        reached = tuple(m.days for m in await self._milestones.list_milestones(learner_id))
        upcoming = [m for m in self.config.streak_milestones if m > current]
        return StreakSummary(
            learner_id=learner_id,
            current=current,
            longest=longest_streak(days),
            last_active_day=days[0] if days else None,
            active=current > 0,
            next_milestone=upcoming[0] if upcoming else None,
            milestones=reached,
        )

    async def record(self, learner_id: str, today: date) -> tuple[int, ...]:
        """
        Award every configured milestone the current streak has reached.

        Returns:
            The milestones awarded by this call; already held ones are skipped.
        """
        days = await self._states.active_days(learner_id, today)
        current = current_streak(days, today)
        awarded = []
        for milestone in self.config.streak_milestones:
            if milestone > current:
                break
            if await self._milestones.add_milestone(StreakMilestone(learner_id, milestone, today)):
                logger.info(f"{learner_id} reached a {milestone}-day streak on {today}")
                awarded.append(milestone)
        return tuple(awarded)
