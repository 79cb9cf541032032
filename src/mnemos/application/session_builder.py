"""
Session builder for quota-aware study sessions.

Builds ordered study queues by:
1. Resolving the deck selector to eligible cards
2. Splitting cards into learning, review and new buckets
3. Applying the learner's daily tier quotas
4. Feeding ratings back through the scheduler and rebuilding the queue
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, date, datetime
from weakref import WeakValueDictionary
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from mnemos.application.config import AppConfig
from mnemos.application.hierarchy_resolver import HierarchyResolver
from mnemos.application.id_service import generate_event_id, generate_session_token
from mnemos.application.scheduler import schedule
from mnemos.application.streak_tracker import StreakTracker
from mnemos.domain.errors import (
    CardNotInSession,
    ConcurrentRatingConflict,
    DuplicateRating,
    UnknownCard,
    VersionConflict,
)
from mnemos.domain.models import (
    AdvanceResult,
    CardProgress,
    CardRef,
    CardState,
    CardTemplate,
    DeckSelector,
    Rating,
    SessionState,
    StudySession,
    Tier,
    TierLimits,
)
from mnemos.domain.ports import (
    ContentRepository,
    FlagRepository,
    ProgressRepository,
    SessionStateRepository,
)
from mnemos.domain.stats.models import RatingEvent
from mnemos.domain.stats.ports import RatingEventLog

logger = logging.getLogger(__name__)

# One retry after a lost compare-and-swap, then the conflict is surfaced.
MAX_SAVE_ATTEMPTS = 2


def local_day(now: datetime, timezone: str) -> date:
    """
    Calendar day of `now` in the learner's timezone. Naive datetimes are UTC.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return now.astimezone(ZoneInfo(timezone)).date()


class SessionBuilder:
    """
    Produces study queues and applies ratings against the backing store.

    Ratings for one learner are serialized through a per-learner asyncio.Lock;
    rows shared across processes are protected by version compare-and-swap.
    """

    def __init__(
        self,
        resolver: HierarchyResolver,
        content: ContentRepository,
        progress: ProgressRepository,
        session_states: SessionStateRepository,
        event_log: RatingEventLog,
        config: AppConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        flags: FlagRepository | None = None,
        streaks: StreakTracker | None = None,
    ):
        self.config = config or AppConfig()
        self.resolver = resolver
        self._content = content
        self._progress = progress
        self._states = session_states
        self._events = event_log
        self._clock = clock or (lambda: datetime.now(UTC))
        self._flags = flags
        self._streaks = streaks
        # Entries vanish once no rating holds or awaits the lock
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()

    # ---------- Public API ----------

    async def build_session(
        self,
        learner_id: str,
        tier: Tier | str,
        selector: DeckSelector | None = None,
        now: datetime | None = None,
        timezone: str | None = None,
    ) -> StudySession:
        """
        Build a fresh session for a learner.

        Args:
            learner_id: Learner to build for.
            tier: Quota tier; decides the daily new and review limits.
            selector: Decks or subjects to draw from (None means everything).
            now: Build time, defaults to the injected clock.
            timezone: IANA zone that defines the learner's day boundary.

        Returns:
            StudySession with learning cards first, then due reviews, then new
            cards, truncated to the configured session size.
        """
        now = now or self._clock()
        tz = self.zone_name(timezone)
        session = StudySession(
            token=generate_session_token(),
            learner_id=learner_id,
            tier=Tier(tier),
            selector=selector or DeckSelector(),
            day=local_day(now, tz),
            created_at=now,
            timezone=tz,
        )
        counters = await self._states.get_session_state(learner_id, session.day)
        await self._fill(session, counters, now)
        logger.info(
            f"Built session {session.token} for {learner_id} ({session.tier.value}): "
            f"{len(session.cards)} card(s), limit_reached={session.limit_reached}"
        )
        return session

    async def advance(
        self,
        session: StudySession,
        card_id: str,
        rating: Rating | str | int,
        now: datetime | None = None,
        presented_version: int | None = None,
    ) -> AdvanceResult:
        """
        Apply one rating and rebuild the remaining queue.

        The rating is withheld (accepted=False, nothing persisted) when the
        card's quota category is already exhausted for the day. Ratings of
        learning-step cards never consume quota.

        The day's counters are reserved before the progress row is written and
        released again if that write loses its race, so a surfaced conflict
        leaves neither progress, event nor counters behind.

        Raises:
            InvalidRating: rating is outside again/hard/good/easy.
            UnknownCard: No template exists for card_id.
            CardNotInSession: The card is hidden, flagged or outside the selector.
            DuplicateRating: presented_version is older than the stored row.
            ConcurrentRatingConflict: The compare-and-swap lost twice.
        """
        rating = Rating.parse(rating)
        now = now or self._clock()

        async with self._lock_for(session.learner_id):
            template = await self._content.get_template(card_id)
            if template is None:
                raise UnknownCard(card_id)
            if (
                not template.is_eligible
                or card_id not in self.resolver.cards_for(session.selector)
                or card_id in await self._held([card_id])
            ):
                raise CardNotInSession(card_id)

            day = local_day(now, session.timezone)
            if day != session.day:
                logger.info(f"Session {session.token} rolled over to {day}")
                session.day = day

            limits = self.config.limits_for(session.tier)
            saved: CardProgress | None = None
            conflict: VersionConflict | None = None
            for attempt in range(MAX_SAVE_ATTEMPTS):
                stored = await self._progress.get_progress(session.learner_id, card_id)
                before = stored or CardProgress.new(
                    session.learner_id, card_id, ease=self.config.scheduler.starting_ease
                )
                if attempt == 0 and presented_version is not None:
                    if presented_version < before.version:
                        raise DuplicateRating(card_id, presented_version, before.version)

                counters = await self._states.get_session_state(session.learner_id, day)
                if _quota_exhausted(before.state, counters, limits):
                    logger.info(
                        f"Withholding rating of {card_id} for {session.learner_id}: "
                        f"{before.state.value} quota exhausted for {day}"
                    )
                    await self._fill(session, counters, now)
                    return AdvanceResult(
                        updated_progress=None,
                        session_continues=session.continues,
                        limit_reached=session.limit_reached,
                        accepted=False,
                        session=session,
                    )

                updated = schedule(before, rating, now, self.config.scheduler)
                try:
                    counters = await self._states.save_session_state(
                        _counted(counters, before.state, 1), expected_version=counters.version
                    )
                except VersionConflict as e:
                    conflict = e
                    logger.warning(f"Lost session counter race for {session.learner_id}: {e}")
                    continue

                try:
                    saved = await self._progress.save_progress(
                        updated, expected_version=before.version
                    )
                except VersionConflict as e:
                    conflict = e
                    logger.warning(f"Lost progress update race on {card_id}: {e}")
                    await self._release(counters, before.state)
                    continue
                break

            if saved is None:
                raise ConcurrentRatingConflict(session.learner_id, card_id) from conflict

            await self._events.append(_rating_event(before, saved, rating, now))
            milestones: tuple[int, ...] = ()
            if self._streaks is not None:
                milestones = await self._streaks.record(session.learner_id, day)
            await self._fill(session, counters, now)

        logger.debug(
            f"{session.learner_id} rated {card_id} {rating.label}: "
            f"{before.state.value} -> {saved.state.value}, due {saved.due_at}"
        )
        return AdvanceResult(
            updated_progress=saved,
            session_continues=session.continues,
            limit_reached=session.limit_reached,
            accepted=True,
            session=session,
            milestones=milestones,
        )

    # ---------- Queue construction ----------

    async def _fill(self, session: StudySession, counters: SessionState, now: datetime) -> None:
        """Recompute session.cards and session.limit_reached in place."""
        limits = self.config.limits_for(session.tier)
        templates = await self._eligible_templates(session.selector)
        stored = await self._progress.get_progress_many(session.learner_id, sorted(templates))

        learning_due: list[CardProgress] = []
        learning_ahead: list[CardProgress] = []
        reviews: list[CardProgress] = []
        new: list[CardTemplate] = []
        horizon = now + self.config.learn_ahead

        for card_id, template in templates.items():
            progress = stored.get(card_id)
            if progress is None or progress.state == CardState.NEW:
                new.append(template)
            elif progress.state == CardState.LEARNING:
                if progress.is_due(now):
                    learning_due.append(progress)
                elif progress.due_at <= horizon:
                    learning_ahead.append(progress)
            elif progress.is_due(now):
                reviews.append(progress)

        new_left = counters.new_remaining(limits)
        reviews_left = counters.reviews_remaining(limits)

        by_due = lambda p: (p.due_at or now, p.card_id)  # noqa: E731
        learning_due.sort(key=by_due)
        learning_ahead.sort(key=by_due)
        reviews.sort(key=by_due)
        new.sort(key=self.resolver.sequence_key)

        if reviews_left is not None:
            reviews = reviews[:reviews_left]
        if new_left is not None:
            new = new[:new_left]

        queue = [_ref(p) for p in learning_due + reviews]
        queue += [_ref(stored.get(t.id), t.id) for t in new]
        if not queue:
            queue = [_ref(p) for p in learning_ahead]

        session.limit_reached = (
            new_left == 0 and reviews_left == 0 and not learning_due and not learning_ahead
        )
        session.cards = [] if session.limit_reached else queue[: self.config.session_size]

    async def _eligible_templates(self, selector: DeckSelector) -> dict[str, CardTemplate]:
        card_ids = sorted(self.resolver.cards_for(selector))
        templates = await self._content.get_templates(card_ids)
        held = await self._held(card_ids)
        eligible: dict[str, CardTemplate] = {}
        for card_id in card_ids:
            template = templates.get(card_id)
            if template is None:
                logger.warning(f"Skipping card {card_id}: no template found")
                continue
            if template.is_eligible and card_id not in held:
                eligible[card_id] = template
        return eligible

    async def _held(self, card_ids: list[str]) -> set[str]:
        """Cards whose learner flags reached the hold threshold."""
        if self._flags is None or not card_ids:
            return set()
        counts = await self._flags.flag_counts(card_ids)
        threshold = self.config.flag_hold_threshold
        return {card_id for card_id, n in counts.items() if n >= threshold}

    # ---------- Counters ----------

    async def _release(self, reserved: SessionState, state: CardState) -> None:
        """Give back a counter reservation whose progress write lost its race."""
        counters = reserved
        for _ in range(MAX_SAVE_ATTEMPTS + 1):
            try:
                await self._states.save_session_state(
                    _counted(counters, state, -1), expected_version=counters.version
                )
                return
            except VersionConflict as e:
                logger.warning(f"Lost counter release race for {reserved.learner_id}: {e}")
                counters = await self._states.get_session_state(reserved.learner_id, reserved.day)
        logger.error(
            f"Could not release counter reservation for {reserved.learner_id} on {reserved.day}"
        )
        raise ConcurrentRatingConflict(
            reserved.learner_id, f"session_state:{reserved.day.isoformat()}"
        )

    # ---------- Helpers ----------

    def _lock_for(self, learner_id: str) -> asyncio.Lock:
        lock = self._locks.get(learner_id)
        if lock is None:
            lock = self._locks[learner_id] = asyncio.Lock()
        return lock

    def zone_name(self, timezone: str | None) -> str:
        name = timezone or self.config.default_timezone
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown timezone {name!r}; using {self.config.default_timezone}")
            return self.config.default_timezone
        return name


def _quota_exhausted(state: CardState, counters: SessionState, limits: TierLimits) -> bool:
    if state == CardState.NEW:
        return counters.new_remaining(limits) == 0
    if state == CardState.REVIEW:
        return counters.reviews_remaining(limits) == 0
    return False


def _ref(progress: CardProgress | None, card_id: str | None = None) -> CardRef:
    if progress is None:
        return CardRef(card_id=card_id or "", state=CardState.NEW, due_at=None, presented_version=0)
    return CardRef(
        card_id=progress.card_id,
        state=progress.state,
        due_at=progress.due_at,
        presented_version=progress.version,
    )


def _rating_event(
    before: CardProgress, after: CardProgress, rating: Rating, now: datetime
) -> RatingEvent:
    return RatingEvent(
        id=generate_event_id(),
        learner_id=after.learner_id,
        card_id=after.card_id,
        rating=rating,
        occurred_at=now,
        state_before=before.state,
        state_after=after.state,
        ease_before=before.ease,
        ease_after=after.ease,
        interval_before=before.interval,
        interval_after=after.interval,
    )


def _counted(counters: SessionState, state: CardState, delta: int) -> SessionState:
    """Counters with one rating of a card in `state` added (delta=1) or removed (delta=-1)."""
    if state == CardState.NEW:
        counters = replace(counters, new_introduced=counters.new_introduced + delta)
    elif state == CardState.REVIEW:
        counters = replace(counters, reviews_done=counters.reviews_done + delta)
    return replace(counters, ratings=counters.ratings + delta)
