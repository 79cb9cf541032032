"""
Study Service: Application layer orchestrator for the client boundary.

Wraps the session builder, hierarchy resolver and analytics aggregator
behind the operations clients call: fetch next cards, submit a rating,
resolve a deck, read problem scores, flag a card, read a streak.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from mnemos.application.config import AppConfig
from mnemos.application.hierarchy_resolver import HierarchyResolver
from mnemos.application.id_service import generate_flag_id
from mnemos.application.session_builder import SessionBuilder, local_day
from mnemos.application.stats import ProblemScoreService
from mnemos.application.streak_tracker import StreakTracker
from mnemos.domain.constants import FLAG_COMMENT_MAX_LENGTH
from mnemos.domain.errors import InvalidFlag, SessionNotFound, UnknownCard, UnknownLearner
from mnemos.domain.models import (
    CardFlag,
    CardState,
    DeckSelector,
    FlagReason,
    Learner,
    Rating,
    StreakSummary,
    StudySession,
)
from mnemos.domain.ports import ContentRepository, FlagRepository
from mnemos.domain.stats.models import AnalyticsWindow, Classification, ProblemScore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CardView:
    """A queued card as shown to the learner."""

    card_id: str
    front: str
    back: str
    subject_label: str | None
    state: CardState
    due_at: datetime | None
    presented_version: int


@dataclass(frozen=True)
class NextCards:
    session_token: str
    cards: list[CardView]
    limit_reached: bool


@dataclass(frozen=True)
class RatingReceipt:
    """
    Result of a rating submission.

    Attributes:
        new_due_at: When the card is next due (None if the rating was withheld).
        state: Card state after the rating.
        session_continues: More cards are queued and no limit was hit.
        limit_reached: Daily quotas exhausted with no learning cards left.
        accepted: False when the rating was withheld by an exhausted quota.
        streak_milestones: Streak milestones (days) first reached by this rating.
    """

    card_id: str
    new_due_at: datetime | None
    state: CardState | None
    session_continues: bool
    limit_reached: bool
    accepted: bool
    streak_milestones: tuple[int, ...] = ()


@dataclass(frozen=True)
class FlagReceipt:
    """
    Result of flagging a card.

    Attributes:
        flag_count: Flags the card has collected so far, this one included.
        held: The card reached the hold threshold and is no longer offered.
    """

    flag_id: str
    card_id: str
    flag_count: int
    held: bool


class StudyService:
    """
    Boundary orchestrator.

    Sessions live in an in-process registry keyed by token. Each learner keeps
    at most one live session: building a new one retires the previous token.
    """

    def __init__(
        self,
        builder: SessionBuilder,
        content: ContentRepository,
        analytics: ProblemScoreService,
        flags: FlagRepository,
        streaks: StreakTracker,
        config: AppConfig | None = None,
    ):
        self.builder = builder
        self.resolver: HierarchyResolver = builder.resolver
        self.config = config or builder.config
        self._content = content
        self._analytics = analytics
        self._flags = flags
        self._streaks = streaks
        self._sessions: dict[str, StudySession] = {}
        self._live: dict[str, str] = {}

    async def next_cards(
        self,
        learner_id: str,
        selector: DeckSelector | None = None,
        now: datetime | None = None,
    ) -> NextCards:
        learner = await self._learner(learner_id)
        session = await self.builder.build_session(
            learner.id,
            learner.tier,
            selector,
            now=now or datetime.now(UTC),
            timezone=learner.timezone,
        )
        previous = self._live.get(learner.id)
        if previous is not None:
            self._sessions.pop(previous, None)
            logger.debug(f"Session {previous} for {learner.id} replaced by {session.token}")
        self._sessions[session.token] = session
        self._live[learner.id] = session.token
        return NextCards(
            session_token=session.token,
            cards=await self._views(session),
            limit_reached=session.limit_reached,
        )

    async def submit_rating(
        self,
        learner_id: str,
        card_id: str,
        rating: Rating | str | int,
        session_token: str,
        now: datetime | None = None,
        presented_version: int | None = None,
    ) -> RatingReceipt:
        """
        Apply a rating inside an existing session.

        The rating value is validated before anything else is looked up, so an
        invalid value never touches stored state.
        """
        rating = Rating.parse(rating)
        session = self._sessions.get(session_token)
        if session is None or session.learner_id != learner_id:
            raise SessionNotFound(session_token)

        result = await self.builder.advance(
            session,
            card_id,
            rating,
            now=now or datetime.now(UTC),
            presented_version=presented_version,
        )
        progress = result.updated_progress
        return RatingReceipt(
            card_id=card_id,
            new_due_at=progress.due_at if progress else None,
            state=progress.state if progress else None,
            session_continues=result.session_continues,
            limit_reached=result.limit_reached,
            accepted=result.accepted,
            streak_milestones=result.milestones,
        )

    async def session_cards(self, session_token: str) -> list[CardView]:
        session = self._sessions.get(session_token)
        if session is None:
            raise SessionNotFound(session_token)
        return await self._views(session)

    def end_session(self, session_token: str) -> None:
        session = self._sessions.pop(session_token, None)
        if session is None:
            raise SessionNotFound(session_token)
        if self._live.get(session.learner_id) == session_token:
            del self._live[session.learner_id]
        logger.debug(f"Ended session {session_token} for {session.learner_id}")

    async def flag_card(
        self,
        learner_id: str,
        card_id: str,
        reason: FlagReason | str | None,
        comment: str | None = None,
        now: datetime | None = None,
    ) -> FlagReceipt:
        """
        Record a learner's flag on a card.

        Once the card's flag count reaches the configured hold threshold it is
        dropped from every session until a curator clears the flags.

        Raises:
            UnknownLearner / UnknownCard: Either id is not in the catalog.
            InvalidFlag: comment is blank or too long.
            DuplicateFlag: The learner already flagged this card.
        """
        learner = await self._learner(learner_id)
        if await self._content.get_template(card_id) is None:
            raise UnknownCard(card_id)
        if comment is not None:
            comment = comment.strip()
            if not comment:
                raise InvalidFlag("Flag comment must not be empty")
            if len(comment) > FLAG_COMMENT_MAX_LENGTH:
                raise InvalidFlag(
                    f"Flag comment is longer than {FLAG_COMMENT_MAX_LENGTH} characters"
                )

        flag = CardFlag(
            id=generate_flag_id(),
            learner_id=learner.id,
            card_id=card_id,
            reason=FlagReason.parse(reason),
            created_at=now or datetime.now(UTC),
            comment=comment,
        )
        await self._flags.add_flag(flag)
        count = (await self._flags.flag_counts([card_id])).get(card_id, 0)
        held = count >= self.config.flag_hold_threshold
        if held:
            logger.warning(f"Card {card_id} held for review after {count} flag(s)")
        else:
            logger.info(f"{learner.id} flagged {card_id} ({flag.reason.value})")
        return FlagReceipt(flag_id=flag.id, card_id=card_id, flag_count=count, held=held)

    async def streak(self, learner_id: str, now: datetime | None = None) -> StreakSummary:
        """Streak as of the learner's local today."""
        learner = await self._learner(learner_id)
        today = local_day(now or datetime.now(UTC), self.builder.zone_name(learner.timezone))
        return await self._streaks.summary(learner.id, today)

    def resolve_deck(self, subject_id: str) -> frozenset[str]:
        """Admin hook: force an eager recompute of one subject's membership."""
        cards = self.resolver.recompute(subject_id)
        logger.info(f"Resolved subject {subject_id}: {len(cards)} card(s)")
        return cards

    async def problem_scores(
        self,
        window: AnalyticsWindow | None = None,
        classification: Classification | str | None = None,
        limit: int | None = None,
    ) -> list[ProblemScore]:
        if isinstance(classification, str):
            classification = Classification(classification)
        return await self._analytics.get_problem_cards(window, classification, limit)

    # ---------- Helpers ----------

    async def _learner(self, learner_id: str) -> Learner:
        learner = await self._content.get_learner(learner_id)
        if learner is None:
            raise UnknownLearner(learner_id)
        return learner

    async def _views(self, session: StudySession) -> list[CardView]:
        templates = await self._content.get_templates([ref.card_id for ref in session.cards])
        views = []
        for ref in session.cards:
            template = templates.get(ref.card_id)
            if template is None:
                logger.warning(f"Card {ref.card_id} vanished from the catalog; skipping")
                continue
            subject = self.resolver.subject_of(ref.card_id)
            views.append(
                CardView(
                    card_id=ref.card_id,
                    front=template.front,
                    back=template.back,
                    subject_label=subject.name if subject else None,
                    state=ref.state,
                    due_at=ref.due_at,
                    presented_version=ref.presented_version,
                )
            )
        return views
