"""Tests for session building, quota enforcement and rating application."""

import asyncio
import gc
from datetime import UTC, date, datetime, timedelta

import pytest

from mnemos.application.session_builder import SessionBuilder, local_day
from mnemos.domain.errors import (
    CardNotInSession,
    ConcurrentRatingConflict,
    DuplicateRating,
    InvalidRating,
    UnknownCard,
    VersionConflict,
)
from mnemos.domain.models import (
    CardFlag,
    CardProgress,
    CardState,
    DeckSelector,
    FlagReason,
    SessionState,
    Tier,
)
from mnemos.infrastructure.adapters.memory_store import InMemoryStore

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)


async def seed(store, learner_id, card_id, state, due_at, interval=timedelta(days=3)):
    await store.save_progress(
        CardProgress(
            learner_id=learner_id,
            card_id=card_id,
            state=state,
            interval=interval,
            due_at=due_at,
            repetitions=1,
        ),
        expected_version=0,
    )


def ids(session):
    return [ref.card_id for ref in session.cards]


class FlakyStore(InMemoryStore):
    """Loses the first `failures` progress writes to a simulated concurrent writer."""

    def __init__(self, source: InMemoryStore, failures: int):
        super().__init__()
        self._templates = source._templates
        self._learners = source._learners
        self.failures = failures
        self.save_calls = 0

    async def save_progress(self, progress, expected_version):
        self.save_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise VersionConflict(
                (progress.learner_id, progress.card_id), expected_version, expected_version + 1
            )
        return await super().save_progress(progress, expected_version)


class ContestedCountersStore(InMemoryStore):
    """Every session counter write loses to a simulated concurrent writer."""

    def __init__(self, source: InMemoryStore):
        super().__init__()
        self._templates = source._templates
        self._learners = source._learners
        self.counter_calls = 0

    async def save_session_state(self, state, expected_version):
        self.counter_calls += 1
        raise VersionConflict((state.learner_id, state.day), expected_version, expected_version + 1)


# ---------- build_session ----------


@pytest.mark.asyncio
async def test_new_cards_follow_curator_order_and_quota(builder):
    session = await builder.build_session("alice", Tier.FREE)
    # free tier: two new cards a day; hidden and flagged cards never appear
    assert ids(session) == ["c2", "c1"]
    assert all(ref.state == CardState.NEW for ref in session.cards)
    assert not session.limit_reached
    assert session.day == date(2024, 3, 10)
    assert session.token.startswith("sess_")


@pytest.mark.asyncio
async def test_admin_is_unbounded(builder):
    session = await builder.build_session("root", Tier.ADMIN)
    assert ids(session) == ["c2", "c1", "c3", "c4"]


@pytest.mark.asyncio
async def test_learning_then_reviews_then_new(builder, store):
    await seed(store, "bob", "c4", CardState.REVIEW, NOW - timedelta(days=1))
    await seed(store, "bob", "c3", CardState.REVIEW, NOW - timedelta(days=2))
    await seed(
        store, "bob", "c1", CardState.LEARNING, NOW - timedelta(minutes=1), timedelta(minutes=1)
    )

    session = await builder.build_session("bob", Tier.PAID)
    assert ids(session) == ["c1", "c3", "c4", "c2"]
    assert [ref.state for ref in session.cards] == [
        CardState.LEARNING,
        CardState.REVIEW,
        CardState.REVIEW,
        CardState.NEW,
    ]
    assert session.cards[0].presented_version == 1


@pytest.mark.asyncio
async def test_reviews_not_yet_due_are_skipped(builder, store):
    await seed(store, "bob", "c3", CardState.REVIEW, NOW + timedelta(hours=1))
    session = await builder.build_session("bob", Tier.PAID)
    assert "c3" not in ids(session)


@pytest.mark.asyncio
async def test_review_quota_limits_reviews(builder, store):
    for i, card_id in enumerate(["c1", "c2", "c3", "c4"]):
        await seed(store, "alice", card_id, CardState.REVIEW, NOW - timedelta(days=4 - i))
    session = await builder.build_session("alice", Tier.FREE)
    # three reviews a day on the free tier, oldest due first
    assert ids(session) == ["c1", "c2", "c3"]


@pytest.mark.asyncio
async def test_learn_ahead_when_nothing_else_is_due(builder, store):
    for card_id in ["c2", "c3", "c4"]:
        await seed(store, "bob", card_id, CardState.REVIEW, NOW + timedelta(days=2))
    await seed(
        store, "bob", "c1", CardState.LEARNING, NOW + timedelta(minutes=5), timedelta(minutes=10)
    )

    session = await builder.build_session("bob", Tier.PAID)
    assert ids(session) == ["c1"]


@pytest.mark.asyncio
async def test_learning_beyond_horizon_not_served(builder, store):
    for card_id in ["c2", "c3", "c4"]:
        await seed(store, "bob", card_id, CardState.REVIEW, NOW + timedelta(days=2))
    await seed(
        store, "bob", "c1", CardState.LEARNING, NOW + timedelta(minutes=45), timedelta(hours=1)
    )

    session = await builder.build_session("bob", Tier.PAID)
    assert session.cards == []
    assert not session.limit_reached


@pytest.mark.asyncio
async def test_limit_reached_when_both_quotas_exhausted(builder, store):
    await store.save_session_state(
        SessionState("alice", date(2024, 3, 10), new_introduced=2, reviews_done=3),
        expected_version=0,
    )
    await seed(store, "alice", "c3", CardState.REVIEW, NOW - timedelta(days=1))

    session = await builder.build_session("alice", Tier.FREE)
    assert session.limit_reached
    assert session.cards == []
    assert not session.continues


@pytest.mark.asyncio
async def test_learning_cards_keep_session_open_past_quota(builder, store):
    await store.save_session_state(
        SessionState("alice", date(2024, 3, 10), new_introduced=2, reviews_done=3),
        expected_version=0,
    )
    await seed(store, "alice", "c1", CardState.LEARNING, NOW, timedelta(minutes=1))

    session = await builder.build_session("alice", Tier.FREE)
    assert not session.limit_reached
    assert ids(session) == ["c1"]


@pytest.mark.asyncio
async def test_selector_restricts_cards(builder):
    session = await builder.build_session("root", Tier.ADMIN, DeckSelector.of(["chemistry"]))
    assert ids(session) == ["c4"]


@pytest.mark.asyncio
async def test_session_size_truncates(builder):
    builder.config = builder.config.model_copy(update={"session_size": 2})
    session = await builder.build_session("root", Tier.ADMIN)
    assert len(session.cards) == 2


@pytest.mark.asyncio
async def test_missing_template_is_skipped(builder, resolver):
    resolver.assign_card("ghost", "chem")
    resolver.recompute("chem")
    session = await builder.build_session("root", Tier.ADMIN)
    assert "ghost" not in ids(session)
    assert "c4" in ids(session)


@pytest.mark.asyncio
async def test_unknown_timezone_falls_back(builder):
    session = await builder.build_session("alice", Tier.FREE, timezone="Mars/Olympus")
    assert session.timezone == "UTC"


# ---------- advance ----------


@pytest.mark.asyncio
async def test_rating_new_card_consumes_new_quota(builder, store):
    session = await builder.build_session("alice", Tier.FREE)
    result = await builder.advance(session, "c2", "good")

    assert result.accepted
    assert result.updated_progress.state == CardState.LEARNING
    assert result.updated_progress.version == 1
    counters = await store.get_session_state("alice", date(2024, 3, 10))
    assert counters.new_introduced == 1
    assert counters.reviews_done == 0
    # c2 now waits in learning; one new slot is left for c1
    assert ids(result.session) == ["c1"]
    assert result.session_continues


@pytest.mark.asyncio
async def test_rating_review_card_consumes_review_quota(builder, store):
    await seed(store, "alice", "c3", CardState.REVIEW, NOW - timedelta(days=1))
    session = await builder.build_session("alice", Tier.FREE)
    await builder.advance(session, "c3", "good")

    counters = await store.get_session_state("alice", date(2024, 3, 10))
    assert counters.reviews_done == 1
    assert counters.new_introduced == 0


@pytest.mark.asyncio
async def test_learning_ratings_consume_no_quota(builder, store):
    session = await builder.build_session("alice", Tier.FREE)
    await builder.advance(session, "c2", "again")
    await builder.advance(session, "c2", "good")
    await builder.advance(session, "c2", "good")

    counters = await store.get_session_state("alice", date(2024, 3, 10))
    assert counters.new_introduced == 1
    assert counters.ratings == 3
    progress = await store.get_progress("alice", "c2")
    assert progress.state == CardState.REVIEW


@pytest.mark.asyncio
async def test_new_card_count_never_exceeds_quota(builder, store):
    session = await builder.build_session("alice", Tier.FREE)
    await builder.advance(session, "c2", "good")
    await builder.advance(session, "c1", "good")
    result = await builder.advance(session, "c3", "good")

    assert not result.accepted
    assert result.updated_progress is None
    assert await store.get_progress("alice", "c3") is None
    counters = await store.get_session_state("alice", date(2024, 3, 10))
    assert counters.new_introduced == 2
    assert len(await store.list_events()) == 2


@pytest.mark.asyncio
async def test_limit_reached_after_last_rating(builder, store):
    await store.save_session_state(
        SessionState("alice", date(2024, 3, 10), new_introduced=2, reviews_done=2),
        expected_version=0,
    )
    await seed(store, "alice", "c3", CardState.REVIEW, NOW - timedelta(days=1))
    session = await builder.build_session("alice", Tier.FREE)
    assert ids(session) == ["c3"]

    result = await builder.advance(session, "c3", "good")
    assert result.accepted
    assert result.limit_reached
    assert not result.session_continues
    assert result.session.cards == []


@pytest.mark.asyncio
async def test_rating_appends_event(builder, store):
    session = await builder.build_session("alice", Tier.FREE)
    await builder.advance(session, "c2", "again")

    [event] = await store.list_events()
    assert event.card_id == "c2"
    assert event.learner_id == "alice"
    assert event.state_before == CardState.NEW
    assert event.state_after == CardState.LEARNING
    assert event.ease_after < event.ease_before
    assert event.id.startswith("evt_")


@pytest.mark.asyncio
async def test_invalid_rating_touches_nothing(builder, store):
    session = await builder.build_session("alice", Tier.FREE)
    with pytest.raises(InvalidRating):
        await builder.advance(session, "c2", "meh")
    assert await store.get_progress("alice", "c2") is None
    assert await store.list_events() == []


@pytest.mark.asyncio
async def test_unknown_card(builder):
    session = await builder.build_session("alice", Tier.FREE)
    with pytest.raises(UnknownCard):
        await builder.advance(session, "nope", "good")


@pytest.mark.asyncio
async def test_hidden_card_rejected(builder):
    session = await builder.build_session("alice", Tier.FREE)
    with pytest.raises(CardNotInSession):
        await builder.advance(session, "c5", "good")


@pytest.mark.asyncio
async def test_card_outside_selector_rejected(builder):
    session = await builder.build_session("alice", Tier.FREE, DeckSelector.of(["chemistry"]))
    with pytest.raises(CardNotInSession):
        await builder.advance(session, "c1", "good")


@pytest.mark.asyncio
async def test_stale_presented_version_is_duplicate(builder):
    session = await builder.build_session("alice", Tier.FREE)
    ref = session.find("c2")
    await builder.advance(session, "c2", "good", presented_version=ref.presented_version)
    with pytest.raises(DuplicateRating):
        await builder.advance(session, "c2", "good", presented_version=ref.presented_version)


@pytest.mark.asyncio
async def test_same_learner_ratings_are_serialized(builder, store):
    session = await builder.build_session("alice", Tier.FREE)
    results = await asyncio.gather(
        builder.advance(session, "c2", "good", presented_version=0),
        builder.advance(session, "c2", "good", presented_version=0),
        return_exceptions=True,
    )
    assert sum(isinstance(r, DuplicateRating) for r in results) == 1
    progress = await store.get_progress("alice", "c2")
    assert progress.version == 1


@pytest.mark.asyncio
async def test_conflict_retried_once(resolver, store, config, clock):
    flaky = FlakyStore(store, failures=1)
    builder = SessionBuilder(resolver, flaky, flaky, flaky, flaky, config=config, clock=clock)
    session = await builder.build_session("alice", Tier.FREE)

    result = await builder.advance(session, "c2", "good")
    assert result.accepted
    assert flaky.save_calls == 2


@pytest.mark.asyncio
async def test_conflict_surfaces_after_retry(resolver, store, config, clock):
    flaky = FlakyStore(store, failures=2)
    builder = SessionBuilder(resolver, flaky, flaky, flaky, flaky, config=config, clock=clock)
    session = await builder.build_session("alice", Tier.FREE)

    with pytest.raises(ConcurrentRatingConflict):
        await builder.advance(session, "c2", "good")
    assert await flaky.list_events() == []
    counters = await flaky.get_session_state("alice", date(2024, 3, 10))
    assert counters.new_introduced == 0
    assert counters.ratings == 0


@pytest.mark.asyncio
async def test_counter_conflict_leaves_nothing_behind(resolver, store, config, clock):
    contested = ContestedCountersStore(store)
    builder = SessionBuilder(
        resolver, contested, contested, contested, contested, config=config, clock=clock
    )
    session = await builder.build_session("alice", Tier.FREE)

    with pytest.raises(ConcurrentRatingConflict):
        await builder.advance(session, "c2", "good")
    assert contested.counter_calls == 2
    assert await contested.get_progress("alice", "c2") is None
    assert await contested.list_events() == []


@pytest.mark.asyncio
async def test_failed_rating_does_not_spend_quota(resolver, store, config, clock):
    flaky = FlakyStore(store, failures=2)
    builder = SessionBuilder(resolver, flaky, flaky, flaky, flaky, config=config, clock=clock)
    session = await builder.build_session("alice", Tier.FREE)
    with pytest.raises(ConcurrentRatingConflict):
        await builder.advance(session, "c2", "good")

    # Both new slots are still available once the race is over
    assert (await builder.advance(session, "c2", "good")).accepted
    assert (await builder.advance(session, "c1", "good")).accepted
    counters = await flaky.get_session_state("alice", date(2024, 3, 10))
    assert (counters.new_introduced, counters.ratings) == (2, 2)


@pytest.mark.asyncio
async def test_learner_locks_are_released(builder):
    sessions = [await builder.build_session(learner, Tier.PAID) for learner in ("alice", "bob")]
    await asyncio.gather(*(builder.advance(s, "c2", "good") for s in sessions))
    gc.collect()
    assert len(builder._locks) == 0


# ---------- flags ----------


async def flag(store, learner_id, card_id):
    await store.add_flag(
        CardFlag(
            id=f"flag_{learner_id}_{card_id}",
            learner_id=learner_id,
            card_id=card_id,
            reason=FlagReason.INCORRECT,
            created_at=NOW,
        )
    )


@pytest.mark.asyncio
async def test_held_card_is_not_offered(builder, store):
    await flag(store, "bob", "c2")
    session = await builder.build_session("alice", Tier.FREE)
    assert ids(session) == ["c1", "c3"]
    with pytest.raises(CardNotInSession):
        await builder.advance(session, "c2", "good")


@pytest.mark.asyncio
async def test_flags_below_threshold_keep_card(builder, store):
    builder.config = builder.config.model_copy(update={"flag_hold_threshold": 2})
    await flag(store, "bob", "c2")
    session = await builder.build_session("alice", Tier.FREE)
    assert ids(session) == ["c2", "c1"]

    await flag(store, "kenji", "c2")
    result = await builder.advance(session, "c1", "good")
    assert "c2" not in ids(result.session)


# ---------- streaks ----------


@pytest.mark.asyncio
async def test_streak_milestone_reached_once(builder, clock):
    results = []
    for card_id in ("c2", "c1", "c3"):
        session = await builder.build_session("alice", Tier.FREE)
        results.append(await builder.advance(session, card_id, "good"))
        clock.advance(days=1)
    assert [r.milestones for r in results] == [(), (), (3,)]

    clock.advance(days=-1)
    session = await builder.build_session("alice", Tier.FREE)
    again = await builder.advance(session, "c4", "good")
    assert again.milestones == ()


@pytest.mark.asyncio
async def test_withheld_rating_is_not_an_active_day(builder, store):
    await store.save_session_state(
        SessionState("alice", date(2024, 3, 10), new_introduced=2),
        expected_version=0,
    )
    session = await builder.build_session("alice", Tier.FREE)
    result = await builder.advance(session, "c3", "good")
    assert not result.accepted
    assert await store.active_days("alice", date(2024, 3, 10)) == []



# ---------- day boundary ----------


def test_local_day_uses_timezone():
    assert local_day(NOW, "UTC") == date(2024, 3, 10)
    assert local_day(NOW + timedelta(hours=4), "Asia/Tokyo") == date(2024, 3, 11)
    assert local_day(NOW.replace(tzinfo=None), "UTC") == date(2024, 3, 10)


@pytest.mark.asyncio
async def test_quota_resets_next_day(builder, clock):
    session = await builder.build_session("alice", Tier.FREE)
    await builder.advance(session, "c2", "good")
    await builder.advance(session, "c1", "good")
    today = await builder.build_session("alice", Tier.FREE)
    assert all(ref.state != CardState.NEW for ref in today.cards)

    clock.advance(days=1)
    tomorrow = await builder.build_session("alice", Tier.FREE)
    assert tomorrow.day == date(2024, 3, 11)
    assert [ref.card_id for ref in tomorrow.cards if ref.state == CardState.NEW] == ["c3", "c4"]


@pytest.mark.asyncio
async def test_learner_timezone_defines_day(builder, clock):
    session = await builder.build_session("kenji", Tier.FREE, timezone="Asia/Tokyo")
    await builder.advance(session, "c2", "good")
    await builder.advance(session, "c1", "good")

    # 16:00 UTC is already the next day in Tokyo
    clock.advance(hours=4)
    later = await builder.build_session("kenji", Tier.FREE, timezone="Asia/Tokyo")
    assert later.day == date(2024, 3, 11)
    assert "c3" in [ref.card_id for ref in later.cards]


@pytest.mark.asyncio
async def test_session_rolls_over_mid_session(builder, store, clock):
    session = await builder.build_session("alice", Tier.FREE)
    clock.advance(days=1)
    await builder.advance(session, "c2", "good")

    assert session.day == date(2024, 3, 11)
    counters = await store.get_session_state("alice", date(2024, 3, 11))
    assert counters.new_introduced == 1


@pytest.mark.asyncio
async def test_progress_version_increments(builder, store):
    session = await builder.build_session("bob", Tier.PAID)
    for rating in ("good", "good", "good"):
        await builder.advance(session, "c2", rating)
    progress = await store.get_progress("bob", "c2")
    assert progress.version == 3
    assert progress.state == CardState.REVIEW
