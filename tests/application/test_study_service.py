"""Tests for the boundary orchestrator."""

from datetime import UTC, date, datetime, timedelta

import pytest

from mnemos.domain.errors import (
    DuplicateFlag,
    InvalidFlag,
    InvalidRating,
    SessionNotFound,
    UnknownCard,
    UnknownLearner,
    UnknownSubject,
)
from mnemos.domain.models import CardState, DeckSelector, FlagReason
from mnemos.domain.stats.models import AnalyticsWindow, Classification

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_next_cards_returns_views(service):
    result = await service.next_cards("alice", now=NOW)
    assert result.session_token.startswith("sess_")
    assert [v.card_id for v in result.cards] == ["c2", "c1"]
    first = result.cards[0]
    assert first.front == "Cell membrane?"
    assert first.subject_label == "Cell"
    assert first.state == CardState.NEW
    assert first.presented_version == 0
    assert not result.limit_reached


@pytest.mark.asyncio
async def test_unknown_learner(service):
    with pytest.raises(UnknownLearner):
        await service.next_cards("mallory")


@pytest.mark.asyncio
async def test_submit_rating_round_trip(service):
    result = await service.next_cards("alice", now=NOW)
    receipt = await service.submit_rating(
        "alice", "c2", "good", result.session_token, now=NOW, presented_version=0
    )
    assert receipt.accepted
    assert receipt.state == CardState.LEARNING
    assert receipt.new_due_at == NOW + timedelta(minutes=10)
    assert receipt.session_continues
    assert not receipt.limit_reached


@pytest.mark.asyncio
async def test_invalid_rating_checked_before_session(service):
    with pytest.raises(InvalidRating):
        await service.submit_rating("alice", "c2", "superb", "sess_missing")


@pytest.mark.asyncio
async def test_unknown_session(service):
    with pytest.raises(SessionNotFound):
        await service.submit_rating("alice", "c2", "good", "sess_missing")


@pytest.mark.asyncio
async def test_session_belongs_to_learner(service):
    result = await service.next_cards("alice", now=NOW)
    with pytest.raises(SessionNotFound):
        await service.submit_rating("bob", "c2", "good", result.session_token)


@pytest.mark.asyncio
async def test_end_session(service):
    result = await service.next_cards("alice", now=NOW)
    service.end_session(result.session_token)
    with pytest.raises(SessionNotFound):
        await service.session_cards(result.session_token)
    with pytest.raises(SessionNotFound):
        service.end_session(result.session_token)


@pytest.mark.asyncio
async def test_new_session_retires_previous(service):
    first = await service.next_cards("alice", now=NOW)
    second = await service.next_cards("alice", now=NOW)
    with pytest.raises(SessionNotFound):
        await service.submit_rating("alice", "c2", "good", first.session_token, now=NOW)
    receipt = await service.submit_rating("alice", "c2", "good", second.session_token, now=NOW)
    assert receipt.accepted


@pytest.mark.asyncio
async def test_session_registry_is_bounded_by_learners(service):
    for _ in range(500):
        await service.next_cards("alice", now=NOW)
    bob = await service.next_cards("bob", now=NOW)
    assert len(service._sessions) == 2
    assert await service.session_cards(bob.session_token)

    service.end_session(bob.session_token)
    assert len(service._sessions) == 1


@pytest.mark.asyncio
async def test_ending_a_retired_session_keeps_the_live_one(service):
    first = await service.next_cards("alice", now=NOW)
    second = await service.next_cards("alice", now=NOW)
    with pytest.raises(SessionNotFound):
        service.end_session(first.session_token)
    assert await service.session_cards(second.session_token)


@pytest.mark.asyncio
async def test_withheld_rating_receipt(service):
    result = await service.next_cards("alice", now=NOW)
    for card_id in ("c2", "c1"):
        await service.submit_rating("alice", card_id, "good", result.session_token, now=NOW)
    receipt = await service.submit_rating("alice", "c3", "good", result.session_token, now=NOW)
    assert not receipt.accepted
    assert receipt.new_due_at is None
    assert receipt.state is None


@pytest.mark.asyncio
async def test_selector_passed_through(service):
    result = await service.next_cards("root", DeckSelector.of(subject_ids=["mito"]), now=NOW)
    assert [v.card_id for v in result.cards] == ["c3"]


def test_resolve_deck(service):
    assert service.resolve_deck("cell") == {"c1", "c2", "c3"}
    with pytest.raises(UnknownSubject):
        service.resolve_deck("nowhere")


@pytest.mark.asyncio
async def test_problem_scores_from_ratings(service):
    # Two learners: alice keeps failing c2, bob gets it
    for learner_id in ("alice", "bob"):
        session = await service.next_cards(learner_id, now=NOW)
        rating = "again" if learner_id == "alice" else "good"
        await service.submit_rating(learner_id, "c2", rating, session.session_token, now=NOW)

    scores = await service.problem_scores(AnalyticsWindow(NOW, NOW + timedelta(days=1)))
    [c2] = scores
    assert c2.card_id == "c2"
    assert c2.total_ratings == 2
    assert c2.lapse_rate == 0.5
    assert c2.classification == Classification.HARD

    assert await service.problem_scores(classification="optimal") == []
    assert await service.problem_scores(AnalyticsWindow(end=NOW)) == []


# ---------- flags ----------


@pytest.mark.asyncio
async def test_flag_card_holds_it(service):
    receipt = await service.flag_card("bob", "c2", "incorrect", "Membrane is not a wall", now=NOW)
    assert receipt.flag_id.startswith("flag_")
    assert receipt.flag_count == 1
    assert receipt.held

    result = await service.next_cards("alice", now=NOW)
    assert [v.card_id for v in result.cards] == ["c1", "c3"]


@pytest.mark.asyncio
async def test_flag_threshold(service, store):
    service.config = service.builder.config = service.config.model_copy(
        update={"flag_hold_threshold": 2}
    )
    first = await service.flag_card("bob", "c2", "spelling", now=NOW)
    assert (first.flag_count, first.held) == (1, False)
    second = await service.flag_card("kenji", "c2", "confusing", now=NOW + timedelta(minutes=1))
    assert (second.flag_count, second.held) == (2, True)

    [by_bob, by_kenji] = await store.list_flags("c2")
    assert by_bob.reason == FlagReason.SPELLING
    assert by_kenji.comment is None


@pytest.mark.asyncio
async def test_flag_twice_by_same_learner(service):
    await service.flag_card("bob", "c1", "incorrect", now=NOW)
    with pytest.raises(DuplicateFlag):
        await service.flag_card("bob", "c1", "spelling", now=NOW)


@pytest.mark.asyncio
async def test_unknown_flag_reason_filed_as_other(service, store):
    await service.flag_card("bob", "c1", "rude", now=NOW)
    [flag] = await store.list_flags("c1")
    assert flag.reason == FlagReason.OTHER


@pytest.mark.asyncio
@pytest.mark.parametrize("comment", ["", "   ", "x" * 501])
async def test_flag_comment_validated(service, store, comment):
    with pytest.raises(InvalidFlag):
        await service.flag_card("bob", "c1", "other", comment, now=NOW)
    assert await store.list_flags("c1") == []


@pytest.mark.asyncio
async def test_flag_unknown_ids(service):
    with pytest.raises(UnknownLearner):
        await service.flag_card("mallory", "c1", "other")
    with pytest.raises(UnknownCard):
        await service.flag_card("bob", "nope", "other")


# ---------- streaks ----------


@pytest.mark.asyncio
async def test_streak_follows_ratings(service):
    assert not (await service.streak("alice", now=NOW)).active

    receipts = []
    for offset, card_id in enumerate(("c2", "c1", "c3")):
        day = NOW + timedelta(days=offset)
        session = await service.next_cards("alice", now=day)
        receipts.append(
            await service.submit_rating("alice", card_id, "good", session.session_token, now=day)
        )
    assert [r.streak_milestones for r in receipts] == [(), (), (3,)]

    summary = await service.streak("alice", now=NOW + timedelta(days=3))
    assert (summary.current, summary.longest, summary.active) == (3, 3, True)
    assert summary.milestones == (3,)
    assert summary.next_milestone == 7

    lapsed = await service.streak("alice", now=NOW + timedelta(days=4))
    assert (lapsed.current, lapsed.longest, lapsed.active) == (0, 3, False)


@pytest.mark.asyncio
async def test_streak_uses_learner_timezone(service):
    session = await service.next_cards("kenji", now=NOW)
    await service.submit_rating("kenji", "c2", "good", session.session_token, now=NOW)

    # 16:00 UTC on the 11th is already the 12th in Tokyo
    summary = await service.streak("kenji", now=NOW + timedelta(days=1, hours=4))
    assert summary.current == 0
    assert summary.last_active_day == date(2024, 3, 10)
