"""
Retention state machine.

schedule() maps (progress, rating, now) to the next progress. It is pure,
total and deterministic: the only inputs are its arguments and the policy.

Transitions are looked up in an explicit (state, rating) table rather than
dispatched through per-state classes.
"""

import hashlib
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta

from mnemos.application.config import SchedulerPolicy
from mnemos.domain.models import CardProgress, CardState, Rating

DEFAULT_POLICY = SchedulerPolicy()

Transition = Callable[[CardProgress, Rating, datetime, SchedulerPolicy], CardProgress]


def _lapse(progress: CardProgress, rating: Rating, now: datetime, policy: SchedulerPolicy):
    interval = policy.learning_minimum
    return replace(
        progress,
        state=CardState.LEARNING,
        interval=interval,
        ease=max(policy.minimum_ease, progress.ease - policy.again_ease_penalty),
        due_at=now + interval,
        repetitions=0,
        lapses=progress.lapses + 1,
        last_reviewed_at=now,
        step=0,
    )


def _repeat_step(progress: CardProgress, rating: Rating, now: datetime, policy: SchedulerPolicy):
    interval = policy.learning_step(progress.step)
    return replace(
        progress,
        state=CardState.LEARNING,
        interval=interval,
        due_at=now + interval,
        repetitions=progress.repetitions + 1,
        last_reviewed_at=now,
    )


def _advance_step(progress: CardProgress, rating: Rating, now: datetime, policy: SchedulerPolicy):
    step = progress.step + 1
    if step >= policy.graduation_steps:
        return _graduate(progress, rating, now, policy)
    interval = policy.learning_step(step)
    return replace(
        progress,
        state=CardState.LEARNING,
        interval=interval,
        due_at=now + interval,
        repetitions=progress.repetitions + 1,
        last_reviewed_at=now,
        step=step,
    )


def _graduate(progress: CardProgress, rating: Rating, now: datetime, policy: SchedulerPolicy):
    interval = policy.graduating_interval
    if rating == Rating.EASY:
        interval = interval * policy.easy_bonus
    interval = min(interval, policy.maximum_interval)
    graduated = replace(
        progress,
        state=CardState.REVIEW,
        interval=interval,
        repetitions=progress.repetitions + 1,
        last_reviewed_at=now,
        step=0,
    )
    return replace(graduated, due_at=now + interval + fuzz_for(graduated, policy))


def _review(progress: CardProgress, rating: Rating, now: datetime, policy: SchedulerPolicy):
    current = max(progress.interval, policy.minimum_review_interval)
    ease = progress.ease

    if rating == Rating.HARD:
        interval = current * policy.hard_interval_factor
        ease = max(policy.minimum_ease, ease - policy.hard_ease_penalty)
    elif rating == Rating.GOOD:
        interval = current * ease
    else:
        interval = current * (ease * policy.easy_bonus)
        ease = ease + policy.easy_ease_bonus

    interval = max(interval, policy.minimum_review_interval)
    if rating in (Rating.GOOD, Rating.EASY):
        interval = max(interval, current)
    interval = min(interval, policy.maximum_interval)

    reviewed = replace(
        progress,
        state=CardState.REVIEW,
        interval=interval,
        ease=ease,
        repetitions=progress.repetitions + 1,
        last_reviewed_at=now,
        step=0,
    )
    return replace(reviewed, due_at=now + interval + fuzz_for(reviewed, policy))


TRANSITIONS: dict[tuple[CardState, Rating], Transition] = {
    (CardState.NEW, Rating.AGAIN): _lapse,
    (CardState.NEW, Rating.HARD): _repeat_step,
    (CardState.NEW, Rating.GOOD): _advance_step,
    (CardState.NEW, Rating.EASY): _graduate,
    (CardState.LEARNING, Rating.AGAIN): _lapse,
    (CardState.LEARNING, Rating.HARD): _repeat_step,
    (CardState.LEARNING, Rating.GOOD): _advance_step,
    (CardState.LEARNING, Rating.EASY): _graduate,
    (CardState.REVIEW, Rating.AGAIN): _lapse,
    (CardState.REVIEW, Rating.HARD): _review,
    (CardState.REVIEW, Rating.GOOD): _review,
    (CardState.REVIEW, Rating.EASY): _review,
}


def schedule(
    progress: CardProgress,
    rating: Rating | str | int,
    now: datetime,
    policy: SchedulerPolicy = DEFAULT_POLICY,
) -> CardProgress:
    """
    Apply one rating to a card's progress.

    Args:
        progress: Current progress (CardProgress.new(...) for an unseen card).
        rating: Rating or its name/int; anything else raises InvalidRating.
        now: Time of the rating.
        policy: Scheduler constants.

    Returns:
        The next progress. version is carried over unchanged; stores bump it.
    """
    rating = Rating.parse(rating)
    return TRANSITIONS[(progress.state, rating)](progress, rating, now, policy)


def fuzz_for(progress: CardProgress, policy: SchedulerPolicy) -> timedelta:
    """
    Deterministic due-date jitter for review intervals.

    The offset is a fraction in [-fuzz_factor, +fuzz_factor] of the interval,
    seeded by learner, card, repetitions and lapses so that cards reaching the
    same interval together spread out, yet rescheduling the same state twice
    gives the same answer. fuzz_factor <= 0.1 keeps a fuzzed due date inside
    its interval tier: neighbouring tiers differ by at least minimum_ease.
    """
    if policy.fuzz_factor <= 0 or progress.interval < policy.fuzz_minimum_interval:
        return timedelta(0)

    seed = f"{progress.learner_id}:{progress.card_id}:{progress.repetitions}:{progress.lapses}"
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    unit = int.from_bytes(digest[:8], "big") / float(2**64)  # [0, 1)
    fraction = (unit * 2.0 - 1.0) * policy.fuzz_factor
    return timedelta(seconds=round(progress.interval.total_seconds() * fraction))
