"""
StudyDesk – Spaced Repetition Scheduler
========================================
Pure state machine that maps a card's scheduling state plus a rating to the
next scheduling state.  The numbers live on ``ReferencePolicy``; swap in any
object with a compatible ``schedule()`` to change the memory model without
touching callers.

Stages::

    New        --any-->             Learning
    Learning   --Again-->           Learning
    Learning   --Hard/Good/Easy-->  Review
    Review     --Again-->           Relearning
    Review     --Hard/Good/Easy-->  Review
    Relearning --Again-->           Relearning
    Relearning --Hard/Good/Easy-->  Review
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum

from core.errors import ValidationError

log = logging.getLogger(__name__)


class Stage(str, Enum):
    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"
    RELEARNING = "relearning"


class Rating(str, Enum):
    AGAIN = "again"
    HARD = "hard"
    GOOD = "good"
    EASY = "easy"

    @classmethod
    def parse(cls, value: Rating | str) -> Rating:
        """Accept a ``Rating`` or its case-insensitive name."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"rating must be one of again/hard/good/easy, got {value!r}"
            ) from None


@dataclass(frozen=True)
class CardState:
    """Scheduling state of one card for one user.

    ``version`` is the optimistic-concurrency token of the stored row
    (0 while no row exists); ``schedule()`` leaves it untouched.
    """

    stage: Stage = Stage.NEW
    due_at: datetime | None = None
    interval_days: int = 0
    ease: float | None = 2.5
    reps: int = 0
    lapses: int = 0
    last_review_at: datetime | None = None
    version: int = 0

    def is_due(self, now: datetime) -> bool:
        return self.stage is not Stage.NEW and self.due_at is not None and self.due_at <= now


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def round_half_up(value: float) -> int:
    """``round()`` without banker's rounding: 2.5 -> 3."""
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Reference policy
# ---------------------------------------------------------------------------

class ReferencePolicy:
    """Anki-style four-button policy.

    Short steps are in minutes, review intervals in whole days.
    """

    DEFAULT_EASE = 2.5
    MIN_EASE = 1.3
    MAX_EASE = 5.0

    NEW_STEPS = {
        Rating.AGAIN: timedelta(minutes=1),
        Rating.HARD: timedelta(minutes=6),
        Rating.GOOD: timedelta(minutes=10),
        Rating.EASY: timedelta(days=1),
    }
    LEARNING_AGAIN_STEP = timedelta(minutes=1)
    GRADUATING_INTERVALS = {Rating.HARD: 1, Rating.GOOD: 1, Rating.EASY: 4}
    RELEARNING_STEP = timedelta(minutes=10)

    LAPSE_EASE_FACTOR = 0.8
    HARD_INTERVAL_FACTOR = 1.2
    HARD_EASE_PENALTY = 0.15
    EASY_BONUS = 1.3
    EASY_EASE_BONUS = 0.15
    RELEARN_INTERVAL_FACTOR = 0.5

    def clamp_ease(self, ease: float | None) -> float:
        if ease is None:
            ease = self.DEFAULT_EASE
        return max(self.MIN_EASE, min(self.MAX_EASE, float(ease)))

    def schedule(self, state: CardState, rating: Rating | str, now: datetime) -> CardState:
        rating = Rating.parse(rating)
        now = ensure_utc(now)
        ease = self.clamp_ease(state.ease)
        lapses = state.lapses + 1 if rating is Rating.AGAIN else state.lapses
        reps = state.reps if rating is Rating.AGAIN else state.reps + 1
        base = replace(state, ease=ease, lapses=lapses, reps=reps, last_review_at=now)

        if state.stage is Stage.NEW:
            return replace(
                base, stage=Stage.LEARNING, interval_days=0,
                due_at=now + self.NEW_STEPS[rating],
            )

        if state.stage is Stage.LEARNING:
            if rating is Rating.AGAIN:
                return replace(base, interval_days=0, due_at=now + self.LEARNING_AGAIN_STEP)
            interval = self.GRADUATING_INTERVALS[rating]
            return replace(
                base, stage=Stage.REVIEW, interval_days=interval,
                due_at=now + timedelta(days=interval),
            )

        if state.stage is Stage.RELEARNING:
            if rating is Rating.AGAIN:
                return replace(base, due_at=now + self.RELEARNING_STEP)
            interval = max(1, round_half_up(state.interval_days * self.RELEARN_INTERVAL_FACTOR))
            return replace(
                base, stage=Stage.REVIEW, interval_days=interval,
                due_at=now + timedelta(days=interval),
            )

        # Stage.REVIEW
        current = max(1, state.interval_days)
        if rating is Rating.AGAIN:
            # interval_days is kept so Relearning can resume from it
            return replace(
                base, stage=Stage.RELEARNING,
                ease=self.clamp_ease(ease * self.LAPSE_EASE_FACTOR),
                due_at=now + self.RELEARNING_STEP,
            )
        if rating is Rating.HARD:
            interval = max(1, round_half_up(current * self.HARD_INTERVAL_FACTOR))
            ease = self.clamp_ease(ease - self.HARD_EASE_PENALTY)
        elif rating is Rating.GOOD:
            interval = max(current + 1, round_half_up(current * ease))
        else:
            interval = max(current + 1, round_half_up(current * ease * self.EASY_BONUS))
            ease = self.clamp_ease(ease + self.EASY_EASE_BONUS)

        return replace(
            base, stage=Stage.REVIEW, interval_days=interval, ease=ease,
            due_at=now + timedelta(days=interval),
        )


default_policy = ReferencePolicy()


def schedule(
    state: CardState,
    rating: Rating | str,
    now: datetime,
    policy: ReferencePolicy | None = None,
) -> CardState:
    """Return the state that follows *state* after a *rating* at *now*.

    Pure: nothing is persisted.  Pass *policy* to use a different formula.
    """
    policy = policy or default_policy
    nxt = policy.schedule(state, rating, now)
    log.debug(
        "schedule %s --%s--> %s interval=%d ease=%.2f due=%s",
        state.stage.value, Rating.parse(rating).value, nxt.stage.value,
        nxt.interval_days, nxt.ease, nxt.due_at,
    )
    return nxt
