"""
SM-2 scheduling with Anki-style learning and relearning steps.

Pure computation: no I/O, no clock reads. The caller supplies `now` as a
timezone-aware datetime already expressed in the study timezone, and the
calendar day used for Review scheduling is `now.date()`.
"""

import math
from dataclasses import replace
from datetime import date, datetime, timedelta

from memora.domain.constants import (
    EASE_BONUS_EASY,
    EASE_PENALTY_AGAIN,
    EASE_PENALTY_HARD,
    EASE_PRECISION,
    MIN_HARD_STEP_MINUTES,
)
from memora.domain.models import Card, CardQueue, DeckConfig, Rating


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (Python's round() is banker's)."""
    return int(math.floor(value + 0.5))


def clamp_ease(ease: float, config: DeckConfig) -> float:
    bounded = min(config.maximum_ease, max(config.minimum_ease, ease))
    return round(bounded, EASE_PRECISION)


def clamp_interval(days: int, config: DeckConfig) -> int:
    return min(config.maximum_interval, max(1, days))


def steps_for(queue: CardQueue, config: DeckConfig) -> tuple[float, ...]:
    if queue == CardQueue.RELEARNING:
        return config.relearning_steps
    return config.learning_steps


def schedule_sm2(card: Card, rating: Rating, config: DeckConfig, now: datetime) -> Card:
    """Compute the card state that follows `rating`."""
    if card.queue == CardQueue.NEW:
        entered = replace(
            card,
            queue=CardQueue.LEARNING,
            learning_step=0,
            ease_factor=clamp_ease(config.starting_ease, config),
            repetitions=0,
        )
        return _schedule_learning(entered, rating, config, now)

    if card.queue.is_learning:
        return _schedule_learning(card, rating, config, now)

    return _schedule_review(card, rating, config, now)


def _schedule_learning(card: Card, rating: Rating, config: DeckConfig, now: datetime) -> Card:
    steps = steps_for(card.queue, config)
    today = now.date()
    # A config change may have shortened the step list under a card mid-way.
    step = min(card.learning_step, len(steps) - 1)

    if rating == Rating.AGAIN:
        return _stay_learning(card, 0, now + _minutes(steps[0]), config, now)

    if rating == Rating.HARD:
        delay = max(MIN_HARD_STEP_MINUTES, steps[step] / 2)
        return _stay_learning(card, step, now + _minutes(delay), config, now)

    if rating == Rating.GOOD:
        next_step = step + 1
        if next_step >= len(steps):
            return _graduate(card, config.graduating_interval, config, today, now)
        return _stay_learning(card, next_step, now + _minutes(steps[next_step]), config, now)

    return _graduate(card, config.easy_interval, config, today, now)


def _schedule_review(card: Card, rating: Rating, config: DeckConfig, now: datetime) -> Card:
    today = now.date()
    ease = clamp_ease(card.ease_factor, config)
    interval = max(1, card.interval)

    if rating == Rating.AGAIN:
        return replace(
            card,
            queue=CardQueue.RELEARNING,
            learning_step=0,
            lapses=card.lapses + 1,
            ease_factor=clamp_ease(ease - EASE_PENALTY_AGAIN, config),
            repetitions=0,
            due_timestamp=now + _minutes(config.relearning_steps[0]),
            next_review_at=None,
            last_reviewed_at=now,
        )

    repetitions = card.repetitions
    if rating == Rating.HARD:
        ease = clamp_ease(ease - EASE_PENALTY_HARD, config)
        new_interval = round_half_up(interval * config.hard_multiplier * config.interval_modifier)
    elif rating == Rating.GOOD:
        new_interval = round_half_up(interval * ease * config.interval_modifier)
        # Good never shortens a review interval.
        new_interval = max(new_interval, interval)
        repetitions += 1
    else:
        ease = clamp_ease(ease + EASE_BONUS_EASY, config)
        new_interval = round_half_up(
            interval * ease * config.easy_bonus * config.interval_modifier
        )
        repetitions += 1

    new_interval = clamp_interval(new_interval, config)
    return replace(
        card,
        queue=CardQueue.REVIEW,
        learning_step=0,
        ease_factor=ease,
        interval=new_interval,
        repetitions=repetitions,
        due_timestamp=None,
        next_review_at=today + timedelta(days=new_interval),
        last_reviewed_at=now,
    )


def _stay_learning(
    card: Card, step: int, due: datetime, config: DeckConfig, now: datetime
) -> Card:
    return replace(
        card,
        learning_step=step,
        ease_factor=clamp_ease(card.ease_factor, config),
        due_timestamp=due,
        next_review_at=None,
        last_reviewed_at=now,
    )


def _graduate(card: Card, days: int, config: DeckConfig, today: date, now: datetime) -> Card:
    interval = clamp_interval(days, config)
    return replace(
        card,
        queue=CardQueue.REVIEW,
        learning_step=0,
        interval=interval,
        repetitions=card.repetitions + 1,
        ease_factor=clamp_ease(card.ease_factor, config),
        due_timestamp=None,
        next_review_at=today + timedelta(days=interval),
        last_reviewed_at=now,
    )


def _minutes(value: float) -> timedelta:
    return timedelta(minutes=value)
