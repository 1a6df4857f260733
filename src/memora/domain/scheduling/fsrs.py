"""
FSRS-6 memory-model scheduling.

Uses the same queue state machine as SM-2 (New -> Learning -> Review ->
Relearning) but derives intervals from stability and difficulty instead of
ease. Fuzz is never applied so client and server compute identical results.

This is a pure computation module with no I/O.
"""

import math
from dataclasses import replace
from datetime import datetime, timedelta

from memora.domain.constants import (
    FSRS_MAX_DIFFICULTY,
    FSRS_MIN_DIFFICULTY,
    FSRS_MIN_STABILITY,
    FSRS_PRECISION,
)
from memora.domain.models import Card, CardQueue, DeckConfig, Rating


class FsrsModel:
    """
    FSRS-6 formulas bound to one weight vector.

    Attributes:
        decay: Forgetting curve exponent (-w20).
        factor: Chosen so that R(t=S) == 0.9.
    """

    def __init__(self, weights: tuple[float, ...]):
        self.w = weights
        self.decay = -weights[20]
        self.factor = 0.9 ** (1 / self.decay) - 1

    def retrievability(self, elapsed_days: float, stability: float) -> float:
        return (1 + self.factor * max(0.0, elapsed_days) / stability) ** self.decay

    def next_interval(self, stability: float, retention: float, maximum: int) -> int:
        raw = stability / self.factor * (retention ** (1 / self.decay) - 1)
        return min(maximum, max(1, int(math.floor(raw + 0.5))))

    def initial_stability(self, rating: Rating) -> float:
        return max(self.w[rating - 1], FSRS_MIN_STABILITY)

    def initial_difficulty(self, rating: Rating, clamp: bool = True) -> float:
        d = self.w[4] - math.exp(self.w[5] * (rating - 1)) + 1
        return _clamp_difficulty(d) if clamp else d

    def next_difficulty(self, difficulty: float, rating: Rating) -> float:
        delta = -self.w[6] * (rating - 3)
        damped = difficulty + delta * (10.0 - difficulty) / 9.0
        target = self.initial_difficulty(Rating.EASY, clamp=False)
        reverted = self.w[7] * target + (1 - self.w[7]) * damped
        return _clamp_difficulty(reverted)

    def recall_stability(
        self, difficulty: float, stability: float, retrievability: float, rating: Rating
    ) -> float:
        hard_penalty = self.w[15] if rating == Rating.HARD else 1.0
        easy_bonus = self.w[16] if rating == Rating.EASY else 1.0
        growth = (
            math.exp(self.w[8])
            * (11 - difficulty)
            * stability ** (-self.w[9])
            * (math.exp((1 - retrievability) * self.w[10]) - 1)
            * hard_penalty
            * easy_bonus
        )
        return max(FSRS_MIN_STABILITY, stability * (1 + growth))

    def forget_stability(self, difficulty: float, stability: float, retrievability: float) -> float:
        long_term = (
            self.w[11]
            * difficulty ** (-self.w[12])
            * ((stability + 1) ** self.w[13] - 1)
            * math.exp((1 - retrievability) * self.w[14])
        )
        short_term = stability / math.exp(self.w[17] * self.w[18])
        return max(FSRS_MIN_STABILITY, min(long_term, short_term))

    def short_term_stability(self, stability: float, rating: Rating) -> float:
        increase = math.exp(self.w[17] * (rating - 3 + self.w[18])) * stability ** (-self.w[19])
        if rating >= Rating.GOOD:
            increase = max(increase, 1.0)
        return max(FSRS_MIN_STABILITY, stability * increase)


def elapsed_days(card: Card, now: datetime) -> int:
    """Whole calendar days between the last review and `now`, in `now`'s timezone."""
    if card.last_reviewed_at is None:
        return 0
    last_day = card.last_reviewed_at.astimezone(now.tzinfo).date()
    return max(0, (now.date() - last_day).days)


def retrievability(card: Card, config: DeckConfig, now: datetime) -> float | None:
    """Current recall probability, or None for cards that carry no FSRS state."""
    if card.queue == CardQueue.NEW:
        return 1.0
    if not card.stability:
        return None
    model = FsrsModel(config.fsrs_weights)
    return model.retrievability(elapsed_days(card, now), card.stability)


def schedule_fsrs(card: Card, rating: Rating, config: DeckConfig, now: datetime) -> Card:
    model = FsrsModel(config.fsrs_weights)

    if card.queue == CardQueue.NEW or card.stability is None or card.difficulty is None:
        stability = model.initial_stability(rating)
        difficulty = model.initial_difficulty(rating)
        if rating == Rating.AGAIN:
            return _to_learning(card, CardQueue.LEARNING, stability, difficulty, config, now)
        return _to_review(model, card, stability, difficulty, config, now, repetitions=1)

    elapsed = elapsed_days(card, now)
    difficulty = model.next_difficulty(card.difficulty, rating)

    if card.queue.is_learning:
        if elapsed < 1:
            stability = model.short_term_stability(card.stability, rating)
        else:
            r = model.retrievability(elapsed, card.stability)
            stability = (
                model.forget_stability(card.difficulty, card.stability, r)
                if rating == Rating.AGAIN
                else model.recall_stability(card.difficulty, card.stability, r, rating)
            )
        if rating == Rating.AGAIN:
            return _to_learning(card, card.queue, stability, difficulty, config, now)
        return _to_review(model, card, stability, difficulty, config, now, card.repetitions + 1)

    r = model.retrievability(elapsed, card.stability)
    if rating == Rating.AGAIN:
        stability = model.forget_stability(card.difficulty, card.stability, r)
        lapsed = replace(card, lapses=card.lapses + 1, repetitions=0)
        return _to_learning(lapsed, CardQueue.RELEARNING, stability, difficulty, config, now)

    stability = model.recall_stability(card.difficulty, card.stability, r, rating)
    return _to_review(model, card, stability, difficulty, config, now, card.repetitions + 1)


def _to_learning(
    card: Card,
    queue: CardQueue,
    stability: float,
    difficulty: float,
    config: DeckConfig,
    now: datetime,
) -> Card:
    steps = config.relearning_steps if queue == CardQueue.RELEARNING else config.learning_steps
    return replace(
        card,
        queue=queue,
        learning_step=0,
        stability=round(stability, FSRS_PRECISION),
        difficulty=round(difficulty, FSRS_PRECISION),
        due_timestamp=now + timedelta(minutes=steps[0]),
        next_review_at=None,
        last_reviewed_at=now,
    )


def _to_review(
    model: FsrsModel,
    card: Card,
    stability: float,
    difficulty: float,
    config: DeckConfig,
    now: datetime,
    repetitions: int,
) -> Card:
    stability = round(stability, FSRS_PRECISION)
    interval = model.next_interval(stability, config.request_retention, config.maximum_interval)
    return replace(
        card,
        queue=CardQueue.REVIEW,
        learning_step=0,
        stability=stability,
        difficulty=round(difficulty, FSRS_PRECISION),
        interval=interval,
        repetitions=repetitions,
        due_timestamp=None,
        next_review_at=now.date() + timedelta(days=interval),
        last_reviewed_at=now,
    )


def _clamp_difficulty(d: float) -> float:
    return min(FSRS_MAX_DIFFICULTY, max(FSRS_MIN_DIFFICULTY, d))
