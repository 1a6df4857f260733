"""
The scheduling function shared by the offline client and the server.

`schedule()` is pure and deterministic: identical inputs always give an
identical Card. It never reads the clock, never touches storage, and never
mutates its arguments.
"""

from dataclasses import replace
from datetime import datetime

from memora.domain.errors import SchedulingInvariantError
from memora.domain.models import Card, DeckConfig, Rating, SchedulingModel
from memora.domain.scheduling.fsrs import schedule_fsrs
from memora.domain.scheduling.sm2 import schedule_sm2


def schedule(card: Card, rating: Rating, config: DeckConfig, now: datetime) -> Card:
    """
    Return the card state that follows a rating.

    Args:
        card: Current card state.
        rating: Button pressed.
        config: Validated deck configuration.
        now: Timezone-aware instant of the rating, in the study timezone.
            Review dates are computed from `now.date()`.

    Raises:
        SchedulingInvariantError: The configuration or inputs violate
            invariants that write-time validation should have enforced.
    """
    _assert_inputs(card, rating, config, now)

    if config.scheduling_model == SchedulingModel.FSRS:
        result = schedule_fsrs(card, Rating(rating), config, now)
    else:
        result = schedule_sm2(card, Rating(rating), config, now)

    return _stamp(result, now)


def _assert_inputs(card: Card, rating: Rating, config: DeckConfig, now: datetime) -> None:
    if now.tzinfo is None or now.utcoffset() is None:
        raise SchedulingInvariantError("schedule() requires a timezone-aware 'now'")
    if rating not in (Rating.AGAIN, Rating.HARD, Rating.GOOD, Rating.EASY):
        raise SchedulingInvariantError(f"invalid rating {rating!r}")
    if not config.learning_steps or not config.relearning_steps:
        raise SchedulingInvariantError("deck configuration has an empty step list")
    if config.minimum_ease > config.maximum_ease:
        raise SchedulingInvariantError("deck configuration has inverted ease bounds")
    if card.learning_step < 0:
        raise SchedulingInvariantError(f"card {card.id}: negative learning_step")


def _stamp(card: Card, now: datetime) -> Card:
    stamped = replace(card, updated_at=now)
    stamped.check_invariants()
    return stamped
