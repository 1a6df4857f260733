"""Interval previews shown under each answer button."""

from dataclasses import dataclass
from datetime import datetime

from memora.domain.models import Card, CardQueue, DeckConfig, Rating
from memora.domain.scheduling.scheduler import schedule

MINUTES_PER_HOUR = 60
MINUTES_PER_DAY = 1440


@dataclass(frozen=True)
class IntervalPreview:
    rating: Rating
    queue: CardQueue
    minutes: float
    label: str


def _unit(value: float, suffix: str) -> str:
    if value == int(value):
        return f"{int(value)}{suffix}"
    return f"{value:.1f}{suffix}"


def format_interval(minutes: float, less_than: bool = False) -> str:
    """
    Render a delay compactly: 10m, 3h, 4d, 2w, 1.5mo, 2y.

    With `less_than`, anything under ten minutes reads "<10m", the way
    learning buttons are usually labelled.
    """
    if less_than and minutes < 10:
        return "<10m"
    if minutes < MINUTES_PER_HOUR:
        return f"{int(minutes + 0.5)}m"
    if minutes < MINUTES_PER_DAY:
        return f"{int(minutes / MINUTES_PER_HOUR + 0.5)}h"
    days = int(minutes / MINUTES_PER_DAY + 0.5)
    if days < 7:
        return f"{days}d"
    if days < 30:
        return _unit(days / 7, "w")
    if days < 365:
        return _unit(days / 30, "mo")
    return _unit(days / 365, "y")


def preview_intervals(card: Card, config: DeckConfig, now: datetime) -> list[IntervalPreview]:
    """What each rating would do to `card` if pressed at `now`. Nothing is stored."""
    previews = []
    for rating in Rating:
        outcome = schedule(card, rating, config, now)
        if outcome.queue.is_learning:
            minutes = (outcome.due_timestamp - now).total_seconds() / 60
        else:
            minutes = outcome.interval * MINUTES_PER_DAY
        previews.append(
            IntervalPreview(
                rating=rating,
                queue=outcome.queue,
                minutes=minutes,
                label=format_interval(minutes),
            )
        )
    return previews
