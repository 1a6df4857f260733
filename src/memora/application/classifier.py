"""
Queue classification.

Learning and relearning cards are due at an instant; review cards are due
for the whole calendar day they are scheduled on. The two comparisons are
kept different on purpose.
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta

from memora.domain.models import Card, CardQueue


@dataclass(frozen=True)
class Classification:
    queue: CardQueue
    is_due: bool
    due_in_ms: int | None = None


def classify(card: Card, now: datetime, new_capacity: int | None = None) -> Classification:
    """
    Decide whether a card is due at `now`.

    Args:
        card: Card to classify.
        now: Timezone-aware instant in the study timezone. `now.date()` is today.
        new_capacity: Remaining new-card allowance for the card's deck.
            None means unthrottled.
    """
    if card.queue == CardQueue.NEW:
        return Classification(card.queue, new_capacity is None or new_capacity > 0)

    if card.queue.is_learning:
        if card.due_timestamp is None or card.due_timestamp <= now:
            return Classification(card.queue, True)
        return Classification(card.queue, False, _ms(card.due_timestamp - now))

    today = now.date()
    if card.next_review_at is None or card.next_review_at <= today:
        return Classification(card.queue, True)
    # Due from local midnight of the scheduled day.
    starts = datetime.combine(card.next_review_at, time.min, tzinfo=now.tzinfo)
    return Classification(card.queue, False, _ms(starts - now))


def _ms(delta: timedelta) -> int:
    return int(delta.total_seconds() * 1000)
