"""
Next-card selection.

Priority is strict: due learning/relearning cards first (their deadlines are
minutes away), then review cards due today, then new cards while the deck's
daily allowance lasts.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime

from memora.application.classifier import classify
from memora.domain.models import Card, CardQueue, QueueCounts


@dataclass(frozen=True)
class Selection:
    """
    Attributes:
        card: Card to show next, or None when nothing is available.
        counts: Due cards per queue, new limited to what may still be shown today.
        capped_new: New cards withheld only because of the daily limit.
    """

    card: Card | None
    counts: QueueCounts
    capped_new: int = 0


def _learning_key(card: Card) -> tuple:
    return (card.due_timestamp is None, card.due_timestamp.timestamp() if card.due_timestamp else 0.0, card.id)


def _review_key(card: Card) -> tuple:
    return (card.next_review_at is None, card.next_review_at.toordinal() if card.next_review_at else 0, card.id)


def _new_key(card: Card) -> tuple:
    return (card.created_at is None, card.created_at.timestamp() if card.created_at else 0.0, card.id)


def select_next(
    pool: Iterable[Card],
    now: datetime,
    *,
    excluded_note_ids: Iterable[str] = (),
    new_capacity: Mapping[str, int] | None = None,
    ignore_daily_limit: bool = False,
) -> Selection:
    """
    Pick the next card to study.

    Args:
        pool: Candidate cards, typically one deck or every deck.
        now: Timezone-aware instant in the study timezone.
        excluded_note_ids: Notes whose cards must not be returned, e.g. the
            note just shown. They still count towards `counts`.
        new_capacity: Remaining new-card allowance per deck id. Decks missing
            from the mapping get no new cards. None means unthrottled.
        ignore_daily_limit: Explicit opt-in to present new cards past the cap.
    """
    excluded = set(excluded_note_ids)
    learning: list[Card] = []
    review: list[Card] = []
    new: list[Card] = []

    for card in pool:
        if card.queue == CardQueue.NEW:
            new.append(card)
        elif classify(card, now).is_due:
            (learning if card.queue.is_learning else review).append(card)

    learning.sort(key=_learning_key)
    review.sort(key=_review_key)
    new.sort(key=_new_key)

    allowed_new = _apply_capacity(new, new_capacity, ignore_daily_limit)
    counts = QueueCounts(new=len(allowed_new), learning=len(learning), review=len(review))
    capped = len(new) - len(allowed_new)

    for tier in (learning, review, allowed_new):
        for card in tier:
            if card.note_id not in excluded:
                return Selection(card, counts, capped)
    return Selection(None, counts, capped)


def _apply_capacity(
    new: list[Card], capacity: Mapping[str, int] | None, ignore_daily_limit: bool
) -> list[Card]:
    if ignore_daily_limit or capacity is None:
        return list(new)
    left = dict(capacity)
    allowed = []
    for card in new:
        if left.get(card.deck_id, 0) > 0:
            allowed.append(card)
            left[card.deck_id] -= 1
    return allowed
