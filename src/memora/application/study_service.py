"""
Study service: the operations a UI calls during a session.

Every read and write goes to the local mirror, so studying never waits on
the network. The sync reconciler picks up pending events separately.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone, tzinfo
from typing import Any

from memora.application.id_service import generate_event_id
from memora.application.rebuild import rebuild_card
from memora.application.selector import Selection, select_next
from memora.application.throttle import DailyThrottle
from memora.domain.errors import CardNotFoundError, DeckNotFoundError
from memora.domain.models import Card, CardQueue, QueueCounts, Rating, ReviewEvent
from memora.domain.scheduling import IntervalPreview, preview_intervals, schedule
from memora.domain.scheduling.fsrs import retrievability
from memora.infrastructure.mirror.store import LocalMirrorStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NextCard:
    card: Card | None
    counts: QueueCounts
    interval_previews: list[IntervalPreview] = field(default_factory=list)
    capped_new: int = 0


@dataclass(frozen=True)
class ReviewOutcome:
    """
    Result of rating a card.

    Attributes:
        next_interval: Days until the next review; 0 while still learning.
        next_due: Instant for learning cards, calendar day for review cards.
    """

    card: Card
    event: ReviewEvent
    counts: QueueCounts
    next_queue: CardQueue
    next_interval: int
    next_due: datetime | date | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StudyService:
    """
    Args:
        store: Local mirror holding decks, cards and the review log.
        tz: Study timezone. Calendar days and the daily new-card limit
            roll over at its midnight.
        clock: Source of the current instant; any timezone.
        id_factory: Generates review event ids.
    """

    def __init__(
        self,
        store: LocalMirrorStore,
        tz: tzinfo,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] = generate_event_id,
    ):
        self.store = store
        self.tz = tz
        self._clock = clock or _utc_now
        self._id_factory = id_factory
        self.throttle = DailyThrottle(store)

    def now(self) -> datetime:
        return self._clock().astimezone(self.tz)

    def _select(
        self,
        deck_id: str | None,
        exclude_note_ids: Iterable[str],
        ignore_daily_limit: bool,
        now: datetime,
    ) -> Selection:
        if deck_id is not None and self.store.get_deck(deck_id) is None:
            raise DeckNotFoundError(f"Deck {deck_id} not found")
        pool = self.store.cards_for_study(deck_id)
        deck_ids = {c.deck_id for c in pool if c.queue == CardQueue.NEW}
        capacity = None if ignore_daily_limit else self.throttle.capacities(sorted(deck_ids), now)
        return select_next(
            pool,
            now,
            excluded_note_ids=exclude_note_ids,
            new_capacity=capacity,
            ignore_daily_limit=ignore_daily_limit,
        )

    def get_next_card(
        self,
        deck_id: str | None = None,
        exclude_note_ids: Iterable[str] = (),
        *,
        ignore_daily_limit: bool = False,
    ) -> NextCard:
        """
        Pick the next card, with previews for each answer button.

        Args:
            deck_id: Restrict to one deck; None studies every deck.
            exclude_note_ids: Notes to skip, e.g. siblings of the last card.
            ignore_daily_limit: Explicit "study ahead" override for new cards.

        Raises:
            DeckNotFoundError: `deck_id` is not in the mirror.
        """
        now = self.now()
        selection = self._select(deck_id, exclude_note_ids, ignore_daily_limit, now)
        previews: list[IntervalPreview] = []
        if selection.card is not None:
            config = self.store.get_deck_config(selection.card.deck_id)
            previews = preview_intervals(selection.card, config, now)
        return NextCard(selection.card, selection.counts, previews, selection.capped_new)

    def submit_review(
        self,
        card_id: str,
        rating: Rating | int | str,
        *,
        time_spent_ms: int | None = None,
        user_answer: str | None = None,
        session_id: str | None = None,
        recording_ref: str | None = None,
    ) -> ReviewOutcome:
        """
        Rate a card, persisting the new card state and its event together.

        Raises:
            CardNotFoundError: The card is not in the mirror.
            ValueError: `rating` is not a recognised rating.
        """
        card = self.store.get_card(card_id)
        if card is None:
            raise CardNotFoundError(f"Card {card_id} not found")
        config = self.store.get_deck_config(card.deck_id)
        parsed = Rating.parse(rating)
        now = self.now()

        updated = schedule(card, parsed, config, now)
        event = ReviewEvent(
            id=self._id_factory(),
            card_id=card.id,
            rating=parsed,
            reviewed_at=now,
            session_id=session_id,
            time_spent_ms=time_spent_ms,
            user_answer=user_answer,
            recording_ref=recording_ref,
        )
        self.store.record_review(updated, event)

        if card.last_reviewed_at is not None and now < card.last_reviewed_at:
            # Clock moved backwards; the log order decides, not the call order.
            logger.warning(f"Review of {card_id} predates its previous review, rebuilding")
            updated = rebuild_card(self.store, card_id, self.tz)

        logger.info(
            f"Reviewed {card_id} as {parsed.name}: {card.queue.name} -> {updated.queue.name}"
        )
        counts = self._select(card.deck_id, (), False, now).counts
        if updated.queue == CardQueue.REVIEW:
            next_interval, next_due = updated.interval, updated.next_review_at
        else:
            next_interval, next_due = 0, updated.due_timestamp
        return ReviewOutcome(updated, event, counts, updated.queue, next_interval, next_due)

    def get_queue_counts(self, deck_id: str | None = None) -> QueueCounts:
        return self._select(deck_id, (), False, self.now()).counts

    def has_more_new_cards(self, deck_id: str | None = None) -> bool:
        """True when new cards exist but today's limit is holding them back."""
        return self._select(deck_id, (), False, self.now()).capped_new > 0

    def describe(self) -> dict[str, Any]:
        """Summary for display: counts per deck plus totals."""
        per_deck = {}
        for deck in self.store.list_decks():
            counts = self.get_queue_counts(deck.id)
            per_deck[deck.id] = {"name": deck.name, **asdict(counts)}
        return {"decks": per_deck, "total": asdict(self.get_queue_counts())}

    def average_retrievability(self, deck_id: str) -> float | None:
        """Mean recall probability of the deck's studied cards; None without FSRS state."""
        config = self.store.get_deck_config(deck_id)
        now = self.now()
        values = []
        for card in self.store.cards_for_study(deck_id):
            if card.queue == CardQueue.NEW:
                continue
            r = retrievability(card, config, now)
            if r is not None:
                values.append(r)
        if not values:
            return None
        return round(sum(values) / len(values), 4)
