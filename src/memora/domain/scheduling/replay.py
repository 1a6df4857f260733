"""
Rebuild card state from the review event log.

Card records are a derived cache. Replaying a card's events, in reviewed_at
order, from its New state through `schedule()` reproduces the stored record.
This is both the conflict-resolution strategy across devices and the
disaster-recovery path when a mirror row is lost or damaged.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, tzinfo

from memora.domain.models import Card, CardCheckpoint, DeckConfig, ReviewEvent
from memora.domain.scheduling.scheduler import schedule


@dataclass(frozen=True)
class VerifyResult:
    matches: bool
    stored: Card
    computed: Card


def initial_card(card: Card) -> Card:
    """The state a card had before its first review."""
    return card.reset()


def order_events(events: Iterable[ReviewEvent]) -> list[ReviewEvent]:
    """Sort by reviewed_at, breaking ties by event id (ULIDs sort by creation)."""
    return sorted(events, key=lambda e: e.sort_key)


def apply_event(card: Card, event: ReviewEvent, config: DeckConfig, tz: tzinfo) -> Card:
    return schedule(card, event.rating, config, event.reviewed_at.astimezone(tz))


def replay(
    card: Card,
    events: Iterable[ReviewEvent],
    config: DeckConfig,
    tz: tzinfo,
    checkpoint: CardCheckpoint | None = None,
) -> Card:
    """
    Recompute a card from its events.

    Args:
        card: Any version of the card; only its identity is used unless a
            checkpoint is given.
        events: The card's events in any order; foreign card ids are ignored.
        config: Deck configuration to schedule with.
        tz: Study timezone that defines calendar days.
        checkpoint: Optional snapshot. Events at or before it are skipped.

    Returns:
        The rebuilt card. With no events it is the card's New state.
    """
    ordered = [e for e in order_events(events) if e.card_id == card.id]

    state = initial_card(card)
    if checkpoint is not None and checkpoint.card_id == card.id:
        state = checkpoint.state
        boundary = (checkpoint.checkpoint_at, checkpoint.last_event_id)
        ordered = [e for e in ordered if e.sort_key > boundary]

    for event in ordered:
        state = apply_event(state, event, config, tz)
    return state


def make_checkpoint(card: Card, last_event: ReviewEvent, event_count: int) -> CardCheckpoint:
    return CardCheckpoint(
        card_id=card.id,
        checkpoint_at=last_event.reviewed_at,
        last_event_id=last_event.id,
        event_count=event_count,
        state=card,
    )


def is_checkpoint_stale(checkpoint: CardCheckpoint, latest_event_at: datetime | None) -> bool:
    """True when events newer than the checkpoint exist."""
    if latest_event_at is None:
        return False
    return latest_event_at > checkpoint.checkpoint_at


def verify_card(
    stored: Card, events: Iterable[ReviewEvent], config: DeckConfig, tz: tzinfo
) -> VerifyResult:
    """Compare a stored card against the state its events imply."""
    computed = replay(stored, events, config, tz)
    return VerifyResult(
        matches=stored.scheduling_state() == computed.scheduling_state(),
        stored=stored,
        computed=computed,
    )
