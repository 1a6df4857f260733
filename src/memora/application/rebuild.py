"""
Rebuild stored cards from the review log.

Shared by the sync reconciler (after pulling another device's events), the
reference server (after accepting a submission or a deck config change) and
`memora verify --fix`.
"""

import logging
from datetime import tzinfo

from memora.domain.constants import CHECKPOINT_EVERY
from memora.domain.errors import CardNotFoundError
from memora.domain.models import Card, Deck
from memora.domain.scheduling import make_checkpoint, replay, verify_card
from memora.domain.scheduling.replay import VerifyResult
from memora.infrastructure.mirror.store import LocalMirrorStore

logger = logging.getLogger(__name__)


def rebuild_card(
    store: LocalMirrorStore,
    card_id: str,
    tz: tzinfo,
    *,
    checkpoint_every: int = CHECKPOINT_EVERY,
    force_checkpoint: bool = False,
) -> Card:
    """
    Replay a card's events and write the result back.

    The card keeps its pending flag while any of its events are unpushed.
    A fresh checkpoint is saved once `checkpoint_every` events have
    accumulated past the previous one, or whenever `force_checkpoint` is set.
    """
    card = store.get_card(card_id)
    if card is None:
        raise CardNotFoundError(f"Card {card_id} not found")
    config = store.get_deck_config(card.deck_id)
    events = store.events_for_card(card_id)
    checkpoint = store.get_checkpoint(card_id)

    rebuilt = replay(card, events, config, tz, checkpoint=checkpoint)
    if rebuilt != card:
        store.upsert_card(rebuilt, pending=store.card_has_pending(card_id))
        logger.debug(f"Rebuilt card {card_id} from {len(events)} events")

    if checkpoint is None:
        base, fresh = 0, events
    else:
        boundary = (checkpoint.checkpoint_at, checkpoint.last_event_id)
        base, fresh = checkpoint.event_count, [e for e in events if e.sort_key > boundary]
    if fresh and (force_checkpoint or len(fresh) >= checkpoint_every):
        store.save_checkpoint(make_checkpoint(rebuilt, fresh[-1], base + len(fresh)))
    return rebuilt


def verify_stored_card(store: LocalMirrorStore, card_id: str, tz: tzinfo) -> VerifyResult:
    """Compare the stored card with a full replay of its history."""
    card = store.get_card(card_id)
    if card is None:
        raise CardNotFoundError(f"Card {card_id} not found")
    config = store.get_deck_config(card.deck_id)
    checkpoint = store.get_checkpoint(card_id)
    events = store.events_for_card(card_id)
    if checkpoint is None:
        return verify_card(card, events, config, tz)
    computed = replay(card, events, config, tz, checkpoint=checkpoint)
    return VerifyResult(
        matches=card.scheduling_state() == computed.scheduling_state(),
        stored=card,
        computed=computed,
    )


def replace_deck(store: LocalMirrorStore, deck: Deck, tz: tzinfo) -> int:
    """
    Store a deck, pinning its reviewed cards first if the config changed.

    Each card with history gets a checkpoint at its current state, computed
    under the outgoing config. Later replays start from there, so the new
    settings only shape reviews that happen after the change.

    Returns:
        Number of cards pinned.
    """
    previous = store.get_deck(deck.id)
    pinned = 0
    if previous is not None and previous.config != deck.config:
        for card in store.cards_for_study(deck.id):
            if store.events_for_card(card.id):
                rebuild_card(store, card.id, tz, force_checkpoint=True)
                pinned += 1
        logger.info(f"Deck {deck.id} config changed, pinned {pinned} cards")
    store.upsert_deck(deck)
    return pinned


def adopt_as_checkpoint(store: LocalMirrorStore, card_id: str) -> bool:
    """
    Checkpoint a card as it stands, if it already reflects its latest event.

    Used after a full resync, where card rows come straight from the server.
    Returns False when the row lags its events and must be replayed instead.
    """
    card = store.get_card(card_id)
    events = store.events_for_card(card_id)
    if card is None or not events or card.last_reviewed_at != events[-1].reviewed_at:
        return False
    store.save_checkpoint(make_checkpoint(card, events[-1], len(events)))
    return True
