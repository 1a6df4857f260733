from dataclasses import replace
from datetime import timedelta, timezone

import pytest

from memora.application.rebuild import rebuild_card, replace_deck, verify_stored_card
from memora.domain.errors import CardNotFoundError
from memora.domain.models import Deck, DeckConfig, Rating, ReviewEvent

UTC = timezone.utc


def _events(now, count: int, start: int = 0) -> list[ReviewEvent]:
    return [
        ReviewEvent(
            id=f"e{start + i:03d}",
            card_id="c1",
            rating=Rating.GOOD if i % 3 else Rating.HARD,
            reviewed_at=now + timedelta(days=start + i),
        )
        for i in range(count)
    ]


@pytest.fixture
def seeded(store, seed_deck):
    seed_deck(store)
    return store


def test_rebuild_writes_replayed_state(seeded, now):
    seeded.insert_events(_events(now, 4))

    card = rebuild_card(seeded, "c1", UTC)

    assert seeded.get_card("c1") == card
    assert card.last_reviewed_at == now + timedelta(days=3)
    assert verify_stored_card(seeded, "c1", UTC).matches


def test_rebuild_saves_checkpoint_after_enough_events(seeded, now):
    seeded.insert_events(_events(now, 5))

    rebuild_card(seeded, "c1", UTC, checkpoint_every=4)

    checkpoint = seeded.get_checkpoint("c1")
    assert checkpoint.event_count == 5
    assert checkpoint.last_event_id == "e004"
    assert checkpoint.state == seeded.get_card("c1")


def test_checkpoint_plus_tail_equals_full_replay(seeded, now):
    seeded.insert_events(_events(now, 5))
    rebuild_card(seeded, "c1", UTC, checkpoint_every=4)
    seeded.insert_events(_events(now, 3, start=5))

    card = rebuild_card(seeded, "c1", UTC, checkpoint_every=4)

    seeded.delete_checkpoint("c1")
    assert rebuild_card(seeded, "c1", UTC, checkpoint_every=100) == card


def test_late_event_invalidates_checkpoint(seeded, now):
    seeded.insert_events(_events(now, 5))
    rebuild_card(seeded, "c1", UTC, checkpoint_every=4)

    # Lands between the fourth and fifth reviews, while the card is in Review
    late = ReviewEvent(
        id="late", card_id="c1", rating=Rating.AGAIN, reviewed_at=now + timedelta(days=3, hours=1)
    )
    seeded.insert_events([late])

    assert seeded.get_checkpoint("c1") is None
    card = rebuild_card(seeded, "c1", UTC)
    assert verify_stored_card(seeded, "c1", UTC).matches
    assert card.lapses == 1


def test_verify_reports_drift(seeded, now):
    seeded.insert_events(_events(now, 2))
    rebuild_card(seeded, "c1", UTC)
    seeded.upsert_card(replace(seeded.get_card("c1"), learning_step=0, lapses=3))

    result = verify_stored_card(seeded, "c1", UTC)

    assert not result.matches
    assert result.computed.lapses == 0


def test_unknown_card(seeded):
    with pytest.raises(CardNotFoundError):
        rebuild_card(seeded, "missing", UTC)


def test_config_change_pins_reviewed_cards(seeded, seed_deck, now):
    seed_deck(seeded, card_ids=("c1", "c2"))
    seeded.insert_events(
        [
            ReviewEvent(id="e1", card_id="c1", rating=Rating.GOOD, reviewed_at=now),
            ReviewEvent(
                id="e2", card_id="c1", rating=Rating.GOOD, reviewed_at=now + timedelta(minutes=10)
            ),
        ]
    )
    assert rebuild_card(seeded, "c1", UTC).interval == 1

    pinned = replace_deck(seeded, Deck("d1", "Deck d1", DeckConfig(graduating_interval=5)), UTC)

    assert pinned == 1
    assert seeded.get_checkpoint("c1").last_event_id == "e2"
    assert seeded.get_checkpoint("c2") is None
    assert seeded.get_deck_config("d1").graduating_interval == 5

    seeded.insert_events(
        [
            ReviewEvent(
                id="e3",
                card_id="c1",
                rating=Rating.GOOD,
                reviewed_at=now + timedelta(days=1, minutes=10),
            )
        ]
    )
    card = rebuild_card(seeded, "c1", UTC)

    assert card.interval == 3
    assert verify_stored_card(seeded, "c1", UTC).matches


def test_unchanged_config_pins_nothing(seeded, now):
    seeded.insert_events(_events(now, 2))
    rebuild_card(seeded, "c1", UTC)

    assert replace_deck(seeded, seeded.get_deck("d1"), UTC) == 0
    assert seeded.get_checkpoint("c1") is None
