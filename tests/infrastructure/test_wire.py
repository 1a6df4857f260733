from datetime import date, datetime, timedelta, timezone

import pytest

from memora.domain.models import Deck, DeckConfig, Note, Rating, ReviewEvent
from memora.infrastructure.wire import (
    card_from_dict,
    card_to_dict,
    deck_from_dict,
    deck_to_dict,
    event_from_dict,
    event_to_dict,
    format_instant,
    note_from_dict,
    note_to_dict,
    parse_day,
    parse_instant,
)


def test_instants_are_written_in_utc():
    berlin = timezone(timedelta(hours=2))

    assert format_instant(datetime(2024, 6, 10, 11, 0, tzinfo=berlin)) == (
        "2024-06-10T09:00:00.000000+00:00"
    )


def test_naive_instants_are_refused():
    with pytest.raises(ValueError):
        format_instant(datetime(2024, 6, 10, 9, 0))


def test_parse_assumes_utc_for_naive_strings():
    assert parse_instant("2024-06-10T09:00:00") == datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc)
    assert parse_instant(None) is None
    assert parse_day("2024-06-11") == date(2024, 6, 11)


def test_card_dict_is_json_safe(review_card):
    data = card_to_dict(review_card())

    assert data["queue"] == 2
    assert data["next_review_at"] == "2024-06-10"
    assert data["due_timestamp"] is None
    assert card_from_dict(data) == review_card()


def test_deck_and_note_dicts(now):
    deck = Deck(id="d1", name="Spanish", config=DeckConfig(learning_steps=(2.0, 20.0)), updated_at=now)
    note = Note(id="n1", deck_id="d1", fields={"word": "perro", "meaning": "dog"})

    assert deck_from_dict(deck_to_dict(deck)) == deck
    assert note_from_dict(note_to_dict(note)) == note


def test_event_accepts_rating_names(now):
    event = ReviewEvent(id="e1", card_id="c1", rating=Rating.HARD, reviewed_at=now, time_spent_ms=900)
    data = event_to_dict(event)

    assert data["rating"] == 2
    assert event_from_dict({**data, "rating": "hard"}) == event
