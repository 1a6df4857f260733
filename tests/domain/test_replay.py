from dataclasses import replace
from datetime import timedelta, timezone

import pytest

from memora.domain.models import CardQueue, Rating, ReviewEvent
from memora.domain.scheduling import (
    initial_card,
    is_checkpoint_stale,
    make_checkpoint,
    order_events,
    replay,
    schedule,
    verify_card,
)

UTC = timezone.utc


@pytest.fixture
def history(make_card, config, now):
    """A card reviewed live, plus the events that produced it."""
    ratings = [Rating.GOOD, Rating.GOOD, Rating.GOOD, Rating.AGAIN, Rating.GOOD, Rating.EASY]
    card = make_card()
    events = []
    at = now
    for i, rating in enumerate(ratings):
        event = ReviewEvent(id=f"e{i:02d}", card_id=card.id, rating=rating, reviewed_at=at)
        card = schedule(card, rating, config, at)
        events.append(event)
        if card.queue == CardQueue.REVIEW:
            at = at + timedelta(days=card.interval)
        else:
            at = card.due_timestamp
    return card, events


def test_replay_reproduces_live_state(history, config):
    card, events = history

    assert replay(card, events, config, UTC) == card


def test_replay_ignores_input_order(history, config):
    card, events = history

    assert replay(card, list(reversed(events)), config, UTC) == card


def test_replay_ignores_other_cards_events(history, config, now):
    card, events = history
    foreign = ReviewEvent(id="x", card_id="other", rating=Rating.AGAIN, reviewed_at=now)

    assert replay(card, events + [foreign], config, UTC) == card


def test_replay_without_events_is_new_state(review_card, config):
    card = review_card()

    rebuilt = replay(card, [], config, UTC)

    assert rebuilt.queue == CardQueue.NEW
    assert rebuilt == initial_card(card)
    assert rebuilt.id == card.id


def test_ties_break_on_event_id(make_card, now):
    a = ReviewEvent(id="b", card_id="c1", rating=Rating.GOOD, reviewed_at=now)
    b = ReviewEvent(id="a", card_id="c1", rating=Rating.AGAIN, reviewed_at=now)

    assert [e.id for e in order_events([a, b])] == ["a", "b"]


def test_replay_from_checkpoint_matches_full_replay(history, config):
    card, events = history
    partial = replay(card, events[:3], config, UTC)
    checkpoint = make_checkpoint(partial, events[2], 3)

    assert replay(card, events, config, UTC, checkpoint=checkpoint) == card


def test_checkpoint_staleness(history, config):
    card, events = history
    checkpoint = make_checkpoint(replay(card, events[:3], config, UTC), events[2], 3)

    assert is_checkpoint_stale(checkpoint, events[-1].reviewed_at)
    assert not is_checkpoint_stale(checkpoint, events[2].reviewed_at)
    assert not is_checkpoint_stale(checkpoint, None)


def test_verify_detects_tampered_card(history, config):
    card, events = history

    assert verify_card(card, events, config, UTC).matches

    tampered = replace(card, interval=card.interval + 5)
    result = verify_card(tampered, events, config, UTC)
    assert not result.matches
    assert result.computed.interval == card.interval


def test_replay_uses_study_timezone_for_days(make_card, config, now):
    # 22:30 UTC is already the next day at UTC+5
    plus_five = timezone(timedelta(hours=5))
    at = now.replace(hour=22, minute=30)
    event = ReviewEvent(id="e1", card_id="c1", rating=Rating.EASY, reviewed_at=at)

    in_utc = replay(make_card(), [event], config, UTC)
    shifted = replay(make_card(), [event], config, plus_five)

    assert shifted.next_review_at == in_utc.next_review_at + timedelta(days=1)
