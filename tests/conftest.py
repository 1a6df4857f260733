from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from memora.domain.models import Card, CardQueue, Deck, DeckConfig, Note
from memora.infrastructure.mirror.store import LocalMirrorStore

UTC = timezone.utc
NOW = datetime(2024, 6, 10, 9, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = NOW):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return DeckConfig()


@pytest.fixture
def make_card():
    """Factory for cards in deck d1; keyword arguments override any field."""

    def _make(**overrides) -> Card:
        base = Card(
            id="c1",
            note_id="n1",
            deck_id="d1",
            created_at=NOW - timedelta(days=1),
            updated_at=NOW - timedelta(days=1),
        )
        return replace(base, **overrides)

    return _make


@pytest.fixture
def review_card(make_card):
    def _make(interval: int = 10, ease: float = 2.5, **overrides) -> Card:
        fields = {
            "queue": CardQueue.REVIEW,
            "interval": interval,
            "ease_factor": ease,
            "repetitions": 3,
            "next_review_at": NOW.date(),
            "last_reviewed_at": NOW - timedelta(days=interval),
        }
        return make_card(**{**fields, **overrides})

    return _make


@pytest.fixture
def store():
    s = LocalMirrorStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def seed_deck():
    """Write a deck with one note per card id into a store."""

    def _seed(
        target: LocalMirrorStore,
        deck_id: str = "d1",
        card_ids: tuple[str, ...] = ("c1",),
        **config_overrides,
    ) -> list[Card]:
        target.upsert_deck(Deck(id=deck_id, name=f"Deck {deck_id}", config=DeckConfig.parse(**config_overrides)))
        cards = []
        for i, card_id in enumerate(card_ids):
            note_id = f"n-{card_id}"
            target.upsert_note(Note(id=note_id, deck_id=deck_id, fields={"word": card_id}))
            card = Card(
                id=card_id,
                note_id=note_id,
                deck_id=deck_id,
                created_at=NOW - timedelta(days=1, minutes=-i),
                updated_at=NOW - timedelta(days=1),
            )
            target.upsert_card(card)
            cards.append(card)
        return cards

    return _seed


@pytest.fixture
def mock_home(tmp_path, monkeypatch):
    """Point HOME at an empty temp dir so no real config file is read."""
    home = tmp_path / "home"
    home.mkdir()

    # Isolate config files and data from the real home directory
    monkeypatch.setenv("HOME", str(home))
    for var in (
        "MEMORA_TIMEZONE",
        "MEMORA_DATA_DIR",
        "MEMORA_MIRROR_PATH",
        "MEMORA_SERVER_URL",
        "MEMORA_VERBOSE",
    ):
        monkeypatch.delenv(var, raising=False)
    return home
