from datetime import timezone

import pytest
from fastapi.testclient import TestClient

from memora.consts import VERSION
from memora.domain.models import CardQueue, SyncState
from memora.server import ServerState, app, create_app

UTC = timezone.utc

client = TestClient(app)


def test_health_check():
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["version"] == VERSION


def test_get_version():
    response = client.get("/version")
    assert response.status_code == 200
    assert response.json() == {"version": VERSION}


@pytest.fixture
def api(store, seed_deck):
    seed_deck(store, card_ids=("c1", "c2"))
    return TestClient(create_app(ServerState(store, tz=UTC)))


def _review(card_id="c1", rating=3, **extra):
    return {"card_id": card_id, "rating": rating, "reviewed_at": "2024-06-10T09:00:00+00:00", **extra}


def test_submit_review(api, store):
    response = api.post("/study/review", json=_review(id="e1", time_spent_ms=1500))

    assert response.status_code == 200
    data = response.json()
    assert data["event_id"] == "e1"
    assert data["card_state"]["queue"] == CardQueue.LEARNING
    assert data["next_due"] == "2024-06-10T09:10:00.000000+00:00"
    assert set(data["queue_counts"]) == {"new", "learning", "review"}
    assert store.event_status("e1").sync_state == SyncState.SYNCED
    assert store.get_card("c1").queue == CardQueue.LEARNING


def test_review_graduation_returns_day(api):
    api.post("/study/review", json=_review(id="e1"))
    response = api.post(
        "/study/review", json=_review(id="e2", reviewed_at="2024-06-10T09:10:00+00:00")
    )

    assert response.json()["next_due"] == "2024-06-11"


def test_resubmitting_an_event_is_idempotent(api, store):
    first = api.post("/study/review", json=_review(id="e1"))
    again = api.post("/study/review", json=_review(id="e1"))

    assert again.status_code == 200
    assert again.json()["card_state"] == first.json()["card_state"]
    assert len(store.events_for_card("c1")) == 1


def test_unknown_card_is_404(api):
    response = api.post("/study/review", json=_review(card_id="nope"))

    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "card_not_found"


@pytest.mark.parametrize("payload", [_review(rating=5), _review(reviewed_at="yesterday")])
def test_invalid_review_is_422(api, payload):
    assert api.post("/study/review", json=payload).status_code == 422


def test_changes_and_snapshot(api):
    snapshot = api.get("/sync/snapshot").json()
    assert [c["id"] for c in snapshot["cards"]] == ["c1", "c2"]
    assert snapshot["deleted"] == {"decks": [], "notes": [], "cards": []}

    cursor = snapshot["server_time"]
    api.post("/study/review", json=_review(id="e1"))
    changes = api.get("/sync/changes", params={"since": cursor}).json()

    assert [c["id"] for c in changes["cards"]] == ["c1"]
    assert changes["decks"] == []


def test_reviews_feed(api):
    cursor = api.get("/reviews").json()["server_time"]
    api.post("/study/review", json=_review(id="e1"))

    events = api.get("/reviews", params={"since": cursor}).json()["events"]

    assert [e["id"] for e in events] == ["e1"]


def test_bad_cursor_is_422(api):
    assert api.get("/sync/changes", params={"since": "last tuesday"}).status_code == 422


def test_put_deck_validates_config(api, store):
    ok = api.put("/decks/d2", json={"name": "Verbs", "config": {"learning_steps": "1 5"}})
    assert ok.status_code == 200
    assert store.get_deck_config("d2").learning_steps == (1.0, 5.0)

    bad = api.put("/decks/d3", json={"name": "Broken", "config": {"minimum_ease": 5}})
    assert bad.status_code == 422
    assert store.get_deck("d3") is None


def test_put_note_fans_out_cards(api, store):
    response = api.put("/notes/n1", json={"deck_id": "d1", "fields": {"word": "gato"}})

    assert response.status_code == 200
    card_ids = response.json()["card_ids"]
    assert card_ids == ["n1:recognition", "n1:production", "n1:listening"]
    assert all(store.get_card(c).queue == CardQueue.NEW for c in card_ids)

    # Re-putting keeps existing cards
    api.put("/notes/n1", json={"deck_id": "d1", "fields": {"word": "gato", "ipa": "ˈɡato"}})
    assert len([c for c in store.card_ids() if c.startswith("n1:")]) == 3


def test_put_note_unknown_deck(api):
    response = api.put("/notes/n1", json={"deck_id": "nope", "fields": {}})

    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "deck_not_found"


def test_delete_endpoints(api, store):
    assert api.delete("/notes/n-c1").status_code == 200
    assert store.get_card("c1") is None
    assert api.delete("/notes/n-c1").status_code == 404

    assert api.delete("/decks/d1").status_code == 200
    assert store.list_decks() == []
    assert api.delete("/decks/d1").status_code == 404


def test_deck_config_change_only_affects_later_reviews(api, store):
    api.post("/study/review", json=_review(id="e1"))
    api.post("/study/review", json=_review(id="e2", reviewed_at="2024-06-10T09:10:00+00:00"))
    assert store.get_card("c1").interval == 1

    changed = api.put("/decks/d1", json={"name": "Deck d1", "config": {"graduating_interval": 5}})
    assert changed.status_code == 200

    response = api.post(
        "/study/review", json=_review(id="e3", reviewed_at="2024-06-11T09:10:00+00:00")
    )
    # 1 day * 2.5 ease, not the new 5 day graduation replayed from scratch
    assert response.json()["card_state"]["interval"] == 3

    # Cards graduating after the change use the new setting
    api.post("/study/review", json=_review(card_id="c2", id="f1"))
    graduated = api.post(
        "/study/review",
        json=_review(card_id="c2", id="f2", reviewed_at="2024-06-10T09:10:00+00:00"),
    )
    assert graduated.json()["card_state"]["interval"] == 5
