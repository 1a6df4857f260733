"""
JSON-safe encoding of domain rows.

Shared by the SQLite mirror, the HTTP gateway and the reference server so a
card survives any round trip unchanged. Instants are written as UTC ISO-8601
strings with microseconds; calendar days as ISO dates.
"""

from datetime import date, datetime, timezone
from typing import Any

from memora.domain.models import (
    Card,
    CardQueue,
    CardType,
    Deck,
    DeckConfig,
    Note,
    QueueCounts,
    Rating,
    ReviewEvent,
)


def format_instant(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        raise ValueError(f"refusing to store naive datetime {value!r}")
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_instant(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_day(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_day(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


# ---------- Decks / notes ----------


def deck_to_dict(deck: Deck) -> dict[str, Any]:
    return {
        "id": deck.id,
        "name": deck.name,
        "config": deck.config.model_dump(mode="json"),
        "updated_at": format_instant(deck.updated_at),
    }


def deck_from_dict(data: dict[str, Any]) -> Deck:
    return Deck(
        id=data["id"],
        name=data.get("name", ""),
        config=DeckConfig.parse(data.get("config") or {}),
        updated_at=parse_instant(data.get("updated_at")),
    )


def note_to_dict(note: Note) -> dict[str, Any]:
    return {
        "id": note.id,
        "deck_id": note.deck_id,
        "fields": dict(note.fields),
        "updated_at": format_instant(note.updated_at),
    }


def note_from_dict(data: dict[str, Any]) -> Note:
    return Note(
        id=data["id"],
        deck_id=data["deck_id"],
        fields=dict(data.get("fields") or {}),
        updated_at=parse_instant(data.get("updated_at")),
    )


# ---------- Cards ----------


def card_to_dict(card: Card) -> dict[str, Any]:
    return {
        "id": card.id,
        "note_id": card.note_id,
        "deck_id": card.deck_id,
        "card_type": card.card_type.value,
        "queue": int(card.queue),
        "ease_factor": card.ease_factor,
        "interval": card.interval,
        "repetitions": card.repetitions,
        "stability": card.stability,
        "difficulty": card.difficulty,
        "lapses": card.lapses,
        "learning_step": card.learning_step,
        "due_timestamp": format_instant(card.due_timestamp),
        "next_review_at": format_day(card.next_review_at),
        "last_reviewed_at": format_instant(card.last_reviewed_at),
        "created_at": format_instant(card.created_at),
        "updated_at": format_instant(card.updated_at),
    }


def card_from_dict(data: dict[str, Any]) -> Card:
    return Card(
        id=data["id"],
        note_id=data["note_id"],
        deck_id=data["deck_id"],
        card_type=CardType(data.get("card_type", CardType.RECOGNITION.value)),
        queue=CardQueue(int(data.get("queue", 0))),
        ease_factor=float(data.get("ease_factor", 2.5)),
        interval=int(data.get("interval", 0)),
        repetitions=int(data.get("repetitions", 0)),
        stability=data.get("stability"),
        difficulty=data.get("difficulty"),
        lapses=int(data.get("lapses", 0)),
        learning_step=int(data.get("learning_step", 0)),
        due_timestamp=parse_instant(data.get("due_timestamp")),
        next_review_at=parse_day(data.get("next_review_at")),
        last_reviewed_at=parse_instant(data.get("last_reviewed_at")),
        created_at=parse_instant(data.get("created_at")),
        updated_at=parse_instant(data.get("updated_at")),
    )


# ---------- Events / counts ----------


def event_to_dict(event: ReviewEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "card_id": event.card_id,
        "rating": int(event.rating),
        "reviewed_at": format_instant(event.reviewed_at),
        "session_id": event.session_id,
        "time_spent_ms": event.time_spent_ms,
        "user_answer": event.user_answer,
        "recording_ref": event.recording_ref,
    }


def event_from_dict(data: dict[str, Any]) -> ReviewEvent:
    return ReviewEvent(
        id=data["id"],
        card_id=data["card_id"],
        rating=Rating.parse(data["rating"]),
        reviewed_at=parse_instant(data["reviewed_at"]),
        session_id=data.get("session_id"),
        time_spent_ms=data.get("time_spent_ms"),
        user_answer=data.get("user_answer"),
        recording_ref=data.get("recording_ref"),
    )


def counts_to_dict(counts: QueueCounts) -> dict[str, int]:
    return {"new": counts.new, "learning": counts.learning, "review": counts.review}


def counts_from_dict(data: dict[str, Any] | None) -> QueueCounts:
    data = data or {}
    return QueueCounts(
        new=int(data.get("new", 0)),
        learning=int(data.get("learning", 0)),
        review=int(data.get("review", 0)),
    )
