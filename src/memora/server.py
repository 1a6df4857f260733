import logging
import time
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone, tzinfo
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from memora.application.id_service import generate_event_id
from memora.application.rebuild import rebuild_card, replace_deck
from memora.application.study_service import StudyService
from memora.consts import VERSION
from memora.domain.errors import (
    CardNotFoundError,
    DeckNotFoundError,
    InvalidConfigurationError,
    MemoraError,
)
from memora.domain.models import (
    Card,
    CardQueue,
    Deck,
    DeckConfig,
    Note,
    Rating,
    ReviewEvent,
    SyncState,
    note_card_types,
)
from memora.infrastructure.mirror.store import LocalMirrorStore
from memora.infrastructure.wire import (
    card_to_dict,
    counts_to_dict,
    deck_to_dict,
    event_to_dict,
    format_day,
    format_instant,
    note_to_dict,
    parse_instant,
)

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("memora.server")


class ServerState:
    """
    Storage and clock behind the reference server.

    The store is opened lazily from AppConfig unless one is injected.
    """

    def __init__(
        self,
        store: LocalMirrorStore | None = None,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self._tz = tz
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _load(self) -> None:
        from memora.application.config import resolve_config

        config = resolve_config()
        if self._tz is None:
            self._tz = config.tz
        if self._store is None:
            self._store = LocalMirrorStore(config.server_db)
            logger.info(f"Server store opened at {config.server_db}")

    @property
    def store(self) -> LocalMirrorStore:
        if self._store is None:
            self._load()
        return self._store

    @property
    def tz(self) -> tzinfo:
        if self._tz is None:
            self._load()
        return self._tz

    def now(self) -> datetime:
        return self.clock().astimezone(self.tz)


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


class ReviewSubmission(BaseModel):
    card_id: str
    rating: int = Field(ge=1, le=4)
    id: str | None = None
    reviewed_at: str | None = None
    session_id: str | None = None
    time_spent_ms: int | None = Field(default=None, ge=0)
    user_answer: str | None = None
    recording_ref: str | None = None


class DeckPayload(BaseModel):
    name: str
    config: dict[str, Any] = Field(default_factory=dict)


class NotePayload(BaseModel):
    deck_id: str
    fields: dict[str, Any] = Field(default_factory=dict)


def _not_found(e: MemoraError) -> HTTPException:
    kind = "deck_not_found" if isinstance(e, DeckNotFoundError) else "card_not_found"
    return HTTPException(status_code=404, detail={"error": kind, "message": str(e)})


def _parse_instant_param(value: str | None, name: str = "since") -> datetime | None:
    if value is None:
        return None
    try:
        return parse_instant(value)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=f"Invalid '{name}' timestamp: {value}") from e


def create_app(state: ServerState | None = None) -> FastAPI:
    """Build the server. Tests inject a ServerState with an in-memory store."""
    state = state or ServerState()
    start_time = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info(f"Memora Server v{VERSION} starting up...")
        yield
        # Shutdown
        logger.info("Memora Server shutting down...")

    app = FastAPI(
        title="Memora Server",
        description="Authoritative scheduling server for memora clients.",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.memora = state

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """
        Liveness check; clients call it before deciding to sync.
        """
        return HealthResponse(status="ok", version=VERSION, uptime_seconds=time.time() - start_time)

    @app.get("/version")
    async def get_version():
        return {"version": VERSION}

    @app.post("/study/review")
    async def submit_review(req: ReviewSubmission):
        """
        Accept one rating, replay the card's full history and return the result.

        Submissions are idempotent on the event id, so a client retrying after
        a lost response does not double-count.
        """
        store = state.store
        card = store.get_card(req.card_id)
        if card is None:
            raise _not_found(CardNotFoundError(f"Card {req.card_id} not found"))

        reviewed_at = _parse_instant_param(req.reviewed_at, "reviewed_at") or state.now()
        event = ReviewEvent(
            id=req.id or generate_event_id(),
            card_id=req.card_id,
            rating=Rating(req.rating),
            reviewed_at=reviewed_at,
            session_id=req.session_id,
            time_spent_ms=req.time_spent_ms,
            user_answer=req.user_answer,
            recording_ref=req.recording_ref,
        )
        try:
            store.insert_events([event], SyncState.SYNCED)
            updated = rebuild_card(store, req.card_id, state.tz)
            counts = StudyService(store, state.tz, clock=state.clock).get_queue_counts(card.deck_id)
        except (CardNotFoundError, DeckNotFoundError) as e:
            raise _not_found(e) from e
        except MemoraError as e:
            logger.error(f"Review of {req.card_id} failed: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=str(e)) from e

        if updated.queue == CardQueue.REVIEW:
            next_due = format_day(updated.next_review_at)
        else:
            next_due = format_instant(updated.due_timestamp)
        logger.info(f"Accepted review {event.id} for {req.card_id} ({event.rating.name})")
        return {
            "event_id": event.id,
            "card_state": card_to_dict(updated),
            "queue_counts": counts_to_dict(counts),
            "next_due": next_due,
        }

    def _changes(since: datetime | None) -> dict[str, Any]:
        store = state.store
        server_time = state.clock()
        deleted = store.tombstones_since(since)
        return {
            "server_time": format_instant(server_time),
            "decks": [deck_to_dict(d) for d in store.decks_changed_since(since)],
            "notes": [note_to_dict(n) for n in store.notes_changed_since(since)],
            "cards": [card_to_dict(c) for c in store.cards_changed_since(since)],
            "deleted": {"decks": deleted.decks, "notes": deleted.notes, "cards": deleted.cards},
        }

    @app.get("/sync/changes")
    async def sync_changes(since: str | None = None):
        return _changes(_parse_instant_param(since))

    @app.get("/sync/snapshot")
    async def sync_snapshot():
        return _changes(None)

    @app.get("/reviews")
    async def list_reviews(since: str | None = None):
        parsed = _parse_instant_param(since)
        server_time = state.clock()
        events = state.store.events_since(parsed)
        return {
            "server_time": format_instant(server_time),
            "events": [event_to_dict(e) for e in events],
        }

    @app.put("/decks/{deck_id}")
    async def put_deck(deck_id: str, req: DeckPayload):
        """Create or replace a deck. A new config only affects reviews made after it."""
        try:
            config = DeckConfig.parse(req.config)
        except InvalidConfigurationError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        deck = Deck(id=deck_id, name=req.name, config=config, updated_at=state.clock())
        replace_deck(state.store, deck, state.tz)
        return deck_to_dict(deck)

    @app.delete("/decks/{deck_id}")
    async def delete_deck(deck_id: str):
        if state.store.get_deck(deck_id) is None:
            raise _not_found(DeckNotFoundError(f"Deck {deck_id} not found"))
        state.store.delete_deck(deck_id)
        return {"deleted": deck_id}

    @app.put("/notes/{note_id}")
    async def put_note(note_id: str, req: NotePayload):
        """Create or replace a note and make sure each of its card types exists."""
        store = state.store
        if store.get_deck(req.deck_id) is None:
            raise _not_found(DeckNotFoundError(f"Deck {req.deck_id} not found"))
        now = state.clock()
        note = Note(id=note_id, deck_id=req.deck_id, fields=req.fields, updated_at=now)
        store.upsert_note(note)

        card_ids = []
        for card_type in note_card_types():
            card_id = f"{note_id}:{card_type.value}"
            existing = store.get_card(card_id)
            if existing is None:
                store.upsert_card(
                    Card(
                        id=card_id,
                        note_id=note_id,
                        deck_id=req.deck_id,
                        card_type=card_type,
                        created_at=now,
                        updated_at=now,
                    )
                )
            elif existing.deck_id != req.deck_id:
                store.upsert_card(replace(existing, deck_id=req.deck_id))
            card_ids.append(card_id)
        return {"note": note_to_dict(note), "card_ids": card_ids}

    @app.delete("/notes/{note_id}")
    async def delete_note(note_id: str):
        if state.store.get_note(note_id) is None:
            raise HTTPException(status_code=404, detail={"error": "note_not_found", "message": note_id})
        state.store.delete_note(note_id)
        return {"deleted": note_id}

    return app


app = create_app()
