"""
SQLite-backed local mirror of decks, notes, cards and review events.

Everything the study flow needs (classification, throttling, selection) is
answered from this store without touching the network. Reviews are written
through immediately and left pending until the sync reconciler pushes them.

Notes:
    - One connection, shared across threads, guarded by a re-entrant lock.
      Multi-statement writes run in a single BEGIN IMMEDIATE transaction, so a
      card row is always replaced whole and never interleaves with a sync.
    - Instants are stored as UTC ISO strings with microseconds so a card read
      back compares equal to the card that was written.
    - `modified_at` is the store's own write clock. The reference server uses
      it as the change cursor, independent of when a review happened.
"""

import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from memora.consts import MIRROR_SCHEMA_VERSION
from memora.domain.errors import CorruptStateError, DeckNotFoundError
from memora.domain.interfaces import Deletions
from memora.domain.models import (
    Card,
    CardCheckpoint,
    CardQueue,
    Deck,
    DeckConfig,
    Note,
    Rating,
    ReviewEvent,
    SyncState,
)
from memora.infrastructure.wire import (
    card_from_dict,
    card_to_dict,
    format_instant,
    parse_instant,
)

logger = logging.getLogger(__name__)

CARD_COLUMNS = (
    "id",
    "note_id",
    "deck_id",
    "card_type",
    "queue",
    "ease_factor",
    "interval",
    "repetitions",
    "stability",
    "difficulty",
    "lapses",
    "learning_step",
    "due_timestamp",
    "next_review_at",
    "last_reviewed_at",
    "created_at",
    "updated_at",
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS decks (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    config TEXT NOT NULL,
    updated_at TEXT,
    modified_at TEXT NOT NULL,
    pending_sync INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    deck_id TEXT NOT NULL,
    fields TEXT NOT NULL,
    updated_at TEXT,
    modified_at TEXT NOT NULL,
    pending_sync INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS cards (
    id TEXT PRIMARY KEY,
    note_id TEXT NOT NULL,
    deck_id TEXT NOT NULL,
    card_type TEXT NOT NULL,
    queue INTEGER NOT NULL,
    ease_factor REAL NOT NULL,
    interval INTEGER NOT NULL,
    repetitions INTEGER NOT NULL,
    stability REAL,
    difficulty REAL,
    lapses INTEGER NOT NULL,
    learning_step INTEGER NOT NULL,
    due_timestamp TEXT,
    next_review_at TEXT,
    last_reviewed_at TEXT,
    created_at TEXT,
    updated_at TEXT,
    modified_at TEXT NOT NULL,
    pending_sync INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS review_events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    card_id TEXT NOT NULL,
    rating INTEGER NOT NULL,
    reviewed_at TEXT NOT NULL,
    session_id TEXT,
    time_spent_ms INTEGER,
    user_answer TEXT,
    recording_ref TEXT,
    sync_state TEXT NOT NULL,
    retries INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    received_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS card_checkpoints (
    card_id TEXT PRIMARY KEY,
    checkpoint_at TEXT NOT NULL,
    last_event_id TEXT NOT NULL,
    event_count INTEGER NOT NULL,
    state TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS trimmed_history (
    card_id TEXT PRIMARY KEY,
    first_reviewed_at TEXT NOT NULL,
    removed INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS tombstones (
    kind TEXT NOT NULL,
    row_id TEXT NOT NULL,
    deleted_at TEXT NOT NULL,
    PRIMARY KEY (kind, row_id)
);
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT
);
CREATE INDEX IF NOT EXISTS idx_notes_deck ON notes(deck_id);
CREATE INDEX IF NOT EXISTS idx_cards_deck_queue ON cards(deck_id, queue);
CREATE INDEX IF NOT EXISTS idx_cards_note ON cards(note_id);
CREATE INDEX IF NOT EXISTS idx_events_card ON review_events(card_id, reviewed_at);
CREATE INDEX IF NOT EXISTS idx_events_state ON review_events(sync_state);
CREATE INDEX IF NOT EXISTS idx_events_received ON review_events(received_at);
"""

TABLES = (
    "decks",
    "notes",
    "cards",
    "review_events",
    "card_checkpoints",
    "trimmed_history",
    "tombstones",
    "sync_meta",
)


@dataclass(frozen=True)
class EventStatus:
    event_id: str
    sync_state: SyncState
    retries: int
    last_error: str | None


@dataclass(frozen=True)
class MirrorStats:
    decks: int
    notes: int
    cards: int
    events: int
    pending_events: int
    failed_events: int
    cards_by_queue: dict[str, int] = field(default_factory=dict)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LocalMirrorStore:
    """
    Offline mirror of the server's study data.

    Args:
        path: Database file, or ":memory:".
        clock: Source of `modified_at` / `received_at` stamps.
    """

    def __init__(self, path: str | Path, clock: Callable[[], datetime] | None = None):
        self.path = str(path)
        self._clock = clock or _utc_now
        self._lock = threading.RLock()
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    # --- low-level helpers ---

    def _init_schema(self) -> None:
        with self._lock:
            version = self.schema_version()
            if version == 0:
                self._conn.executescript(SCHEMA_SQL)
                self._conn.execute(f"PRAGMA user_version = {MIRROR_SCHEMA_VERSION}")
                logger.debug(f"Initialised mirror schema v{MIRROR_SCHEMA_VERSION} at {self.path}")
            elif version != MIRROR_SCHEMA_VERSION:
                # Left for check_integrity() to report; full_resync() rebuilds it.
                logger.warning(
                    f"Mirror at {self.path} has schema v{version}, expected v{MIRROR_SCHEMA_VERSION}"
                )

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def _query(self, sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    def _now(self) -> str:
        return format_instant(self._clock())

    def schema_version(self) -> int:
        with self._lock:
            return self._conn.execute("PRAGMA user_version").fetchone()[0]

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "LocalMirrorStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # --- decks / notes ---

    def upsert_deck(self, deck: Deck, *, pending: bool = False) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO decks (id, name, config, updated_at, modified_at, pending_sync) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    deck.id,
                    deck.name,
                    deck.config.model_dump_json(),
                    format_instant(deck.updated_at),
                    self._now(),
                    int(pending),
                ),
            )
            conn.execute("DELETE FROM tombstones WHERE kind = 'deck' AND row_id = ?", (deck.id,))

    def get_deck(self, deck_id: str) -> Deck | None:
        rows = self._query("SELECT * FROM decks WHERE id = ?", (deck_id,))
        return self._row_to_deck(rows[0]) if rows else None

    def list_decks(self) -> list[Deck]:
        return [self._row_to_deck(r) for r in self._query("SELECT * FROM decks ORDER BY name, id")]

    def get_deck_config(self, deck_id: str) -> DeckConfig:
        deck = self.get_deck(deck_id)
        if deck is None:
            raise DeckNotFoundError(f"Deck {deck_id} not found")
        return deck.config

    def upsert_note(self, note: Note, *, pending: bool = False) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO notes (id, deck_id, fields, updated_at, modified_at, pending_sync) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    note.id,
                    note.deck_id,
                    json.dumps(note.fields, sort_keys=True),
                    format_instant(note.updated_at),
                    self._now(),
                    int(pending),
                ),
            )
            conn.execute("DELETE FROM tombstones WHERE kind = 'note' AND row_id = ?", (note.id,))

    def get_note(self, note_id: str) -> Note | None:
        rows = self._query("SELECT * FROM notes WHERE id = ?", (note_id,))
        return self._row_to_note(rows[0]) if rows else None

    # --- cards ---

    def upsert_card(self, card: Card, *, pending: bool = False) -> None:
        """Replace the whole card row."""
        with self._tx() as conn:
            self._write_card(conn, card, pending)
            conn.execute("DELETE FROM tombstones WHERE kind = 'card' AND row_id = ?", (card.id,))

    def upsert_card_unless_pending(self, card: Card) -> bool:
        """Replace the card row only if none of its events await a push. Atomic."""
        with self._tx() as conn:
            pending = conn.execute(
                "SELECT 1 FROM review_events WHERE card_id = ? AND sync_state != ? LIMIT 1",
                (card.id, SyncState.SYNCED.value),
            ).fetchone()
            if pending:
                return False
            self._write_card(conn, card, pending=False)
            conn.execute("DELETE FROM tombstones WHERE kind = 'card' AND row_id = ?", (card.id,))
            return True

    def _write_card(self, conn: sqlite3.Connection, card: Card, pending: bool) -> None:
        row = card_to_dict(card)
        columns = CARD_COLUMNS + ("modified_at", "pending_sync")
        values = [row[c] for c in CARD_COLUMNS] + [self._now(), int(pending)]
        placeholders = ", ".join("?" for _ in columns)
        conn.execute(
            f"INSERT OR REPLACE INTO cards ({', '.join(columns)}) VALUES ({placeholders})",
            values,
        )

    def get_card(self, card_id: str) -> Card | None:
        rows = self._query("SELECT * FROM cards WHERE id = ?", (card_id,))
        return self._row_to_card(rows[0]) if rows else None

    def cards_for_study(self, deck_id: str | None = None) -> list[Card]:
        """All cards of one deck, or of every deck. Never touches the network."""
        if deck_id is None:
            rows = self._query("SELECT * FROM cards ORDER BY deck_id, id")
        else:
            rows = self._query("SELECT * FROM cards WHERE deck_id = ? ORDER BY id", (deck_id,))
        return [self._row_to_card(r) for r in rows]

    def card_ids(self) -> list[str]:
        return [r["id"] for r in self._query("SELECT id FROM cards ORDER BY id")]

    def card_has_pending(self, card_id: str) -> bool:
        rows = self._query(
            "SELECT 1 FROM review_events WHERE card_id = ? AND sync_state != ? LIMIT 1",
            (card_id, SyncState.SYNCED.value),
        )
        return bool(rows)

    # --- deletion ---

    def delete_deck(self, deck_id: str) -> None:
        """Delete a deck and everything under it: notes, cards and their events."""
        with self._tx() as conn:
            card_ids = [
                r["id"] for r in conn.execute("SELECT id FROM cards WHERE deck_id = ?", (deck_id,))
            ]
            note_ids = [
                r["id"] for r in conn.execute("SELECT id FROM notes WHERE deck_id = ?", (deck_id,))
            ]
            self._delete_cards(conn, card_ids)
            conn.execute("DELETE FROM notes WHERE deck_id = ?", (deck_id,))
            conn.execute("DELETE FROM decks WHERE id = ?", (deck_id,))
            self._tombstone(conn, "note", note_ids)
            self._tombstone(conn, "deck", [deck_id])
        logger.info(f"Deleted deck {deck_id} ({len(note_ids)} notes, {len(card_ids)} cards)")

    def delete_note(self, note_id: str) -> None:
        with self._tx() as conn:
            card_ids = [
                r["id"] for r in conn.execute("SELECT id FROM cards WHERE note_id = ?", (note_id,))
            ]
            self._delete_cards(conn, card_ids)
            conn.execute("DELETE FROM notes WHERE id = ?", (note_id,))
            self._tombstone(conn, "note", [note_id])

    def delete_card(self, card_id: str) -> None:
        with self._tx() as conn:
            self._delete_cards(conn, [card_id])

    def _delete_cards(self, conn: sqlite3.Connection, card_ids: list[str]) -> None:
        for card_id in card_ids:
            conn.execute("DELETE FROM review_events WHERE card_id = ?", (card_id,))
            conn.execute("DELETE FROM card_checkpoints WHERE card_id = ?", (card_id,))
            conn.execute("DELETE FROM trimmed_history WHERE card_id = ?", (card_id,))
            conn.execute("DELETE FROM cards WHERE id = ?", (card_id,))
        self._tombstone(conn, "card", card_ids)

    def _tombstone(self, conn: sqlite3.Connection, kind: str, ids: list[str]) -> None:
        now = self._now()
        conn.executemany(
            "INSERT OR REPLACE INTO tombstones (kind, row_id, deleted_at) VALUES (?, ?, ?)",
            [(kind, row_id, now) for row_id in ids],
        )

    def tombstones_since(self, since: datetime | None) -> Deletions:
        if since is None:
            return Deletions()
        rows = self._query(
            "SELECT kind, row_id FROM tombstones WHERE deleted_at >= ? ORDER BY deleted_at",
            (format_instant(since),),
        )
        grouped: dict[str, list[str]] = {"deck": [], "note": [], "card": []}
        for r in rows:
            grouped.setdefault(r["kind"], []).append(r["row_id"])
        return Deletions(decks=grouped["deck"], notes=grouped["note"], cards=grouped["card"])

    # --- review events ---

    def record_review(self, card: Card, event: ReviewEvent) -> None:
        """Atomically replace the card row and append its review event, both pending."""
        if event.card_id != card.id:
            raise ValueError(f"event {event.id} belongs to card {event.card_id}, not {card.id}")
        with self._tx() as conn:
            self._write_card(conn, card, pending=True)
            self._insert_event(conn, event, SyncState.LOCALLY_MODIFIED)

    def insert_events(
        self, events: Iterable[ReviewEvent], state: SyncState = SyncState.SYNCED
    ) -> list[ReviewEvent]:
        """Insert events not already present. Returns the ones that were new."""
        inserted = []
        with self._tx() as conn:
            for event in events:
                if self._insert_event(conn, event, state):
                    inserted.append(event)
        return inserted

    def _insert_event(self, conn: sqlite3.Connection, event: ReviewEvent, state: SyncState) -> bool:
        cursor = conn.execute(
            "INSERT OR IGNORE INTO review_events (id, card_id, rating, reviewed_at, session_id, "
            "time_spent_ms, user_answer, recording_ref, sync_state, received_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                event.id,
                event.card_id,
                int(event.rating),
                format_instant(event.reviewed_at),
                event.session_id,
                event.time_spent_ms,
                event.user_answer,
                event.recording_ref,
                state.value,
                self._now(),
            ),
        )
        if cursor.rowcount == 0:
            return False
        # An event landing before the checkpoint makes the snapshot wrong.
        conn.execute(
            "DELETE FROM card_checkpoints WHERE card_id = ? "
            "AND (checkpoint_at > ? OR (checkpoint_at = ? AND last_event_id > ?))",
            (event.card_id, format_instant(event.reviewed_at), format_instant(event.reviewed_at), event.id),
        )
        return True

    def get_event(self, event_id: str) -> ReviewEvent | None:
        rows = self._query("SELECT * FROM review_events WHERE id = ?", (event_id,))
        return self._row_to_event(rows[0]) if rows else None

    def pending_events(self, limit: int | None = None) -> list[ReviewEvent]:
        """Events not yet acknowledged by the server, in the order they were recorded."""
        sql = "SELECT * FROM review_events WHERE sync_state != ? ORDER BY seq"
        params: list = [SyncState.SYNCED.value]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_event(r) for r in self._query(sql, params)]

    def event_status(self, event_id: str) -> EventStatus | None:
        rows = self._query(
            "SELECT id, sync_state, retries, last_error FROM review_events WHERE id = ?", (event_id,)
        )
        if not rows:
            return None
        r = rows[0]
        return EventStatus(r["id"], SyncState(r["sync_state"]), r["retries"], r["last_error"])

    def mark_pushing(self, event_ids: list[str]) -> None:
        self._set_state(event_ids, SyncState.PUSHING)

    def mark_synced(self, event_ids: list[str]) -> None:
        with self._tx() as conn:
            for event_id in event_ids:
                conn.execute(
                    "UPDATE review_events SET sync_state = ?, last_error = NULL WHERE id = ?",
                    (SyncState.SYNCED.value, event_id),
                )
            # Card rows stop being pending once none of their events are.
            conn.execute(
                "UPDATE cards SET pending_sync = 0 WHERE pending_sync = 1 AND NOT EXISTS ("
                "SELECT 1 FROM review_events e WHERE e.card_id = cards.id AND e.sync_state != ?)",
                (SyncState.SYNCED.value,),
            )

    def mark_push_failed(self, event_id: str, error: str) -> None:
        with self._tx() as conn:
            conn.execute(
                "UPDATE review_events SET sync_state = ?, retries = retries + 1, last_error = ? "
                "WHERE id = ?",
                (SyncState.PUSH_FAILED.value, error, event_id),
            )

    def _set_state(self, event_ids: list[str], state: SyncState) -> None:
        with self._tx() as conn:
            conn.executemany(
                "UPDATE review_events SET sync_state = ? WHERE id = ?",
                [(state.value, event_id) for event_id in event_ids],
            )

    def events_for_card(self, card_id: str) -> list[ReviewEvent]:
        rows = self._query(
            "SELECT * FROM review_events WHERE card_id = ? ORDER BY reviewed_at, id", (card_id,)
        )
        return [self._row_to_event(r) for r in rows]

    def events_since(self, since: datetime | None) -> list[ReviewEvent]:
        """Events received at or after `since`, in arrival order."""
        if since is None:
            rows = self._query("SELECT * FROM review_events ORDER BY seq")
        else:
            rows = self._query(
                "SELECT * FROM review_events WHERE received_at >= ? ORDER BY seq",
                (format_instant(since),),
            )
        return [self._row_to_event(r) for r in rows]

    def first_review_times(self, deck_id: str, since: datetime | None = None) -> dict[str, datetime]:
        """
        When each card of a deck was first rated.

        Cleaned-up events still count, through the trimmed_history table.

        Args:
            deck_id: Deck to inspect.
            since: Only report cards whose first rating is at or after this instant.
        """
        sql = (
            "SELECT h.card_id AS card_id, MIN(h.at) AS first_at FROM ("
            "SELECT card_id, reviewed_at AS at FROM review_events "
            "UNION ALL SELECT card_id, first_reviewed_at AS at FROM trimmed_history"
            ") h JOIN cards c ON c.id = h.card_id "
            "WHERE c.deck_id = ? GROUP BY h.card_id"
        )
        params: list = [deck_id]
        if since is not None:
            sql += " HAVING MIN(h.at) >= ?"
            params.append(format_instant(since))
        return {r["card_id"]: parse_instant(r["first_at"]) for r in self._query(sql, params)}

    def cleanup_synced_events(self, older_than: datetime) -> int:
        """
        Delete synced events older than `older_than` that a checkpoint already covers.

        Events not folded into a checkpoint are kept, otherwise the card
        could no longer be rebuilt. The earliest removed instant per card is
        kept in trimmed_history so first_review_times() stays exact.
        """
        bound = format_instant(older_than)
        where = (
            "sync_state = ? AND reviewed_at < ? AND EXISTS ("
            "SELECT 1 FROM card_checkpoints cp WHERE cp.card_id = review_events.card_id "
            "AND (review_events.reviewed_at < cp.checkpoint_at OR "
            "(review_events.reviewed_at = cp.checkpoint_at AND review_events.id <= cp.last_event_id)))"
        )
        params = (SyncState.SYNCED.value, bound)
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO trimmed_history (card_id, first_reviewed_at, removed) "
                f"SELECT card_id, MIN(reviewed_at), COUNT(*) FROM review_events WHERE {where} "
                "GROUP BY card_id "
                "ON CONFLICT(card_id) DO UPDATE SET "
                "first_reviewed_at = MIN(first_reviewed_at, excluded.first_reviewed_at), "
                "removed = removed + excluded.removed",
                params,
            )
            cursor = conn.execute(f"DELETE FROM review_events WHERE {where}", params)
            removed = cursor.rowcount
        if removed:
            logger.info(f"Removed {removed} synced review events older than {bound}")
        return removed

    # --- checkpoints ---

    def save_checkpoint(self, checkpoint: CardCheckpoint) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO card_checkpoints "
                "(card_id, checkpoint_at, last_event_id, event_count, state) VALUES (?, ?, ?, ?, ?)",
                (
                    checkpoint.card_id,
                    format_instant(checkpoint.checkpoint_at),
                    checkpoint.last_event_id,
                    checkpoint.event_count,
                    json.dumps(card_to_dict(checkpoint.state)),
                ),
            )

    def get_checkpoint(self, card_id: str) -> CardCheckpoint | None:
        rows = self._query("SELECT * FROM card_checkpoints WHERE card_id = ?", (card_id,))
        if not rows:
            return None
        r = rows[0]
        return CardCheckpoint(
            card_id=r["card_id"],
            checkpoint_at=parse_instant(r["checkpoint_at"]),
            last_event_id=r["last_event_id"],
            event_count=r["event_count"],
            state=card_from_dict(json.loads(r["state"])),
        )

    def delete_checkpoint(self, card_id: str) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM card_checkpoints WHERE card_id = ?", (card_id,))

    # --- change feeds (used by the reference server) ---

    def decks_changed_since(self, since: datetime | None) -> list[Deck]:
        return [self._row_to_deck(r) for r in self._changed("decks", since)]

    def notes_changed_since(self, since: datetime | None) -> list[Note]:
        return [self._row_to_note(r) for r in self._changed("notes", since)]

    def cards_changed_since(self, since: datetime | None) -> list[Card]:
        return [self._row_to_card(r) for r in self._changed("cards", since)]

    def _changed(self, table: str, since: datetime | None) -> list[sqlite3.Row]:
        if since is None:
            return self._query(f"SELECT * FROM {table} ORDER BY modified_at, id")
        return self._query(
            f"SELECT * FROM {table} WHERE modified_at >= ? ORDER BY modified_at, id",
            (format_instant(since),),
        )

    # --- sync metadata ---

    def get_meta(self, key: str) -> str | None:
        rows = self._query("SELECT value FROM sync_meta WHERE key = ?", (key,))
        return rows[0]["value"] if rows else None

    def set_meta(self, key: str, value: str | None) -> None:
        with self._tx() as conn:
            conn.execute("INSERT OR REPLACE INTO sync_meta (key, value) VALUES (?, ?)", (key, value))

    # --- maintenance ---

    def check_integrity(self) -> list[str]:
        """
        Look for structural damage.

        Returns:
            Human readable problems; empty when the mirror is consistent.
        """
        version = self.schema_version()
        if version != MIRROR_SCHEMA_VERSION:
            return [f"schema version {version}, expected {MIRROR_SCHEMA_VERSION}"]

        problems = []
        try:
            status = self._query("PRAGMA integrity_check")[0][0]
        except sqlite3.DatabaseError as e:
            return [f"sqlite integrity check failed: {e}"]
        if status != "ok":
            problems.append(f"sqlite integrity check: {status}")

        orphan_checks = {
            "note without deck": "SELECT id FROM notes WHERE deck_id NOT IN (SELECT id FROM decks)",
            "card without note": "SELECT id FROM cards WHERE note_id NOT IN (SELECT id FROM notes)",
            "card without deck": "SELECT id FROM cards WHERE deck_id NOT IN (SELECT id FROM decks)",
            "event without card": "SELECT id FROM review_events WHERE card_id NOT IN (SELECT id FROM cards)",
        }
        for label, sql in orphan_checks.items():
            for r in self._query(sql):
                problems.append(f"{label}: {r[0]}")

        for r in self._query("SELECT * FROM cards"):
            try:
                self._row_to_card(r).check_invariants()
            except (CorruptStateError, ValueError) as e:
                problems.append(f"invalid card {r['id']}: {e}")
        return problems

    def clear(self) -> None:
        """Drop every table and recreate an empty schema."""
        with self._lock:
            for table in TABLES:
                self._conn.execute(f"DROP TABLE IF EXISTS {table}")
            self._conn.execute("PRAGMA user_version = 0")
            self._init_schema()
        logger.info(f"Cleared mirror at {self.path}")

    def stats(self) -> MirrorStats:
        def count(sql: str, params: Iterable = ()) -> int:
            return self._query(sql, params)[0][0]

        by_queue = {q.name.lower(): 0 for q in CardQueue}
        for r in self._query("SELECT queue, COUNT(*) FROM cards GROUP BY queue"):
            by_queue[CardQueue(r[0]).name.lower()] = r[1]
        return MirrorStats(
            decks=count("SELECT COUNT(*) FROM decks"),
            notes=count("SELECT COUNT(*) FROM notes"),
            cards=count("SELECT COUNT(*) FROM cards"),
            events=count("SELECT COUNT(*) FROM review_events"),
            pending_events=count(
                "SELECT COUNT(*) FROM review_events WHERE sync_state != ?", (SyncState.SYNCED.value,)
            ),
            failed_events=count(
                "SELECT COUNT(*) FROM review_events WHERE sync_state = ?",
                (SyncState.PUSH_FAILED.value,),
            ),
            cards_by_queue=by_queue,
        )

    # --- row mapping ---

    @staticmethod
    def _row_to_deck(r: sqlite3.Row) -> Deck:
        return Deck(
            id=r["id"],
            name=r["name"],
            config=DeckConfig.model_validate_json(r["config"]),
            updated_at=parse_instant(r["updated_at"]),
        )

    @staticmethod
    def _row_to_note(r: sqlite3.Row) -> Note:
        return Note(
            id=r["id"],
            deck_id=r["deck_id"],
            fields=json.loads(r["fields"]),
            updated_at=parse_instant(r["updated_at"]),
        )

    @staticmethod
    def _row_to_card(r: sqlite3.Row) -> Card:
        return card_from_dict({c: r[c] for c in CARD_COLUMNS})

    @staticmethod
    def _row_to_event(r: sqlite3.Row) -> ReviewEvent:
        return ReviewEvent(
            id=r["id"],
            card_id=r["card_id"],
            rating=Rating(r["rating"]),
            reviewed_at=parse_instant(r["reviewed_at"]),
            session_id=r["session_id"],
            time_spent_ms=r["time_spent_ms"],
            user_answer=r["user_answer"],
            recording_ref=r["recording_ref"],
        )
