"""
Sync reconciler between the local mirror and the authoritative server.

Review events are the source of truth and card rows are a derived cache, so
reconciling is mostly: push our events in the order they were recorded, pull
everyone else's, and replay the cards they touched. Each event moves through
synced -> locally_modified -> pushing -> synced | push_failed.

Network failures never propagate into study. They are logged, left pending,
and reported in the SyncReport.
"""

import asyncio
import contextlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo

from memora.application.rebuild import adopt_as_checkpoint, rebuild_card, replace_deck
from memora.domain.constants import (
    BACKOFF_BASE,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RESYNC_ATTEMPTS,
    DEFAULT_SYNC_INTERVAL,
    PUSH_BATCH_SIZE,
    SYNCED_EVENT_RETENTION_DAYS,
)
from memora.domain.errors import (
    CardNotFoundError,
    DeckNotFoundError,
    MirrorCorruptError,
    PermissionDeniedError,
    RequestRejectedError,
    ServerUnavailableError,
)
from memora.domain.interfaces import ChangeSet, ServerGateway
from memora.domain.models import Card, ReviewEvent, SyncState
from memora.infrastructure.mirror.store import LocalMirrorStore
from memora.infrastructure.wire import format_instant, parse_instant

logger = logging.getLogger(__name__)

PULL_CURSOR = "pull_cursor"
EVENT_CURSOR = "event_cursor"
LAST_FULL_SYNC = "last_full_sync"


@dataclass
class SyncReport:
    pushed: int = 0
    push_failed: int = 0
    decks: int = 0
    notes: int = 0
    cards: int = 0
    deleted: int = 0
    skipped_pending: int = 0
    events: int = 0
    rebuilt: int = 0
    mismatched: list[str] = field(default_factory=list)
    resynced: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncReconciler:
    """
    Keeps a LocalMirrorStore in step with a ServerGateway.

    Args:
        store: The local mirror.
        gateway: Port to the authoritative server.
        tz: Study timezone, used when replaying cards.
        max_resync_attempts: Full resyncs to try before declaring the mirror corrupt.
        push_batch_size: Events pushed per sync at most.
    """

    def __init__(
        self,
        store: LocalMirrorStore,
        gateway: ServerGateway,
        tz: tzinfo,
        *,
        max_resync_attempts: int = DEFAULT_MAX_RESYNC_ATTEMPTS,
        push_batch_size: int = PUSH_BATCH_SIZE,
        sync_interval: float = DEFAULT_SYNC_INTERVAL,
        max_backoff: float = DEFAULT_MAX_BACKOFF,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.tz = tz
        self.max_resync_attempts = max_resync_attempts
        self.push_batch_size = push_batch_size
        self.sync_interval = sync_interval
        self.max_backoff = max_backoff
        self._clock = clock or _utc_now
        self._lock = asyncio.Lock()

    # --- push ---

    async def push(self, report: SyncReport | None = None) -> SyncReport:
        """
        Submit pending events in recorded order.

        Stops at the first event the server cannot be reached for; later
        events stay pending so they are never submitted ahead of it.
        """
        report = report or SyncReport()
        for event in self.store.pending_events(limit=self.push_batch_size):
            self.store.mark_pushing([event.id])
            try:
                result = await self.gateway.submit_review(event)
            except ServerUnavailableError as e:
                self.store.mark_push_failed(event.id, str(e))
                report.push_failed += 1
                report.errors.append(f"push {event.id}: {e}")
                logger.warning(f"Push stopped at event {event.id}: {e}")
                break
            except (
                CardNotFoundError,
                DeckNotFoundError,
                PermissionDeniedError,
                RequestRejectedError,
            ) as e:
                self.store.mark_push_failed(event.id, str(e))
                report.push_failed += 1
                report.errors.append(f"push {event.id}: {e}")
                logger.error(f"Server rejected event {event.id}: {e}")
                continue

            self.store.mark_synced([event.id])
            report.pushed += 1
            self._adopt_server_card(event, result.card_state, report)

        if report.pushed:
            logger.info(f"Pushed {report.pushed} review events")
        return report

    def _adopt_server_card(self, event: ReviewEvent, server_card: Card, report: SyncReport) -> None:
        local = self.store.get_card(event.card_id)
        if local is None or local.scheduling_state() == server_card.scheduling_state():
            return
        # The server saw events from another device; the pull will bring them.
        if self.store.upsert_card_unless_pending(server_card):
            report.mismatched.append(event.card_id)
            logger.info(f"Card {event.card_id} differs from server state, adopted server copy")

    # --- pull ---

    async def pull(self, report: SyncReport | None = None) -> SyncReport:
        """Fetch rows and events changed since the stored cursors and replay touched cards."""
        report = report or SyncReport()
        since = parse_instant(self.store.get_meta(PULL_CURSOR))
        changes = await self.gateway.fetch_changes(since)
        self._apply_changes(changes, report)
        self.store.set_meta(PULL_CURSOR, format_instant(changes.server_time))

        event_since = parse_instant(self.store.get_meta(EVENT_CURSOR))
        page = await self.gateway.fetch_events(event_since)
        known = [e for e in page.events if self.store.get_card(e.card_id) is not None]
        inserted = self.store.insert_events(known, SyncState.SYNCED)
        report.events += len(inserted)
        self._rebuild({e.card_id for e in inserted}, report)
        self.store.set_meta(EVENT_CURSOR, format_instant(page.server_time))

        logger.info(
            f"Pulled {report.decks} decks, {report.notes} notes, {report.cards} cards, "
            f"{report.events} events ({report.deleted} deletions)"
        )
        return report

    def _apply_changes(self, changes: ChangeSet, report: SyncReport) -> None:
        for deck_id in changes.deleted.decks:
            self.store.delete_deck(deck_id)
        for note_id in changes.deleted.notes:
            self.store.delete_note(note_id)
        for card_id in changes.deleted.cards:
            self.store.delete_card(card_id)
        report.deleted += (
            len(changes.deleted.decks) + len(changes.deleted.notes) + len(changes.deleted.cards)
        )

        for deck in changes.decks:
            replace_deck(self.store, deck, self.tz)
        for note in changes.notes:
            self.store.upsert_note(note)
        report.decks += len(changes.decks)
        report.notes += len(changes.notes)

        for card in changes.cards:
            if self.store.upsert_card_unless_pending(card):
                report.cards += 1
            else:
                report.skipped_pending += 1

    def _rebuild(self, card_ids: set[str], report: SyncReport) -> None:
        for card_id in sorted(card_ids):
            rebuild_card(self.store, card_id, self.tz)
            report.rebuilt += 1

    # --- orchestration ---

    async def sync(self) -> SyncReport:
        """
        Push then pull. Never raises for network problems.

        A mirror that fails its integrity check is rebuilt with full_resync()
        first, which can raise MirrorCorruptError. If the server is out of
        reach the mirror is left as it is until the next attempt.
        """
        async with self._lock:
            report = SyncReport()
            problems = self.store.check_integrity()
            if problems:
                logger.warning(f"Mirror integrity check failed ({len(problems)} problems)")
                for problem in problems[:10]:
                    logger.debug(f"  {problem}")
                try:
                    return await self._full_resync()
                except ServerUnavailableError as e:
                    report.errors.append(f"resync: {e}")
                    logger.warning(f"Resync postponed, server unavailable: {e}")
                    return report

            try:
                await self.push(report)
                await self.pull(report)
            except ServerUnavailableError as e:
                report.errors.append(str(e))
                logger.warning(f"Sync incomplete, server unavailable: {e}")

            if report.ok:
                cutoff = self._clock() - timedelta(days=SYNCED_EVENT_RETENTION_DAYS)
                self.store.cleanup_synced_events(cutoff)
            return report

    async def full_resync(self) -> SyncReport:
        """Discard the local cache and re-pull everything, keeping unpushed events."""
        async with self._lock:
            return await self._full_resync()

    async def _full_resync(self) -> SyncReport:
        problems: list[str] = []
        for attempt in range(1, self.max_resync_attempts + 1):
            report = SyncReport(resynced=True)
            retained = self._retained_events()

            # Fetch before clearing so an offline resync destroys nothing.
            snapshot = await self.gateway.fetch_snapshot()
            page = await self.gateway.fetch_events(None)

            self.store.clear()
            self._apply_changes(snapshot, report)
            server_events = self.store.insert_events(page.events, SyncState.SYNCED)
            # Server rows are authoritative for the history the server holds.
            stale = {
                card_id
                for card_id in {e.card_id for e in server_events}
                if not adopt_as_checkpoint(self.store, card_id)
            }
            local = [e for e in retained if self.store.get_card(e.card_id) is not None]
            if len(local) < len(retained):
                logger.warning(f"Dropped {len(retained) - len(local)} pending events for deleted cards")
            restored = self.store.insert_events(local, SyncState.LOCALLY_MODIFIED)
            report.events = len(server_events)

            self._rebuild(stale | {e.card_id for e in restored}, report)
            self.store.set_meta(PULL_CURSOR, format_instant(snapshot.server_time))
            self.store.set_meta(EVENT_CURSOR, format_instant(page.server_time))
            self.store.set_meta(LAST_FULL_SYNC, format_instant(self._clock()))

            problems = self.store.check_integrity()
            if not problems:
                logger.info(
                    f"Full resync complete: {report.cards} cards, {report.events} events, "
                    f"{len(restored)} pending events kept"
                )
                return report
            logger.warning(f"Resync attempt {attempt} left {len(problems)} problems")

        raise MirrorCorruptError(
            f"Mirror still inconsistent after {self.max_resync_attempts} resyncs: {problems[:5]}"
        )

    def _retained_events(self) -> list[ReviewEvent]:
        try:
            return self.store.pending_events()
        except sqlite3.DatabaseError as e:
            logger.error(f"Could not read pending events from damaged mirror: {e}", exc_info=True)
            return []

    async def run_forever(self, stop: asyncio.Event) -> None:
        """
        Sync every `sync_interval` seconds until `stop` is set.

        Failed syncs back off exponentially (base * 2^failures, capped at
        `max_backoff`).
        """
        failures = 0
        while not stop.is_set():
            report = await self.sync()
            if report.ok:
                failures = 0
                delay = self.sync_interval
            else:
                failures += 1
                delay = min(self.max_backoff, BACKOFF_BASE * 2**failures)
                logger.info(f"Retrying sync in {delay:.0f}s")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=delay)
