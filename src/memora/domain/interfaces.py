"""
Ports (interfaces) for talking to the authoritative server.

The sync reconciler depends on this abstraction, never on a concrete HTTP
client, so it can be exercised against an in-process server in tests.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime

from memora.domain.models import Card, Deck, Note, QueueCounts, ReviewEvent


@dataclass(frozen=True)
class SubmitResult:
    """Server response to one review submission."""

    card_state: Card
    queue_counts: QueueCounts
    next_due: datetime | date | None = None


@dataclass(frozen=True)
class Deletions:
    decks: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    cards: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ChangeSet:
    """
    Rows the server changed since a cursor.

    Attributes:
        server_time: Cursor to send on the next pull.
    """

    server_time: datetime
    decks: list[Deck] = field(default_factory=list)
    notes: list[Note] = field(default_factory=list)
    cards: list[Card] = field(default_factory=list)
    deleted: Deletions = field(default_factory=Deletions)


@dataclass(frozen=True)
class EventPage:
    server_time: datetime
    events: list[ReviewEvent] = field(default_factory=list)


class ServerGateway(ABC):
    """
    Port for the authoritative scheduling server.

    Implementations:
        - HttpServerGateway: JSON over HTTP via httpx.

    Every method raises ServerUnavailableError when the server cannot be
    reached, and DeckNotFoundError / CardNotFoundError / PermissionDeniedError
    when the server rejects the request for that row.
    """

    @abstractmethod
    async def submit_review(self, event: ReviewEvent) -> SubmitResult:
        """
        Submit one review event. The server replays the card's history
        including this event and returns the recomputed card.
        """
        pass

    @abstractmethod
    async def fetch_changes(self, since: datetime | None) -> ChangeSet:
        """Fetch decks, notes, cards and deletions changed at or after `since`."""
        pass

    @abstractmethod
    async def fetch_events(self, since: datetime | None) -> EventPage:
        """Fetch review events the server received at or after `since`."""
        pass

    @abstractmethod
    async def fetch_snapshot(self) -> ChangeSet:
        """Fetch every row the caller may see, for a full resync."""
        pass

    async def close(self) -> None:
        """Release any held connections."""
        return None
