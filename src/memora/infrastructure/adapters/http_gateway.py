import logging
from datetime import datetime
from typing import Any

import httpx

from memora.domain.constants import REQUEST_TIMEOUT
from memora.domain.errors import (
    CardNotFoundError,
    DeckNotFoundError,
    PermissionDeniedError,
    RequestRejectedError,
    ServerUnavailableError,
)
from memora.domain.interfaces import ChangeSet, Deletions, EventPage, ServerGateway, SubmitResult
from memora.domain.models import ReviewEvent
from memora.infrastructure.wire import (
    card_from_dict,
    counts_from_dict,
    deck_from_dict,
    event_from_dict,
    event_to_dict,
    format_instant,
    note_from_dict,
    parse_day,
    parse_instant,
)


class HttpServerGateway(ServerGateway):
    """
    Adapter for the authoritative server's JSON API.

    Args:
        base_url: Server root, e.g. "http://localhost:8777".
        timeout: Per-request timeout in seconds.
        client: Preconfigured client, e.g. one bound to an ASGI app in tests.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = REQUEST_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.logger = logging.getLogger(__name__)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            resp = await self._get_client().request(method, path, **kwargs)
        except httpx.HTTPError as e:
            self.logger.warning(f"{method} {path} failed: {e}")
            raise ServerUnavailableError(f"Cannot reach server at {self.base_url}: {e}") from e

        if resp.status_code >= 500:
            raise ServerUnavailableError(f"Server error {resp.status_code} on {method} {path}")
        if resp.status_code >= 400:
            self._raise_rejection(resp)
        return resp.json()

    def _raise_rejection(self, resp: httpx.Response) -> None:
        try:
            detail = resp.json().get("detail")
        except ValueError:
            detail = resp.text
        kind = detail.get("error") if isinstance(detail, dict) else None
        message = detail.get("message") if isinstance(detail, dict) else str(detail)

        if resp.status_code == 403:
            raise PermissionDeniedError(message)
        if resp.status_code == 404:
            if kind == "deck_not_found":
                raise DeckNotFoundError(message)
            raise CardNotFoundError(message)
        raise RequestRejectedError(f"{resp.status_code}: {message}")

    @staticmethod
    def _since_params(since: datetime | None) -> dict[str, str]:
        return {"since": format_instant(since)} if since is not None else {}

    async def submit_review(self, event: ReviewEvent) -> SubmitResult:
        data = await self._request("POST", "/study/review", json=event_to_dict(event))
        next_due = data.get("next_due")
        if next_due and "T" in next_due:
            parsed_due = parse_instant(next_due)
        else:
            parsed_due = parse_day(next_due)
        return SubmitResult(
            card_state=card_from_dict(data["card_state"]),
            queue_counts=counts_from_dict(data.get("queue_counts")),
            next_due=parsed_due,
        )

    async def fetch_changes(self, since: datetime | None) -> ChangeSet:
        data = await self._request("GET", "/sync/changes", params=self._since_params(since))
        return self._parse_changes(data)

    async def fetch_snapshot(self) -> ChangeSet:
        data = await self._request("GET", "/sync/snapshot")
        return self._parse_changes(data)

    async def fetch_events(self, since: datetime | None) -> EventPage:
        data = await self._request("GET", "/reviews", params=self._since_params(since))
        return EventPage(
            server_time=parse_instant(data["server_time"]),
            events=[event_from_dict(e) for e in data.get("events", [])],
        )

    @staticmethod
    def _parse_changes(data: dict[str, Any]) -> ChangeSet:
        deleted = data.get("deleted") or {}
        return ChangeSet(
            server_time=parse_instant(data["server_time"]),
            decks=[deck_from_dict(d) for d in data.get("decks", [])],
            notes=[note_from_dict(n) for n in data.get("notes", [])],
            cards=[card_from_dict(c) for c in data.get("cards", [])],
            deleted=Deletions(
                decks=list(deleted.get("decks", [])),
                notes=list(deleted.get("notes", [])),
                cards=list(deleted.get("cards", [])),
            ),
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
