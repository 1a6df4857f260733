"""Identifiers for rows this device creates."""

from ulid import ULID


def generate_event_id() -> str:
    """
    New review event id.

    ULIDs sort by creation time, which makes them a stable tie-breaker when
    two events share a reviewed_at instant.
    """
    return str(ULID())
