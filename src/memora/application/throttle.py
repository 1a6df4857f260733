"""
Daily new-card throttle.

Nothing is stored: the count for a deck is derived from the review log as
the number of distinct cards whose first rating fell on today's local date.
Deriving it means a synced device and a freshly resynced mirror always agree.
"""

import logging
from collections.abc import Iterable
from datetime import datetime, time

from memora.domain.models import DeckConfig
from memora.infrastructure.mirror.store import LocalMirrorStore

logger = logging.getLogger(__name__)


def start_of_day(now: datetime) -> datetime:
    """Local midnight of `now`'s date, in `now`'s timezone."""
    return datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)


class DailyThrottle:
    def __init__(self, store: LocalMirrorStore):
        self.store = store

    def count_today(self, deck_id: str, now: datetime) -> int:
        """Cards of the deck that left New on `now`'s local date."""
        midnight = start_of_day(now)
        firsts = self.store.first_review_times(deck_id, since=midnight)
        today = now.date()
        return sum(1 for at in firsts.values() if at.astimezone(now.tzinfo).date() == today)

    def remaining(self, deck_id: str, config: DeckConfig, now: datetime) -> int:
        return max(0, config.new_cards_per_day - self.count_today(deck_id, now))

    def capacities(self, deck_ids: Iterable[str], now: datetime) -> dict[str, int]:
        """Remaining new-card allowance per deck."""
        result = {}
        for deck_id in deck_ids:
            config = self.store.get_deck_config(deck_id)
            result[deck_id] = self.remaining(deck_id, config, now)
        logger.debug(f"New-card capacities: {result}")
        return result
