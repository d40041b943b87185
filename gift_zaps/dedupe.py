"""In-memory record of zap receipts that reached a final outcome.

Relays redeliver the same receipt once per relay and again on reconnect. The
cache lets those redeliveries short-circuit before touching the database. It
is only an optimization: the processed-zap store stays the source of truth.
"""
from collections import OrderedDict


class DedupeCache:
    """LRU set of handled event ids.

    Args:
        max_size: Maximum number of event ids to remember (default: 50000)
    """

    def __init__(self, max_size: int = 50000):
        self._max_size = max_size
        self._cache: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, event_id: str) -> bool:
        return self.is_seen(event_id)

    def __len__(self) -> int:
        return len(self._cache)

    def is_seen(self, event_id: str) -> bool:
        """Check whether an event was handled, refreshing its LRU position."""
        if event_id in self._cache:
            self._cache.move_to_end(event_id)
            return True
        return False

    def mark_seen(self, event_id: str) -> None:
        """Remember an event, evicting the least recently used id when full."""
        if event_id in self._cache:
            self._cache.move_to_end(event_id)
            return

        self._cache[event_id] = None

        if len(self._cache) > self._max_size:
            self._cache.popitem(last=False)

    def clear(self) -> None:
        self._cache.clear()
