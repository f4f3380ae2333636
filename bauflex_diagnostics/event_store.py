"""Thread-safe bounded ring buffer used for every retained diagnostic collection."""

import collections
import threading


class EventStore:
    """In-memory FIFO backed by a bounded deque; the oldest entry is evicted first."""

    def __init__(self, max_size=1000):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._items = collections.deque(maxlen=max_size)
        self._lock = threading.Lock()

    def add(self, item):
        """Append an item, evicting the oldest one when at capacity."""
        with self._lock:
            self._items.append(item)

    def add_and_snapshot(self, item):
        """Append an item and return the retained items as they stood right after."""
        with self._lock:
            self._items.append(item)
            return list(self._items)

    def get_all(self):
        """Return all retained items as a list, most recent last."""
        with self._lock:
            return list(self._items)

    @property
    def max_size(self):
        return self._items.maxlen

    def __len__(self):
        return len(self._items)

    def clear(self):
        """Drop every item and return how many were held."""
        with self._lock:
            cleared = len(self._items)
            self._items.clear()
            return cleared
