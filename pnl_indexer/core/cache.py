import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional

_MISSING = object()


class TTLCache:
    """
    Small time-bounded cache with an injectable clock.
    Used for token decimals, market prices and transfer lookups.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic, max_entries: int = 10000):
        self.ttl = ttl
        self.clock = clock
        self.max_entries = max_entries
        self._data: "OrderedDict[Hashable, tuple]" = OrderedDict()

    def get(self, key: Hashable, default: Any = None) -> Any:
        item = self._data.get(key, _MISSING)
        if item is _MISSING:
            return default
        value, expires_at = item
        if self.clock() >= expires_at:
            del self._data[key]
            return default
        return value

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None):
        expires_at = self.clock() + (self.ttl if ttl is None else ttl)
        self._data[key] = (value, expires_at)
        self._data.move_to_end(key)
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)

    def invalidate(self, key: Hashable):
        self._data.pop(key, None)

    def clear(self):
        self._data.clear()

    def __len__(self):
        return len(self._data)
