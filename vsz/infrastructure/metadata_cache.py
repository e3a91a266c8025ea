import threading
from collections import OrderedDict
from typing import Optional, Tuple
from vsz.domain.models import VideoInfo

CacheKey = Tuple[str, int, int]


class MetadataCache:
    """Bounded, thread-safe store of probe results.

    Eviction is FIFO by insertion order, not LRU: a hit does not refresh an
    entry's position.
    """

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._entries: "OrderedDict[CacheKey, VideoInfo]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> Optional[VideoInfo]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: CacheKey, info: VideoInfo) -> None:
        with self._lock:
            self._entries[key] = info
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
