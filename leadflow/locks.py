import threading
import zlib


class LockStripes:
    """Fixed pool of locks picked by key, so memory does not grow with distinct keys.

    Two keys may share a lock; that only serialises more than needed.
    """

    def __init__(self, size: int = 64):
        self._locks = [threading.Lock() for _ in range(size)]

    def __len__(self) -> int:
        return len(self._locks)

    def for_key(self, key: str) -> threading.Lock:
        # crc32 is stable across processes, unlike hash() on str
        return self._locks[zlib.crc32(key.encode("utf-8")) % len(self._locks)]
