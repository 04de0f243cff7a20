import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: str
    created_at: float
    ttl: float


class ResultCache:
    """Memoizes (provider, fingerprint) -> decoded value with a TTL.

    Entries expire lazily on read; there is no background sweep. Capacity is
    unbounded. The lock only covers dict mutation, never network waits.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[Tuple[str, str], CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, provider_id: str, fingerprint: str) -> Optional[str]:
        key = (provider_id, fingerprint)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.created_at >= entry.ttl:
                del self._entries[key]
                logger.debug(f"⌛ Cache entry expired for {provider_id}:{fingerprint[:12]}")
                return None
            return entry.value

    def set(self, provider_id: str, fingerprint: str, value: str, ttl: float) -> None:
        entry = CacheEntry(value=value, created_at=self._clock(), ttl=max(0.0, float(ttl)))
        with self._lock:
            self._entries[(provider_id, fingerprint)] = entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self):
        return len(self._entries)
