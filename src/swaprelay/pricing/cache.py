"""TTL cache for cross rates."""

import time
from typing import Callable, Optional

from swaprelay.pricing.base import CachedRate


class RateCache:
    """Explicitly owned rate cache. Stale entries are never served."""

    def __init__(self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], tuple[CachedRate, float]] = {}

    def get(self, from_asset: str, to_asset: str) -> Optional[CachedRate]:
        """Return the cached rate for a pair if still fresh."""
        key = (from_asset, to_asset)
        entry = self._entries.get(key)
        if entry is None:
            return None
        rate, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return rate

    def put(self, rate: CachedRate, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[rate.pair] = (rate, self._clock() + ttl)

    def invalidate(self, from_asset: Optional[str] = None, to_asset: Optional[str] = None) -> None:
        """Drop one pair, or everything when no pair is given."""
        if from_asset is None:
            self._entries.clear()
        else:
            self._entries.pop((from_asset, to_asset), None)

    def __len__(self) -> int:
        return len(self._entries)
