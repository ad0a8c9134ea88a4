"""Size-bounded FIFO memo of domain -> Verdict with per-entry TTL."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from ..errors import CacheBackendError
from ..rules.evaluator import Verdict
from .backends import NullSecondaryTier, SecondaryTier

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300
DEFAULT_CAPACITY = 10000


class DecisionCache:
    """
    Thread-safe decision cache with FIFO eviction and an optional secondary tier.

    Inputs:
        capacity: Maximum number of local entries (default 10000)
        ttl: Default entry lifetime in seconds (default 300)
        tier: Optional SecondaryTier consulted on local misses
        tier_backoff_seconds: How long to bypass the tier after a failure
        clock: Time source, injectable for tests
    Outputs:
        DecisionCache instance

    Notes:
        Eviction removes the oldest *inserted* key once capacity is exceeded;
        re-storing an existing key keeps its original position (not LRU).
        Every entry carries the generation it was stored under; invalidate_all()
        bumps the generation so a verdict computed before a rule change and
        stored afterwards is dropped instead of cached.

    Example use:
        >>> cache = DecisionCache()
        >>> gen = cache.generation
        >>> cache.store("ads.com", Verdict.block("ads.com"), generation=gen)
        True
        >>> cache.lookup("ads.com").blocked
        True
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        ttl: int = DEFAULT_TTL,
        tier: Optional[SecondaryTier] = None,
        tier_backoff_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.capacity = max(1, int(capacity))
        self.ttl = max(0, int(ttl))
        self.tier: SecondaryTier = tier if tier is not None else NullSecondaryTier()
        self.tier_backoff_seconds = max(0.0, float(tier_backoff_seconds))
        self._clock = clock

        # domain -> (expires_at, generation, verdict); dict order is insertion order.
        self._store: Dict[str, Tuple[float, int, Verdict]] = {}
        self._lock = threading.RLock()
        self._generation = 0
        self._tier_down_until = 0.0

        self.hits = 0
        self.misses = 0
        self.tier_hits = 0
        self.tier_errors = 0

    @property
    def generation(self) -> int:
        return self._generation

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def lookup(self, domain: str) -> Optional[Verdict]:
        """
        Return the cached verdict for domain, or None on a miss.

        Inputs:
            domain: Normalized domain.

        Outputs:
            Verdict or None. Expired entries are removed on access.
        """
        now = self._clock()
        with self._lock:
            entry = self._store.get(domain)
            if entry is not None:
                expires_at, generation, verdict = entry
                if now < expires_at and generation == self._generation:
                    self.hits += 1
                    return verdict
                del self._store[domain]
            self.misses += 1
        return None

    def store(
        self,
        domain: str,
        verdict: Verdict,
        ttl: Optional[int] = None,
        generation: Optional[int] = None,
    ) -> bool:
        """
        Insert a verdict, evicting the oldest inserted key when over capacity.

        Inputs:
            domain: Normalized domain.
            verdict: Verdict to memoize.
            ttl: Optional lifetime override in seconds.
            generation: Generation observed before the verdict was computed;
                None means "current".

        Outputs:
            bool: False when the store was discarded as stale.
        """
        lifetime = self.ttl if ttl is None else max(0, int(ttl))
        expires_at = self._clock() + lifetime
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug("Dropping stale verdict for %s (gen %s)", domain, generation)
                return False
            if domain in self._store:
                # Overwrite in place; insertion position is unchanged.
                self._store[domain] = (expires_at, self._generation, verdict)
                return True
            self._store[domain] = (expires_at, self._generation, verdict)
            while len(self._store) > self.capacity:
                oldest = next(iter(self._store))
                del self._store[oldest]
        return True

    def invalidate_all(self) -> None:
        """Clear every local entry, bump the generation, and flush the tier."""
        with self._lock:
            self._store.clear()
            self._generation += 1
        if self.tier.enabled:
            try:
                self.tier.flush()
            except CacheBackendError as exc:
                self._tier_failed(exc)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [k for k, (exp, _g, _v) in self._store.items() if exp <= now]
            for k in stale:
                del self._store[k]
        return len(stale)

    # Secondary tier ---------------------------------------------------------

    def _tier_available(self) -> bool:
        return self.tier.enabled and self._clock() >= self._tier_down_until

    def _tier_failed(self, exc: Exception) -> None:
        with self._lock:
            self.tier_errors += 1
            self._tier_down_until = self._clock() + self.tier_backoff_seconds
        logger.warning(
            "Secondary decision cache unavailable, using local cache only for %.0fs: %s",
            self.tier_backoff_seconds,
            exc,
        )

    def tier_lookup(self, domain: str, version: int = 0) -> Optional[Verdict]:
        """Brief: Consult the secondary tier; failures read as a miss.

        Inputs:
          - domain: Normalized domain.
          - version: Rule snapshot version; entries stamped with any other
            version are misses.
        """
        if not self._tier_available():
            return None
        try:
            verdict = self.tier.get(domain, version)
        except CacheBackendError as exc:
            self._tier_failed(exc)
            return None
        if verdict is not None:
            with self._lock:
                self.tier_hits += 1
        return verdict

    def tier_store(
        self,
        domain: str,
        verdict: Verdict,
        generation: Optional[int] = None,
        version: int = 0,
    ) -> None:
        """Brief: Populate the secondary tier unless the generation is stale.

        The entry is stamped with version, so a write that races a flush is
        ignored by lookups under later rule versions.
        """
        if not self._tier_available():
            return
        if generation is not None and generation != self._generation:
            return
        try:
            self.tier.set(domain, verdict, self.ttl, version)
        except CacheBackendError as exc:
            self._tier_failed(exc)

    def stats(self) -> Dict[str, object]:
        with self._lock:
            return {
                "entries": len(self._store),
                "capacity": self.capacity,
                "ttl": self.ttl,
                "generation": self._generation,
                "hits": self.hits,
                "misses": self.misses,
                "tier": type(self.tier).__name__,
                "tier_hits": self.tier_hits,
                "tier_errors": self.tier_errors,
            }
