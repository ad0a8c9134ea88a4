"""
Brief: Tests for dnsguard.cache.DecisionCache and secondary tiers.

Inputs:
  - None

Outputs:
  - None
"""

import json

import pytest

from dnsguard.cache import (
    DecisionCache,
    NullSecondaryTier,
    RedisSecondaryTier,
    SecondaryTier,
    load_secondary_tier,
)
from dnsguard.errors import CacheBackendError
from dnsguard.rules.evaluator import Verdict


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


BLOCK = Verdict.block("ads.com")
ALLOW = Verdict.allow()


def test_store_and_lookup_counts_hits_and_misses():
    cache = DecisionCache()
    assert cache.lookup("ads.com") is None
    cache.store("ads.com", BLOCK)
    assert cache.lookup("ads.com") == BLOCK
    assert cache.hits == 1
    assert cache.misses == 1


def test_entries_expire_after_ttl():
    clock = Clock()
    cache = DecisionCache(ttl=300, clock=clock)
    cache.store("a.com", ALLOW)
    clock.now += 299
    assert cache.lookup("a.com") == ALLOW
    clock.now += 1
    assert cache.lookup("a.com") is None
    assert len(cache) == 0


def test_fifo_eviction_of_oldest_inserted_key():
    cache = DecisionCache(capacity=3)
    for name in ("a", "b", "c"):
        cache.store(name, ALLOW)
    # Reading or re-storing "a" does not refresh its position.
    cache.lookup("a")
    cache.store("a", BLOCK)
    cache.store("d", ALLOW)
    assert cache.lookup("a") is None
    assert cache.lookup("b") == ALLOW
    assert cache.lookup("d") == ALLOW
    assert len(cache) == 3


def test_default_capacity_evicts_first_entry():
    cache = DecisionCache()
    for i in range(10001):
        cache.store(f"d{i}.com", ALLOW)
    assert len(cache) == 10000
    assert cache.lookup("d0.com") is None
    assert cache.lookup("d1.com") == ALLOW


def test_invalidate_all_clears_and_bumps_generation():
    cache = DecisionCache()
    cache.store("a.com", BLOCK)
    gen = cache.generation
    cache.invalidate_all()
    assert cache.generation == gen + 1
    assert cache.lookup("a.com") is None


def test_store_with_stale_generation_is_discarded():
    cache = DecisionCache()
    observed = cache.generation
    cache.invalidate_all()
    assert cache.store("a.com", BLOCK, generation=observed) is False
    assert cache.lookup("a.com") is None
    assert cache.store("a.com", BLOCK, generation=cache.generation) is True


def test_purge_expired():
    clock = Clock()
    cache = DecisionCache(ttl=10, clock=clock)
    cache.store("a", ALLOW)
    cache.store("b", ALLOW, ttl=100)
    clock.now += 20
    assert cache.purge_expired() == 1
    assert len(cache) == 1


class DictTier(SecondaryTier):
    def __init__(self):
        self.data = {}
        self.flushed = 0

    def get(self, domain, version=0):
        entry = self.data.get(domain)
        if entry is None or entry[0] != version:
            return None
        return entry[1]

    def set(self, domain, verdict, ttl, version=0):
        self.data[domain] = (version, verdict)

    def flush(self):
        self.flushed += 1
        self.data.clear()


class BrokenTier(SecondaryTier):
    def __init__(self):
        self.calls = 0

    def get(self, domain, version=0):
        self.calls += 1
        raise CacheBackendError("connection refused")

    def set(self, domain, verdict, ttl, version=0):
        self.calls += 1
        raise CacheBackendError("connection refused")

    def flush(self):
        raise CacheBackendError("connection refused")


def test_tier_round_trip_and_flush_on_invalidate():
    tier = DictTier()
    cache = DecisionCache(tier=tier)
    cache.tier_store("a.com", BLOCK)
    assert cache.tier_lookup("a.com") == BLOCK
    assert cache.tier_hits == 1
    cache.invalidate_all()
    assert tier.flushed == 1
    assert cache.tier_lookup("a.com") is None


def test_tier_store_skips_stale_generation():
    tier = DictTier()
    cache = DecisionCache(tier=tier)
    gen = cache.generation
    cache.invalidate_all()
    cache.tier_store("a.com", BLOCK, generation=gen)
    assert tier.data == {}


def test_broken_tier_fails_open_with_backoff(caplog):
    clock = Clock()
    tier = BrokenTier()
    cache = DecisionCache(tier=tier, tier_backoff_seconds=30, clock=clock)

    assert cache.tier_lookup("a.com") is None
    assert cache.tier_errors == 1
    assert "Secondary decision cache unavailable" in caplog.text

    # Inside the backoff window the tier is not touched.
    cache.tier_store("a.com", BLOCK)
    assert cache.tier_lookup("a.com") is None
    assert tier.calls == 1

    clock.now += 31
    assert cache.tier_lookup("a.com") is None
    assert tier.calls == 2

    # Local caching still works throughout.
    cache.store("a.com", BLOCK)
    assert cache.lookup("a.com") == BLOCK


def test_invalidate_all_survives_flush_failure():
    cache = DecisionCache(tier=BrokenTier())
    cache.invalidate_all()
    assert cache.tier_errors == 1


class FakeRedis:
    def __init__(self, fail=False):
        self.store = {}
        self.fail = fail
        self.ttls = {}

    def _maybe_fail(self):
        if self.fail:
            raise ConnectionError("down")

    def get(self, key):
        self._maybe_fail()
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self._maybe_fail()
        self.store[key] = value
        self.ttls[key] = ttl

    def scan_iter(self, match=None, count=None):
        self._maybe_fail()
        prefix = match.rstrip("*")
        return [k for k in list(self.store) if k.startswith(prefix)]

    def delete(self, *keys):
        for k in keys:
            self.store.pop(k, None)


def test_redis_tier_uses_namespace_json_and_setex():
    client = FakeRedis()
    client.store["other:key"] = "x"
    tier = RedisSecondaryTier(client=client)
    tier.set("ads.com", BLOCK, 300, version=4)
    key = "dnsguard:verdict:ads.com"
    stored = json.loads(client.store[key])
    assert stored["rules_version"] == 4
    assert stored["verdict"]["blocked"] is True
    assert client.ttls[key] == 300
    assert tier.get("ads.com", 4) == BLOCK
    assert tier.get("missing.com") is None
    tier.flush()
    assert key not in client.store
    assert "other:key" in client.store


def test_redis_tier_wraps_errors():
    tier = RedisSecondaryTier(client=FakeRedis(fail=True))
    with pytest.raises(CacheBackendError):
        tier.get("a.com")
    with pytest.raises(CacheBackendError):
        tier.set("a.com", BLOCK, 10)
    with pytest.raises(CacheBackendError):
        tier.flush()


def test_redis_tier_treats_corrupt_entry_as_miss():
    client = FakeRedis()
    client.store["dnsguard:verdict:a.com"] = "{broken"
    assert RedisSecondaryTier(client=client).get("a.com") is None


def test_load_secondary_tier_aliases():
    assert isinstance(load_secondary_tier(None), NullSecondaryTier)
    assert isinstance(load_secondary_tier({"module": "none"}), NullSecondaryTier)
    with pytest.raises(ValueError):
        load_secondary_tier({"module": "memcached"})


def test_redis_tier_ignores_entry_from_other_rules_version():
    client = FakeRedis()
    tier = RedisSecondaryTier(client=client)
    tier.set("ads.com", BLOCK, 300, version=1)
    assert tier.get("ads.com", 2) is None
    assert tier.get("ads.com", 1) == BLOCK


def test_redis_tier_treats_unversioned_entry_as_miss():
    client = FakeRedis()
    client.store["dnsguard:verdict:a.com"] = json.dumps(BLOCK.to_dict())
    assert RedisSecondaryTier(client=client).get("a.com") is None


def test_tier_lookup_passes_rules_version():
    tier = DictTier()
    cache = DecisionCache(tier=tier)
    cache.tier_store("a.com", BLOCK, version=3)
    assert tier.data["a.com"] == (3, BLOCK)
    assert cache.tier_lookup("a.com", 3) == BLOCK
    assert cache.tier_lookup("a.com", 4) is None
    assert cache.tier_hits == 1
