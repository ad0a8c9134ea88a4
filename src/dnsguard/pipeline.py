"""Per-datagram query pipeline and administrative operations.

Brief:
  QueryPipeline owns one RuleStore, DecisionCache, UpstreamResolver and
  StatsAggregator. For each inbound datagram it decodes the query, decides
  (cache -> secondary tier -> rule evaluation), answers with either the
  upstream address or 0.0.0.0, records statistics and publishes sanitized
  events. Administrative mutations go through the same instance so cache
  invalidation and broadcasting happen in one place.

Inputs:
  - Raw DNS query bytes plus client address.
  - Administrative calls from the HTTP API or embedding code.

Outputs:
  - Response bytes (or nothing for dropped datagrams), events, stats.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from . import codec
from .cache.decision_cache import DecisionCache
from .enforcement import NetworkEnforcement, NullEnforcement
from .errors import ParseError, PersistenceError
from .events import (
    TOPIC_DEVICE,
    TOPIC_QUERY,
    TOPIC_RULES,
    TOPIC_STATS,
    Broadcaster,
    DeviceActivityEvent,
    NullBroadcaster,
    QueryEvent,
)
from .privacy import LogSanitizer
from .resolver import UNRESOLVED_ADDRESS, UpstreamResolver
from .rules.evaluator import Verdict, evaluate
from .rules.repository import RuleRepository, RuleSync, load_snapshot
from .rules.store import RuleSnapshot, RuleStore, normalize_domain
from .stats import DeviceSweeper, QueryRecord, StatsAggregator, StatsSnapshot

logger = logging.getLogger(__name__)

Sender = Callable[[bytes], None]


class QueryPipeline:
    """Decision pipeline for DNS queries.

    Inputs (constructor):
      - store: RuleStore holding the active policy.
      - cache: DecisionCache (invalidated on every rule change).
      - resolver: UpstreamResolver for allowed names.
      - stats: StatsAggregator.
      - sanitizer: LogSanitizer applied to events before logging/broadcast.
      - broadcaster: Broadcaster for real-time events.
      - repository: Optional RuleRepository for seeding, sync and persistence.
      - persist: Write rules back to the repository after admin mutations.
      - sync_interval_seconds: RuleSync poll interval; 0 disables polling.
      - sweep_interval_seconds: DeviceSweeper interval.
      - enforcement: Optional NetworkEnforcement collaborator.

    Outputs:
      - QueryPipeline; call start() before serving and stop() on shutdown.

    Example:
      >>> pipeline = QueryPipeline(resolver=UpstreamResolver("127.0.0.1"))
      >>> pipeline.add_blocked_domain("tracker.io").blocked
      ('tracker.io',)
      >>> pipeline.test_domain("tracker.io").blocked
      True
    """

    def __init__(
        self,
        store: Optional[RuleStore] = None,
        cache: Optional[DecisionCache] = None,
        resolver: Optional[UpstreamResolver] = None,
        stats: Optional[StatsAggregator] = None,
        sanitizer: Optional[LogSanitizer] = None,
        broadcaster: Optional[Broadcaster] = None,
        *,
        repository: Optional[RuleRepository] = None,
        persist: bool = True,
        sync_interval_seconds: float = 60.0,
        sweep_interval_seconds: float = 30.0,
        enforcement: Optional[NetworkEnforcement] = None,
    ) -> None:
        self.store = store if store is not None else RuleStore()
        self.cache = cache if cache is not None else DecisionCache()
        self.resolver = resolver if resolver is not None else UpstreamResolver()
        self.sanitizer = sanitizer if sanitizer is not None else LogSanitizer()
        self.stats = (
            stats
            if stats is not None
            else StatsAggregator(history_sanitizer=self.sanitizer.sanitize)
        )
        self.broadcaster = broadcaster if broadcaster is not None else NullBroadcaster()
        self.repository = repository
        self.persist = bool(persist)
        self.sync_interval_seconds = float(sync_interval_seconds)
        self.sweep_interval_seconds = float(sweep_interval_seconds)
        self.enforcement = enforcement if enforcement is not None else NullEnforcement()

        self._sweeper: Optional[DeviceSweeper] = None
        self._sync: Optional[RuleSync] = None
        self._lifecycle_lock = threading.Lock()
        self._started = False

        self.store.subscribe(self._on_rules_changed)

    # Lifecycle --------------------------------------------------------------

    def start(self) -> None:
        """Seed rules from the repository and start background threads."""
        with self._lifecycle_lock:
            if self._started:
                return
            baseline: Optional[RuleSnapshot] = None
            if self.repository is not None:
                try:
                    baseline = load_snapshot(self.repository)
                except PersistenceError as exc:
                    logger.warning(
                        "Rule repository unavailable at startup; serving configured rules: %s",
                        exc,
                    )
                else:
                    self.store.replace(baseline)
                    logger.info(
                        "Loaded %d blocked and %d allowed rules from repository",
                        len(baseline.blocked),
                        len(baseline.allowed),
                    )
                if self.sync_interval_seconds > 0:
                    self._sync = RuleSync(
                        self.store,
                        self.repository,
                        interval_seconds=self.sync_interval_seconds,
                        baseline=baseline,
                    )
                    self._sync.start()

            self.broadcaster.start()
            self._sweeper = DeviceSweeper(
                self.stats, self.sweep_interval_seconds, purge=self.cache.purge_expired
            )
            self._sweeper.start()
            self._started = True

    def stop(self) -> None:
        with self._lifecycle_lock:
            if not self._started:
                return
            if self._sync is not None:
                self._sync.stop()
                self._sync = None
            if self._sweeper is not None:
                self._sweeper.stop()
                self._sweeper = None
            self.broadcaster.stop()
            self._started = False

    # Query path -------------------------------------------------------------

    def decide(self, domain: str) -> Verdict:
        """Brief: Return the verdict for domain using both cache tiers.

        Inputs:
          - domain: Normalized domain.

        Outputs:
          - Verdict.
        """

        verdict = self.cache.lookup(domain)
        if verdict is not None:
            return verdict

        # Generation first: a rule change after this point makes the stores stale.
        generation = self.cache.generation
        snapshot = self.store.snapshot()
        verdict = self.cache.tier_lookup(domain, snapshot.version)
        if verdict is not None:
            self.cache.store(domain, verdict, generation=generation)
            return verdict

        verdict = evaluate(domain, snapshot)
        if self.cache.store(domain, verdict, generation=generation):
            self.cache.tier_store(
                domain, verdict, generation=generation, version=snapshot.version
            )
        return verdict

    def handle_query(
        self, data: bytes, client_ip: str, send: Optional[Sender] = None
    ) -> Optional[bytes]:
        """Brief: Process one inbound datagram.

        Inputs:
          - data: Raw DNS query bytes.
          - client_ip: Client address used for device statistics.
          - send: Optional callable that transmits the response; invoked
            before statistics and events are recorded.

        Outputs:
          - Response bytes, or None when the datagram is dropped (malformed
            or not a type A question).
        """

        try:
            query = codec.decode(data)
        except ParseError as exc:
            self.stats.record_parse_error()
            logger.debug("Dropping malformed datagram from %s: %s", client_ip, exc)
            return None

        if not query.is_a:
            self.stats.record_dropped()
            logger.debug("Dropping %s query for %s", query.qtype_name, query.name)
            return None

        verdict = self.decide(query.name)
        if verdict.blocked:
            address = codec.BLOCKED_ADDRESS
        else:
            address = self.resolver.resolve(query.name)
            if address == UNRESOLVED_ADDRESS:
                self.stats.record_resolution_failure()

        wire = codec.encode(query, verdict, address)
        if send is not None:
            send(wire)

        self._after_query(query.name, client_ip, verdict)
        return wire

    def _after_query(self, domain: str, client_ip: str, verdict: Verdict) -> None:
        now = time.time()
        snapshot = self.stats.record(
            QueryRecord(domain=domain, client_ip=client_ip, verdict=verdict, timestamp=now)
        )
        # Read the device from the same snapshot so counts match this query.
        device = snapshot.device(client_ip) or {}
        event = self.sanitizer.sanitize(
            QueryEvent(
                timestamp=now,
                domain=domain,
                client_ip=client_ip,
                action=verdict.action,
                device_name=device.get("name"),
                matched_rule=verdict.matched_rule,
            )
        )
        if verdict.blocked:
            logger.info(
                "Blocked %s for %s (rule=%s)", event.domain, event.client_ip, event.matched_rule
            )
        else:
            logger.debug("Allowed %s for %s", event.domain, event.client_ip)

        activity = DeviceActivityEvent(
            ip=event.client_ip,
            name=str(device.get("name") or ""),
            status=str(device.get("status") or ""),
            domain=event.domain,
            action=verdict.action,
            timestamp=now,
            total=int(device.get("total_queries", 0)),
            blocked=int(device.get("blocked_queries", 0)),
            allowed=int(device.get("allowed_queries", 0)),
        )
        self.broadcaster.publish(TOPIC_QUERY, event.to_dict())
        self.broadcaster.publish(TOPIC_DEVICE, activity.to_dict())
        self.broadcaster.publish(TOPIC_STATS, snapshot.to_dict(include_history=False))

    # Administrative operations ---------------------------------------------

    def _on_rules_changed(self, snapshot: RuleSnapshot) -> None:
        """Store listener: runs for admin mutations and repository syncs alike."""
        self.cache.invalidate_all()
        self.broadcaster.publish(TOPIC_RULES, self._rules_payload(snapshot))
        self.broadcaster.publish(
            TOPIC_STATS, self.stats.snapshot().to_dict(include_history=False)
        )

    def _after_mutation(self, snapshot: RuleSnapshot) -> RuleSnapshot:
        if self.persist and self.repository is not None:
            try:
                self.repository.save(snapshot)
            except PersistenceError as exc:
                logger.warning("Rule change kept in memory only; save failed: %s", exc)
            else:
                if self._sync is not None:
                    self._sync.mark_synced(snapshot)
        return snapshot

    def add_blocked_domain(self, domain: str) -> RuleSnapshot:
        return self._after_mutation(self.store.add_blocked(domain))

    def remove_blocked_domain(self, domain: str) -> RuleSnapshot:
        return self._after_mutation(self.store.remove_blocked(domain))

    def add_allowed_domain(self, domain: str) -> RuleSnapshot:
        return self._after_mutation(self.store.add_allowed(domain))

    def remove_allowed_domain(self, domain: str) -> RuleSnapshot:
        return self._after_mutation(self.store.remove_allowed(domain))

    def toggle_category(self, name: str) -> RuleSnapshot:
        return self._after_mutation(self.store.toggle_category(name))

    def set_mode(self, mode: str) -> RuleSnapshot:
        return self._after_mutation(self.store.set_mode(mode))

    def clear_stats(self) -> StatsSnapshot:
        self.stats.clear()
        snapshot = self.stats.snapshot()
        self.broadcaster.publish(TOPIC_STATS, snapshot.to_dict(include_history=False))
        return snapshot

    def test_domain(self, domain: str) -> Verdict:
        """Brief: Evaluate domain against the current rules without caching."""

        return evaluate(normalize_domain(domain), self.store.snapshot())

    def is_blocked(self, domain: str) -> bool:
        """Brief: Cached decision for domain, as used by the query path."""

        return self.decide(normalize_domain(domain)).blocked

    def set_device_name(self, ip: str, name: str) -> Optional[Dict[str, Any]]:
        self.stats.set_device_name(ip, name)
        return self.stats.device(ip)

    @staticmethod
    def _rules_payload(snapshot: RuleSnapshot) -> Dict[str, Any]:
        data = snapshot.to_dict()
        data["version"] = snapshot.version
        return data

    def get_rules(self) -> Dict[str, Any]:
        return self._rules_payload(self.store.snapshot())

    def get_stats(self) -> StatsSnapshot:
        return self.stats.snapshot()

    def get_devices(self) -> List[Dict[str, Any]]:
        return self.stats.snapshot().devices

    def get_active_devices(self) -> List[Dict[str, Any]]:
        return self.stats.active_devices()

    def get_history(self, limit: int = 100, offset: int = 0) -> Dict[str, Any]:
        return self.stats.history_page(limit, offset)

    # Privacy ----------------------------------------------------------------

    def get_privacy_settings(self) -> Dict[str, Any]:
        return self.sanitizer.settings()

    def set_privacy_mode(self, mode: str) -> Dict[str, Any]:
        """Brief: Switch the sanitizer mode; raises ValidationError for unknown modes.

        Only events recorded after the switch use the new mode; existing
        history entries keep the masking they were stored with.
        """

        self.sanitizer.set_mode(mode)
        return self.sanitizer.settings()

    def clear_private_data(self) -> None:
        """Brief: Forget history, device records and memoized IP masks."""

        self.sanitizer.clear_private_data()
        self.stats.clear_private_data()
        self.broadcaster.publish(
            TOPIC_STATS, self.stats.snapshot().to_dict(include_history=False)
        )
