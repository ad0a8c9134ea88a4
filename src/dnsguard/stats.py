"""
Thread-safe statistics aggregation for dnsguard.

This module tracks global query counters, per-domain frequency tables for the
top blocked/allowed lists, a bounded newest-first query history, and one
DeviceRecord per client IP. All mutation happens under a single RLock,
including the periodic device status sweep, so per-query updates and the
sweep never interleave.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from .events import QueryEvent, iso_timestamp
from .rules.evaluator import Verdict

logger = logging.getLogger(__name__)

HISTORY_SIZE = 1000
DEVICE_ACTIVITY_SIZE = 50
TOP_N = 10
ACTIVE_WINDOW_SECONDS = 300.0

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"

_TOTAL_KEYS = (
    "total_queries",
    "blocked_queries",
    "allowed_queries",
    "parse_errors",
    "dropped_queries",
    "resolution_failures",
)


def default_device_name(ip: str) -> str:
    """
    Derive a friendly name for a client IP.

    Inputs:
        ip: Client address string

    Outputs:
        "Local Server" for loopback, "Device <last octet>" for common private
        prefixes, otherwise "Unknown Device (<ip>)".

    Example:
        >>> default_device_name("192.168.1.23")
        'Device 23'
    """
    if ip in ("127.0.0.1", "::1"):
        return "Local Server"
    if ip.startswith(("192.168.", "10.", "172.")):
        return f"Device {ip.split('.')[-1]}"
    return f"Unknown Device ({ip})"


@dataclass(frozen=True)
class QueryRecord:
    """
    Input to StatsAggregator.record().

    Inputs (constructor):
        domain: Normalized queried domain
        client_ip: Client address
        verdict: Verdict applied to the query
        device_name: Optional friendly name override
        timestamp: Epoch seconds (defaults to now)
    """

    domain: str
    client_ip: str
    verdict: Verdict
    device_name: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class DeviceRecord:
    """Running statistics for one client IP."""

    ip: str
    name: str
    first_seen: float
    last_seen: float
    total_queries: int = 0
    blocked_queries: int = 0
    allowed_queries: int = 0
    recent_activity: Deque[Dict[str, Any]] = field(
        default_factory=lambda: deque(maxlen=DEVICE_ACTIVITY_SIZE)
    )
    status: str = STATUS_ACTIVE

    @property
    def block_rate(self) -> float:
        if not self.total_queries:
            return 0.0
        return round(self.blocked_queries / self.total_queries * 100.0, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "name": self.name,
            "first_seen": iso_timestamp(self.first_seen),
            "last_seen": iso_timestamp(self.last_seen),
            "total_queries": self.total_queries,
            "blocked_queries": self.blocked_queries,
            "allowed_queries": self.allowed_queries,
            "block_rate": self.block_rate,
            "status": self.status,
            "recent_activity": [dict(a) for a in self.recent_activity],
        }


@dataclass
class StatsSnapshot:
    """
    Point-in-time copy of aggregated statistics.

    Inputs (constructor):
        All fields provided by StatsAggregator.snapshot()

    Outputs:
        Snapshot instance; collections are copies, safe to use outside the lock.
    """

    created_at: float
    totals: Dict[str, int]
    top_blocked: List[Dict[str, Any]]
    top_allowed: List[Dict[str, Any]]
    devices: List[Dict[str, Any]]
    history: List[Dict[str, Any]]

    @property
    def total_queries(self) -> int:
        return self.totals["total_queries"]

    @property
    def blocked_queries(self) -> int:
        return self.totals["blocked_queries"]

    @property
    def allowed_queries(self) -> int:
        return self.totals["allowed_queries"]

    def device(self, ip: str) -> Optional[Dict[str, Any]]:
        """Device entry for ip as of this snapshot, or None."""
        for entry in self.devices:
            if entry["ip"] == ip:
                return entry
        return None

    def to_dict(self, include_history: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "created_at": iso_timestamp(self.created_at),
            "totals": dict(self.totals),
            "top_blocked": list(self.top_blocked),
            "top_allowed": list(self.top_allowed),
            "devices": list(self.devices),
        }
        if include_history:
            data["history"] = list(self.history)
        return data


def _top(counts: Dict[str, int], n: int) -> List[Dict[str, Any]]:
    # sorted() is stable and dicts keep first-insertion order, so ties keep
    # the order in which domains were first seen.
    items = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
    return [{"domain": d, "count": c} for d, c in items[:n]]


class StatsAggregator:
    """
    Thread-safe aggregator for query and per-device statistics.

    Inputs (constructor):
        history_size: Maximum global history entries (default 1000)
        device_activity_size: Per-device recent activity entries (default 50)
        top_n: Size of top blocked/allowed lists (default 10)
        active_window_seconds: Devices seen within this window are active (default 300)
        history_sanitizer: Optional callable applied to each QueryEvent before
            it is stored in history (privacy masking)
        clock: Time source used by sweep() (default time.time)

    Outputs:
        StatsAggregator instance

    Example:
        >>> agg = StatsAggregator()
        >>> snap = agg.record(QueryRecord("a.com", "10.0.0.5", Verdict.block("a.com")))
        >>> snap.totals["blocked_queries"]
        1
    """

    def __init__(
        self,
        history_size: int = HISTORY_SIZE,
        device_activity_size: int = DEVICE_ACTIVITY_SIZE,
        top_n: int = TOP_N,
        active_window_seconds: float = ACTIVE_WINDOW_SECONDS,
        history_sanitizer: Optional[Callable[[QueryEvent], QueryEvent]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._lock = threading.RLock()
        self.history_size = max(1, int(history_size))
        self.device_activity_size = max(1, int(device_activity_size))
        self.top_n = max(1, int(top_n))
        self.active_window_seconds = float(active_window_seconds)
        self._history_sanitizer = history_sanitizer
        self._clock = clock

        self._device_names: Dict[str, str] = {}
        self._reset_locked()

    def _reset_locked(self) -> None:
        self._totals: Dict[str, int] = {k: 0 for k in _TOTAL_KEYS}
        self._blocked_counts: Dict[str, int] = {}
        self._allowed_counts: Dict[str, int] = {}
        self._history: Deque[Dict[str, Any]] = deque(maxlen=self.history_size)
        self._devices: Dict[str, DeviceRecord] = {}

    def device_name(self, ip: str) -> str:
        with self._lock:
            return self._device_names.get(ip) or default_device_name(ip)

    def set_device_name(self, ip: str, name: str) -> None:
        """Assign a friendly name that survives clear()."""
        with self._lock:
            self._device_names[ip] = name
            device = self._devices.get(ip)
            if device is not None:
                device.name = name

    def record(self, event: QueryRecord) -> StatsSnapshot:
        """
        Apply one processed query to every table.

        Inputs:
            event: QueryRecord for the query

        Outputs:
            StatsSnapshot taken after the update
        """
        blocked = bool(event.verdict.blocked)
        action = event.verdict.action
        ts = float(event.timestamp)

        with self._lock:
            self._totals["total_queries"] += 1
            if blocked:
                self._totals["blocked_queries"] += 1
                counts = self._blocked_counts
            else:
                self._totals["allowed_queries"] += 1
                counts = self._allowed_counts
            counts[event.domain] = counts.get(event.domain, 0) + 1

            name = (
                event.device_name
                or self._device_names.get(event.client_ip)
                or default_device_name(event.client_ip)
            )
            device = self._devices.get(event.client_ip)
            if device is None:
                device = DeviceRecord(
                    ip=event.client_ip,
                    name=name,
                    first_seen=ts,
                    last_seen=ts,
                    recent_activity=deque(maxlen=self.device_activity_size),
                )
                self._devices[event.client_ip] = device
            device.last_seen = max(device.last_seen, ts)
            device.total_queries += 1
            if blocked:
                device.blocked_queries += 1
            else:
                device.allowed_queries += 1
            device.recent_activity.appendleft(
                {"domain": event.domain, "action": action, "timestamp": iso_timestamp(ts)}
            )

            entry = QueryEvent(
                timestamp=ts,
                domain=event.domain,
                client_ip=event.client_ip,
                action=action,
                device_name=device.name,
                matched_rule=event.verdict.matched_rule,
            )
            if self._history_sanitizer is not None:
                entry = self._history_sanitizer(entry)
            self._history.appendleft(entry.to_dict())

            return self._snapshot_locked()

    def record_parse_error(self) -> None:
        with self._lock:
            self._totals["parse_errors"] += 1

    def record_dropped(self) -> None:
        with self._lock:
            self._totals["dropped_queries"] += 1

    def record_resolution_failure(self) -> None:
        with self._lock:
            self._totals["resolution_failures"] += 1

    def sweep(self, now: Optional[float] = None) -> int:
        """
        Recompute active/inactive status for every device.

        Inputs:
            now: Optional epoch seconds (defaults to the aggregator clock)

        Outputs:
            Number of devices whose status changed
        """
        current = self._clock() if now is None else float(now)
        changed = 0
        with self._lock:
            for device in self._devices.values():
                status = (
                    STATUS_ACTIVE
                    if current - device.last_seen <= self.active_window_seconds
                    else STATUS_INACTIVE
                )
                if status != device.status:
                    device.status = status
                    changed += 1
        return changed

    def clear(self) -> None:
        """Reset counters, top tables, history and device records."""
        with self._lock:
            self._reset_locked()
        logger.info("Statistics cleared")

    def clear_private_data(self) -> None:
        """Drop query history and device records; totals and top tables stay."""
        with self._lock:
            self._history.clear()
            self._devices.clear()

    def history_page(self, limit: int = 100, offset: int = 0) -> Dict[str, Any]:
        """
        Slice of the newest-first history.

        Inputs:
            limit: Maximum entries to return
            offset: Entries to skip from the newest

        Outputs:
            {"total": <history length>, "items": [...]}
        """
        start = max(0, int(offset))
        stop = start + max(0, int(limit))
        with self._lock:
            items = list(self._history)[start:stop]
            total = len(self._history)
        return {"total": total, "items": items}

    def active_devices(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [d.to_dict() for d in self._devices.values() if d.status == STATUS_ACTIVE]

    def device(self, ip: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._devices.get(ip)
            return record.to_dict() if record is not None else None

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> StatsSnapshot:
        return StatsSnapshot(
            created_at=time.time(),
            totals=dict(self._totals),
            top_blocked=_top(self._blocked_counts, self.top_n),
            top_allowed=_top(self._allowed_counts, self.top_n),
            devices=[d.to_dict() for d in self._devices.values()],
            history=list(self._history),
        )


def format_snapshot_json(snapshot: StatsSnapshot) -> str:
    """
    Format a snapshot as a single-line JSON string for logging.

    History is omitted to keep log lines bounded.
    """
    return json.dumps(snapshot.to_dict(include_history=False), separators=(",", ":"))


class DeviceSweeper(threading.Thread):
    """
    Background daemon thread that periodically recomputes device status.

    Inputs (constructor):
        aggregator: StatsAggregator to sweep
        interval_seconds: Seconds between sweeps (default 30)
        purge: Optional callable run on the same cadence (the pipeline passes
            DecisionCache.purge_expired); returns the number of entries removed

    Outputs:
        DeviceSweeper thread instance (call start() to begin)

    Example:
        >>> sweeper = DeviceSweeper(StatsAggregator(), interval_seconds=30)
        >>> sweeper.start()
        >>> sweeper.stop()
    """

    def __init__(
        self,
        aggregator: StatsAggregator,
        interval_seconds: float = 30.0,
        purge: Optional[Callable[[], int]] = None,
    ) -> None:
        super().__init__(daemon=True, name="DeviceSweeper")
        self.aggregator = aggregator
        self.interval_seconds = max(0.01, float(interval_seconds))
        self.purge = purge
        self._stop_event = threading.Event()

    def sweep_once(self) -> None:
        changed = self.aggregator.sweep()
        if changed:
            logger.debug("Device sweep updated %d device(s)", changed)
        if self.purge is not None:
            purged = self.purge()
            if purged:
                logger.debug("Purged %d expired cache entries", purged)

    def run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.sweep_once()
            except Exception as e:  # pragma: no cover
                logger.error("DeviceSweeper error: %s", e, exc_info=True)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout=timeout)
