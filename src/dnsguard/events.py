"""Outbound event types and fire-and-forget broadcasters.

Brief:
  The pipeline publishes a QueryEvent, a DeviceActivityEvent and a stats
  snapshot after every processed query, and a rules update after every
  administrative mutation. Delivery never blocks the caller: QueueBroadcaster
  enqueues with put_nowait and fans out to subscribers on its own thread,
  dropping events when the queue is full.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

TOPIC_QUERY = "dns-query"
TOPIC_DEVICE = "device-activity"
TOPIC_STATS = "stats-update"
TOPIC_RULES = "rules-update"


def iso_timestamp(ts: float) -> str:
    """Brief: Format an epoch timestamp as UTC ISO-8601 with millisecond precision."""

    return (
        datetime.fromtimestamp(ts, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


@dataclass(frozen=True)
class QueryEvent:
    """One processed query as logged, kept in history, and broadcast.

    Inputs (constructor):
      - timestamp: Epoch seconds.
      - domain: Queried domain (possibly hashed by the sanitizer).
      - client_ip: Client address (possibly masked by the sanitizer).
      - action: "blocked" or "allowed".
      - device_name: Friendly device name, when known.
      - matched_rule: Rule that decided the verdict, when any.
    """

    timestamp: float
    domain: str
    client_ip: str
    action: str
    device_name: Optional[str] = None
    matched_rule: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = iso_timestamp(self.timestamp)
        return data


@dataclass(frozen=True)
class DeviceActivityEvent:
    """Per-device activity notification emitted after each query."""

    ip: str
    name: str
    status: str
    domain: str
    action: str
    timestamp: float
    total: int
    blocked: int
    allowed: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "device_activity",
            "device": {"ip": self.ip, "name": self.name, "status": self.status},
            "activity": {
                "domain": self.domain,
                "action": self.action,
                "timestamp": iso_timestamp(self.timestamp),
            },
            "stats": {
                "total": self.total,
                "blocked": self.blocked,
                "allowed": self.allowed,
            },
        }


Subscriber = Callable[[str, Dict[str, Any]], None]


class Broadcaster:
    """Base interface: publish(topic, payload) must return immediately."""

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError("Broadcaster.publish() must be implemented by a subclass")

    def start(self) -> None:
        return None

    def stop(self, timeout: float = 5.0) -> None:
        return None


class NullBroadcaster(Broadcaster):
    """Discards every event."""

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        return None


class QueueBroadcaster(Broadcaster):
    """
    Bounded-queue broadcaster with a background dispatch thread.

    Inputs (constructor):
        max_queue: Maximum pending events before new ones are dropped (default 1000)

    Outputs:
        QueueBroadcaster; call start() before publishing for delivery.

    Subscribers are called in registration order on the dispatch thread. A
    subscriber that raises is logged and the remaining subscribers still run.

    Example:
        >>> seen = []
        >>> b = QueueBroadcaster()
        >>> b.subscribe(lambda topic, payload: seen.append(topic))
        >>> b.start()
        >>> b.publish("stats-update", {})
        >>> b.stop()
        >>> seen
        ['stats-update']
    """

    _SENTINEL: Tuple[str, Dict[str, Any]] = ("", {})

    def __init__(self, max_queue: int = 1000) -> None:
        self._queue: "queue.Queue[Tuple[str, Dict[str, Any]]]" = queue.Queue(
            maxsize=max(1, int(max_queue))
        )
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.dropped = 0

    def subscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(subscriber)

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        try:
            self._queue.put_nowait((topic, payload))
        except queue.Full:
            with self._lock:
                self.dropped += 1
            logger.debug("Broadcast queue full; dropped %s event", topic)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self._run, name="QueueBroadcaster", daemon=True
        )
        self._thread.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is self._SENTINEL:
                return
            topic, payload = item
            with self._lock:
                subscribers = list(self._subscribers)
            for sub in subscribers:
                try:
                    sub(topic, payload)
                except Exception:
                    logger.exception("Broadcast subscriber %r failed on %s", sub, topic)

    def stop(self, timeout: float = 5.0) -> None:
        """Deliver already-queued events, then stop the dispatch thread."""
        if self._thread is None:
            return
        # Blocking put: the sentinel must not be dropped while events drain.
        try:
            self._queue.put(self._SENTINEL, timeout=timeout)
        except queue.Full:
            logger.warning("Broadcast queue did not drain; abandoning dispatch thread")
            self._thread = None
            return
        self._thread.join(timeout=timeout)
        self._thread = None

