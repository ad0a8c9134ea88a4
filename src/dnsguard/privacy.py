"""Privacy-mode sanitization of query events before logging or broadcast.

Modes:
  - off: events pass through unchanged.
  - basic / enhanced: client IPs are masked (IPv4 last octet -> "xxx",
    IPv6 keeps the first four groups).
  - strict: IPs masked, domains replaced by their sha256 hex digest, and
    device names / matched rules dropped.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import replace

from cachetools import LRUCache

from .errors import ValidationError
from .events import QueryEvent

logger = logging.getLogger(__name__)

PRIVACY_MODES = ("off", "basic", "enhanced", "strict")

_RETENTION_DAYS = {"strict": 1, "enhanced": 7, "basic": 30, "off": 90}


def hash_domain(domain: str) -> str:
    return hashlib.sha256(domain.encode("utf-8")).hexdigest()


def _mask_ip(ip: str) -> str:
    if "." in ip and ":" not in ip:
        parts = ip.split(".")
        parts[-1] = "xxx"
        return ".".join(parts)
    if ":" in ip:
        return ":".join(ip.split(":")[:4]) + ":xxxx:xxxx:xxxx:xxxx"
    return "anonymous"


class LogSanitizer:
    """Apply the configured privacy mode to QueryEvents.

    Inputs (constructor):
      - mode: One of PRIVACY_MODES (default "enhanced").
      - cache_size: Maximum memoized IP masks (default 4096).

    Outputs:
      - LogSanitizer instance; sanitize(event) returns a new QueryEvent.

    Example:
      >>> s = LogSanitizer("enhanced")
      >>> s.anonymize_ip("192.168.1.20")
      '192.168.1.xxx'
    """

    def __init__(self, mode: str = "enhanced", cache_size: int = 4096) -> None:
        self._lock = threading.Lock()
        self._masks: LRUCache = LRUCache(maxsize=max(1, int(cache_size)))
        self.mode = self._validate(mode)

    @staticmethod
    def _validate(mode: str) -> str:
        value = str(mode or "").strip().lower()
        if value not in PRIVACY_MODES:
            raise ValidationError(
                f"invalid privacy mode {mode!r}; expected one of {', '.join(PRIVACY_MODES)}"
            )
        return value

    def set_mode(self, mode: str) -> None:
        value = self._validate(mode)
        with self._lock:
            self.mode = value
            self._masks.clear()
        logger.info("Privacy mode set to %s", value)

    def clear_private_data(self) -> None:
        """Forget every memoized IP mask."""
        with self._lock:
            self._masks.clear()
        logger.info("Private data cleared")

    @property
    def retention_days(self) -> int:
        return _RETENTION_DAYS[self.mode]

    def anonymize_ip(self, ip: str) -> str:
        if self.mode == "off":
            return ip
        with self._lock:
            masked = self._masks.get(ip)
            if masked is None:
                masked = _mask_ip(ip)
                self._masks[ip] = masked
        return masked

    def sanitize(self, event: QueryEvent) -> QueryEvent:
        mode = self.mode
        if mode == "off":
            return event
        if mode == "strict":
            return replace(
                event,
                domain=hash_domain(event.domain),
                client_ip=self.anonymize_ip(event.client_ip),
                device_name=None,
                matched_rule=None,
            )
        return replace(event, client_ip=self.anonymize_ip(event.client_ip))

    def settings(self) -> dict:
        return {
            "mode": self.mode,
            "ip_anonymization": self.mode != "off",
            "domain_hashing": self.mode == "strict",
            "data_retention_days": self.retention_days,
        }
