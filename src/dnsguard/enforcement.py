"""Network enforcement collaborator interface.

Redirecting client DNS traffic to dnsguard (iptables, pfctl, netsh) happens
outside this process. The core only needs to report and toggle that state
through this narrow interface; NullEnforcement is used when nothing is wired
in.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict

logger = logging.getLogger(__name__)


class NetworkEnforcement:
    """Base interface: enable(), disable(), status()."""

    def enable(self) -> Dict[str, Any]:
        raise NotImplementedError("NetworkEnforcement.enable() must be implemented by a subclass")

    def disable(self) -> Dict[str, Any]:
        raise NotImplementedError("NetworkEnforcement.disable() must be implemented by a subclass")

    def status(self) -> Dict[str, Any]:
        raise NotImplementedError("NetworkEnforcement.status() must be implemented by a subclass")


class NullEnforcement(NetworkEnforcement):
    """Records the requested state without touching the host firewall."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._enabled = False

    def enable(self) -> Dict[str, Any]:
        with self._lock:
            self._enabled = True
        logger.info("Network enforcement requested (no enforcement backend configured)")
        return self.status()

    def disable(self) -> Dict[str, Any]:
        with self._lock:
            self._enabled = False
        return self.status()

    def status(self) -> Dict[str, Any]:
        return {"backend": "none", "enabled": self._enabled, "enforced": False}
