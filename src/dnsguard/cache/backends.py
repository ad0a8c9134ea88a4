from __future__ import annotations

import importlib
import json
import logging
from typing import Any, Dict, Optional

from ..errors import CacheBackendError
from ..rules.evaluator import Verdict

logger = logging.getLogger(__name__)


def tier_aliases(*aliases: str):
    """Brief: Decorator to set aliases on a secondary tier class for config lookup.

    Inputs:
      - *aliases: Variable number of alias strings.

    Outputs:
      - Callable that applies the aliases to a SecondaryTier subclass and returns it.

    Example:
      >>> @tier_aliases('none', 'null')
      ... class Nothing(SecondaryTier):
      ...     pass
      >>> Nothing.aliases
      ('none', 'null')
    """

    def _wrap(cls: type) -> type:
        cls.aliases = tuple(aliases)
        return cls

    return _wrap


class SecondaryTier:
    """Base class for the optional distributed decision-cache tier.

    Brief:
      Capability interface {get, set, flush}. Implementations raise
      CacheBackendError on any backend failure; DecisionCache turns those into
      local-only operation.

      Every entry is stamped with the rule snapshot version it was computed
      against. get() returns None for an entry whose version differs from the
      requested one, so a write that lands after a flush is never served
      under newer rules.
    """

    aliases: tuple[str, ...] = ()
    enabled: bool = True

    def get(self, domain: str, version: int = 0) -> Optional[Verdict]:
        """Brief: Lookup a verdict.

        Inputs:
          - domain: Normalized domain.
          - version: Rule snapshot version the caller evaluates under.

        Outputs:
          - Verdict | None (None on a miss or a version mismatch).
        """

        raise NotImplementedError("SecondaryTier.get() must be implemented by a subclass")

    def set(self, domain: str, verdict: Verdict, ttl: int, version: int = 0) -> None:
        raise NotImplementedError("SecondaryTier.set() must be implemented by a subclass")

    def flush(self) -> None:
        raise NotImplementedError("SecondaryTier.flush() must be implemented by a subclass")


@tier_aliases("none", "null")
class NullSecondaryTier(SecondaryTier):
    """No-op tier used when no distributed cache is configured."""

    enabled = False

    def get(self, domain: str, version: int = 0) -> Optional[Verdict]:
        return None

    def set(self, domain: str, verdict: Verdict, ttl: int, version: int = 0) -> None:
        return None

    def flush(self) -> None:
        return None


def _import_redis() -> Any:
    """Brief: Import the optional `redis` dependency.

    Inputs:
      - None.

    Outputs:
      - redis module.

    Notes:
      - This is intentionally lazy so that importing dnsguard.cache works
        even when `redis` is not installed.
    """

    try:
        return importlib.import_module("redis")
    except Exception as exc:  # pragma: no cover
        raise ImportError(
            "RedisSecondaryTier requires the optional 'redis' dependency. "
            "Install it with: pip install dnsguard[redis]"
        ) from exc


@tier_aliases("redis", "valkey")
class RedisSecondaryTier(SecondaryTier):
    """Redis/Valkey-backed secondary decision tier.

    Brief:
      Stores each verdict as JSON ({"rules_version": n, "verdict": {...}})
      under `<namespace><domain>` with SETEX so Redis expires entries itself.
      flush() removes only keys in the configured namespace.

    Inputs:
      - **config:
          - url (str): Redis URL (e.g. redis://localhost:6379/0). When provided,
            it takes precedence over host/port/db.
          - host (str): Redis host (default '127.0.0.1').
          - port (int): Redis port (default 6379).
          - db (int): Redis DB index (default 0).
          - password (str|None): Optional Redis password.
          - socket_timeout (float): Socket timeout seconds (default 0.25); keeps
            a slow backend from stalling a query thread for long.
          - namespace (str): Key prefix (default 'dnsguard:verdict:').
      - client: Optional pre-built client object (used by tests).

    Outputs:
      - RedisSecondaryTier instance.
    """

    def __init__(self, client: Any = None, **config: object) -> None:
        namespace = config.get("namespace", "dnsguard:verdict:")
        if not isinstance(namespace, str) or not namespace.strip():
            namespace = "dnsguard:verdict:"
        self.namespace: str = str(namespace)

        if client is not None:
            self._client = client
            return

        redis = _import_redis()
        socket_timeout = float(config.get("socket_timeout") or 0.25)

        url = config.get("url")
        if isinstance(url, str) and url.strip():
            self._client = redis.Redis.from_url(
                url.strip(),
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
            return

        password = config.get("password")
        self._client = redis.Redis(
            host=str(config.get("host") or "127.0.0.1"),
            port=int(config.get("port") or 6379),
            db=int(config.get("db") or 0),
            password=str(password) if isinstance(password, str) and password else None,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=True,
        )

    def _key(self, domain: str) -> str:
        return f"{self.namespace}{domain}"

    def get(self, domain: str, version: int = 0) -> Optional[Verdict]:
        try:
            raw = self._client.get(self._key(domain))
        except Exception as exc:
            raise CacheBackendError(f"redis get failed: {exc}") from exc
        if raw is None:
            return None
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            data: Dict[str, Any] = json.loads(raw)
            if int(data["rules_version"]) != int(version):
                return None
            return Verdict.from_dict(data["verdict"])
        except (ValueError, KeyError, TypeError):
            # Corrupted entry: treat as miss.
            logger.debug("Discarding undecodable tier entry for %s", domain)
            return None

    def set(self, domain: str, verdict: Verdict, ttl: int, version: int = 0) -> None:
        payload = {"rules_version": int(version), "verdict": verdict.to_dict()}
        try:
            self._client.setex(self._key(domain), max(1, int(ttl)), json.dumps(payload))
        except Exception as exc:
            raise CacheBackendError(f"redis setex failed: {exc}") from exc

    def flush(self) -> None:
        try:
            keys = list(self._client.scan_iter(match=f"{self.namespace}*", count=500))
            if keys:
                self._client.delete(*keys)
        except Exception as exc:
            raise CacheBackendError(f"redis flush failed: {exc}") from exc


_TIERS = (NullSecondaryTier, RedisSecondaryTier)


def load_secondary_tier(spec: Optional[Dict[str, Any]]) -> SecondaryTier:
    """Brief: Construct a SecondaryTier from a config mapping.

    Inputs:
      - spec: None or {"module": "<alias>", "config": {...}}.

    Outputs:
      - SecondaryTier; NullSecondaryTier when spec is empty.

    Raises:
      - ValueError: for an unknown module alias.
    """

    if not spec:
        return NullSecondaryTier()
    alias = str(spec.get("module") or "none").lower()
    config = dict(spec.get("config") or {})
    for cls in _TIERS:
        if alias in cls.aliases:
            return cls(**config)
    raise ValueError(f"unknown secondary cache tier {alias!r}")
