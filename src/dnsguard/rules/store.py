"""Immutable rule snapshots and the RuleStore that publishes them.

Brief:
  A RuleSnapshot is a frozen point-in-time view of the policy (block/allow
  lists, wildcard rules, categories, mode). RuleStore owns the current
  snapshot; every mutation builds a new snapshot under a writer lock, swaps
  the reference, and synchronously notifies invalidation listeners so caches
  never serve verdicts computed against a superseded policy.

Inputs:
  - Administrative mutations and repository sync snapshots.

Outputs:
  - Consistent RuleSnapshot objects for readers.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from ..errors import ValidationError

logger = logging.getLogger(__name__)

MODE_BLACKLIST = "blacklist"
MODE_WHITELIST = "whitelist"
VALID_MODES = (MODE_BLACKLIST, MODE_WHITELIST)

ACTION_BLOCK = "block"
ACTION_ALLOW = "allow"

DEFAULT_CATEGORIES: Dict[str, List[str]] = {
    "social": ["facebook.com", "instagram.com", "twitter.com", "tiktok.com"],
    "streaming": ["youtube.com", "netflix.com", "twitch.tv", "hulu.com"],
    "gaming": ["steam.com", "epicgames.com", "roblox.com", "minecraft.net"],
    "adult": [],
    "ads": [
        "doubleclick.net",
        "googleadservices.com",
        "googlesyndication.com",
        "adsystem.com",
    ],
}


def normalize_domain(domain: object) -> str:
    """Brief: Normalize an administrative domain argument.

    Inputs:
      - domain: Raw value supplied by a caller.

    Outputs:
      - str: Stripped, lower-cased domain without a trailing dot.

    Raises:
      - ValidationError: when the value is not a string or normalizes to "".

    Example:
      >>> normalize_domain(" Ads.COM. ")
      'ads.com'
    """

    if not isinstance(domain, str):
        raise ValidationError("domain must be a string")
    value = domain.strip().rstrip(".").lower()
    if not value:
        raise ValidationError("domain must not be empty")
    return value


def validate_mode(mode: object) -> str:
    """Brief: Return the canonical mode string or raise ValidationError."""

    value = str(mode or "").strip().lower()
    if value not in VALID_MODES:
        raise ValidationError(
            f"invalid mode {mode!r}; expected one of {', '.join(VALID_MODES)}"
        )
    return value


@dataclass(frozen=True)
class WildcardRule:
    """`*`-patterned domain rule compiled to a full-string-anchored regex.

    Inputs (constructor):
      - pattern: Normalized pattern such as "*.ads.com".
      - action: "block" or "allow".

    Example:
      >>> WildcardRule("*.ads.com", "block").matches("x.ads.com")
      True
      >>> WildcardRule("*.ads.com", "block").matches("ads.com")
      False
    """

    pattern: str
    action: str = ACTION_BLOCK
    regex: "re.Pattern[str]" = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        body = re.escape(self.pattern.lower()).replace(r"\*", ".*")
        object.__setattr__(self, "regex", re.compile(f"^{body}$"))

    def matches(self, domain: str) -> bool:
        return self.regex.match(domain) is not None


@dataclass(frozen=True)
class RuleSnapshot:
    """Immutable policy state evaluated by dnsguard.rules.evaluator.

    Inputs (constructor):
      - blocked / allowed: Sorted tuples of unique normalized domains.
      - wildcards: WildcardRule tuple in insertion order.
      - categories: Read-only mapping of category name -> domains.
      - active_categories: Names of categories currently blocking.
      - mode: "blacklist" or "whitelist".
      - version: Monotonic counter assigned by RuleStore on publish.

    Outputs:
      - RuleSnapshot; use RuleSnapshot.build() to normalize raw inputs.
    """

    blocked: Tuple[str, ...] = ()
    allowed: Tuple[str, ...] = ()
    wildcards: Tuple[WildcardRule, ...] = ()
    categories: Mapping[str, Tuple[str, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    active_categories: frozenset = frozenset()
    mode: str = MODE_BLACKLIST
    version: int = 0

    @classmethod
    def build(
        cls,
        *,
        blocked: Iterable[str] = (),
        allowed: Iterable[str] = (),
        categories: Optional[Mapping[str, Iterable[str]]] = None,
        active_categories: Iterable[str] = (),
        mode: str = MODE_BLACKLIST,
        version: int = 0,
    ) -> "RuleSnapshot":
        """Brief: Normalize raw lists into a snapshot.

        Inputs:
          - blocked / allowed: Domains; entries containing '*' become
            wildcard rules with the matching action.
          - categories: Optional mapping name -> domains (defaults to
            DEFAULT_CATEGORIES).
          - active_categories: Category names to enable.
          - mode: Policy mode.
          - version: Version to stamp.

        Outputs:
          - RuleSnapshot.

        Raises:
          - ValidationError: for empty domains or an invalid mode.
        """

        wildcards: List[WildcardRule] = []
        plain_blocked = set()
        plain_allowed = set()
        for raw in blocked:
            d = normalize_domain(raw)
            if "*" in d:
                rule = WildcardRule(d, ACTION_BLOCK)
                if rule not in wildcards:
                    wildcards.append(rule)
            else:
                plain_blocked.add(d)
        for raw in allowed:
            d = normalize_domain(raw)
            if "*" in d:
                rule = WildcardRule(d, ACTION_ALLOW)
                if rule not in wildcards:
                    wildcards.append(rule)
            else:
                plain_allowed.add(d)

        source = DEFAULT_CATEGORIES if categories is None else categories
        cats: Dict[str, Tuple[str, ...]] = {}
        for name, domains in source.items():
            cats[str(name)] = tuple(
                normalize_domain(d) for d in (domains or []) if str(d).strip()
            )

        return cls(
            blocked=tuple(sorted(plain_blocked)),
            allowed=tuple(sorted(plain_allowed)),
            wildcards=tuple(wildcards),
            categories=MappingProxyType(cats),
            active_categories=frozenset(str(c) for c in active_categories),
            mode=validate_mode(mode),
            version=int(version),
        )

    def same_rules(self, other: "RuleSnapshot") -> bool:
        """Brief: Compare policy content ignoring the version stamp."""

        return self.to_dict() == other.to_dict()

    def to_dict(self) -> Dict[str, object]:
        """Brief: Serialize to the plain rules document used by repositories
        and the admin API."""

        return {
            "blocked": list(self.blocked)
            + [w.pattern for w in self.wildcards if w.action == ACTION_BLOCK],
            "allowed": list(self.allowed)
            + [w.pattern for w in self.wildcards if w.action == ACTION_ALLOW],
            "categories": {k: list(v) for k, v in self.categories.items()},
            "active_categories": sorted(self.active_categories),
            "mode": self.mode,
        }


Listener = Callable[[RuleSnapshot], None]


class RuleStore:
    """Owner of the current RuleSnapshot.

    Inputs (constructor):
      - snapshot: Optional initial snapshot (defaults to an empty blacklist
        policy with DEFAULT_CATEGORIES).

    Outputs:
      - RuleStore instance.

    Readers call snapshot() and keep the returned object for the duration of
    one decision. Writers are serialized on a lock; listeners run while the
    lock is held so invalidation completes before the mutating call returns.

    Example:
      >>> store = RuleStore()
      >>> store.add_blocked("ads.com").blocked
      ('ads.com',)
    """

    def __init__(self, snapshot: Optional[RuleSnapshot] = None) -> None:
        self._lock = threading.Lock()
        self._snapshot = snapshot or RuleSnapshot.build()
        self._listeners: List[Listener] = []

    def snapshot(self) -> RuleSnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def subscribe(self, listener: Listener) -> None:
        """Brief: Register a callable invoked with each newly published snapshot."""

        with self._lock:
            self._listeners.append(listener)

    def _publish_locked(self, new: RuleSnapshot) -> RuleSnapshot:
        new = replace(new, version=self._snapshot.version + 1)
        self._snapshot = new
        for listener in list(self._listeners):
            try:
                listener(new)
            except Exception:  # pragma: no cover - listener bugs must not block writers
                logger.exception("RuleStore listener %r failed", listener)
        logger.debug("Published rule snapshot v%d (mode=%s)", new.version, new.mode)
        return new

    def _mutate(self, fn: Callable[[RuleSnapshot], RuleSnapshot]) -> RuleSnapshot:
        with self._lock:
            return self._publish_locked(fn(self._snapshot))

    def add_blocked(self, domain: str) -> RuleSnapshot:
        d = normalize_domain(domain)

        def _apply(cur: RuleSnapshot) -> RuleSnapshot:
            if "*" in d:
                rule = WildcardRule(d, ACTION_BLOCK)
                if rule in cur.wildcards:
                    return cur
                return replace(cur, wildcards=cur.wildcards + (rule,))
            return replace(cur, blocked=tuple(sorted(set(cur.blocked) | {d})))

        return self._mutate(_apply)

    def remove_blocked(self, domain: str) -> RuleSnapshot:
        d = normalize_domain(domain)

        def _apply(cur: RuleSnapshot) -> RuleSnapshot:
            if "*" in d:
                target = WildcardRule(d, ACTION_BLOCK)
                return replace(
                    cur, wildcards=tuple(w for w in cur.wildcards if w != target)
                )
            return replace(cur, blocked=tuple(x for x in cur.blocked if x != d))

        return self._mutate(_apply)

    def add_allowed(self, domain: str) -> RuleSnapshot:
        d = normalize_domain(domain)

        def _apply(cur: RuleSnapshot) -> RuleSnapshot:
            if "*" in d:
                rule = WildcardRule(d, ACTION_ALLOW)
                if rule in cur.wildcards:
                    return cur
                return replace(cur, wildcards=cur.wildcards + (rule,))
            return replace(cur, allowed=tuple(sorted(set(cur.allowed) | {d})))

        return self._mutate(_apply)

    def remove_allowed(self, domain: str) -> RuleSnapshot:
        d = normalize_domain(domain)

        def _apply(cur: RuleSnapshot) -> RuleSnapshot:
            if "*" in d:
                target = WildcardRule(d, ACTION_ALLOW)
                return replace(
                    cur, wildcards=tuple(w for w in cur.wildcards if w != target)
                )
            return replace(cur, allowed=tuple(x for x in cur.allowed if x != d))

        return self._mutate(_apply)

    def toggle_category(self, name: str) -> RuleSnapshot:
        """Brief: Flip whether a known category is actively blocking.

        Raises:
          - ValidationError: for an unknown category name.
        """

        key = str(name or "").strip()

        def _apply(cur: RuleSnapshot) -> RuleSnapshot:
            if key not in cur.categories:
                raise ValidationError(f"unknown category {name!r}")
            if key in cur.active_categories:
                active = cur.active_categories - {key}
            else:
                active = cur.active_categories | {key}
            return replace(cur, active_categories=frozenset(active))

        return self._mutate(_apply)

    def set_mode(self, mode: str) -> RuleSnapshot:
        value = validate_mode(mode)
        return self._mutate(lambda cur: replace(cur, mode=value))

    def replace(self, snapshot: RuleSnapshot) -> RuleSnapshot:
        """Brief: Publish an externally built snapshot (repository sync)."""

        if not isinstance(snapshot, RuleSnapshot):
            raise ValidationError("replace() requires a RuleSnapshot")
        return self._mutate(lambda _cur: snapshot)
