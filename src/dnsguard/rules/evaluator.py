"""Pure rule evaluation: (domain, RuleSnapshot) -> Verdict.

Matching is substring containment: a rule domain matches when it appears
anywhere in the queried domain, so "ads.com" matches "sub.ads.com" and also
"xyzads.com". Wildcard rules are anchored regexes evaluated separately.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from .store import (
    ACTION_ALLOW,
    ACTION_BLOCK,
    MODE_WHITELIST,
    RuleSnapshot,
    WildcardRule,
)


class RuleSource(str, enum.Enum):
    """Where a verdict came from."""

    CATEGORY = "category"
    EXPLICIT_BLOCK = "explicit_block"
    EXPLICIT_ALLOW = "explicit_allow"
    WILDCARD = "wildcard"
    DEFAULT = "default"


@dataclass(frozen=True)
class Verdict:
    """Outcome of rule evaluation for one domain.

    Inputs (constructor):
      - blocked: True when the query must be answered with 0.0.0.0.
      - matched_rule: Rule text that decided the outcome, if any.
      - source: RuleSource tag.
      - category: Category name when source is CATEGORY.

    Example:
      >>> Verdict.block("ads.com").blocked
      True
      >>> Verdict.allow().matched_rule is None
      True
    """

    blocked: bool
    matched_rule: Optional[str] = None
    source: RuleSource = RuleSource.DEFAULT
    category: Optional[str] = None

    @classmethod
    def block(
        cls,
        rule: Optional[str],
        source: RuleSource = RuleSource.EXPLICIT_BLOCK,
        category: Optional[str] = None,
    ) -> "Verdict":
        return cls(True, rule, source, category)

    @classmethod
    def allow(
        cls, rule: Optional[str] = None, source: RuleSource = RuleSource.DEFAULT
    ) -> "Verdict":
        return cls(False, rule, source, None)

    @property
    def action(self) -> str:
        return "blocked" if self.blocked else "allowed"

    def to_dict(self) -> Dict[str, object]:
        return {
            "blocked": self.blocked,
            "matched_rule": self.matched_rule,
            "source": self.source.value,
            "category": self.category,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "Verdict":
        """Brief: Inverse of to_dict(); raises ValueError/KeyError on bad input."""

        return cls(
            blocked=bool(data["blocked"]),
            matched_rule=data.get("matched_rule"),  # type: ignore[arg-type]
            source=RuleSource(data.get("source", RuleSource.DEFAULT.value)),
            category=data.get("category"),  # type: ignore[arg-type]
        )


def _first_contained(domain: str, rules: Iterable[str]) -> Optional[str]:
    for rule in rules:
        if rule and rule in domain:
            return rule
    return None


def _first_wildcard(domain: str, wildcards: Iterable[WildcardRule]) -> Optional[WildcardRule]:
    for rule in wildcards:
        if rule.matches(domain):
            return rule
    return None


def evaluate(domain: str, snapshot: RuleSnapshot) -> Verdict:
    """Brief: Decide whether domain is blocked under snapshot.

    Inputs:
      - domain: Queried name; compared lower-cased.
      - snapshot: RuleSnapshot to evaluate against.

    Outputs:
      - Verdict.

    Blacklist mode blocks on the first hit among active categories, then the
    block set, then the first matching wildcard (when its action is block).
    Whitelist mode blocks everything not contained-matched by the allow set
    or by an allow wildcard; categories and the block set are ignored there.

    Example:
      >>> snap = RuleSnapshot.build(blocked=["ads.com"])
      >>> evaluate("xyzads.com", snap).blocked
      True
    """

    name = domain.lower()

    if snapshot.mode == MODE_WHITELIST:
        hit = _first_contained(name, snapshot.allowed)
        if hit is not None:
            return Verdict.allow(hit, RuleSource.EXPLICIT_ALLOW)
        wild = _first_wildcard(name, snapshot.wildcards)
        if wild is not None and wild.action == ACTION_ALLOW:
            return Verdict.allow(wild.pattern, RuleSource.WILDCARD)
        return Verdict.block(None, RuleSource.DEFAULT)

    for category in sorted(snapshot.active_categories):
        hit = _first_contained(name, snapshot.categories.get(category, ()))
        if hit is not None:
            return Verdict.block(hit, RuleSource.CATEGORY, category)

    hit = _first_contained(name, snapshot.blocked)
    if hit is not None:
        return Verdict.block(hit, RuleSource.EXPLICIT_BLOCK)

    wild = _first_wildcard(name, snapshot.wildcards)
    if wild is not None and wild.action == ACTION_BLOCK:
        return Verdict.block(wild.pattern, RuleSource.WILDCARD)

    return Verdict.allow()
