"""Rule snapshots, evaluation, and repository synchronization."""

from .evaluator import RuleSource, Verdict, evaluate
from .store import (
    MODE_BLACKLIST,
    MODE_WHITELIST,
    RuleSnapshot,
    RuleStore,
    WildcardRule,
    normalize_domain,
)

__all__ = [
    "MODE_BLACKLIST",
    "MODE_WHITELIST",
    "RuleSnapshot",
    "RuleSource",
    "RuleStore",
    "Verdict",
    "WildcardRule",
    "evaluate",
    "normalize_domain",
]
