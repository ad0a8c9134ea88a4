"""Decision cache and its optional secondary tiers."""

from .backends import (
    NullSecondaryTier,
    RedisSecondaryTier,
    SecondaryTier,
    load_secondary_tier,
)
from .decision_cache import DecisionCache

__all__ = [
    "DecisionCache",
    "NullSecondaryTier",
    "RedisSecondaryTier",
    "SecondaryTier",
    "load_secondary_tier",
]
