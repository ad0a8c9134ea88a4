"""dnsguard: filtering DNS proxy with per-device statistics."""

from .pipeline import QueryPipeline

__all__ = ["QueryPipeline"]
