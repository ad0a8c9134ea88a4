"""Exception hierarchy shared by the dnsguard query pipeline.

Brief:
  Every error raised by dnsguard derives from DnsGuardError so callers at the
  server boundary can catch one type. Each subclass maps to a single handling
  policy in the pipeline (drop, fail-open, or reject to the caller).
"""

from __future__ import annotations


class DnsGuardError(Exception):
    """Base class for dnsguard errors."""


class ParseError(DnsGuardError):
    """Brief: Inbound datagram could not be decoded as a DNS query.

    The pipeline drops the datagram without replying.
    """


class ResolutionError(DnsGuardError):
    """Brief: Upstream lookup timed out, failed, or returned no A record."""


class PersistenceError(DnsGuardError):
    """Brief: The rule repository could not be read or written."""


class CacheBackendError(DnsGuardError):
    """Brief: The secondary decision-cache tier is unreachable or misbehaving."""


class ValidationError(DnsGuardError, ValueError):
    """Brief: An administrative call was rejected before mutating state.

    Inputs:
      - message: Human-readable reason (e.g. "domain must not be empty").

    Outputs:
      - Exception instance; also a ValueError so generic callers can catch it.
    """
