"""Single-hop upstream A-record resolution.

Brief:
  UpstreamResolver forwards allowed names to one upstream server over UDP.
  Each lookup is a single attempt bounded by the configured timeout; failures
  resolve to 0.0.0.0 so the caller can still answer the client.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from dnslib import QTYPE, RCODE, DNSRecord

from .errors import ResolutionError
from .transports.udp import UDPError, udp_query

logger = logging.getLogger(__name__)

UNRESOLVED_ADDRESS = "0.0.0.0"

Transport = Callable[..., bytes]


class UpstreamResolver:
    """Resolve domains to IPv4 addresses through one upstream server.

    Inputs (constructor):
      - host: Upstream server address (default "8.8.8.8").
      - port: Upstream UDP port (default 53).
      - timeout_ms: Per-lookup timeout in milliseconds (default 2000).
      - transport: Callable(host, port, wire, timeout_ms=...) -> bytes;
        defaults to dnsguard.transports.udp.udp_query.

    Outputs:
      - UpstreamResolver instance.

    Example:
      >>> r = UpstreamResolver("192.0.2.53", timeout_ms=100)
      >>> r.resolve("example.com")  # doctest: +SKIP
      '93.184.216.34'
    """

    def __init__(
        self,
        host: str = "8.8.8.8",
        port: int = 53,
        timeout_ms: int = 2000,
        transport: Optional[Transport] = None,
    ) -> None:
        self.host = str(host)
        self.port = int(port)
        self.timeout_ms = max(1, int(timeout_ms))
        self._transport: Transport = transport or udp_query

    def lookup(self, domain: str, timeout_ms: Optional[int] = None) -> str:
        """Brief: Resolve domain or raise.

        Inputs:
          - domain: Normalized domain.
          - timeout_ms: Optional override for this lookup.

        Outputs:
          - str: First A record address in the upstream answer.

        Raises:
          - ResolutionError: on transport failure or timeout, an unparsable or
            mismatched reply, a non-NOERROR rcode, or an answer with no A record.
        """

        budget = self.timeout_ms if timeout_ms is None else max(1, int(timeout_ms))
        try:
            request = DNSRecord.question(domain, "A")
            payload = request.pack()
        except Exception as exc:
            raise ResolutionError(f"{domain}: cannot build upstream query: {exc}") from exc
        try:
            wire = self._transport(self.host, self.port, payload, timeout_ms=budget)
        except UDPError as exc:
            raise ResolutionError(f"{domain}: {exc}") from exc

        try:
            reply = DNSRecord.parse(wire)
        except Exception as exc:
            raise ResolutionError(f"{domain}: malformed upstream reply: {exc}") from exc

        if reply.header.id != request.header.id:
            raise ResolutionError(f"{domain}: upstream reply id mismatch")
        if reply.header.rcode != RCODE.NOERROR:
            raise ResolutionError(
                f"{domain}: upstream returned {RCODE.get(reply.header.rcode)}"
            )
        # CNAME chains arrive in the same answer section; take the first A.
        for rr in reply.rr:
            if rr.rtype == QTYPE.A:
                return str(rr.rdata)
        raise ResolutionError(f"{domain}: upstream answer has no A record")

    def resolve(self, domain: str, timeout_ms: Optional[int] = None) -> str:
        """Brief: Resolve domain, returning 0.0.0.0 on any ResolutionError.

        Inputs:
          - domain: Normalized domain.
          - timeout_ms: Optional override for this lookup.

        Outputs:
          - str: Resolved address or "0.0.0.0".
        """

        try:
            return self.lookup(domain, timeout_ms)
        except ResolutionError as exc:
            logger.warning(
                "Upstream resolution failed via %s:%d: %s", self.host, self.port, exc
            )
            return UNRESOLVED_ADDRESS
