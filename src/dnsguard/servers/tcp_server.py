"""
Brief: DNS-over-TCP front end (RFC 1035 2-byte length framing).

Inputs:
  - Connections carrying one or more length-prefixed DNS queries.

Outputs:
  - Length-prefixed responses; dropped queries get no response and the
    connection stays open for the next message.
"""

from __future__ import annotations

import logging
import socket
import socketserver
import struct
from typing import Optional

from ..pipeline import QueryPipeline

logger = logging.getLogger("dnsguard.server")

MAX_MESSAGE_SIZE = 65535


def _read_exact(sock: socket.socket, n: int) -> bytes:
    """Brief: Read exactly n bytes or fewer when the peer closes early."""

    buf = b""
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return buf


class DNSTCPHandler(socketserver.BaseRequestHandler):
    """Serve length-prefixed queries until the peer closes or idles out."""

    pipeline: Optional[QueryPipeline] = None
    idle_timeout: float = 15.0

    def handle(self) -> None:
        sock: socket.socket = self.request
        peer_ip = (
            self.client_address[0] if isinstance(self.client_address, tuple) else "0.0.0.0"
        )
        pipeline = self.pipeline
        if pipeline is None:
            logger.error("TCP handler invoked without a pipeline; closing connection")
            return
        sock.settimeout(self.idle_timeout)

        def _send(wire: bytes) -> None:
            sock.sendall(struct.pack("!H", len(wire)) + wire)

        while True:
            try:
                header = _read_exact(sock, 2)
                if len(header) != 2:
                    return
                (length,) = struct.unpack("!H", header)
                query = _read_exact(sock, length)
                if len(query) != length:
                    return
                pipeline.handle_query(query, peer_ip, _send)
            except (socket.timeout, ConnectionError, OSError) as exc:
                logger.debug("TCP connection from %s closed: %s", peer_ip, exc)
                return


class _ReusableTCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True


class DNSTCPServer:
    """ThreadingTCPServer wrapper mirroring DNSServer.

    Inputs:
      - host: Listen address.
      - port: Listen port (0 picks a free port).
      - pipeline: QueryPipeline that answers queries.
      - idle_timeout: Seconds an idle connection is kept open.
    """

    def __init__(
        self, host: str, port: int, pipeline: QueryPipeline, idle_timeout: float = 15.0
    ) -> None:
        handler = type(
            "BoundDNSTCPHandler",
            (DNSTCPHandler,),
            {"pipeline": pipeline, "idle_timeout": float(idle_timeout)},
        )
        try:
            self.server = _ReusableTCPServer((host, port), handler)
        except PermissionError as e:
            logger.error(
                "Permission denied when binding TCP to %s:%d. Original error: %s",
                host,
                port,
                e,
            )
            raise
        self.server.daemon_threads = True
        logger.debug("DNS TCP server bound to %s:%d", *self.address)

    @property
    def address(self):
        return self.server.server_address[:2]

    def serve_forever(self) -> None:
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:  # pragma: no cover
            pass

    def stop(self) -> None:
        try:
            self.server.shutdown()
        except Exception:  # pragma: no cover
            logger.exception("Error while shutting down TCP server")
        try:
            self.server.server_close()
        except Exception:  # pragma: no cover
            logger.exception("Error while closing TCP server socket")
