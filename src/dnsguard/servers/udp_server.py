"""DNS-over-UDP front end backed by a QueryPipeline."""

from __future__ import annotations

import logging
import socketserver
from typing import Optional

from ..pipeline import QueryPipeline

logger = logging.getLogger("dnsguard.server")


class DNSUDPHandler(socketserver.BaseRequestHandler):
    """
    Handles one UDP datagram per instance.

    The pipeline is a class attribute bound by DNSServer on a per-server
    subclass, so several servers in one process never share handler state.
    Malformed and non-A datagrams get no reply; the client times out.
    """

    pipeline: Optional[QueryPipeline] = None

    def handle(self) -> None:
        data, sock = self.request
        client_ip = (
            self.client_address[0] if isinstance(self.client_address, tuple) else "0.0.0.0"
        )
        pipeline = self.pipeline
        if pipeline is None:
            logger.error("UDP handler invoked without a pipeline; dropping datagram")
            return

        def _send(wire: bytes) -> None:
            sock.sendto(wire, self.client_address)

        try:
            pipeline.handle_query(data, client_ip, _send)
        except Exception:  # pragma: no cover - outermost guard per datagram
            logger.exception("Unhandled error processing query from %s", client_ip)


class DNSServer:
    """A UDP DNS server wrapper around ThreadingUDPServer.

    Inputs:
      - host: Listen address.
      - port: Listen port (0 picks a free port).
      - pipeline: QueryPipeline that answers queries.

    Outputs:
      - DNSServer; run serve_forever() on a thread and stop() to shut down.

    Example:
        >>> import threading
        >>> server = DNSServer("127.0.0.1", 0, pipeline)
        >>> threading.Thread(target=server.serve_forever, daemon=True).start()
        >>> server.stop()
    """

    def __init__(self, host: str, port: int, pipeline: QueryPipeline) -> None:
        handler = type("BoundDNSUDPHandler", (DNSUDPHandler,), {"pipeline": pipeline})
        try:
            self.server = socketserver.ThreadingUDPServer((host, port), handler)
        except PermissionError as e:
            logger.error(
                "Permission denied when binding to %s:%d. Try a port >1024 or run with elevated privileges. Original error: %s",
                host,
                port,
                e,
            )
            raise

        # Ensure request handler threads do not block shutdown
        self.server.daemon_threads = True
        logger.debug("DNS UDP server bound to %s:%d", *self.address)

    @property
    def address(self):
        return self.server.server_address[:2]

    def serve_forever(self) -> None:
        """Run the UDP loop until stop() is called or KeyboardInterrupt."""
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:  # pragma: no cover
            pass

    def stop(self) -> None:
        """Request graceful shutdown and close the underlying UDP socket."""
        try:
            self.server.shutdown()
        except Exception:  # pragma: no cover
            logger.exception("Error while shutting down UDP server")
        try:
            self.server.server_close()
        except Exception:  # pragma: no cover
            logger.exception("Error while closing UDP server socket")
