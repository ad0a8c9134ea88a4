import socket
from typing import Optional


class UDPError(Exception):
    """
    Brief: DNS-over-UDP transport error.

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


def udp_query(
    host: str,
    port: int,
    query: bytes,
    *,
    timeout_ms: int = 2000,
    source_ip: Optional[str] = None,
) -> bytes:
    """
    Brief: Perform a single UDP DNS exchange; no retries.

    Inputs:
    - host: upstream resolver IPv4 address or hostname
    - port: upstream UDP port
    - query: wire-format DNS query bytes
    - timeout_ms: socket timeout in milliseconds, covering send and receive
    - source_ip: optional source address to bind

    Outputs:
    - bytes: wire-format DNS response

    Raises:
    - UDPError on timeout or any socket failure

    Example:
        >>> try:
        ...     udp_query('127.0.0.1', 9, b'\x00\x01', timeout_ms=50)
        ... except UDPError:
        ...     pass
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            if source_ip:
                s.bind((source_ip, 0))
            s.settimeout(max(1, int(timeout_ms)) / 1000.0)
            s.sendto(query, (host, int(port)))
            data, _ = s.recvfrom(4096)
            return data
    except OSError as e:
        raise UDPError(f"UDP error: {e}") from e
