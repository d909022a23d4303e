"""Upstream SOCKS5 forward proxy support.

Sessions whose destination is routed to ``Proxy`` are tunneled through the
configured forward proxy: we connect to it as a SOCKS5 client, negotiate no-auth
and issue CONNECT for the original destination.
"""

import socket
import struct
from dataclasses import dataclass
from typing import Final

from acl_socks_proxy.core.acl.resolver import is_ipv4_literal
from acl_socks_proxy.core.exceptions import ForwardProxyError

# SOCKS protocol constants
SOCKS_VERSION: Final = 5
NO_AUTH: Final = 0
NO_ACCEPTABLE_METHODS: Final = 0xFF
CONNECT_CMD: Final = 1
ADDR_TYPE_IPV4: Final = 1
ADDR_TYPE_DOMAIN: Final = 3
ADDR_TYPE_IPV6: Final = 4
RESP_SUCCESS: Final = 0

MAX_DOMAIN_LENGTH: Final = 255
CONNECT_TIMEOUT: Final = 10.0  # Seconds


@dataclass(frozen=True)
class ForwardProxy:
    """Address of an upstream SOCKS5 proxy.

    Attributes:
        host: Hostname or IP of the upstream proxy
        port: TCP port of the upstream proxy
    """

    host: str
    port: int

    @classmethod
    def parse(cls, value: str) -> "ForwardProxy":
        """Parse ``host:port`` (``[v6addr]:port`` for IPv6).

        Raises:
            ValueError: If the value has no host or a port outside 1-65535
        """
        host, sep, port = value.strip().rpartition(":")
        host = host.strip("[]")
        if not sep or not host or not port.isdigit() or not 0 < int(port) < 65536:
            msg = f"Invalid forward proxy address {value!r}, expected host:port"
            raise ValueError(msg)
        return cls(host, int(port))

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


def recv_exact(sock: socket.socket, size: int) -> bytes:
    """Read exactly ``size`` bytes.

    Raises:
        ConnectionError: If the peer closes the connection first
    """
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            msg = f"Connection closed after {len(data)} of {size} bytes"
            raise ConnectionError(msg)
        data += chunk
    return data


def encode_address(host: str, port: int) -> bytes:
    """Encode a destination as SOCKS5 ``ATYP | DST.ADDR | DST.PORT``."""
    if is_ipv4_literal(host):
        return struct.pack("!B", ADDR_TYPE_IPV4) + socket.inet_aton(host) + struct.pack("!H", port)

    try:
        name = host.encode("idna")
    except UnicodeError as e:
        msg = f"Invalid domain for SOCKS5: {host!r}: {e}"
        raise ForwardProxyError(msg) from e
    if len(name) > MAX_DOMAIN_LENGTH:
        msg = f"Domain too long for SOCKS5: {host}"
        raise ForwardProxyError(msg)
    return struct.pack("!BB", ADDR_TYPE_DOMAIN, len(name)) + name + struct.pack("!H", port)


def _skip_bound_address(sock: socket.socket, addr_type: int) -> None:
    if addr_type == ADDR_TYPE_IPV4:
        recv_exact(sock, 4 + 2)
    elif addr_type == ADDR_TYPE_IPV6:
        recv_exact(sock, 16 + 2)
    elif addr_type == ADDR_TYPE_DOMAIN:
        length = struct.unpack("!B", recv_exact(sock, 1))[0]
        recv_exact(sock, length + 2)
    else:
        msg = f"Forward proxy replied with unknown address type {addr_type}"
        raise ForwardProxyError(msg)


def open_tunnel(
    target: ForwardProxy, host: str, port: int, timeout: float = CONNECT_TIMEOUT
) -> socket.socket:
    """Open a connection to ``host:port`` through the forward proxy.

    Args:
        target: Upstream SOCKS5 proxy
        host: Destination hostname or IPv4 literal
        port: Destination port
        timeout: Connect and handshake timeout in seconds

    Returns:
        socket.socket: Connected socket, ready to relay application data

    Raises:
        ForwardProxyError: If the upstream proxy rejects the handshake or CONNECT
        OSError: If the upstream proxy cannot be reached
    """
    remote = socket.create_connection((target.host, target.port), timeout=timeout)
    try:
        remote.sendall(struct.pack("!BBB", SOCKS_VERSION, 1, NO_AUTH))
        version, method = struct.unpack("!BB", recv_exact(remote, 2))
        if version != SOCKS_VERSION or method != NO_AUTH:
            msg = f"Forward proxy {target} refused no-auth negotiation"
            raise ForwardProxyError(msg)

        request = struct.pack("!BBB", SOCKS_VERSION, CONNECT_CMD, 0) + encode_address(host, port)
        remote.sendall(request)
        version, status, _, addr_type = struct.unpack("!BBBB", recv_exact(remote, 4))
        if version != SOCKS_VERSION or status != RESP_SUCCESS:
            msg = f"Forward proxy {target} failed CONNECT to {host}:{port} with status {status}"
            raise ForwardProxyError(msg)
        _skip_bound_address(remote, addr_type)

        remote.settimeout(None)
        return remote
    except Exception:
        remote.close()
        raise
