"""SOCKS protocol handler implementation for the proxy server.

This module implements the server side of SOCKS5 (RFC 1928), providing:
- Protocol negotiation (no-auth only)
- Address type handling (IPv4 and domain names)
- A routing decision per connection from the rule engine
- Direct connections, or tunnels through the session's forward proxy
- Bi-directional data forwarding

Each handler runs on its own session thread, so the blocking DNS lookups done by
the rule engine never stall the accept loop or other sessions.

Example:
    # The handler is created by SocksProxy for every registered session
    server = SocksProxy((host, port), acl, registry)
    server.serve_forever()
"""

import select
import socket
import socketserver
import struct
from typing import TYPE_CHECKING, Final

from loguru import logger

from acl_socks_proxy.core.acl import RuleAction, is_ipv4_literal
from acl_socks_proxy.core.exceptions import ForwardProxyError

from .forward import (
    ADDR_TYPE_DOMAIN,
    ADDR_TYPE_IPV4,
    CONNECT_CMD,
    CONNECT_TIMEOUT,
    NO_ACCEPTABLE_METHODS,
    NO_AUTH,
    RESP_SUCCESS,
    SOCKS_VERSION,
    open_tunnel,
    recv_exact,
)
from .session import Session

if TYPE_CHECKING:
    from .proxy_server import SocksProxy

# Response codes
RESP_GENERAL_FAILURE: Final = 1
RESP_NOT_ALLOWED: Final = 2
RESP_HOST_UNREACHABLE: Final = 4
RESP_CMD_NOT_SUPPORTED: Final = 7
RESP_ADDR_NOT_SUPPORTED: Final = 8

# Default bind address for responses
DEFAULT_BIND_ADDR: Final = "127.0.0.1"

RELAY_IDLE_TIMEOUT: Final = 60  # Seconds
RELAY_BUFFER_SIZE: Final = 4096


class SocksHandler(socketserver.BaseRequestHandler):
    """Handle one SOCKS5 session."""

    server: "SocksProxy"

    def __init__(self, session: Session, client_address: tuple, server: "SocksProxy") -> None:
        self.session = session
        super().__init__(session.transport, client_address, server)

    def _negotiate(self) -> bool:
        """Perform SOCKS5 protocol negotiation."""
        version, nmethods = struct.unpack("!BB", recv_exact(self.request, 2))
        if version != SOCKS_VERSION:
            return False

        methods = recv_exact(self.request, nmethods)
        if NO_AUTH not in methods:
            self.request.sendall(struct.pack("!BB", SOCKS_VERSION, NO_ACCEPTABLE_METHODS))
            return False

        self.request.sendall(struct.pack("!BB", SOCKS_VERSION, NO_AUTH))
        return True

    def _send_response(self, status: int, bind_addr: str = DEFAULT_BIND_ADDR, bind_port: int = 0) -> None:
        """Send SOCKS5 response."""
        if not is_ipv4_literal(bind_addr):
            bind_addr, bind_port = DEFAULT_BIND_ADDR, 0

        response = struct.pack("!BBBB", SOCKS_VERSION, status, 0, ADDR_TYPE_IPV4)
        response += socket.inet_aton(bind_addr) + struct.pack("!H", bind_port)

        self.request.sendall(response)

    def _read_address(self, addr_type: int) -> tuple[str, int] | None:
        """Read DST.ADDR and DST.PORT, or return None for unsupported types."""
        if addr_type == ADDR_TYPE_IPV4:
            host = socket.inet_ntoa(recv_exact(self.request, 4))
        elif addr_type == ADDR_TYPE_DOMAIN:
            domain_len = struct.unpack("!B", recv_exact(self.request, 1))[0]
            host = recv_exact(self.request, domain_len).decode()
        else:
            return None

        port = struct.unpack("!H", recv_exact(self.request, 2))[0]
        return host, port

    def _open_remote(self, action: RuleAction, host: str, port: int) -> socket.socket:
        target = self.session.forward_target
        if action is RuleAction.PROXY and target is not None:
            logger.debug(f"[socks] Session {self.session.id} via {target} to {host}:{port}")
            return open_tunnel(target, host, port)

        remote = socket.create_connection((host, port), timeout=CONNECT_TIMEOUT)
        remote.settimeout(None)
        return remote

    def handle_connect(self, host: str, port: int) -> None:
        """Handle CONNECT command."""
        action = self.server.acl.decide(host)
        if action is RuleAction.REJECT:
            logger.info(f"[socks] Session {self.session.id} rejected {host}:{port}")
            self._send_response(RESP_NOT_ALLOWED)
            return

        try:
            remote = self._open_remote(action, host, port)
        except ForwardProxyError as e:
            logger.warning(f"[socks] {e}")
            self._send_response(RESP_GENERAL_FAILURE)
            return
        except (OSError, UnicodeError) as e:
            logger.debug(f"[socks] Connect to {host}:{port} failed: {e}")
            self._send_response(RESP_HOST_UNREACHABLE)
            return

        with remote:
            bound_addr = remote.getsockname()
            self._send_response(RESP_SUCCESS, bound_addr[0], bound_addr[1])
            self.forward(self.request, remote)

    def handle(self) -> None:
        """Handle incoming SOCKS5 connection."""
        try:
            if not self._negotiate():
                return

            version, cmd, _, addr_type = struct.unpack("!BBBB", recv_exact(self.request, 4))
            destination = self._read_address(addr_type)
            if destination is None:
                self._send_response(RESP_ADDR_NOT_SUPPORTED)
                return

            if version != SOCKS_VERSION or cmd != CONNECT_CMD:
                self._send_response(RESP_CMD_NOT_SUPPORTED)
                return

            self.handle_connect(*destination)
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug(f"[socks] Session {self.session.id} ended: {exc}")

    def forward(self, local: socket.socket, remote: socket.socket) -> None:
        """Forward data between local and remote sockets.

        EOF on one side is passed on as a half-close (``SHUT_WR``) to the other,
        and the opposite direction keeps relaying until it reaches EOF too.
        """
        peers = {local: remote, remote: local}
        while peers:
            r, _, _ = select.select(list(peers), [], [], RELAY_IDLE_TIMEOUT)

            if not r:  # Timeout
                break

            for sock in r:
                other = peers[sock]
                try:
                    data = sock.recv(RELAY_BUFFER_SIZE)
                    if data:
                        other.sendall(data)
                        continue
                    other.shutdown(socket.SHUT_WR)
                except OSError as sock_error:
                    logger.debug(f"[socks] Forward error: {sock_error}")
                    return
                del peers[sock]
