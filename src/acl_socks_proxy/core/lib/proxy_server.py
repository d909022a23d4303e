"""SOCKS proxy server with rule-based routing.

This module implements the accept loop of the proxy server:
- Every accepted connection is registered as a session
- Each session is served on its own daemon thread
- Sessions leave the registry when their thread finishes
- Rules can be reloaded with SIGHUP while the server is running

The rule engine and the session registry are created by the caller and injected,
so several servers in one process can use different rules.

Example:
    acl = ACL.from_database("GeoLite2-Country.mmdb")
    acl.load("rules.conf")
    run_server("127.0.0.1", 1080, acl, SessionRegistry(), config_path="rules.conf")
"""

import contextlib
import signal
import socket
import socketserver
import threading
from os import PathLike

from loguru import logger

from acl_socks_proxy.core.acl import ACL

from .session import Session, SessionRegistry
from .socks_handler import SocksHandler


class SocksProxy(socketserver.TCPServer):
    """SOCKS proxy server implementation."""

    allow_reuse_address = True
    daemon_threads = True
    request_queue_size = 100

    def __init__(
        self,
        server_address: tuple[str, int],
        acl: ACL,
        registry: SessionRegistry,
        *,
        bind_and_activate: bool = True,
    ) -> None:
        """Initialize the server.

        Args:
            server_address: ``(host, port)`` to listen on, port 0 picks a free one
            acl: Rule engine consulted for every CONNECT
            registry: Registry tracking the live sessions
            bind_and_activate: Bind and listen immediately
        """
        self.acl = acl
        self.registry = registry
        super().__init__(server_address, SocksHandler, bind_and_activate)

    def process_request(self, request: socket.socket, client_address: tuple) -> None:
        """Register the accepted connection and serve it on a new thread."""
        session = self.registry.on_accept(request, client_address)
        thread = threading.Thread(
            target=self.process_session,
            args=(session, client_address),
            name=f"socks-session-{session.id}",
            daemon=self.daemon_threads,
        )
        thread.start()

    def process_session(self, session: Session, client_address: tuple) -> None:
        """Run the handler for one session, then drop it from the registry."""
        try:
            SocksHandler(session, client_address, self)
        except Exception:
            logger.exception(f"[socks] Session {session.id} failed")
        finally:
            self.registry.on_disconnect(session)

    def server_close(self) -> None:
        super().server_close()
        self.registry.close_all()


def install_reload_handler(acl: ACL, config_path: str | PathLike[str]) -> bool:
    """Reload rules from ``config_path`` on SIGHUP.

    Must be called from the main thread. The signal handler only starts a
    reload thread and takes no locks itself.

    Returns:
        bool: False on platforms without SIGHUP
    """
    if not hasattr(signal, "SIGHUP"):
        return False

    def _load() -> None:
        logger.info(f"[acl] SIGHUP received, reloading {config_path}")
        acl.load(config_path)

    def _reload(_signum: int, _frame: object) -> None:
        threading.Thread(target=_load, name="acl-reload", daemon=True).start()

    signal.signal(signal.SIGHUP, _reload)
    return True


def run_server(
    host: str,
    port: int,
    acl: ACL,
    registry: SessionRegistry,
    config_path: str | PathLike[str] | None = None,
) -> None:
    """Serve SOCKS5 connections until interrupted.

    Args:
        host: Host address to bind to
        port: Port number to listen on
        acl: Rule engine with rules already loaded
        registry: Session registry
        config_path: Rule file reloaded on SIGHUP
    """
    server: SocksProxy | None = None
    try:
        server = SocksProxy((host, port), acl, registry)
        if config_path is not None:
            install_reload_handler(acl, config_path)
        bound_host, bound_port = server.server_address[:2]
        logger.info(f"[socks] Start socks proxy on {bound_host}:{bound_port} ok")
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("[socks] Stop socks proxy server")
    finally:
        if server:
            with contextlib.suppress(OSError):
                server.server_close()
                logger.info("Server closed")
        acl.close()
