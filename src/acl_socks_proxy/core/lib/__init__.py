"""Core proxy library components."""

from .forward import ForwardProxy, open_tunnel
from .proxy_server import SocksProxy, install_reload_handler, run_server
from .session import Session, SessionRegistry
from .socks_handler import SocksHandler

__all__ = [
    "ForwardProxy",
    "install_reload_handler",
    "open_tunnel",
    "run_server",
    "Session",
    "SessionRegistry",
    "SocksHandler",
    "SocksProxy",
]
