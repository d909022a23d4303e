"""Session tracking for the SOCKS proxy server.

This module keeps the set of live client sessions:
- A session is created by the accept loop for every inbound connection
- Each session may carry the upstream forward proxy it should be chained through
- The session is removed, and its socket released, when the client disconnects

Insertions and removals happen on different threads (the accept loop and the
per-session threads) and are serialized by a single lock. The live count is read
without locking and is only used for logging and diagnostics.

Example:
    registry = SessionRegistry(forward_proxy=ForwardProxy("10.0.0.2", 1080))

    session = registry.on_accept(client_socket, client_address)
    try:
        serve(session)
    finally:
        registry.on_disconnect(session)
"""

import contextlib
import itertools
import socket
import threading
from dataclasses import dataclass, field

from loguru import logger

from .forward import ForwardProxy

_session_ids = itertools.count(1)


@dataclass(eq=False)
class Session:
    """A client connection owned by a ``SessionRegistry``.

    Sessions compare and hash by identity.

    Attributes:
        transport: Accepted client socket
        client_address: Peer address of the client
        forward_target: Upstream proxy for ``Proxy`` decisions, if any
        id: Process-unique session number
    """

    transport: socket.socket
    client_address: tuple | None = None
    forward_target: ForwardProxy | None = None
    id: int = field(default_factory=lambda: next(_session_ids))

    def close(self) -> None:
        """Shut down and close the client socket."""
        with contextlib.suppress(OSError):
            self.transport.shutdown(socket.SHUT_RDWR)
        with contextlib.suppress(OSError):
            self.transport.close()

    def __repr__(self) -> str:
        return f"Session(id={self.id}, client={self.client_address}, forward={self.forward_target})"


class SessionRegistry:
    """Thread-safe set of live sessions."""

    def __init__(self, forward_proxy: ForwardProxy | None = None) -> None:
        """Initialize an empty registry.

        Args:
            forward_proxy: Upstream proxy attached to every new session
        """
        self.forward_proxy = forward_proxy
        self._sessions: set[Session] = set()
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        """Number of live sessions."""
        return len(self._sessions)

    def __len__(self) -> int:
        return self.count

    def __contains__(self, session: object) -> bool:
        return session in self._sessions

    def snapshot(self) -> frozenset[Session]:
        """Return a copy of the live sessions."""
        with self._lock:
            return frozenset(self._sessions)

    def on_accept(
        self,
        transport: socket.socket,
        client_address: tuple | None = None,
        forward_target: ForwardProxy | None = None,
    ) -> Session:
        """Register a newly accepted connection.

        Args:
            transport: Accepted client socket
            client_address: Peer address of the client
            forward_target: Upstream proxy for this session
                (default: the registry's ``forward_proxy``)

        Returns:
            Session: The registered session
        """
        session = Session(
            transport=transport,
            client_address=client_address,
            forward_target=forward_target or self.forward_proxy,
        )
        with self._lock:
            self._sessions.add(session)
            count = len(self._sessions)
        logger.info(f"[socks] New session {session.id}, count:{count}")
        return session

    def on_disconnect(self, session: Session) -> None:
        """Remove a session and release its socket.

        Removing a session that is not registered does nothing.
        """
        with self._lock:
            if session not in self._sessions:
                return
            self._sessions.remove(session)
            count = len(self._sessions)
        session.close()
        logger.info(f"[socks] Disconnect session {session.id}, count:{count}")

    def close_all(self) -> None:
        """Disconnect every live session."""
        with self._lock:
            sessions, self._sessions = self._sessions, set()
        for session in sessions:
            session.close()
        if sessions:
            logger.info(f"[socks] Closed {len(sessions)} sessions")
