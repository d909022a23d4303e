"""Shared pytest fixtures and test helpers for acl-socks-proxy tests."""

from __future__ import annotations

import socket
import struct
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from acl_socks_proxy.core.acl import ACL, CountryRecord, is_ipv4_literal
from acl_socks_proxy.core.lib import ForwardProxy, SessionRegistry, SocksProxy
from acl_socks_proxy.core.lib.forward import recv_exact


class FakeCountryLookup:
    """In-memory ``CountryLookup`` keyed by IP literal."""

    def __init__(self, countries: dict[str, str] | None = None) -> None:
        self.countries = dict(countries or {})
        self.calls: list[str] = []

    def lookup(self, ip: str) -> CountryRecord | None:
        self.calls.append(ip)
        iso_code = self.countries.get(ip)
        return CountryRecord(iso_code) if iso_code else None


class StaticResolver:
    """Resolver answering from a fixed table, empty string when unknown."""

    def __init__(self, addresses: dict[str, str] | None = None) -> None:
        self.addresses = dict(addresses or {})
        self.calls: list[str] = []

    def resolve(self, host: str) -> str:
        self.calls.append(host)
        if is_ipv4_literal(host):
            return host
        return self.addresses.get(host, "")


class FakeUpstream:
    """Minimal SOCKS5 server used as a forward proxy; echoes after CONNECT."""

    def __init__(self, status: int = 0) -> None:
        self.status = status
        self.requests: list[tuple[str, int]] = []
        self._sock = socket.create_server(("127.0.0.1", 0))
        self.address = ForwardProxy("127.0.0.1", self._sock.getsockname()[1])
        threading.Thread(target=self._serve, daemon=True).start()

    def _serve(self) -> None:
        while True:
            try:
                conn, _ = self._sock.accept()
            except OSError:
                return
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn: socket.socket) -> None:
        with conn:
            try:
                _, nmethods = recv_exact(conn, 2)
                recv_exact(conn, nmethods)
                conn.sendall(b"\x05\x00")
                _, _, _, addr_type = recv_exact(conn, 4)
                if addr_type == 1:
                    host = socket.inet_ntoa(recv_exact(conn, 4))
                else:
                    host = recv_exact(conn, recv_exact(conn, 1)[0]).decode()
                port = struct.unpack("!H", recv_exact(conn, 2))[0]
                self.requests.append((host, port))
                reply = struct.pack("!BBBB", 5, self.status, 0, 1) + socket.inet_aton("127.0.0.1")
                conn.sendall(reply + struct.pack("!H", 0))
                if self.status:
                    return
                while data := conn.recv(4096):
                    conn.sendall(data)
            except OSError:
                return

    def close(self) -> None:
        self._sock.close()


class EchoServer:
    """TCP server echoing everything back."""

    def __init__(self) -> None:
        self._sock = socket.create_server(("127.0.0.1", 0))
        self.address = self._sock.getsockname()[:2]
        threading.Thread(target=self._serve, daemon=True).start()

    def _serve(self) -> None:
        while True:
            try:
                conn, _ = self._sock.accept()
            except OSError:
                return
            threading.Thread(target=self._echo, args=(conn,), daemon=True).start()

    @staticmethod
    def _echo(conn: socket.socket) -> None:
        with conn:
            try:
                while data := conn.recv(4096):
                    conn.sendall(data)
            except OSError:
                return

    def close(self) -> None:
        self._sock.close()


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def country_lookup() -> FakeCountryLookup:
    return FakeCountryLookup()


@pytest.fixture
def resolver() -> StaticResolver:
    return StaticResolver()


@pytest.fixture
def acl(country_lookup: FakeCountryLookup, resolver: StaticResolver) -> Iterator[ACL]:
    """Rule engine with fake GeoIP and DNS and no rules loaded."""
    engine = ACL(country_lookup, resolver)
    try:
        yield engine
    finally:
        engine.close()


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[[str], Path]:
    """Write config text to a temporary ``rules.conf`` and return its path."""

    def _write(text: str, name: str = "rules.conf") -> Path:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def echo_server() -> Iterator[EchoServer]:
    server = EchoServer()
    try:
        yield server
    finally:
        server.close()


@pytest.fixture
def fake_upstream() -> Iterator[Callable[..., FakeUpstream]]:
    """Factory starting fake forward proxies, closed after the test."""
    started: list[FakeUpstream] = []

    def _start(status: int = 0) -> FakeUpstream:
        upstream = FakeUpstream(status)
        started.append(upstream)
        return upstream

    try:
        yield _start
    finally:
        for upstream in started:
            upstream.close()


@pytest.fixture
def start_socks_server(acl: ACL) -> Iterator[Callable[..., SocksProxy]]:
    """Factory running ``SocksProxy`` on a free loopback port."""
    servers: list[SocksProxy] = []

    def _start(registry: SessionRegistry | None = None) -> SocksProxy:
        server = SocksProxy(("127.0.0.1", 0), acl, registry if registry is not None else SessionRegistry())
        threading.Thread(target=server.serve_forever, kwargs={"poll_interval": 0.05}, daemon=True).start()
        servers.append(server)
        return server

    try:
        yield _start
    finally:
        for server in servers:
            server.shutdown()
            server.server_close()
