"""End-to-end tests for the SOCKS server over loopback sockets."""

from __future__ import annotations

import os
import signal
import socket
import struct
import threading
from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from conftest import EchoServer, FakeUpstream, wait_for

from acl_socks_proxy.core.acl import ACL, RuleAction
from acl_socks_proxy.core.lib import SessionRegistry, SocksProxy, install_reload_handler, run_server
from acl_socks_proxy.core.lib.forward import encode_address, recv_exact


def socks_connect(
    server: SocksProxy, host: str, port: int, cmd: int = 1, address: bytes | None = None
) -> tuple[socket.socket, int]:
    """Open a client connection, send a request and return the socket and reply status."""
    if address is None:
        address = encode_address(host, port)
    client = socket.create_connection(server.server_address[:2], timeout=5)
    client.sendall(b"\x05\x01\x00")
    assert recv_exact(client, 2) == b"\x05\x00"
    client.sendall(struct.pack("!BBB", 5, cmd, 0) + address)
    _, status, _, _ = recv_exact(client, 4)
    recv_exact(client, 4 + 2)
    return client, status


def socks_connect_domain(server: SocksProxy, name: bytes, port: int) -> tuple[socket.socket, int]:
    """Like ``socks_connect`` but sends ``name`` as the raw domain bytes."""
    return socks_connect(server, "", port, address=struct.pack("!BB", 3, len(name)) + name + struct.pack("!H", port))


class TestSocksProxy:
    def test_reject(self, acl: ACL, start_socks_server: Callable[..., SocksProxy]) -> None:
        acl.load_text("[Rule]\nDOMAIN,blocked.example,REJECT\n")
        registry = SessionRegistry()
        server = start_socks_server(registry)

        client, status = socks_connect(server, "blocked.example", 443)
        with client:
            assert status == 2
            assert client.recv(1) == b""

        assert wait_for(lambda: registry.count == 0)

    def test_direct(
        self, acl: ACL, start_socks_server: Callable[..., SocksProxy], echo_server: EchoServer
    ) -> None:
        acl.load_text("[Rule]\nIP-CIDR,127.0.0.0/8,DIRECT\nFINAL,REJECT\n")
        server = start_socks_server()

        host, port = echo_server.address
        client, status = socks_connect(server, host, port)
        with client:
            assert status == 0
            client.sendall(b"hello")
            assert recv_exact(client, 5) == b"hello"

    def test_proxy_goes_through_forward_target(
        self,
        acl: ACL,
        start_socks_server: Callable[..., SocksProxy],
        fake_upstream: Callable[..., FakeUpstream],
    ) -> None:
        acl.load_text("[Rule]\nDOMAIN-SUFFIX,example.com,Proxy\nFINAL,DIRECT\n")
        upstream = fake_upstream()
        server = start_socks_server(SessionRegistry(forward_proxy=upstream.address))

        client, status = socks_connect(server, "www.example.com", 8443)
        with client:
            assert status == 0
            client.sendall(b"tunnel")
            assert recv_exact(client, 6) == b"tunnel"

        assert upstream.requests == [("www.example.com", 8443)]

    def test_proxy_without_forward_target_connects_directly(
        self, acl: ACL, start_socks_server: Callable[..., SocksProxy], echo_server: EchoServer
    ) -> None:
        acl.load_text("[Rule]\nFINAL,Proxy\n")
        assert acl.decide("127.0.0.1") is RuleAction.PROXY
        server = start_socks_server()

        host, port = echo_server.address
        client, status = socks_connect(server, host, port)
        with client:
            assert status == 0
            client.sendall(b"ping")
            assert recv_exact(client, 4) == b"ping"

    def test_upstream_failure_is_general_failure(
        self,
        acl: ACL,
        start_socks_server: Callable[..., SocksProxy],
        fake_upstream: Callable[..., FakeUpstream],
    ) -> None:
        acl.load_text("[Rule]\nDOMAIN,example.com,Proxy\n")
        upstream = fake_upstream(status=5)
        server = start_socks_server(SessionRegistry(forward_proxy=upstream.address))

        client, status = socks_connect(server, "example.com", 80)
        with client:
            assert status == 1

    def test_unreachable_destination(self, acl: ACL, start_socks_server: Callable[..., SocksProxy]) -> None:
        acl.load_text("[Rule]\nIP-CIDR,127.0.0.0/8,DIRECT\n")
        server = start_socks_server()
        with socket.create_server(("127.0.0.1", 0)) as probe:
            closed_port = probe.getsockname()[1]

        client, status = socks_connect(server, "127.0.0.1", closed_port)
        with client:
            assert status == 4

    def test_unsupported_command(self, start_socks_server: Callable[..., SocksProxy]) -> None:
        registry = SessionRegistry()
        server = start_socks_server(registry)

        client, status = socks_connect(server, "example.com", 80, cmd=2)
        with client:
            assert status == 7
        assert wait_for(lambda: registry.count == 0)

    def test_invalid_domain_through_forward_proxy(
        self,
        acl: ACL,
        start_socks_server: Callable[..., SocksProxy],
        fake_upstream: Callable[..., FakeUpstream],
    ) -> None:
        acl.load_text("[Rule]\nDOMAIN-SUFFIX,.test,Proxy\n")
        upstream = fake_upstream()
        registry = SessionRegistry(forward_proxy=upstream.address)
        server = start_socks_server(registry)

        client, status = socks_connect_domain(server, b"a" * 64 + b".test", 80)
        with client:
            assert status == 1
        assert upstream.requests == []
        assert wait_for(lambda: registry.count == 0)

    def test_invalid_domain_direct(self, acl: ACL, start_socks_server: Callable[..., SocksProxy]) -> None:
        acl.load_text("[Rule]\nDOMAIN-SUFFIX,.test,DIRECT\n")
        server = start_socks_server()

        client, status = socks_connect_domain(server, b"a..test", 80)
        with client:
            assert status == 4

    def test_half_close_keeps_reply_flowing(
        self, acl: ACL, start_socks_server: Callable[..., SocksProxy], echo_server: EchoServer
    ) -> None:
        acl.load_text("[Rule]\nIP-CIDR,127.0.0.0/8,DIRECT\n")
        server = start_socks_server()
        payload = bytes(range(256)) * 128

        host, port = echo_server.address
        client, status = socks_connect(server, host, port)
        with client:
            assert status == 0
            client.sendall(payload)
            client.shutdown(socket.SHUT_WR)

            received = b""
            while chunk := client.recv(65536):
                received += chunk

        assert received == payload

    def test_no_acceptable_auth_method(self, start_socks_server: Callable[..., SocksProxy]) -> None:
        server = start_socks_server()
        with socket.create_connection(server.server_address[:2], timeout=5) as client:
            client.sendall(b"\x05\x01\x02")
            assert recv_exact(client, 2) == b"\x05\xff"

    def test_session_is_tracked_while_open(
        self, acl: ACL, start_socks_server: Callable[..., SocksProxy], echo_server: EchoServer
    ) -> None:
        acl.load_text("[Rule]\nIP-CIDR,127.0.0.0/8,DIRECT\n")
        registry = SessionRegistry()
        server = start_socks_server(registry)

        host, port = echo_server.address
        client, _ = socks_connect(server, host, port)
        with client:
            assert registry.count == 1

        assert wait_for(lambda: registry.count == 0)

    def test_server_close_releases_sessions(
        self, acl: ACL, start_socks_server: Callable[..., SocksProxy], echo_server: EchoServer
    ) -> None:
        acl.load_text("[Rule]\nIP-CIDR,127.0.0.0/8,DIRECT\n")
        registry = SessionRegistry()
        server = start_socks_server(registry)

        host, port = echo_server.address
        client, _ = socks_connect(server, host, port)
        with client:
            server.shutdown()
            server.server_close()
            assert registry.count == 0
            assert client.recv(1) == b""


@pytest.mark.skipif(not hasattr(signal, "SIGHUP"), reason="SIGHUP not available")
def test_sighup_reloads_rules(acl: ACL, write_config: Callable[..., Path]) -> None:
    path = write_config("[Rule]\nDOMAIN,example.com,REJECT\n")
    acl.load(path)
    assert acl.decide("example.com") is RuleAction.REJECT

    previous = signal.getsignal(signal.SIGHUP)
    try:
        assert install_reload_handler(acl, path)
        path.write_text("[Rule]\nDOMAIN,example.com,DIRECT\n", encoding="utf-8")
        os.kill(os.getpid(), signal.SIGHUP)
        assert wait_for(lambda: acl.decide("example.com") is RuleAction.DIRECT)
    finally:
        signal.signal(signal.SIGHUP, previous)


def test_run_server_cleans_up_on_interrupt() -> None:
    acl = MagicMock(spec=ACL)
    registry = MagicMock(spec=SessionRegistry)

    with patch.object(SocksProxy, "serve_forever", side_effect=KeyboardInterrupt):
        run_server("127.0.0.1", 0, acl, registry)

    registry.close_all.assert_called_once()
    acl.close.assert_called_once()


@pytest.mark.skipif(not hasattr(signal, "SIGHUP"), reason="SIGHUP not available")
def test_sighup_during_swap_does_not_block_main_thread(acl: ACL, write_config: Callable[..., Path]) -> None:
    path = write_config("[Rule]\nDOMAIN,example.com,REJECT\n")
    acl.load(path)

    previous = signal.getsignal(signal.SIGHUP)
    try:
        install_reload_handler(acl, path)
        path.write_text("[Rule]\nDOMAIN,example.com,DIRECT\n", encoding="utf-8")
        with acl._swap_lock:
            os.kill(os.getpid(), signal.SIGHUP)
            # reload waits on the held lock; the old rules stay active meanwhile
            assert wait_for(lambda: any(t.name == "acl-reload" for t in threading.enumerate()))
            assert acl.decide("example.com") is RuleAction.REJECT
        assert wait_for(lambda: acl.decide("example.com") is RuleAction.DIRECT)
    finally:
        signal.signal(signal.SIGHUP, previous)
