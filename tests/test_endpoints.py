# Enclave Bridge
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for endpoint parsing and bind-with-retry."""

import socket

import pytest

from enclave_bridge.endpoints import (
    VMADDR_CID_ANY,
    VSOCK_PARENT_CID,
    Endpoint,
    bind_listener,
    bind_retry_window,
    is_port_free,
    wait_port_released,
)
from enclave_bridge.errors import BindFailed, ConfigError, PortInUse


def _find_free_port() -> int:
    """Find an available TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


def _occupy(port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", port))
    sock.listen(1)
    return sock


class TestEndpointParsing:
    """Tests for Endpoint text form and validation."""

    def test_parse_tcp(self):
        ep = Endpoint.parse("tcp:0.0.0.0:443")
        assert ep == Endpoint("tcp", "0.0.0.0", 443)
        assert str(ep) == "tcp:0.0.0.0:443"

    def test_parse_vsock(self):
        ep = Endpoint.parse("vsock:16:3000")
        assert ep.is_vsock is True
        assert ep.address == (16, 3000)

    def test_vsock_aliases(self):
        assert Endpoint.vsock("any", 8080).address == (VMADDR_CID_ANY, 8080)
        assert Endpoint.vsock("parent", 8443).address == (VSOCK_PARENT_CID, 8443)
        assert Endpoint.vsock("host", 8443).address == (VSOCK_PARENT_CID, 8443)

    def test_parse_ipv6_brackets(self):
        ep = Endpoint.parse("tcp:[::1]:8080")
        assert ep.host == "::1"
        assert ep.socket_family == socket.AF_INET6

    def test_parse_uppercase_family(self):
        assert Endpoint.parse("TCP:127.0.0.1:80").family == "tcp"

    @pytest.mark.parametrize(
        "text",
        ["", "tcp", "tcp:80", "udp:0.0.0.0:53", "tcp:host:notaport", "tcp:host:70000", "vsock:abc:1"],
    )
    def test_parse_rejects_invalid(self, text):
        with pytest.raises(ConfigError):
            Endpoint.parse(text)

    def test_signature_is_family_and_port(self):
        assert Endpoint.parse("tcp:0.0.0.0:443").signature() == "tcp:443"
        assert Endpoint.parse("tcp:127.0.0.1:443").signature() == "tcp:443"
        assert Endpoint.parse("vsock:any:8443").signature() == "vsock:8443"


class TestBinding:
    """Tests for bounded bind retry."""

    def test_bind_listener_free_port(self):
        port = _find_free_port()
        sock = bind_listener(Endpoint.tcp("127.0.0.1", port), attempts=1)
        try:
            assert sock.getsockname()[1] == port
        finally:
            sock.close()

    def test_bind_port_in_use_after_retries(self):
        port = _find_free_port()
        holder = _occupy(port)
        try:
            with pytest.raises(PortInUse):
                bind_listener(Endpoint.tcp("127.0.0.1", port), attempts=2, backoff_s=0.01)
        finally:
            holder.close()

    def test_bind_bad_address_is_bind_failed(self):
        # 192.0.2.0/24 is TEST-NET-1, never assigned to a local interface
        with pytest.raises(BindFailed):
            bind_listener(Endpoint.tcp("192.0.2.1", _find_free_port()), attempts=3)

    def test_retry_window(self):
        assert bind_retry_window(1, 0.2) == 0.0
        assert bind_retry_window(3, 0.1) == pytest.approx(0.3)
        # Each sleep is capped at 2 seconds
        assert bind_retry_window(6, 1.0) == pytest.approx(1.0 + 2.0 + 2.0 + 2.0 + 2.0)


class TestPortRelease:
    """Tests for the explicit port-released check."""

    def test_free_port(self):
        assert is_port_free(Endpoint.tcp("127.0.0.1", _find_free_port())) is True

    def test_held_port(self):
        port = _find_free_port()
        holder = _occupy(port)
        try:
            ep = Endpoint.tcp("127.0.0.1", port)
            assert is_port_free(ep) is False
            assert wait_port_released(ep, attempts=2, backoff_s=0.01) is False
        finally:
            holder.close()
        assert wait_port_released(ep, attempts=5, backoff_s=0.01) is True
