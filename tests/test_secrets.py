# Enclave Bridge
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for the bootstrap secret channel."""

import logging
import socket
import threading
import time

import pytest

from enclave_bridge.endpoints import Endpoint
from enclave_bridge.errors import MalformedSecretPayload, SecretChannelError, SecretChannelTimeout
from enclave_bridge.guest.secrets import materialize, parse_bundle, receive_once, send_bundle


def _find_free_port() -> int:
    """Find an available TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


class _Receiver:
    """Runs receive_once in a thread and keeps its outcome."""

    def __init__(self, endpoint, **kwargs):
        self.result = None
        self.error = None
        self._thread = threading.Thread(target=self._run, args=(endpoint,), kwargs=kwargs, daemon=True)
        self._thread.start()

    def _run(self, endpoint, **kwargs):
        try:
            self.result = receive_once(endpoint, **kwargs)
        except Exception as exc:
            self.error = exc

    def join(self):
        self._thread.join(timeout=10)
        assert not self._thread.is_alive()


def _send_raw(endpoint: Endpoint, body: bytes) -> None:
    deadline = time.time() + 5
    while True:
        try:
            sock = socket.create_connection(endpoint.address, timeout=5)
            break
        except ConnectionRefusedError:
            if time.time() > deadline:
                raise
            time.sleep(0.02)
    with sock:
        sock.sendall(body)
        sock.shutdown(socket.SHUT_WR)


@pytest.fixture
def endpoint():
    return Endpoint.tcp("127.0.0.1", _find_free_port())


class TestReceiveOnce:
    """Receiving one bundle over a real socket."""

    def test_two_key_example(self, endpoint):
        receiver = _Receiver(endpoint, timeout=5)
        _send_raw(endpoint, b'{"API_KEY":"abc","REGION":"us-east-1"}')
        receiver.join()
        assert receiver.error is None
        assert receiver.result == {"API_KEY": "abc", "REGION": "us-east-1"}

    def test_malformed_json(self, endpoint):
        receiver = _Receiver(endpoint, timeout=5)
        _send_raw(endpoint, b'{"API_KEY": "abc",')
        receiver.join()
        assert isinstance(receiver.error, MalformedSecretPayload)

    def test_oversized_body(self, endpoint):
        receiver = _Receiver(endpoint, timeout=5, max_bytes=64)
        _send_raw(endpoint, b'{"K":"' + b"x" * 1000 + b'"}')
        receiver.join()
        assert isinstance(receiver.error, MalformedSecretPayload)

    def test_timeout(self, endpoint):
        with pytest.raises(SecretChannelTimeout):
            receive_once(endpoint, timeout=0.2)

    def test_accepts_only_one_connection(self, endpoint):
        receiver = _Receiver(endpoint, timeout=5)
        _send_raw(endpoint, b'{"A":"1"}')
        receiver.join()
        with pytest.raises(ConnectionRefusedError):
            socket.create_connection(endpoint.address, timeout=1)

    def test_port_in_use(self, endpoint):
        holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        holder.bind(endpoint.address)
        holder.listen(1)
        try:
            with pytest.raises(SecretChannelError):
                receive_once(endpoint, timeout=1)
        finally:
            holder.close()

    def test_values_never_logged(self, endpoint, caplog):
        caplog.set_level(logging.DEBUG, logger="enclave_bridge")
        receiver = _Receiver(endpoint, timeout=5)
        _send_raw(endpoint, b'{"API_KEY":"s3cr3t-value"}')
        receiver.join()
        assert receiver.result == {"API_KEY": "s3cr3t-value"}
        assert "s3cr3t-value" not in caplog.text
        assert "1 key" in caplog.text


class TestParseBundle:
    """Body validation."""

    def test_scalars_become_strings(self):
        bundle = parse_bundle(b'{"PORT": 3000, "RATIO": 0.5, "DEBUG": true, "OFF": false, "S": "x"}')
        assert bundle == {"PORT": "3000", "RATIO": "0.5", "DEBUG": "true", "OFF": "false", "S": "x"}

    @pytest.mark.parametrize(
        "body",
        [
            b"",
            b"[1, 2]",
            b'"just a string"',
            b'{"NESTED": {"a": 1}}',
            b'{"LIST": [1]}',
            b'{"NULL": null}',
            b'{"1BAD": "x"}',
            b'{"has space": "x"}',
            b"\xff\xfe{}",
        ],
    )
    def test_rejected(self, body):
        with pytest.raises(MalformedSecretPayload):
            parse_bundle(body)

    def test_error_does_not_echo_body(self):
        with pytest.raises(MalformedSecretPayload) as exc_info:
            parse_bundle(b'{"API_KEY": "s3cr3t-value", oops}')
        assert "s3cr3t" not in str(exc_info.value)

    def test_empty_object(self):
        assert parse_bundle(b"{}") == {}


class TestMaterialize:
    """Exporting the bundle."""

    def test_exports_and_clears(self):
        env = {"EXISTING": "1"}
        bundle = {"B": "2", "A": "1"}
        names = materialize(bundle, env)
        assert names == ["A", "B"]
        assert env == {"EXISTING": "1", "A": "1", "B": "2"}
        assert bundle == {}


class TestSendBundle:
    """Host-side delivery."""

    def test_round_trip(self, endpoint):
        receiver = _Receiver(endpoint, timeout=5)
        sent = send_bundle(endpoint, {"API_KEY": "abc", "RETRIES": 3}, timeout=5, backoff_s=0.05)
        receiver.join()
        assert sent > 0
        assert receiver.result == {"API_KEY": "abc", "RETRIES": "3"}

    def test_invalid_bundle_rejected_before_sending(self, endpoint):
        with pytest.raises(MalformedSecretPayload):
            send_bundle(endpoint, {"NESTED": {"a": 1}}, attempts=1)
        with pytest.raises(MalformedSecretPayload):
            send_bundle(endpoint, ["not", "a", "dict"], attempts=1)

    def test_nobody_listening(self, endpoint):
        with pytest.raises(SecretChannelError):
            send_bundle(endpoint, {"A": "1"}, timeout=1, attempts=2, backoff_s=0.01)
