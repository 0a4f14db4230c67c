# Enclave Bridge
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Enclave Bridge.
#
# Enclave Bridge is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Relay server -- one listener, one target, many connections.

  client --TCP/vsock--> RelayServer(listen) --TCP/vsock--> target

Every accepted connection runs on its own thread. The handler opens a
connection to the target and copies bytes both ways until both directions
reach EOF, either side errors, or the direction left open after one
side's EOF has been idle for ``linger_s``. Bytes are never
parsed, buffered beyond one read, or framed.

Concurrency is bounded per listener: a connection accepted while
``max_connections`` are already in flight is closed immediately and
recorded as ``rejected``. An error on one connection never reaches the
listener or sibling connections.
"""

from __future__ import annotations

import logging
import select
import socket
import socketserver
import threading
import time
from typing import Any

from ..endpoints import Endpoint, bind_with_retry, connect
from .events import RelayEvent, RelayEventLog

logger = logging.getLogger("enclave_bridge.relay.server")

# Buffer size for a single relay read
_RELAY_BUFSIZE = 65536
# How often an idle direction checks whether its peer has hit EOF
_POLL_S = 0.1
# Idle time allowed to the remaining direction after one side's EOF (socat -t)
DEFAULT_LINGER_S = 0.5


def _format_peer(address: Any) -> str:
    if isinstance(address, tuple) and len(address) >= 2:
        return f"{address[0]}:{address[1]}"
    return str(address)


def _shutdown_quietly(sock: socket.socket, how: int) -> None:
    try:
        sock.shutdown(how)
    except OSError:
        pass


def relay(
    client: socket.socket,
    upstream: socket.socket,
    linger_s: float = DEFAULT_LINGER_S,
) -> tuple[int, int]:
    """Copy bytes between two connected sockets until both sides are done.

    EOF on one side is propagated as a half-close to the other side, so a
    request/response peer still receives its reply. The remaining direction
    then stays open only while it keeps moving data: once it has been idle
    for ``linger_s`` both sockets are shut down. Any socket error tears down
    both directions.

    Returns (bytes client->upstream, bytes upstream->client).
    """
    counts = {"in": 0, "out": 0}
    half_closed = threading.Event()
    poll_s = min(_POLL_S, max(linger_s, 0.01))

    def _pump(src: socket.socket, dst: socket.socket, key: str) -> None:
        deadline: float | None = None
        try:
            while True:
                readable, _, _ = select.select([src], [], [], poll_s)
                if not readable:
                    if not half_closed.is_set():
                        continue
                    now = time.monotonic()
                    if deadline is None:
                        deadline = now + linger_s
                    elif now >= deadline:
                        logger.debug("Relay %s direction idle after peer EOF, closing", key)
                        _shutdown_quietly(src, socket.SHUT_RDWR)
                        _shutdown_quietly(dst, socket.SHUT_RDWR)
                        return
                    continue
                data = src.recv(_RELAY_BUFSIZE)
                if not data:
                    break
                dst.sendall(data)
                counts[key] += len(data)
                deadline = None
            _shutdown_quietly(dst, socket.SHUT_WR)
            half_closed.set()
        except OSError as exc:
            logger.debug("Relay %s direction ended: %s", key, exc)
            _shutdown_quietly(src, socket.SHUT_RDWR)
            _shutdown_quietly(dst, socket.SHUT_RDWR)
            half_closed.set()

    reverse = threading.Thread(
        target=_pump,
        args=(upstream, client, "out"),
        name="relay-reverse",
        daemon=True,
    )
    reverse.start()
    _pump(client, upstream, "in")
    reverse.join()
    return counts["in"], counts["out"]


class RelayHandler(socketserver.BaseRequestHandler):
    """Relays one accepted connection to the server's target."""

    server: RelayServer

    def handle(self) -> None:
        server = self.server
        peer = _format_peer(self.client_address)
        target = str(server.target)

        try:
            upstream = connect(server.target, timeout=server.connect_timeout_s)
        except OSError as exc:
            logger.warning("[%s] Cannot reach %s for %s: %s", server.mapping_id, target, peer, exc)
            server.record(RelayEvent.upstream_error(server.mapping_id, peer, target, str(exc)))
            return

        server.record(RelayEvent.accepted(server.mapping_id, peer, target, server.active_connections))
        start_time = time.time()
        try:
            bytes_in, bytes_out = relay(self.request, upstream, server.linger_s)
        finally:
            upstream.close()

        duration_ms = (time.time() - start_time) * 1000
        # The slot is released after handle() returns, so exclude this connection
        server.record(
            RelayEvent.closed(
                server.mapping_id,
                peer,
                target,
                bytes_in,
                bytes_out,
                duration_ms,
                max(server.active_connections - 1, 0),
            )
        )


class RelayServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """Threaded accept loop over a TCP or vsock listening socket."""

    daemon_threads = True
    block_on_close = False
    allow_reuse_address = True
    request_queue_size = 128

    def __init__(
        self,
        listen: Endpoint,
        target: Endpoint,
        mapping_id: str = "",
        max_connections: int = 256,
        connect_timeout_s: float = 10.0,
        linger_s: float = DEFAULT_LINGER_S,
        bind_attempts: int = 5,
        bind_backoff_s: float = 0.2,
        event_log: RelayEventLog | None = None,
    ) -> None:
        self.listen_endpoint = listen
        self.target = target
        self.mapping_id = mapping_id or listen.signature()
        self.max_connections = max(1, max_connections)
        self.connect_timeout_s = connect_timeout_s
        self.linger_s = linger_s
        self.event_log = event_log
        self.address_family = listen.socket_family

        self._bind_attempts = bind_attempts
        self._bind_backoff_s = bind_backoff_s
        self._slots = threading.BoundedSemaphore(self.max_connections)
        self._active = 0
        self._active_lock = threading.Lock()

        super().__init__(listen.address, RelayHandler, bind_and_activate=False)
        try:
            self.server_bind()
            self.server_activate()
        except BaseException:
            self.server_close()
            raise

    @property
    def active_connections(self) -> int:
        return self._active

    def server_bind(self) -> None:
        """Bind with bounded retry instead of failing on the first EADDRINUSE."""
        if self.allow_reuse_address and not self.listen_endpoint.is_vsock:
            self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        bind_with_retry(
            self.socket,
            self.listen_endpoint,
            attempts=self._bind_attempts,
            backoff_s=self._bind_backoff_s,
        )
        self.server_address = self.socket.getsockname()

    def process_request(self, request, client_address) -> None:
        if not self._slots.acquire(blocking=False):
            peer = _format_peer(client_address)
            logger.warning(
                "[%s] Rejecting %s: %d connections in flight",
                self.mapping_id,
                peer,
                self.max_connections,
            )
            self.record(RelayEvent.rejected(self.mapping_id, peer, self.max_connections))
            self.shutdown_request(request)
            return

        with self._active_lock:
            self._active += 1
        try:
            super().process_request(request, client_address)
        except BaseException:
            self._release_slot()
            raise

    def process_request_thread(self, request, client_address) -> None:
        try:
            super().process_request_thread(request, client_address)
        finally:
            self._release_slot()

    def _release_slot(self) -> None:
        with self._active_lock:
            self._active -= 1
        self._slots.release()

    def handle_error(self, request, client_address) -> None:
        logger.exception(
            "[%s] Unhandled error relaying %s", self.mapping_id, _format_peer(client_address)
        )

    def record(self, event: RelayEvent) -> None:
        if self.event_log is not None:
            self.event_log.log(event)


class Forwarder:
    """Lifecycle wrapper around a RelayServer.

    Usage:
        fwd = Forwarder(Endpoint.parse("tcp:0.0.0.0:443"), Endpoint.parse("vsock:3:8443"))
        fwd.start()        # background thread
        ...
        fwd.stop()

    ``serve_forever()`` blocks instead, for the forwarder process.
    """

    def __init__(
        self,
        listen: Endpoint,
        target: Endpoint,
        mapping_id: str = "",
        max_connections: int = 256,
        connect_timeout_s: float = 10.0,
        linger_s: float = DEFAULT_LINGER_S,
        bind_attempts: int = 5,
        bind_backoff_s: float = 0.2,
        event_log: RelayEventLog | None = None,
    ) -> None:
        self._listen = listen
        self._target = target
        self._mapping_id = mapping_id or listen.signature()
        self._max_connections = max_connections
        self._connect_timeout_s = connect_timeout_s
        self._linger_s = linger_s
        self._bind_attempts = bind_attempts
        self._bind_backoff_s = bind_backoff_s
        self._event_log = event_log

        self._server: RelayServer | None = None
        self._thread: threading.Thread | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def address(self) -> tuple | None:
        """Actual bound address (useful when listening on port 0)."""
        return self._server.server_address if self._server else None

    def bind(self) -> RelayServer:
        """Bind the listener. Raises PortInUse / BindFailed."""
        if self._server is None:
            self._server = RelayServer(
                self._listen,
                self._target,
                mapping_id=self._mapping_id,
                max_connections=self._max_connections,
                connect_timeout_s=self._connect_timeout_s,
                linger_s=self._linger_s,
                bind_attempts=self._bind_attempts,
                bind_backoff_s=self._bind_backoff_s,
                event_log=self._event_log,
            )
        return self._server

    def start(self) -> None:
        """Bind and serve in a background thread."""
        if self._running:
            logger.warning("Forwarder %s already running", self._mapping_id)
            return

        server = self.bind()
        self._thread = threading.Thread(
            target=self._serve,
            args=(server,),
            name=f"forwarder-{self._mapping_id}",
            daemon=True,
        )
        self._running = True
        self._thread.start()
        logger.info("Forwarder %s started: %s -> %s", self._mapping_id, self._listen, self._target)

    def serve_forever(self) -> None:
        """Bind and serve on the calling thread until stop() is called."""
        server = self.bind()
        self._running = True
        logger.info("Forwarder %s serving: %s -> %s", self._mapping_id, self._listen, self._target)
        self._serve(server)

    def stop(self) -> None:
        """Stop accepting. In-flight connections are dropped with the process."""
        self._running = False
        server = self._server
        if server is not None:
            if self._thread is not None:
                server.shutdown()
            server.server_close()
            self._server = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        if self._event_log is not None:
            self._event_log.close()
        logger.info("Forwarder %s stopped", self._mapping_id)

    def _serve(self, server: RelayServer) -> None:
        try:
            server.serve_forever()
        except Exception as exc:
            if self._running:
                logger.error("Forwarder %s crashed: %s", self._mapping_id, exc)
        finally:
            self._running = False

    def get_status(self) -> dict:
        server = self._server
        status = {
            "mapping_id": self._mapping_id,
            "running": self._running,
            "listen": str(self._listen),
            "target": str(self._target),
            "max_connections": self._max_connections,
            "active_connections": server.active_connections if server else 0,
        }
        if self._event_log is not None:
            status["events"] = self._event_log.get_stats()
        return status
