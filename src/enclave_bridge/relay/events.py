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
"""Relay connection event log.

Each forwarder records one line per connection event so an operator can
see what a mapping has been doing without attaching to the process.
Only metadata is recorded (peer, byte counts, durations). Relayed bytes
are never inspected or written.

Log format: JSON Lines (one JSON object per line), size-capped with a
single rotated backup.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import threading
import time
from collections import Counter
from dataclasses import asdict, dataclass
from pathlib import Path

logger = logging.getLogger("enclave_bridge.relay.events")

DEFAULT_MAX_BYTES = 5 * 1024 * 1024


@dataclass
class RelayEvent:
    """A single relay connection event."""

    timestamp: float
    event_type: str  # "accepted", "rejected", "upstream_error", "closed"
    mapping_id: str
    peer: str = ""
    target: str = ""
    bytes_in: int = 0  # client -> target
    bytes_out: int = 0  # target -> client
    duration_ms: float = 0.0
    active: int = 0  # connections in flight after this event
    reason: str = ""

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def accepted(cls, mapping_id: str, peer: str, target: str, active: int) -> RelayEvent:
        return cls(
            timestamp=time.time(),
            event_type="accepted",
            mapping_id=mapping_id,
            peer=peer,
            target=target,
            active=active,
        )

    @classmethod
    def rejected(cls, mapping_id: str, peer: str, limit: int) -> RelayEvent:
        return cls(
            timestamp=time.time(),
            event_type="rejected",
            mapping_id=mapping_id,
            peer=peer,
            active=limit,
            reason=f"Connection limit reached ({limit})",
        )

    @classmethod
    def upstream_error(cls, mapping_id: str, peer: str, target: str, reason: str) -> RelayEvent:
        return cls(
            timestamp=time.time(),
            event_type="upstream_error",
            mapping_id=mapping_id,
            peer=peer,
            target=target,
            reason=reason,
        )

    @classmethod
    def closed(
        cls,
        mapping_id: str,
        peer: str,
        target: str,
        bytes_in: int,
        bytes_out: int,
        duration_ms: float,
        active: int,
    ) -> RelayEvent:
        return cls(
            timestamp=time.time(),
            event_type="closed",
            mapping_id=mapping_id,
            peer=peer,
            target=target,
            bytes_in=bytes_in,
            bytes_out=bytes_out,
            duration_ms=duration_ms,
            active=active,
        )


class RelayEventLog:
    """JSON Lines sink shared by every connection of one forwarder.

    Lines are written through a ``RotatingFileHandler``: once the file
    reaches ``max_bytes`` it is rotated to ``<name>.1`` and the previous
    backup is dropped. Per-type counters live in memory, so ``get_stats``
    never has to re-read the file.
    """

    def __init__(
        self,
        log_path: str | Path,
        max_bytes: int = DEFAULT_MAX_BYTES,
        backup_count: int = 1,
    ) -> None:
        self._path = Path(log_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._handler = logging.handlers.RotatingFileHandler(
            self._path,
            maxBytes=max(0, max_bytes),
            backupCount=backup_count,
            encoding="utf-8",
            delay=True,
        )
        self._handler.setFormatter(logging.Formatter("%(message)s"))
        self._lock = threading.Lock()
        self._counts: Counter[str] = Counter()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def entry_count(self) -> int:
        """Number of events written by this process."""
        return self._counts["events"]

    def log(self, event: RelayEvent) -> None:
        """Append one event. Write errors go to ``Handler.handleError``."""
        self._handler.handle(logging.makeLogRecord({"msg": event.to_json(), "levelno": logging.INFO}))
        with self._lock:
            self._counts["events"] += 1
            self._counts[event.event_type] += 1
            self._counts["bytes_in"] += event.bytes_in
            self._counts["bytes_out"] += event.bytes_out

    def close(self) -> None:
        self._handler.close()

    def get_stats(self) -> dict:
        """Event totals since this log was opened."""
        with self._lock:
            return {
                "accepted": self._counts["accepted"],
                "rejected": self._counts["rejected"],
                "upstream_errors": self._counts["upstream_error"],
                "closed": self._counts["closed"],
                "bytes_in": self._counts["bytes_in"],
                "bytes_out": self._counts["bytes_out"],
            }

    def read_recent(self, n: int = 50) -> list[RelayEvent]:
        """The ``n`` most recent events on disk, oldest first, across one rotation."""
        lines: list[str] = []
        for path in (self._path.with_name(self._path.name + ".1"), self._path):
            try:
                lines.extend(path.read_text(encoding="utf-8").splitlines())
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.error("Failed to read relay events from %s: %s", path, exc)

        events: list[RelayEvent] = []
        for line in lines[-n:] if n > 0 else []:
            try:
                events.append(RelayEvent(**json.loads(line)))
            except (json.JSONDecodeError, TypeError):
                continue
        return events

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
