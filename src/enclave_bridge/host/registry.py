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
"""Handle registry -- which forwarder processes did the last run start?

Written (overwritten, never appended) after every exposure run that
started at least one process, and read once by ``teardown``. Entries may
be stale by the time they are read; the teardown caller skips processes
that have already exited.

File format (JSON):

    {
      "version": 1,
      "written_at": 1760000000.0,
      "handles": [
        {"pid": 4242, "mapping_id": "https", "signature": "vsock:8443", "status": "live"}
      ]
    }

``load()`` also understands the plain PID list written by the old
shell scripts (one PID per line, ``#`` comments).
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .supervisor import ForwarderHandle

logger = logging.getLogger("enclave_bridge.host.registry")

REGISTRY_VERSION = 1


@dataclass(frozen=True)
class ProcessRef:
    """A persisted reference to a forwarder process."""

    pid: int
    mapping_id: str = ""
    signature: str = ""  # empty for legacy entries: no command-line check possible
    status: str = ""


class HandleRegistry:
    """Persists forwarder handles to stable storage."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def persist(
        self,
        handles: Iterable[ForwarderHandle],
        carry: Iterable[ProcessRef] = (),
    ) -> list[ProcessRef]:
        """Overwrite the registry with every handle that owns a process.

        ``carry`` entries (forwarders from an earlier run that this run did
        not touch) are kept after the new ones unless a new handle has the same PID.
        """
        refs = [
            ProcessRef(
                pid=h.pid,
                mapping_id=h.mapping_id,
                signature=h.signature,
                status=h.status.value,
            )
            for h in handles
            if h.pid is not None
        ]
        pids = {ref.pid for ref in refs}
        refs.extend(ref for ref in carry if ref.pid not in pids)
        return self.write(refs)

    def write(self, refs: Iterable[ProcessRef]) -> list[ProcessRef]:
        """Atomically replace the registry with ``refs``."""
        refs = list(refs)
        data = {
            "version": REGISTRY_VERSION,
            "written_at": time.time(),
            "handles": [asdict(ref) for ref in refs],
        }

        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp_path, self._path)
        logger.info("Recorded %d forwarder process(es) in %s", len(refs), self._path)
        return refs

    def load(self) -> list[ProcessRef]:
        """Return every recorded reference, in the order it was written."""
        if not self._path.exists():
            return []
        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot read registry %s: %s", self._path, exc)
            return []

        stripped = text.lstrip()
        if stripped.startswith("{"):
            return self._parse_json(text)
        return self._parse_pid_list(text)

    def clear(self) -> None:
        """Remove the registry file (after a teardown)."""
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass

    def _parse_json(self, text: str) -> list[ProcessRef]:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.warning("Registry %s is corrupt (%s) -- ignoring", self._path, exc)
            return []

        refs: list[ProcessRef] = []
        for entry in data.get("handles", []) if isinstance(data, dict) else []:
            if not isinstance(entry, dict):
                continue
            try:
                pid = int(entry["pid"])
            except (KeyError, TypeError, ValueError):
                continue
            if pid <= 0:
                continue
            refs.append(
                ProcessRef(
                    pid=pid,
                    mapping_id=str(entry.get("mapping_id", "")),
                    signature=str(entry.get("signature", "")),
                    status=str(entry.get("status", "")),
                )
            )
        return refs

    def _parse_pid_list(self, text: str) -> list[ProcessRef]:
        refs = []
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if line.isdigit() and int(line) > 0:
                refs.append(ProcessRef(pid=int(line)))
            else:
                logger.debug("Skipping registry line %r", line)
        return refs
