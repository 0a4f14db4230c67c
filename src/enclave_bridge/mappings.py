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
"""Forwarder mapping table.

Each mapping is defined once and produces BOTH halves of the bridge, so
the guest and the host can never disagree on port numbers (there is no
negotiation on the wire; a mismatch is a silently dead bridge).

Guest-to-host (egress):
  guest  tcp:0.0.0.0:PORT        --> vsock:3:BRIDGE
  host   vsock:any:BRIDGE        --> tcp:UPSTREAM:PORT

Host-to-guest (API exposure):
  host   tcp:0.0.0.0:PORT        --> vsock:<enclave cid>:BRIDGE
  guest  vsock:any:BRIDGE        --> tcp:127.0.0.1:PORT   (the application)

Default table (version 1):

  id          direction       port   bridge
  http        guest-to-host     80     8080
  https       guest-to-host    443     8443
  alt-http    guest-to-host   8080     8081
  alt-https   guest-to-host   8443     8444
  custom      guest-to-host   9000     9001
  api         host-to-guest   3000     3000
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Iterable

from .endpoints import VSOCK_PARENT_CID, Endpoint
from .errors import ConfigError

MAPPING_TABLE_VERSION = 1

# Guest-side port of the one-shot secret bootstrap listener
SECRET_PORT = 7777


class Direction(enum.Enum):
    GUEST_TO_HOST = "guest-to-host"
    HOST_TO_GUEST = "host-to-guest"


class Side(enum.Enum):
    """Which half of a mapping a forwarder process implements."""

    HOST = "host"
    GUEST = "guest"


@dataclass(frozen=True)
class ForwarderSpec:
    """One concrete forwarder: accept on ``listen``, relay to ``target``."""

    mapping_id: str
    label: str
    side: Side
    listen: Endpoint
    target: Endpoint

    @property
    def signature(self) -> str:
        return self.listen.signature()

    def describe(self) -> str:
        return f"{self.listen} -> {self.target}"


@dataclass(frozen=True)
class Mapping:
    """A static forwarder mapping shared by both sides of the bridge."""

    id: str
    direction: Direction
    port: int  # well-known TCP port (guest egress port / host exposure port)
    bridge_port: int  # vsock port carried across the channel
    label: str = ""
    target_host: str = "127.0.0.1"  # upstream (egress) or application host (api)
    target_port: int | None = None  # defaults to ``port``
    listen_host: str = "0.0.0.0"

    @property
    def upstream_port(self) -> int:
        return self.target_port if self.target_port is not None else self.port

    def forwarder(self, side: Side, enclave_cid: int | str | None = None) -> ForwarderSpec:
        """Build the forwarder for one side of this mapping.

        The host half of a host-to-guest mapping needs the enclave CID,
        which is only known after discovery.
        """
        tcp_listen = Endpoint.tcp(self.listen_host, self.port)
        vsock_listen = Endpoint.vsock("any", self.bridge_port)
        upstream = Endpoint.tcp(self.target_host, self.upstream_port)

        if self.direction is Direction.GUEST_TO_HOST:
            if side is Side.GUEST:
                listen, target = tcp_listen, Endpoint.vsock(VSOCK_PARENT_CID, self.bridge_port)
            else:
                listen, target = vsock_listen, upstream
        else:
            if side is Side.GUEST:
                listen, target = vsock_listen, upstream
            else:
                if enclave_cid is None or str(enclave_cid).strip() == "":
                    raise ConfigError(f"Mapping {self.id!r} needs the enclave CID on the host side")
                listen, target = tcp_listen, Endpoint.vsock(enclave_cid, self.bridge_port)

        return ForwarderSpec(
            mapping_id=self.id,
            label=self.label or self.id,
            side=side,
            listen=listen,
            target=target,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "direction": self.direction.value,
            "port": self.port,
            "bridge_port": self.bridge_port,
            "label": self.label,
            "target_host": self.target_host,
            "listen_host": self.listen_host,
        }
        if self.target_port is not None:
            data["target_port"] = self.target_port
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Mapping:
        """Parse one mapping entry from the YAML config."""
        if not isinstance(raw, dict):
            raise ConfigError(f"Mapping entry must be a mapping, got {type(raw).__name__}")
        try:
            mapping_id = str(raw["id"]).strip()
            direction = Direction(raw.get("direction", Direction.GUEST_TO_HOST.value))
            port = int(raw["port"])
            bridge_port = int(raw.get("bridge_port", port))
            target_port = raw.get("target_port")
            target_port = int(target_port) if target_port is not None else None
        except KeyError as exc:
            raise ConfigError(f"Mapping entry missing required key {exc}") from exc
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid mapping entry {raw!r}: {exc}") from exc

        if not mapping_id:
            raise ConfigError("Mapping id must not be empty")
        for name, value in (("port", port), ("bridge_port", bridge_port), ("target_port", target_port)):
            if value is not None and not 0 < value <= 65535:
                raise ConfigError(f"Mapping {mapping_id!r}: {name} {value} out of range")

        return cls(
            id=mapping_id,
            direction=direction,
            port=port,
            bridge_port=bridge_port,
            label=str(raw.get("label", "")),
            target_host=str(raw.get("target_host", "127.0.0.1")),
            target_port=target_port,
            listen_host=str(raw.get("listen_host", "0.0.0.0")),
        )


DEFAULT_MAPPINGS: tuple[Mapping, ...] = (
    Mapping("http", Direction.GUEST_TO_HOST, 80, 8080, label="HTTP passthrough"),
    Mapping("https", Direction.GUEST_TO_HOST, 443, 8443, label="HTTPS passthrough"),
    Mapping("alt-http", Direction.GUEST_TO_HOST, 8080, 8081, label="Alt HTTP"),
    Mapping("alt-https", Direction.GUEST_TO_HOST, 8443, 8444, label="Alt HTTPS"),
    Mapping("custom", Direction.GUEST_TO_HOST, 9000, 9001, label="Custom applications"),
    Mapping("api", Direction.HOST_TO_GUEST, 3000, 3000, label="Enclave API"),
)


def validate_mappings(mappings: Iterable[Mapping]) -> tuple[Mapping, ...]:
    """Reject duplicate ids and listeners that would collide on one side."""
    mappings = tuple(mappings)
    seen_ids: set[str] = set()
    seen_listeners: dict[tuple[Side, str], str] = {}
    for mapping in mappings:
        if mapping.id in seen_ids:
            raise ConfigError(f"Duplicate mapping id {mapping.id!r}")
        seen_ids.add(mapping.id)
        for side in Side:
            # The CID does not affect the listen signature
            spec = mapping.forwarder(side, enclave_cid=VSOCK_PARENT_CID)
            key = (side, spec.signature)
            if key in seen_listeners:
                raise ConfigError(
                    f"Mappings {seen_listeners[key]!r} and {mapping.id!r} both listen on "
                    f"{spec.signature} on the {side.value} side"
                )
            seen_listeners[key] = mapping.id
    return mappings


def select_mappings(mappings: Iterable[Mapping], ids: Iterable[str] | None) -> tuple[Mapping, ...]:
    """Filter the table down to ``ids`` (all mappings when ``ids`` is empty)."""
    mappings = tuple(mappings)
    wanted = [i for i in (ids or []) if i]
    if not wanted:
        return mappings
    by_id = {m.id: m for m in mappings}
    unknown = [i for i in wanted if i not in by_id]
    if unknown:
        raise ConfigError(f"Unknown mapping id(s): {', '.join(unknown)}")
    return tuple(by_id[i] for i in wanted)


def forwarder_specs(
    mappings: Iterable[Mapping],
    side: Side,
    enclave_cid: int | str | None = None,
) -> list[ForwarderSpec]:
    """Build the ``side`` half of every mapping, in table order."""
    return [m.forwarder(side, enclave_cid) for m in mappings]
