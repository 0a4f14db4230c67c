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
"""Bridge configuration schema.

The same file is shipped to the parent instance and baked into the
enclave image, so both halves of every mapping are derived from one
table.

Config location: ~/.enclave-bridge/bridge_config.yaml
(override the directory with ENCLAVE_BRIDGE_HOME)
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError
from .mappings import DEFAULT_MAPPINGS, SECRET_PORT, Mapping, validate_mappings

logger = logging.getLogger("enclave_bridge.config")

# ---------------------------------------------------------------------------
# Default paths
# ---------------------------------------------------------------------------
BRIDGE_HOME = Path(os.environ.get("ENCLAVE_BRIDGE_HOME", Path.home() / ".enclave-bridge"))
DEFAULT_CONFIG_PATH = BRIDGE_HOME / "bridge_config.yaml"


@dataclass
class BridgeConfig:
    """Full bridge configuration, host and guest side."""

    mappings: tuple[Mapping, ...] = DEFAULT_MAPPINGS

    # Secret bootstrap channel (guest side)
    secret_port: int = SECRET_PORT
    secret_timeout_s: float = 300.0
    secret_max_bytes: int = 1024 * 1024  # 1 MB

    # Forwarder startup
    settle_s: float = 2.0  # grace period before the liveness probe
    bind_attempts: int = 5
    bind_backoff_s: float = 0.2
    max_connections: int = 256  # per mapping
    connect_timeout_s: float = 10.0
    linger_s: float = 0.5  # idle time after one side closes, like socat -t

    # Reaper
    terminate_timeout_s: float = 3.0
    reap_release_attempts: int = 10
    reap_release_backoff_s: float = 0.05

    # Stable storage
    registry_path: str = str(BRIDGE_HOME / "forwarders.json")
    log_dir: str = str(BRIDGE_HOME / "logs")
    event_log: bool = True
    event_log_max_bytes: int = 5 * 1024 * 1024  # per mapping, one rotated backup kept

    # Guest application
    app_config_path: str = "/config/config.toml"

    # Treat a degraded exposure (< 100% live) as fatal
    strict: bool = False

    # Interpreter used to launch forwarder processes
    python: str = field(default_factory=lambda: sys.executable)

    def mapping(self, mapping_id: str) -> Mapping:
        for m in self.mappings:
            if m.id == mapping_id:
                return m
        raise ConfigError(f"Unknown mapping id {mapping_id!r}")


def load_config(path: Path | str | None = None) -> BridgeConfig:
    """Load bridge configuration from YAML.

    A missing file yields the defaults. A file that cannot be parsed is
    logged and ignored. An invalid mapping table raises ``ConfigError``:
    a bridge started from a half-understood table is silently broken.
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        logger.info("No bridge config at %s -- using defaults", config_path)
        return BridgeConfig()

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.error("Failed to load bridge config: %s -- using defaults", exc)
        return BridgeConfig()

    if raw is None:
        return BridgeConfig()
    if not isinstance(raw, dict):
        logger.warning("Invalid bridge config (not a dict) -- using defaults")
        return BridgeConfig()
    return _parse_config(raw)


def save_config(config: BridgeConfig, path: Path | str | None = None) -> None:
    """Save bridge configuration to YAML."""
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data: dict[str, Any] = {
        "mappings": [m.to_dict() for m in config.mappings],
        "secret": {
            "port": config.secret_port,
            "timeout_s": config.secret_timeout_s,
            "max_bytes": config.secret_max_bytes,
        },
        "forwarders": {
            "settle_s": config.settle_s,
            "bind_attempts": config.bind_attempts,
            "bind_backoff_s": config.bind_backoff_s,
            "max_connections": config.max_connections,
            "connect_timeout_s": config.connect_timeout_s,
            "linger_s": config.linger_s,
        },
        "reaper": {
            "terminate_timeout_s": config.terminate_timeout_s,
            "release_attempts": config.reap_release_attempts,
            "release_backoff_s": config.reap_release_backoff_s,
        },
        "registry_path": config.registry_path,
        "log_dir": config.log_dir,
        "event_log": config.event_log,
        "event_log_max_bytes": config.event_log_max_bytes,
        "app": {
            "config_path": config.app_config_path,
        },
        "strict": config.strict,
    }
    config_path.write_text(
        yaml.dump(data, default_flow_style=False, sort_keys=False), encoding="utf-8"
    )
    logger.info("Saved bridge config to %s", config_path)


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name, {})
    return value if isinstance(value, dict) else {}


def _parse_config(raw: dict) -> BridgeConfig:
    """Parse raw YAML dict into BridgeConfig."""
    defaults = BridgeConfig()

    mappings_raw = raw.get("mappings")
    if mappings_raw is None:
        mappings = DEFAULT_MAPPINGS
    elif isinstance(mappings_raw, list):
        mappings = tuple(Mapping.from_dict(entry) for entry in mappings_raw)
    else:
        raise ConfigError("'mappings' must be a list")
    mappings = validate_mappings(mappings)

    secret = _section(raw, "secret")
    forwarders = _section(raw, "forwarders")
    reaper = _section(raw, "reaper")
    app = _section(raw, "app")

    try:
        return BridgeConfig(
            mappings=mappings,
            secret_port=int(secret.get("port", defaults.secret_port)),
            secret_timeout_s=float(secret.get("timeout_s", defaults.secret_timeout_s)),
            secret_max_bytes=int(secret.get("max_bytes", defaults.secret_max_bytes)),
            settle_s=float(forwarders.get("settle_s", defaults.settle_s)),
            bind_attempts=int(forwarders.get("bind_attempts", defaults.bind_attempts)),
            bind_backoff_s=float(forwarders.get("bind_backoff_s", defaults.bind_backoff_s)),
            max_connections=int(forwarders.get("max_connections", defaults.max_connections)),
            connect_timeout_s=float(forwarders.get("connect_timeout_s", defaults.connect_timeout_s)),
            linger_s=float(forwarders.get("linger_s", defaults.linger_s)),
            terminate_timeout_s=float(
                reaper.get("terminate_timeout_s", defaults.terminate_timeout_s)
            ),
            reap_release_attempts=int(
                reaper.get("release_attempts", defaults.reap_release_attempts)
            ),
            reap_release_backoff_s=float(
                reaper.get("release_backoff_s", defaults.reap_release_backoff_s)
            ),
            registry_path=str(raw.get("registry_path", defaults.registry_path)),
            log_dir=str(raw.get("log_dir", defaults.log_dir)),
            event_log=bool(raw.get("event_log", defaults.event_log)),
            event_log_max_bytes=int(raw.get("event_log_max_bytes", defaults.event_log_max_bytes)),
            app_config_path=str(app.get("config_path", defaults.app_config_path)),
            strict=bool(raw.get("strict", defaults.strict)),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid bridge config value: {exc}") from exc
