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
"""Bridge error taxonomy.

Fatal (abort the exposure or boot sequence):
  - DiscoveryError: NoInstance, AmbiguousInstance
  - SecretChannelError: MalformedSecretPayload, SecretChannelTimeout
  - RedirectError, ConfigError

Contained (reported per mapping, siblings continue):
  - ForwarderError: PortInUse, BindFailed

Relay-time socket errors are never wrapped. They close one connection.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""


class ConfigError(BridgeError):
    """The configuration or mapping table is invalid."""


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------
class DiscoveryError(BridgeError):
    """The running enclave could not be identified."""


class NoInstance(DiscoveryError):
    """No running enclave, or the enclave has no usable address."""


class AmbiguousInstance(DiscoveryError):
    """More than one enclave is running; refusing to pick one."""

    def __init__(self, instance_ids: list[str]) -> None:
        self.instance_ids = list(instance_ids)
        super().__init__(
            f"{len(self.instance_ids)} enclaves are running "
            f"({', '.join(self.instance_ids)}); expected exactly one"
        )


# ---------------------------------------------------------------------------
# Forwarders
# ---------------------------------------------------------------------------
class ForwarderError(BridgeError):
    """A forwarder could not be started for one mapping."""


class PortInUse(ForwarderError):
    """The listen endpoint is still held by another process."""


class BindFailed(ForwarderError):
    """The listen endpoint could not be bound for any other reason."""


# ---------------------------------------------------------------------------
# Guest boot
# ---------------------------------------------------------------------------
class SecretChannelError(BridgeError):
    """The secret bundle could not be received."""


class MalformedSecretPayload(SecretChannelError):
    """The received body is not a flat JSON object of names to values."""


class SecretChannelTimeout(SecretChannelError):
    """No connection arrived on the secret channel within the boot window."""


class RedirectError(BridgeError):
    """A NAT redirect rule could not be installed."""
