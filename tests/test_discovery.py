# Enclave Bridge
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for enclave discovery."""

import json

import pytest

from enclave_bridge.commands import CommandResult, run_command
from enclave_bridge.errors import AmbiguousInstance, DiscoveryError, NoInstance
from enclave_bridge.host.discovery import DESCRIBE_COMMAND, discover, parse_enclaves


def _enclave(cid, enclave_id="i-0abc-enc1", state="RUNNING"):
    return {
        "EnclaveName": "app",
        "EnclaveID": enclave_id,
        "ProcessID": 1234,
        "EnclaveCID": cid,
        "NumberOfCPUs": 2,
        "MemoryMiB": 4096,
        "State": state,
        "Flags": "NONE",
    }


def _runner(stdout="", returncode=0, stderr=""):
    calls = []

    def run(args):
        calls.append(list(args))
        return CommandResult(list(args), returncode, stdout, stderr)

    run.calls = calls
    return run


class TestDiscover:
    """Discovery against a fake nitro-cli."""

    def test_single_enclave(self):
        runner = _runner(json.dumps([_enclave(16)]))
        instance = discover(runner=runner, environ={})
        assert instance.address == "16"
        assert instance.cid == 16
        assert instance.enclave_id == "i-0abc-enc1"
        assert runner.calls == [DESCRIBE_COMMAND]

    def test_zero_enclaves(self):
        with pytest.raises(NoInstance):
            discover(runner=_runner("[]"), environ={})

    def test_empty_output(self):
        with pytest.raises(NoInstance):
            discover(runner=_runner(""), environ={})

    def test_two_enclaves_is_ambiguous(self):
        output = json.dumps([_enclave(16, "enc-a"), _enclave(17, "enc-b")])
        with pytest.raises(AmbiguousInstance) as exc_info:
            discover(runner=_runner(output), environ={})
        assert exc_info.value.instance_ids == ["enc-a", "enc-b"]
        assert "enc-a" in str(exc_info.value)
        assert isinstance(exc_info.value, DiscoveryError)

    def test_null_cid(self):
        with pytest.raises(NoInstance, match="no CID"):
            discover(runner=_runner(json.dumps([_enclave(None)])), environ={})

    def test_non_running_entries_ignored(self):
        output = json.dumps([_enclave(16, "old", state="TERMINATING"), _enclave(18, "new")])
        instance = discover(runner=_runner(output), environ={})
        assert instance.address == "18"

    def test_nitro_cli_failure(self):
        runner = _runner(returncode=1, stderr="[ E39 ] Enclave process connection failure")
        with pytest.raises(NoInstance, match="E39"):
            discover(runner=runner, environ={})

    def test_nitro_cli_missing(self):
        runner = lambda args: run_command(["nitro-cli-definitely-not-installed"])  # noqa: E731
        with pytest.raises(NoInstance, match="not found"):
            discover(runner=runner, environ={})

    def test_env_override_skips_query(self):
        runner = _runner("[]")
        instance = discover(runner=runner, environ={"ENCLAVE_CID": "21"})
        assert instance.address == "21"
        assert instance.source == "env"
        assert runner.calls == []

    def test_env_override_must_be_numeric(self):
        with pytest.raises(NoInstance):
            discover(runner=_runner("[]"), environ={"ENCLAVE_CID": "sixteen"})


class TestParseEnclaves:
    """Tests for parsing describe-enclaves output."""

    def test_single_object(self):
        assert parse_enclaves(json.dumps(_enclave(5))).address == "5"

    def test_invalid_json(self):
        with pytest.raises(NoInstance):
            parse_enclaves("not json")

    def test_not_a_list(self):
        with pytest.raises(NoInstance):
            parse_enclaves("42")
