# Enclave Bridge
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for the handle registry."""

import json

from enclave_bridge.host.registry import HandleRegistry, ProcessRef
from enclave_bridge.host.supervisor import ForwarderHandle, HandleStatus


def _handle(mapping_id, pid, status=HandleStatus.LIVE):
    return ForwarderHandle(
        mapping_id=mapping_id,
        label=mapping_id,
        signature=f"tcp:{pid}",
        listen=f"tcp:0.0.0.0:{pid}",
        target="vsock:16:3000",
        pid=pid,
        status=status,
    )


class TestHandleRegistry:
    """Tests for persist/load/clear."""

    def test_missing_file(self, tmp_path):
        assert HandleRegistry(tmp_path / "forwarders.json").load() == []

    def test_persist_and_load_in_order(self, tmp_path):
        registry = HandleRegistry(tmp_path / "state" / "forwarders.json")
        registry.persist([_handle("https", 4242), _handle("api", 4243)])

        refs = registry.load()
        assert refs == [
            ProcessRef(pid=4242, mapping_id="https", signature="tcp:4242", status="live"),
            ProcessRef(pid=4243, mapping_id="api", signature="tcp:4243", status="live"),
        ]
        data = json.loads(registry.path.read_text())
        assert data["version"] == 1
        assert "written_at" in data

    def test_persist_overwrites(self, tmp_path):
        registry = HandleRegistry(tmp_path / "forwarders.json")
        registry.persist([_handle("https", 100), _handle("api", 101)])
        registry.persist([_handle("custom", 200)])
        assert [r.pid for r in registry.load()] == [200]

    def test_carried_refs_follow_new_handles(self, tmp_path):
        registry = HandleRegistry(tmp_path / "forwarders.json")
        carried = [
            ProcessRef(pid=100, mapping_id="admin", signature="tcp:100", status="live"),
            ProcessRef(pid=200, mapping_id="stale", signature="tcp:200", status="live"),
        ]
        # PID 200 now belongs to a handle from this run
        refs = registry.persist([_handle("https", 200)], carry=carried)
        assert [(r.mapping_id, r.pid) for r in refs] == [("https", 200), ("admin", 100)]
        assert registry.load() == refs

    def test_handles_without_process_skipped(self, tmp_path):
        registry = HandleRegistry(tmp_path / "forwarders.json")
        spawn_failed = _handle("api", None, status=HandleStatus.FAILED)
        refs = registry.persist([spawn_failed, _handle("https", 300)])
        assert [r.pid for r in refs] == [300]

    def test_no_temp_file_left(self, tmp_path):
        registry = HandleRegistry(tmp_path / "forwarders.json")
        registry.persist([_handle("https", 300)])
        assert [p.name for p in tmp_path.iterdir()] == ["forwarders.json"]

    def test_legacy_pid_list(self, tmp_path):
        path = tmp_path / "enclave_proxy_pids.txt"
        path.write_text("# Enclave proxy PIDs\n# Started at: today\n1234\n\n5678\nbogus\n")
        refs = HandleRegistry(path).load()
        assert refs == [ProcessRef(pid=1234), ProcessRef(pid=5678)]

    def test_corrupt_json_is_empty(self, tmp_path):
        path = tmp_path / "forwarders.json"
        path.write_text('{"handles": [')
        assert HandleRegistry(path).load() == []

    def test_bad_entries_skipped(self, tmp_path):
        path = tmp_path / "forwarders.json"
        path.write_text(
            json.dumps({"handles": [{"pid": "x"}, {"mapping_id": "a"}, "junk", {"pid": 0}, {"pid": 77}]})
        )
        assert [r.pid for r in HandleRegistry(path).load()] == [77]

    def test_clear(self, tmp_path):
        registry = HandleRegistry(tmp_path / "forwarders.json")
        registry.persist([_handle("https", 300)])
        registry.clear()
        assert not registry.path.exists()
        registry.clear()  # already gone
