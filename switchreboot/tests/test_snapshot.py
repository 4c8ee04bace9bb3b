"""Tests for StateSnapshotStore and snapshot file helpers."""
from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from switchreboot.snapshot import (
    SnapshotIOError,
    StateSnapshotStore,
    atomic_write,
    load_snapshot,
    rotate,
)
from switchreboot.statedb import StateStoreError

ALLOW = ("FDB_TABLE|", "WARM_RESTART_TABLE|")


@pytest.fixture
def populated(store):
    store.data.update({
        "FDB_TABLE|Vlan100:00:11:22:33:44:55": {"port": "Ethernet0", "type": "dynamic"},
        "WARM_RESTART_TABLE|syncd": {"restore_count": "1", "state": "pre-shutdown-succeeded"},
        "PORT_TABLE|Ethernet0": {"oper_status": "up"},
        "NEIGH_TABLE|Vlan100:10.0.0.1": {"neigh": "00:aa:bb:cc:dd:ee"},
    })
    return store


def test_snapshot_keeps_only_allowed_namespaces(populated, config):
    snaps = StateSnapshotStore(populated, config)

    handle = snaps.snapshot(ALLOW)

    keys = load_snapshot(handle.path)
    assert set(keys) == {"FDB_TABLE|Vlan100:00:11:22:33:44:55", "WARM_RESTART_TABLE|syncd"}
    assert handle.key_count == 2
    assert handle.dropped_keys == []
    assert Path(handle.path) == Path(config.warm_dir) / config.snapshot_name


def test_snapshot_flushes_store_and_removes_dump(populated, config):
    StateSnapshotStore(populated, config).snapshot(ALLOW)

    assert populated.flushed
    assert populated.data == {}
    assert list(populated.dump_dir.iterdir()) == []


def test_default_namespaces_come_from_config(populated, config):
    handle = StateSnapshotStore(populated, config).snapshot()
    keys = load_snapshot(handle.path)
    assert "PORT_TABLE|Ethernet0" not in keys
    assert "FDB_TABLE|Vlan100:00:11:22:33:44:55" in keys


def test_key_written_between_delete_and_persist_never_persisted(populated, config):
    def inject(s):
        s.data["ROUTE_TABLE|10.1.0.0/16"] = {"nexthop": "10.0.0.1"}

    populated.before_persist = inject

    handle = StateSnapshotStore(populated, config).snapshot(ALLOW)

    assert handle.dropped_keys == ["ROUTE_TABLE|10.1.0.0/16"]
    assert "ROUTE_TABLE|10.1.0.0/16" not in load_snapshot(handle.path)


def test_existing_snapshot_is_rotated_not_overwritten(populated, config):
    target = Path(config.warm_dir) / config.snapshot_name
    target.parent.mkdir(parents=True)
    target.write_text("previous")

    handle = StateSnapshotStore(populated, config).snapshot(ALLOW)

    assert handle.rotated_from
    assert Path(handle.rotated_from).read_text() == "previous"
    assert Path(handle.rotated_from).name.startswith(config.snapshot_name + ".")


def test_checksum_matches_file(populated, config):
    import hashlib

    handle = StateSnapshotStore(populated, config).snapshot(ALLOW)
    assert handle.checksum_sha256 == hashlib.sha256(Path(handle.path).read_bytes()).hexdigest()


def test_persist_failure_raises_and_leaves_no_target(populated, config):
    populated.persist_error = StateStoreError("BGSAVE failed")

    with pytest.raises(SnapshotIOError):
        StateSnapshotStore(populated, config).snapshot(ALLOW)

    assert not (Path(config.warm_dir) / config.snapshot_name).exists()
    assert not populated.flushed


def test_write_failure_leaves_no_partial_file(populated, config):
    with patch("switchreboot.snapshot.os.fsync", side_effect=OSError(28, "No space left on device")):
        with pytest.raises(SnapshotIOError):
            StateSnapshotStore(populated, config).snapshot(ALLOW)

    warm = Path(config.warm_dir)
    assert list(warm.iterdir()) == []
    assert not populated.flushed


def test_raw_dump_removed_when_target_write_fails(populated, config):
    with patch("switchreboot.snapshot.atomic_write", side_effect=OSError(28, "No space left on device")):
        with pytest.raises(SnapshotIOError):
            StateSnapshotStore(populated, config).snapshot(ALLOW)

    assert list(populated.dump_dir.glob("state-dump-*")) == []


def test_raw_dump_removed_when_dump_is_corrupt(populated, config):
    def corrupt_persist():
        path = populated.dump_dir / "state-dump-bad.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("{not json")
        return path

    populated.persist = corrupt_persist
    with pytest.raises(SnapshotIOError):
        StateSnapshotStore(populated, config).snapshot(ALLOW)

    assert list(populated.dump_dir.glob("state-dump-*")) == []
    assert not populated.flushed


def test_atomic_write_replaces_in_one_step(tmp_path):
    path = tmp_path / "out" / "file.json"
    atomic_write(path, b"one")
    atomic_write(path, b"two")
    assert path.read_bytes() == b"two"
    assert [p.name for p in path.parent.iterdir()] == ["file.json"]


def test_rotate_missing_file(tmp_path):
    assert rotate(tmp_path / "nope.json") is None


def test_rotate_twice_in_same_second(tmp_path):
    path = tmp_path / "s.json"
    with patch("switchreboot.snapshot._ts", return_value="20260101000000"):
        path.write_text("1")
        first = rotate(path)
        path.write_text("2")
        second = rotate(path)

    assert first.name == "s.json.20260101000000"
    assert second.name == "s.json.20260101000000.1"
    assert first.read_text() == "1"
    assert second.read_text() == "2"


def test_load_snapshot_rejects_unknown_version(tmp_path):
    path = tmp_path / "s.json"
    path.write_text(json.dumps({"version": 99, "keys": {}}))
    with pytest.raises(SnapshotIOError, match="version"):
        load_snapshot(str(path))
