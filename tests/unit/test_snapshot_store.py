"""Tests for the snapshot store."""

from datetime import UTC, datetime

import pytest

from stack_guard.exceptions import (
    RestoreConflictError,
    SnapshotCorruptError,
    SnapshotCreationError,
    SnapshotNotFoundError,
)
from stack_guard.rollback.snapshot_store import FILES_DIR, SYSTEM_INFO_NAME, SnapshotStore


@pytest.fixture
def tree(tmp_path):
    root = tmp_path / "live"
    (root / "conf").mkdir(parents=True)
    (root / "conf" / "app.yml").write_text("port: 80\n")
    (root / "conf" / "extra.yml").write_text("debug: false\n")
    (root / ".env").write_text("A=1\n")
    return root


@pytest.fixture
def store(tmp_path):
    return SnapshotStore(tmp_path / "snapshots")


class TestCreate:
    def test_create_copies_and_lists(self, store, tree):
        snapshot_id = store.create("update", [tree / ".env", tree / "conf"])
        assert snapshot_id.startswith("snap_")

        snapshot = store.get(snapshot_id)
        assert snapshot.operation_name == "update"
        assert snapshot.captured_paths == (str(tree / ".env"), str(tree / "conf"))
        assert (store.root / snapshot_id / FILES_DIR / "1" / "conf" / "app.yml").exists()

        [summary] = store.list()
        assert summary.id == snapshot_id
        assert summary.path_count == 2

    def test_missing_paths_are_recorded_absent(self, store, tree):
        snapshot_id = store.create("op", [tree / "nope.txt"])
        snapshot = store.get(snapshot_id)
        assert snapshot.captured_paths == ()
        assert snapshot.absent_paths == (str(tree / "nope.txt"),)

    def test_ids_unique_and_timestamps_strictly_increase(self, tmp_path, tree):
        fixed = datetime(2026, 1, 1, tzinfo=UTC)
        store = SnapshotStore(tmp_path / "snaps", clock=lambda: fixed)
        ids = [store.create("op", [tree / ".env"]) for _ in range(3)]
        assert len(set(ids)) == 3

        created = [store.get(i).created_at for i in ids]
        assert created[0] < created[1] < created[2]
        assert [s.id for s in store.list()] == list(reversed(ids))

    def test_metadata_and_system_info(self, store, tree):
        snapshot_id = store.create(
            "restart", [tree / ".env"], include_system_info=True, metadata={"checkpoint": "x"}
        )
        snapshot = store.get(snapshot_id)
        assert snapshot.metadata["checkpoint"] == "x"
        assert "host" in snapshot.metadata
        assert (store.root / snapshot_id / SYSTEM_INFO_NAME).exists()

    def test_io_failure_raises_creation_error(self, tmp_path, tree):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        store = SnapshotStore(blocker)
        with pytest.raises(SnapshotCreationError):
            store.create("op", [tree / ".env"])

    def test_discard_partials(self, store, tree):
        store.create("op", [tree / ".env"])
        (store.root / ".snap_x.partial").mkdir()
        assert store.discard_partials() == 1
        assert len(store.list()) == 1


class TestRestore:
    def test_forced_round_trip_is_exact(self, store, tree):
        snapshot_id = store.create("op", [tree / ".env", tree / "conf"])

        (tree / ".env").write_text("A=2\n")
        (tree / "conf" / "app.yml").write_text("port: 8080\n")
        (tree / "conf" / "extra.yml").unlink()
        (tree / "conf" / "new.yml").write_text("added\n")

        assert store.restore(snapshot_id, force=True) is True
        assert (tree / ".env").read_text() == "A=1\n"
        assert (tree / "conf" / "app.yml").read_text() == "port: 80\n"
        assert (tree / "conf" / "extra.yml").read_text() == "debug: false\n"
        assert not (tree / "conf" / "new.yml").exists()

    def test_forced_restore_removes_paths_absent_at_capture(self, store, tree):
        snapshot_id = store.create("op", [tree / "created.txt"])
        (tree / "created.txt").write_text("made later")
        store.restore(snapshot_id, force=True)
        assert not (tree / "created.txt").exists()

    def test_conflict_is_skipped_without_force(self, store, tree):
        snapshot_id = store.create("op", [tree / ".env"])
        (tree / ".env").write_text("A=2\n")

        assert store.restore(snapshot_id) is False
        assert (tree / ".env").read_text() == "A=2\n"

    def test_conflict_raises_when_strict(self, store, tree):
        snapshot_id = store.create("op", [tree / ".env"])
        (tree / ".env").write_text("A=2\n")

        with pytest.raises(RestoreConflictError) as exc_info:
            store.restore(snapshot_id, strict=True)
        assert exc_info.value.conflicts == [str(tree / ".env")]

    def test_missing_target_restored_without_force(self, store, tree):
        snapshot_id = store.create("op", [tree / "conf"])
        (tree / "conf" / "app.yml").unlink()
        assert store.restore(snapshot_id) is True
        assert (tree / "conf" / "app.yml").read_text() == "port: 80\n"

    def test_target_override(self, store, tree, tmp_path):
        snapshot_id = store.create("op", [tree / ".env", tree / "conf" / "app.yml"])
        elsewhere = tmp_path / "elsewhere"
        store.restore(snapshot_id, target_override=elsewhere)
        assert (elsewhere / ".env").read_text() == "A=1\n"
        assert (elsewhere / "conf" / "app.yml").read_text() == "port: 80\n"

    def test_unknown_id(self, store):
        with pytest.raises(SnapshotNotFoundError):
            store.restore("snap_missing")

    def test_tampered_content_is_refused(self, store, tree):
        snapshot_id = store.create("op", [tree / ".env"])
        (store.root / snapshot_id / FILES_DIR / "0" / ".env").write_text("tampered\n")
        (tree / ".env").write_text("A=2\n")

        with pytest.raises(SnapshotCorruptError):
            store.restore(snapshot_id, force=True)
        assert (tree / ".env").read_text() == "A=2\n"


class TestPrune:
    def test_prune_oldest_first(self, store, tree):
        ids = [store.create("op", [tree / ".env"]) for _ in range(4)]
        assert store.prune(2) == ids[:2]
        assert [s.id for s in store.list()] == [ids[3], ids[2]]

    def test_never_prunes_newest(self, store, tree):
        ids = [store.create("op", [tree / ".env"]) for _ in range(3)]
        store.prune(0)
        assert [s.id for s in store.list()] == [ids[-1]]
