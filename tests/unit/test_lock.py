"""Tests for the cross-invocation operation lock."""

import os
import socket
import time

import pytest

from stack_guard.core.lock import LOCK_NAME, OperationLock
from stack_guard.core.records import dump_record
from stack_guard.exceptions import OperationInProgress


def _plant_lock(state_dir, pid, host=None, age=0.0):
    path = state_dir / LOCK_NAME
    state_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(
        dump_record({"pid": pid, "host": host or socket.gethostname(), "acquired_at": 0})
    )
    if age:
        stamp = time.time() - age
        os.utime(path, (stamp, stamp))
    return path


class TestOperationLock:
    def test_acquire_and_release(self, tmp_path):
        lock = OperationLock(tmp_path)
        with lock:
            assert lock.held
            assert (tmp_path / LOCK_NAME).exists()
        assert not lock.held
        assert not (tmp_path / LOCK_NAME).exists()

    def test_reentrant_for_same_instance(self, tmp_path):
        lock = OperationLock(tmp_path)
        with lock:
            with lock:
                assert lock.held
            assert (tmp_path / LOCK_NAME).exists()
        assert not (tmp_path / LOCK_NAME).exists()

    def test_second_instance_is_refused(self, tmp_path):
        first = OperationLock(tmp_path)
        second = OperationLock(tmp_path)
        with first:
            with pytest.raises(OperationInProgress):
                second.acquire()

    def test_live_foreign_holder_is_respected(self, tmp_path):
        _plant_lock(tmp_path, os.getppid())
        with pytest.raises(OperationInProgress) as exc_info:
            OperationLock(tmp_path).acquire()
        assert exc_info.value.details["pid"] == str(os.getppid())

    def test_dead_holder_is_broken(self, tmp_path):
        _plant_lock(tmp_path, 999_999_999)
        lock = OperationLock(tmp_path)
        lock.acquire()
        assert lock.held
        lock.release()

    def test_old_lock_is_broken(self, tmp_path):
        _plant_lock(tmp_path, os.getppid(), host="elsewhere", age=120)
        lock = OperationLock(tmp_path, hard_timeout=60)
        lock.acquire()
        assert lock.held
        lock.release()

    def test_pid_on_other_host_is_trusted(self, tmp_path):
        _plant_lock(tmp_path, 999_999_999, host="elsewhere")
        with pytest.raises(OperationInProgress):
            OperationLock(tmp_path).acquire()

    def test_unreadable_lock_is_broken(self, tmp_path):
        (tmp_path / LOCK_NAME).write_text("garbage without separator\n")
        lock = OperationLock(tmp_path)
        with lock:
            assert lock.held
