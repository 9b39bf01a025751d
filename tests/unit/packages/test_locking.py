"""Unit tests for keyed thread locks and PID file locks."""

import os
import threading
import time
from unittest.mock import patch

import pytest

from cxbuild.packages.locking import (
    IdentityLock,
    KeyedLocks,
    LockTimeoutError,
    ProcessFileLock,
)


class TestKeyedLocks:
    def test_same_key_same_lock(self):
        locks = KeyedLocks()
        assert locks.get("a") is locks.get("a")
        assert locks.get("a") is not locks.get("b")


class TestProcessFileLock:
    """Test cases for ProcessFileLock."""

    def test_acquire_writes_pid_and_release_removes(self, tmp_path):
        path = tmp_path / "locks" / "k.lock"
        with ProcessFileLock(path):
            assert path.read_text() == str(os.getpid())
        assert not path.exists()

    def test_release_without_acquire_is_noop(self, tmp_path):
        path = tmp_path / "k.lock"
        path.write_text("123")
        ProcessFileLock(path).release()
        assert path.exists()

    def test_held_lock_times_out(self, tmp_path):
        path = tmp_path / "k.lock"
        # Our own PID is never considered stale
        path.write_text(str(os.getpid()))
        lock = ProcessFileLock(path, poll_interval=0.01, timeout=0.1)
        with pytest.raises(LockTimeoutError, match="Timed out"):
            lock.acquire()

    def test_dead_owner_is_broken(self, tmp_path):
        path = tmp_path / "k.lock"
        path.write_text("999999")
        with patch("cxbuild.packages.locking.psutil.pid_exists", return_value=False):
            with ProcessFileLock(path, timeout=1.0):
                assert path.read_text() == str(os.getpid())
        assert list(tmp_path.iterdir()) == []

    def test_lock_retaken_during_break_is_restored(self, tmp_path):
        path = tmp_path / "k.lock"
        path.write_text("999999")
        real_rename = os.rename
        calls = []

        def rename_after_another_breaker(src, dst):
            # Another process breaks the stale lock and takes it first
            if not calls:
                path.write_text("424242")
            calls.append(dst)
            return real_rename(src, dst)

        def pid_exists(pid):
            return pid == 424242

        with (
            patch("cxbuild.packages.locking.psutil.pid_exists", side_effect=pid_exists),
            patch("cxbuild.packages.locking.os.rename", side_effect=rename_after_another_breaker),
        ):
            with pytest.raises(LockTimeoutError, match="held by pid 424242"):
                ProcessFileLock(path, poll_interval=0.01, timeout=0.1).acquire()

        assert len(calls) == 1
        assert path.read_text() == "424242"
        assert not list(tmp_path.glob("*.stale"))

    def test_lock_vanishing_before_break_retries(self, tmp_path):
        path = tmp_path / "k.lock"
        path.write_text("999999")
        real_rename = os.rename

        def rename_after_release(src, dst):
            os.unlink(src)
            return real_rename(src, dst)

        with (
            patch("cxbuild.packages.locking.psutil.pid_exists", return_value=False),
            patch("cxbuild.packages.locking.os.rename", side_effect=rename_after_release),
        ):
            with ProcessFileLock(path, timeout=1.0):
                assert path.read_text() == str(os.getpid())

    def test_live_owner_is_respected(self, tmp_path):
        path = tmp_path / "k.lock"
        path.write_text("424242")
        with patch("cxbuild.packages.locking.psutil.pid_exists", return_value=True):
            with pytest.raises(LockTimeoutError):
                ProcessFileLock(path, poll_interval=0.01, timeout=0.05).acquire()

    def test_empty_lock_file_breaks_after_grace(self, tmp_path):
        path = tmp_path / "k.lock"
        path.write_text("")
        old = time.time() - 60
        os.utime(path, (old, old))
        with ProcessFileLock(path, timeout=1.0):
            assert path.read_text() == str(os.getpid())

    def test_fresh_empty_lock_file_is_not_stale(self, tmp_path):
        path = tmp_path / "k.lock"
        path.write_text("")
        with pytest.raises(LockTimeoutError):
            ProcessFileLock(path, poll_interval=0.01, timeout=0.05).acquire()


class TestIdentityLock:
    def test_serializes_threads(self, tmp_path):
        locks = KeyedLocks()
        path = tmp_path / "shared.lock"
        inside = []
        overlaps = []

        def worker():
            with IdentityLock(locks.get("k"), ProcessFileLock(path)):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(True)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []
        assert not path.exists()

    def test_thread_lock_released_when_file_lock_fails(self, tmp_path):
        thread_lock = threading.Lock()
        path = tmp_path / "k.lock"
        path.write_text(str(os.getpid()))
        lock = IdentityLock(thread_lock, ProcessFileLock(path, poll_interval=0.01, timeout=0.05))
        with pytest.raises(LockTimeoutError):
            with lock:
                pass
        assert not thread_lock.locked()
