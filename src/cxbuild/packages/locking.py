"""Per-key locking for shared on-disk state.

Two layers are combined:

    - KeyedLocks: one threading.Lock per key inside this process, handed out
      from a dict guarded by a master lock
    - ProcessFileLock: a lock file created with O_CREAT | O_EXCL holding the
      owner's PID; a lock whose owner is no longer alive is treated as stale
      and broken by renaming it aside first

IdentityLock stacks the two so that threads and processes both serialize on
the same key.
"""

import logging
import os
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, Optional

import psutil

from cxbuild.errors import CxBuildError


class LockTimeoutError(CxBuildError):
    """Raised when a lock could not be acquired within the given timeout."""

    pass


class KeyedLocks:
    """Hands out one threading.Lock per key."""

    def __init__(self):
        self._locks_lock = threading.Lock()  # Master lock for the dictionary
        self._locks: Dict[str, threading.Lock] = {}

    def get(self, key: str) -> threading.Lock:
        with self._locks_lock:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]


class ProcessFileLock:
    """Cross-process exclusive lock backed by a PID file.

    Usage:
        with ProcessFileLock(cache_root / "locks" / "abc.lock"):
            ...  # exclusive section
    """

    def __init__(self, path: Path, poll_interval: float = 0.05, timeout: Optional[float] = None):
        self.path = Path(path)
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._held = False

    def _owner_pid(self, path: Optional[Path] = None) -> Optional[int]:
        try:
            content = (path or self.path).read_text(encoding="utf-8").strip()
        except OSError:
            return None
        try:
            return int(content)
        except ValueError:
            return None

    def _is_stale(self, path: Optional[Path] = None) -> bool:
        path = path or self.path
        pid = self._owner_pid(path)
        if pid is None:
            # Lock file exists but its owner hasn't written a PID yet, or it
            # was truncated. Give it a moment before breaking.
            try:
                age = time.time() - path.stat().st_mtime
            except FileNotFoundError:
                return False
            return age > 5.0
        if pid == os.getpid():
            return False
        return not psutil.pid_exists(pid)

    def _break_stale(self) -> None:
        """Remove a stale lock file without racing other breakers.

        The file is first renamed to a name unique to this attempt. Only one
        process wins the rename; if what it moved turns out to be a live lock
        (someone broke and re-took it in between) it is put back.
        """
        aside = self.path.with_name(f"{self.path.name}.{os.getpid()}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return

        if self._is_stale(aside):
            logging.warning(f"Breaking stale lock {self.path} (owner pid {self._owner_pid(aside)})")
        else:
            try:
                os.link(aside, self.path)
            except FileExistsError:
                logging.warning(f"Lock {self.path} was re-taken while restoring a live owner's lock file")
        aside.unlink()

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = None if self.timeout is None else time.monotonic() + self.timeout

        while True:
            try:
                fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._is_stale():
                    self._break_stale()
                    continue
                if deadline is not None and time.monotonic() > deadline:
                    raise LockTimeoutError(
                        f"Timed out waiting for lock {self.path} held by pid {self._owner_pid()}"
                    )
                time.sleep(self.poll_interval)
                continue

            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            self._held = True
            return

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "ProcessFileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class IdentityLock:
    """Thread lock plus process lock for one key."""

    def __init__(self, thread_lock: threading.Lock, file_lock: ProcessFileLock):
        self._thread_lock = thread_lock
        self._file_lock = file_lock

    def __enter__(self) -> "IdentityLock":
        self._thread_lock.acquire()
        try:
            self._file_lock.acquire()
        except BaseException:
            self._thread_lock.release()
            raise
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self._file_lock.release()
        finally:
            self._thread_lock.release()
