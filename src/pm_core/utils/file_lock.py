"""Advisory inter-process file lock.

Uses ``fcntl.flock`` on Unix and ``msvcrt.locking`` on Windows. The lock
lives on a sidecar ``<path>.lock`` file so the data file itself can be
replaced atomically while the lock is held.
"""

from __future__ import annotations

import os
import sys
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

# 同一プロセス内のスレッド間は flock が効かないため、パスごとの RLock で直列化する
_LOCAL_LOCKS: dict[str, threading.RLock] = {}
_LOCAL_GUARD = threading.Lock()


def _local_lock(path: Path) -> threading.RLock:
    key = str(path.resolve())
    with _LOCAL_GUARD:
        lock = _LOCAL_LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _LOCAL_LOCKS[key] = lock
        return lock


def _acquire(fd: int, timeout_s: float) -> None:
    deadline = time.monotonic() + timeout_s
    if sys.platform == "win32":
        import msvcrt

        while True:
            try:
                msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
                return
            except OSError:
                if time.monotonic() >= deadline:
                    raise TimeoutError("file lock timeout")
                time.sleep(0.01)
    else:
        import fcntl

        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except OSError:
                if time.monotonic() >= deadline:
                    raise TimeoutError("file lock timeout")
                time.sleep(0.01)


def _release(fd: int) -> None:
    if sys.platform == "win32":
        import msvcrt

        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_UN)


@contextmanager
def locked(path: str | Path, timeout_s: float = 2.0) -> Iterator[None]:
    """Hold an exclusive lock associated with ``path`` for the block."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    lock_path = target.with_name(target.name + ".lock")
    with _local_lock(target):
        fd = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)
        try:
            _acquire(fd, timeout_s)
            try:
                yield
            finally:
                _release(fd)
        finally:
            os.close(fd)
