"""Filesystem primitives shared by the record stores.

``atomic_write_json`` writes through a temporary file in the target directory
followed by :func:`os.replace`, so concurrent readers in other processes see
either the previous record or the new one, never a partial write.
``file_lock`` takes an inter-process advisory lock for append-style files.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterator

_THREAD_LOCKS: dict[str, threading.RLock] = {}
_THREAD_LOCKS_GUARD = threading.Lock()


def ensure_parent_dir(path: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)


def atomic_write_json(path: str, payload: Any) -> None:
    """Atomically replace ``path`` with the JSON encoding of ``payload``."""

    ensure_parent_dir(path)
    directory = os.path.dirname(path) or "."
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, default=str)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _thread_lock_for(path: str) -> threading.RLock:
    with _THREAD_LOCKS_GUARD:
        lock = _THREAD_LOCKS.get(path)
        if lock is None:
            lock = threading.RLock()
            _THREAD_LOCKS[path] = lock
        return lock


def _acquire_file_lock(fd: int) -> None:
    """Acquire an exclusive advisory lock for ``fd`` across platforms."""

    if os.name == "nt":  # pragma: no cover - windows-specific branch
        import msvcrt

        while True:
            try:
                msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
                break
            except OSError as exc:  # pragma: no cover - windows-specific handling
                if getattr(exc, "winerror", None) == 33:  # Lock violation
                    time.sleep(0.05)
                    continue
                raise
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_EX)


def _release_file_lock(fd: int) -> None:
    if os.name == "nt":  # pragma: no cover - windows-specific branch
        import msvcrt

        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_UN)


@contextmanager
def file_lock(path: str) -> Iterator[None]:
    """Hold an inter-process (and intra-process) lock guarding ``path``."""

    lock_path = f"{path}.lock"
    ensure_parent_dir(lock_path)
    with _thread_lock_for(os.path.abspath(path)):
        fd = os.open(lock_path, os.O_CREAT | os.O_RDWR)
        try:
            _acquire_file_lock(fd)
            try:
                yield
            finally:
                _release_file_lock(fd)
        finally:
            os.close(fd)


__all__ = ["atomic_write_json", "ensure_parent_dir", "file_lock"]
