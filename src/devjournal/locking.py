"""File locking utilities for exports and single-instance watchers."""

from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import portalocker


class WatcherAlreadyRunning(Exception):
    """Raised when another process already holds a watcher lock."""
    pass


def _lock_path(path: Path, suffix: str = ".lock") -> Path:
    lock_path = path.with_suffix(path.suffix + suffix)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    if not lock_path.exists():
        lock_path.touch()
    return lock_path


@contextmanager
def file_lock(path: Path, timeout: float = 10.0) -> Generator[None, None, None]:
    """Acquire an exclusive lock on a file.

    Creates a .lock file alongside the target file.

    Args:
        path: File to lock
        timeout: Seconds to wait for lock

    Raises:
        portalocker.LockException: If lock cannot be acquired
    """
    with portalocker.Lock(_lock_path(path), timeout=timeout):
        yield


@contextmanager
def atomic_write(path: Path, mode: str = "w", encoding: str = "utf-8") -> Generator:
    """Write to a file atomically via a temp file and rename.

    Args:
        path: Target file path
        mode: Write mode ('w' for text, 'wb' for binary)
        encoding: Text encoding (ignored for binary mode)

    Yields:
        File handle for writing
    """
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)

    try:
        if "b" in mode:
            with open(tmp_path, mode) as f:
                yield f
        else:
            with open(tmp_path, mode, encoding=encoding) as f:
                yield f
        os.replace(tmp_path, path)

    except Exception:
        if tmp_path.exists():
            tmp_path.unlink()
        raise


@contextmanager
def locked_atomic_write(path: Path, mode: str = "w", encoding: str = "utf-8", timeout: float = 10.0) -> Generator:
    """Combine file lock with atomic write."""
    with file_lock(path, timeout=timeout):
        with atomic_write(path, mode=mode, encoding=encoding) as f:
            yield f


@contextmanager
def single_instance(path: Path, name: str) -> Generator[None, None, None]:
    """Hold a non-blocking exclusive lock for a long-running watcher.

    Args:
        path: Store file the watcher writes to
        name: Watcher kind, so different watchers may run side by side

    Raises:
        WatcherAlreadyRunning: If another process holds the lock
    """
    lock = portalocker.Lock(
        _lock_path(path, f".{name}.lock"),
        timeout=0,
        fail_when_locked=True,
    )
    try:
        lock.acquire()
    except portalocker.LockException as e:
        raise WatcherAlreadyRunning(f"A {name} watcher is already running for {path}") from e
    try:
        yield
    finally:
        lock.release()
