"""File locks: flock for same-host writers, lock files for shared stores."""

from __future__ import annotations

import contextlib
import fcntl
import json
import os
import time
from pathlib import Path
from typing import Iterator

from tenacity import retry, retry_if_exception_type, stop_after_delay, wait_fixed

LOCK_RETRY_DELAY_S = 0.025
LOCK_ACQUIRE_TIMEOUT_S = 2.0
LOCK_STALE_THRESHOLD_S = 5 * 60.0


@contextlib.contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``flock`` on *path* (created if missing)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _break_if_stale(lock_path: Path, stale_after: float) -> None:
    try:
        age = time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        return
    if age > stale_after:
        with contextlib.suppress(FileNotFoundError):
            lock_path.unlink()


def acquire_lock_file(
    lock_path: Path,
    *,
    timeout: float = LOCK_ACQUIRE_TIMEOUT_S,
    stale_after: float = LOCK_STALE_THRESHOLD_S,
) -> None:
    """Create *lock_path* exclusively, retrying until *timeout* elapses.

    Raises ``FileExistsError`` when another holder keeps the lock past the
    deadline.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    @retry(
        retry=retry_if_exception_type(FileExistsError),
        stop=stop_after_delay(timeout),
        wait=wait_fixed(LOCK_RETRY_DELAY_S),
        reraise=True,
    )
    def _create() -> None:
        _break_if_stale(lock_path, stale_after)
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps({"pid": os.getpid(), "createdAt": time.time()}))

    _create()


def release_lock_file(lock_path: Path) -> None:
    with contextlib.suppress(FileNotFoundError):
        lock_path.unlink()


@contextlib.contextmanager
def exclusive_lock_file(lock_path: Path, *, timeout: float = LOCK_ACQUIRE_TIMEOUT_S) -> Iterator[None]:
    acquire_lock_file(lock_path, timeout=timeout)
    try:
        yield
    finally:
        release_lock_file(lock_path)
