"""Cross-process exclusive file lock.

- Unix/Linux/macOS: fcntl.flock
- Windows: msvcrt.locking

Each `exclusive_lock()` opens its own file description, so the lock also
serializes threads of the same process.
"""

from __future__ import annotations

import logging
import platform
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import IO

from skill_manager.errors import RegistryError, RegistryLockedError

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.05


class LockBusy(Exception):
    """The lock is held elsewhere (non-blocking attempt failed)."""


def _acquire_unix(handle: IO) -> None:
    import fcntl

    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as e:
        raise LockBusy(handle.name) from e


def _release_unix(handle: IO) -> None:
    import fcntl

    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _acquire_windows(handle: IO) -> None:
    import msvcrt

    try:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
    except OSError as e:
        # 13 (EACCES) / 36 (EDEADLK): held by someone else
        if e.errno in (13, 36):
            raise LockBusy(handle.name) from e
        raise


def _release_windows(handle: IO) -> None:
    import msvcrt

    handle.seek(0)
    msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)


def _acquire(handle: IO) -> None:
    if platform.system() == "Windows":
        _acquire_windows(handle)
    else:
        _acquire_unix(handle)


def _release(handle: IO) -> None:
    if platform.system() == "Windows":
        _release_windows(handle)
    else:
        _release_unix(handle)


@contextmanager
def exclusive_lock(lock_path: Path, timeout_seconds: float) -> Iterator[None]:
    """Hold an exclusive lock on lock_path for the duration of the block.

    Args:
        lock_path: Lock file (created if missing).
        timeout_seconds: How long to poll before giving up.

    Raises:
        RegistryLockedError: The lock was not acquired before the timeout.
        RegistryError: The lock file could not be opened.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        handle = open(lock_path, "a+", encoding="utf-8")
    except OSError as e:
        raise RegistryError(f"cannot open lock file {lock_path}: {e}") from e

    try:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while True:
            try:
                _acquire(handle)
                break
            except LockBusy:
                if time.monotonic() >= deadline:
                    raise RegistryLockedError(
                        f"registry is locked by another process: {lock_path} "
                        f"(waited {timeout_seconds}s)"
                    ) from None
                time.sleep(_POLL_INTERVAL_SECONDS)
            except OSError as e:
                raise RegistryError(f"failed to lock {lock_path}: {e}") from e

        logger.debug("Acquired lock on %s", lock_path)
        try:
            yield
        finally:
            try:
                _release(handle)
            except OSError as e:
                logger.warning("Failed to release lock on %s: %s", lock_path, e)
            else:
                logger.debug("Released lock on %s", lock_path)
    finally:
        handle.close()
