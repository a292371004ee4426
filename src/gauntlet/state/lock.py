from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from gauntlet.state.store import LOCK_FILE_NAME

LOGGER = logging.getLogger(__name__)


class LockConflictError(RuntimeError):
    """Raised when another invocation already holds the store lock."""

    def __init__(self, lock_path: Path) -> None:
        super().__init__(
            f"Another gauntlet run is in progress (lock file: {lock_path}). "
            "Remove the lock file if no run is active."
        )
        self.lock_path = lock_path


@dataclass(slots=True)
class LockHandle:
    path: Path
    released: bool = False


def lock_path_for(store_dir: Path) -> Path:
    return (store_dir / LOCK_FILE_NAME).resolve()


def is_locked(store_dir: Path) -> bool:
    return lock_path_for(store_dir).exists()


def acquire(store_dir: Path) -> LockHandle:
    store_dir.mkdir(parents=True, exist_ok=True)
    path = lock_path_for(store_dir)
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError as exc:
        raise LockConflictError(path) from exc
    try:
        os.write(fd, str(os.getpid()).encode("utf-8"))
    finally:
        os.close(fd)
    LOGGER.debug("Acquired lock %s", path)
    return LockHandle(path=path)


def release(handle: LockHandle) -> None:
    if handle.released:
        return
    try:
        handle.path.unlink()
    except FileNotFoundError:
        pass
    handle.released = True
    LOGGER.debug("Released lock %s", handle.path)


@contextmanager
def run_lock(store_dir: Path) -> Iterator[LockHandle]:
    handle = acquire(store_dir)
    try:
        yield handle
    finally:
        release(handle)
