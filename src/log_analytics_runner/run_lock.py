"""Singleton run lock backed by a pid marker file.

Existence of the marker means "a run is active". The marker is created with
O_EXCL so two runs racing for the same path cannot both win. A stale marker
(the owner was SIGKILLed) is reported, never removed automatically: the
operator has to clear it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import psutil

from .errors import AlreadyRunning, LockWriteFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunLock:
    path: Path
    pid: int


def _read_pid(lock_path: Path) -> Optional[int]:
    try:
        return int(lock_path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def _pid_alive(pid: int) -> bool:
    try:
        return psutil.pid_exists(pid)
    except (psutil.Error, OSError):
        return False


def acquire(lock_path: Path | str) -> RunLock:
    """Create the marker at `lock_path` holding our pid.

    Raises AlreadyRunning if any marker is present, LockWriteFailure if the
    marker cannot be created for any other reason.
    """

    path = Path(lock_path)
    pid = os.getpid()
    try:
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError:
        owner = _read_pid(path)
        alive = _pid_alive(owner) if owner is not None else None
        raise AlreadyRunning(path, owner_pid=owner, owner_alive=alive) from None
    except OSError as e:
        raise LockWriteFailure(path, e.strerror or str(e)) from e

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"{pid}\n")
    except OSError as e:
        path.unlink(missing_ok=True)
        raise LockWriteFailure(path, e.strerror or str(e)) from e

    logger.debug(f"Acquired run lock {path} (pid={pid})")
    return RunLock(path=path, pid=pid)


def release(lock: Optional[RunLock]) -> bool:
    """Remove the marker if it is still ours.

    Safe to call repeatedly and from racing shutdown paths: a missing marker
    is a no-op. Returns False only when removal was attempted and failed;
    the failure is logged, not raised.
    """

    if lock is None:
        return True

    owner = _read_pid(lock.path)
    if owner is None and not lock.path.exists():
        return True
    if owner is not None and owner != lock.pid:
        logger.warning(f"Lock marker {lock.path} now names pid={owner}, not ours ({lock.pid}); leaving it")
        return True

    try:
        lock.path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Failed to remove lock marker {lock.path}: {e}")
        return False

    logger.debug(f"Released run lock {lock.path}")
    return True
