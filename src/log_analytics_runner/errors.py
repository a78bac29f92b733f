"""Exception types shared across the run coordinator."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence


class RunnerError(Exception):
    """Base class for coordinator failures."""


class ConfigError(RunnerError):
    """Configuration file could not be read or is malformed."""


class InvalidFormat(RunnerError, ValueError):
    """A date, time or timezone argument has the wrong shape."""


class AlreadyRunning(RunnerError):
    """Another run holds the lock marker."""

    def __init__(self, lock_path: Path, owner_pid: Optional[int] = None, owner_alive: Optional[bool] = None):
        self.lock_path = Path(lock_path)
        self.owner_pid = owner_pid
        self.owner_alive = owner_alive

        msg = f"Another run appears to be active: lock marker {self.lock_path} exists"
        if owner_pid is not None:
            msg += f" (pid={owner_pid})"
        if owner_alive is False:
            msg += "; that process is gone, remove the marker by hand if no run is active"
        super().__init__(msg)


class LockWriteFailure(RunnerError):
    """The lock marker could not be created."""

    def __init__(self, lock_path: Path, reason: str):
        self.lock_path = Path(lock_path)
        self.reason = reason
        super().__init__(f"Cannot write lock marker {self.lock_path}: {reason}")


class EngineError(RunnerError):
    """Parse or report phase failed inside the analysis engine."""

    def __init__(self, message: str, failed_shards: Sequence[Sequence[str]] = ()):
        self.failed_shards = [list(s) for s in failed_shards]
        super().__init__(message)
