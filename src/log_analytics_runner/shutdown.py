"""Graceful shutdown for a run.

Signal handlers do nothing but enqueue the signal number. A dedicated
coordinator thread picks it up and performs the stop sequence outside signal
context:

1. move the run to TERMINATING (later requests are ignored),
2. if parsing/reporting was under way, ask the engine to persist its
   checkpoint *before* any worker is waited on or force-stopped,
3. stop launching shards and wait for every launched worker to exit,
4. release the run lock and remove the scheduler state file,
5. move to DONE and exit the process with status 0.

Lock acquisition and phase changes go through the same guard so a shutdown
always sees a consistent "lock held / not held" picture.
"""

from __future__ import annotations

import logging
import os
import queue
import signal
import sys
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from . import run_lock
from .engine import AnalysisEngine
from .run_lock import RunLock
from .scheduler import ParseScheduler

logger = logging.getLogger(__name__)


class RunPhase(str, Enum):
    IDLE = "idle"
    LOCKING = "locking"
    PARSING = "parsing"
    REPORTING = "reporting"
    TERMINATING = "terminating"
    DONE = "done"
    FAILED = "failed"


TERMINATION_SIGNALS = [signal.SIGINT, signal.SIGTERM]
if hasattr(signal, "SIGHUP"):
    TERMINATION_SIGNALS.append(signal.SIGHUP)

_CHECKPOINT_PHASES = (RunPhase.PARSING, RunPhase.REPORTING)


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


def _exit_process(status: int) -> None:
    logging.shutdown()
    try:
        sys.stdout.flush()
        sys.stderr.flush()
    finally:
        os._exit(status)


class ShutdownCoordinator:
    """Owns the RunPhase, the held RunLock and the termination sequence."""

    def __init__(
        self,
        scheduler: ParseScheduler,
        *,
        grace_seconds: Optional[float] = None,
        exit_func: Optional[Callable[[int], Any]] = None,
    ):
        self._scheduler = scheduler
        self._grace = grace_seconds
        self._exit = exit_func or _exit_process

        self._guard = threading.Lock()
        self._phase = RunPhase.IDLE
        self._shutdown_started = False
        self._lock: Optional[RunLock] = None
        self._engine: Optional[AnalysisEngine] = None

        self._requests: "queue.SimpleQueue[Optional[int]]" = queue.SimpleQueue()
        self._thread: Optional[threading.Thread] = None
        self._finished = threading.Event()
        self._previous_handlers: Dict[int, Any] = {}

        self.exit_status: Optional[int] = None
        self.checkpoint_persisted = False

    # ---- lifecycle ----

    @property
    def phase(self) -> RunPhase:
        with self._guard:
            return self._phase

    @property
    def shutdown_started(self) -> bool:
        with self._guard:
            return self._shutdown_started

    def start(self, *, install_signals: bool = True) -> None:
        if self._thread is None:
            self._thread = threading.Thread(target=self._run, name="shutdown-coordinator", daemon=True)
            self._thread.start()
        if install_signals:
            self._install_handlers()

    def close(self) -> None:
        self._restore_handlers()
        if self._thread is not None:
            self._requests.put(None)
            self._thread.join()
            self._thread = None

    def attach_engine(self, engine: AnalysisEngine) -> None:
        with self._guard:
            self._engine = engine

    def request_shutdown(self, signum: int = signal.SIGTERM) -> None:
        """Ask for a graceful stop, exactly as a delivered signal would."""
        self._requests.put(int(signum))

    def wait_for_shutdown(self, timeout: Optional[float] = None) -> Optional[int]:
        self._finished.wait(timeout)
        return self.exit_status

    # ---- used by the orchestrator ----

    def advance(self, phase: RunPhase) -> bool:
        """Move to `phase` unless a shutdown has already taken over the run."""

        with self._guard:
            if self._shutdown_started:
                return False
            logger.debug(f"Run phase {self._phase.value} -> {phase.value}")
            self._phase = phase
            return True

    def acquire_lock(self, lock_path: Path) -> Optional[RunLock]:
        """Take the run lock; None if a shutdown started first.

        AlreadyRunning / LockWriteFailure propagate to the caller.
        """

        with self._guard:
            if self._shutdown_started:
                return None
            self._lock = run_lock.acquire(lock_path)
            return self._lock

    def release_lock(self) -> bool:
        with self._guard:
            lock, self._lock = self._lock, None
        return run_lock.release(lock)

    # ---- signal plumbing ----

    def _on_signal(self, signum: int, _frame: object) -> None:
        self._requests.put(signum)

    def _install_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread; signal handlers not installed")
            return
        for sig in TERMINATION_SIGNALS:
            try:
                self._previous_handlers[sig] = signal.signal(sig, self._on_signal)
            except (OSError, ValueError) as e:
                logger.debug(f"Cannot install handler for {_signal_name(sig)}: {e}")

    def _restore_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig, handler in self._previous_handlers.items():
            try:
                signal.signal(sig, handler)
            except (OSError, ValueError, TypeError) as e:
                logger.debug(f"Cannot restore handler for {_signal_name(sig)}: {e}")
        self._previous_handlers.clear()

    # ---- coordinator thread ----

    def _run(self) -> None:
        while True:
            signum = self._requests.get()
            if signum is None:
                return
            self._terminate(signum)

    def _terminate(self, signum: int) -> None:
        name = _signal_name(signum)
        with self._guard:
            if self._shutdown_started or self._phase in (RunPhase.DONE, RunPhase.FAILED):
                logger.debug(f"Ignoring {name}: run is already {self._phase.value}")
                return
            self._shutdown_started = True
            interrupted = self._phase
            self._phase = RunPhase.TERMINATING
            engine = self._engine

        logger.warning(f"Received {name} while {interrupted.value}; stopping gracefully")

        try:
            if interrupted in _CHECKPOINT_PHASES and engine is not None:
                try:
                    engine.persist_checkpoint()
                    self.checkpoint_persisted = True
                    logger.info("Saved current parse position")
                except Exception as e:
                    logger.error(f"Failed to persist checkpoint: {e}")

            self._scheduler.wait_for_workers(self._grace)
        except Exception:
            logger.exception("Error while waiting for parse workers during shutdown")
        finally:
            self.release_lock()
            self._scheduler.clear_temp_state(final=True)
            with self._guard:
                self._phase = RunPhase.DONE
            self.exit_status = 0
            self._finished.set()

        logger.info("Graceful shutdown complete")
        self._exit(0)
