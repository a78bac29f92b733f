"""Parallel parse scheduler.

What this does
- budget <= 1: one sequential `engine.parse(sources, scope)` in this process.
- budget  > 1: asks the engine to partition the sources, then runs one worker
  process per shard, never more than `budget` alive at once. Finished workers
  are reaped and their slot reused until every shard has run.

Failure policy
- A failing worker (non-zero exit) is recorded; its siblings keep going.
  After every launched worker is terminal, one aggregate EngineError lists the
  failed shards.

Shutdown hooks
- stop_launching() stops new shards from starting (pending shards are
  dropped; the engine checkpoint lets the next run resume them).
- wait_for_workers() blocks until every launched worker has exited; with a
  grace period it escalates terminate -> kill.

Workers ignore SIGINT/SIGTERM/SIGHUP so a Ctrl-C delivered to the whole
process group cannot kill them before the coordinator has flushed the
checkpoint.

While workers are alive their pids are mirrored to a small JSON state file
(`<pid_dir>/<pid_file>.workers.json`) so an operator can see what a run
spawned. The file is removed at startup and on clean shutdown.
"""

from __future__ import annotations

import logging
import multiprocessing as mp
import multiprocessing.connection
import os
import signal
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

from .config import write_json_atomic
from .engine import AnalysisEngine
from .errors import EngineError
from .scope import TemporalScope

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.5
KILL_AFTER_TERMINATE_SECONDS = 5.0
WAIT_LOG_INTERVAL_SECONDS = 10.0

_WORKER_IGNORED_SIGNALS = [signal.SIGINT, signal.SIGTERM]
if hasattr(signal, "SIGHUP"):
    _WORKER_IGNORED_SIGNALS.append(signal.SIGHUP)


@dataclass
class WorkerRecord:
    index: int
    shard: List[str]
    process: Any
    started_at: float = field(default_factory=time.monotonic)

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    def is_terminal(self) -> bool:
        return self.process.exitcode is not None


@dataclass
class ParseOutcome:
    mode: str
    shards: int = 0
    succeeded: int = 0
    cancelled: bool = False
    skipped_shards: List[List[str]] = field(default_factory=list)
    result: Any = None
    elapsed_seconds: float = 0.0


def _worker_main(engine: AnalysisEngine, shard: List[str], scope: TemporalScope, index: int) -> None:
    for sig in _WORKER_IGNORED_SIGNALS:
        signal.signal(sig, signal.SIG_IGN)

    t0 = time.monotonic()
    try:
        engine.parse(shard, scope)
    except Exception:
        logger.exception(f"Parse worker {index} (pid={os.getpid()}) failed on {len(shard)} source(s)")
        sys.exit(1)
    logger.debug(f"Parse worker {index} (pid={os.getpid()}) done in {time.monotonic() - t0:.2f}s")


class ParseScheduler:
    """Runs the engine's parse phase within a worker budget."""

    def __init__(
        self,
        *,
        state_path: Optional[Path] = None,
        start_method: Optional[str] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.state_path = Path(state_path) if state_path else None
        self._ctx = mp.get_context(start_method)
        self._poll_interval = float(poll_interval)
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._workers: List[WorkerRecord] = []
        self._state_closed = False
        self.peak_workers = 0

    # ---- shutdown hooks ----

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop_launching(self) -> None:
        with self._lock:
            self._stop.set()

    def launched_workers(self) -> List[WorkerRecord]:
        with self._lock:
            return list(self._workers)

    def active_workers(self) -> List[WorkerRecord]:
        return [r for r in self.launched_workers() if not r.is_terminal()]

    def wait_for_workers(self, grace: Optional[float] = None) -> None:
        """Block until every launched worker has exited.

        With grace=None this waits for as long as it takes. Otherwise, after
        `grace` seconds the remaining workers are terminated, and killed
        KILL_AFTER_TERMINATE_SECONDS later.
        """

        self.stop_launching()
        workers = self.launched_workers()

        deadline = None if grace is None else time.monotonic() + max(0.0, float(grace))
        escalation = 0
        next_log = time.monotonic()
        while True:
            alive = [r for r in workers if not r.is_terminal()]
            if not alive:
                break

            now = time.monotonic()
            if now >= next_log:
                pids = ",".join(str(r.pid) for r in alive)
                logger.info(f"Waiting for {len(alive)} parse worker(s) to finish (pids={pids})")
                next_log = now + WAIT_LOG_INTERVAL_SECONDS

            if deadline is not None and now >= deadline:
                if escalation == 0:
                    logger.warning(f"Grace period expired; terminating {len(alive)} parse worker(s)")
                    for r in alive:
                        r.process.terminate()
                    deadline = now + KILL_AFTER_TERMINATE_SECONDS
                else:
                    logger.warning(f"Killing {len(alive)} parse worker(s)")
                    for r in alive:
                        r.process.kill()
                    deadline = None
                escalation += 1

            self._wait_any(alive)

        for r in workers:
            r.process.join()
        self._write_state()

    def clear_temp_state(self, *, final: bool = False) -> None:
        """Remove the worker state file.

        Called at startup (leftovers from an earlier run) and with final=True
        at shutdown, after which the file is never rewritten.
        """

        if self.state_path is None:
            return
        with self._lock:
            if final:
                self._state_closed = True
            try:
                self.state_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove scheduler state file {self.state_path}: {e}")

    # ---- parse phase ----

    def schedule(
        self,
        scope: TemporalScope,
        budget: int,
        sources: Sequence[str],
        engine: AnalysisEngine,
    ) -> ParseOutcome:
        t0 = time.monotonic()
        budget = int(budget)
        if budget <= 1:
            logger.info(f"Parsing {len(sources)} source(s) sequentially ({scope.describe()})")
            try:
                result = engine.parse(list(sources), scope)
            except Exception as e:
                raise EngineError(f"Parse failed: {e}") from e
            return ParseOutcome(
                mode="sequential",
                shards=1,
                succeeded=1,
                result=result,
                elapsed_seconds=time.monotonic() - t0,
            )

        try:
            shards = [list(s) for s in engine.partition(list(sources), scope, budget) if s]
        except Exception as e:
            raise EngineError(f"Partitioning sources failed: {e}") from e

        logger.info(f"Parsing {len(shards)} shard(s) with up to {budget} worker(s) ({scope.describe()})")
        outcome = ParseOutcome(mode="parallel", shards=len(shards))
        pending: Deque[Tuple[int, List[str]]] = deque(enumerate(shards))
        launched: List[WorkerRecord] = []
        reported: set[int] = set()
        failed: List[List[str]] = []

        while True:
            active: List[WorkerRecord] = []
            for r in launched:
                if not r.is_terminal():
                    active.append(r)
                elif r.index not in reported:
                    reported.add(r.index)
                    self._report_exit(r, failed)

            while pending and len(active) < budget:
                idx, shard = pending[0]
                rec = self._launch(engine, shard, scope, idx)
                if rec is None:
                    break
                pending.popleft()
                launched.append(rec)
                active.append(rec)
                self.peak_workers = max(self.peak_workers, len(active))

            if self._stop.is_set() and pending:
                outcome.cancelled = True
                outcome.skipped_shards = [s for _, s in pending]
                logger.warning(f"Shutdown requested; {len(pending)} shard(s) not started")
                pending.clear()

            if not active and not pending:
                break
            if active:
                self._wait_any(active)

        for r in launched:
            r.process.join()
            if r.index not in reported:
                reported.add(r.index)
                self._report_exit(r, failed)
        self._write_state()

        outcome.succeeded = len(launched) - len(failed)
        outcome.elapsed_seconds = time.monotonic() - t0
        if failed:
            raise EngineError(f"{len(failed)} of {len(launched)} parse worker(s) failed", failed_shards=failed)
        return outcome

    # ---- internals ----

    def _launch(self, engine: AnalysisEngine, shard: List[str], scope: TemporalScope, index: int) -> Optional[WorkerRecord]:
        with self._lock:
            if self._stop.is_set():
                return None
            proc = self._ctx.Process(
                target=_worker_main,
                args=(engine, shard, scope, index),
                name=f"parse-worker-{index}",
            )
            proc.start()
            rec = WorkerRecord(index=index, shard=list(shard), process=proc)
            self._workers.append(rec)

        logger.debug(f"Started parse worker {index} pid={proc.pid} sources={len(shard)}")
        self._write_state()
        return rec

    def _report_exit(self, rec: WorkerRecord, failed: List[List[str]]) -> None:
        rc = rec.process.exitcode
        elapsed = time.monotonic() - rec.started_at
        if rc == 0:
            logger.debug(f"Parse worker {rec.index} pid={rec.pid} finished in {elapsed:.2f}s")
        else:
            logger.error(f"Parse worker {rec.index} pid={rec.pid} failed with exit code {rc}")
            failed.append(rec.shard)
        self._write_state()

    def _wait_any(self, records: Sequence[WorkerRecord]) -> None:
        sentinels = [r.process.sentinel for r in records]
        multiprocessing.connection.wait(sentinels, timeout=self._poll_interval)

    def _write_state(self) -> None:
        if self.state_path is None:
            return
        alive = self.active_workers()
        payload: Dict[str, Any] = {
            "coordinator_pid": os.getpid(),
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "workers": [{"index": r.index, "pid": r.pid, "sources": r.shard} for r in alive],
        }
        with self._lock:
            if self._state_closed:
                return
            try:
                write_json_atomic(self.state_path, payload, indent=2)
            except OSError as e:
                logger.warning(f"Failed to write scheduler state file {self.state_path}: {e}")
