"""Top-level sequencing of one analysis run.

  validate scope -> build engine -> lock -> parse -> report -> unlock

Scope and engine problems surface before the lock is taken. Once the lock is
held every exit path releases it, except when a graceful shutdown has taken
over the run: then the shutdown coordinator owns release, after all workers
have exited.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .config import RunConfig
from .engine import AnalysisEngine, create_engine
from .errors import AlreadyRunning, ConfigError, EngineError, InvalidFormat, LockWriteFailure
from .scheduler import ParseScheduler
from .scope import TemporalScope, resolve_scope
from .shutdown import RunPhase, ShutdownCoordinator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 2


class RunOrchestrator:
    def __init__(
        self,
        config: RunConfig,
        *,
        engine: Optional[AnalysisEngine] = None,
        scheduler: Optional[ParseScheduler] = None,
        exit_func: Optional[Callable[[int], object]] = None,
        install_signals: bool = True,
    ):
        self.config = config
        self.engine = engine
        self.scheduler = scheduler or ParseScheduler(
            state_path=config.workers_state_path,
            start_method=config.mp_start_method,
        )
        self.coordinator = ShutdownCoordinator(
            self.scheduler,
            grace_seconds=config.shutdown_grace_seconds,
            exit_func=exit_func,
        )
        self._install_signals = install_signals
        self.outcome = None

    def run(self) -> int:
        cfg = self.config
        try:
            scope = resolve_scope(cfg.rebuild, cfg.build_date, cfg.start, cfg.stop, cfg.tz_offset)
        except InvalidFormat as e:
            logger.error(str(e))
            return EXIT_USAGE

        engine = self.engine
        if engine is None:
            try:
                engine = create_engine(cfg.engine, cfg.engine_settings())
            except ConfigError as e:
                logger.error(str(e))
                return EXIT_USAGE
            self.engine = engine

        self.coordinator.start(install_signals=self._install_signals)
        try:
            return self._run_locked(scope, engine)
        finally:
            self.coordinator.close()

    def _run_locked(self, scope: TemporalScope, engine: AnalysisEngine) -> int:
        coord = self.coordinator
        if not coord.advance(RunPhase.LOCKING):
            return self._defer_to_shutdown()

        try:
            lock = coord.acquire_lock(self.config.lock_path)
        except (AlreadyRunning, LockWriteFailure) as e:
            logger.error(str(e))
            coord.advance(RunPhase.FAILED)
            return EXIT_FATAL
        if lock is None:
            return self._defer_to_shutdown()
        logger.info(f"Acquired run lock {lock.path} (pid={lock.pid})")

        try:
            return self._run_phases(scope, engine)
        finally:
            if not coord.shutdown_started:
                coord.release_lock()
                self.scheduler.clear_temp_state(final=True)

    def _run_phases(self, scope: TemporalScope, engine: AnalysisEngine) -> int:
        coord = self.coordinator
        coord.attach_engine(engine)
        self.scheduler.clear_temp_state()

        t_run = time.monotonic()
        sources = list(self.config.sources)
        try:
            if scope.rebuild and not sources:
                logger.info(f"Rebuild without log sources; skipping parse phase ({scope.describe()})")
            else:
                if not coord.advance(RunPhase.PARSING):
                    return self._defer_to_shutdown()
                try:
                    self.outcome = self.scheduler.schedule(scope, self.config.jobs, sources, engine)
                except EngineError as e:
                    return self._fail(e)
                logger.debug(f"Parse phase took {self.outcome.elapsed_seconds:.2f}s ({self.outcome.mode})")

            if not coord.advance(RunPhase.REPORTING):
                return self._defer_to_shutdown()
            t_report = time.monotonic()
            try:
                engine.build_reports(scope, self.config.preserve_months)
            except Exception as e:
                return self._fail(EngineError(f"Report build failed: {e}"))
            logger.debug(f"Report phase took {time.monotonic() - t_report:.2f}s")
        except Exception:
            coord.advance(RunPhase.FAILED)
            raise

        if not coord.advance(RunPhase.DONE):
            return self._defer_to_shutdown()
        logger.info(f"Run complete in {time.monotonic() - t_run:.1f}s ({scope.describe()})")
        return EXIT_OK

    def _fail(self, err: EngineError) -> int:
        logger.error(str(err))
        for shard in err.failed_shards:
            logger.error(f"  failed shard: {', '.join(shard)}")
        if not self.coordinator.advance(RunPhase.FAILED):
            return self._defer_to_shutdown()
        return EXIT_FATAL

    def _defer_to_shutdown(self) -> int:
        logger.info("Shutdown in progress; waiting for it to complete")
        status = self.coordinator.wait_for_shutdown()
        return EXIT_OK if status is None else int(status)
