"""
Run Controller

Drives a single engine run through an explicit lifecycle:

    PENDING -> LAUNCHED -> STEADY -> SHUTTING_DOWN -> EXITED -> ARTIFACTS_RELOCATED
                                   (any step)  -> FAILED

Shutdown is always graceful first, because engines only flush their traces
when asked to exit. Once launched, the engine is asked to shut down on every
failure path, including KeyboardInterrupt.
"""

import logging
import shutil
import tempfile
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from enginelab.core.config import Settings
from enginelab.core.exceptions import (
    ArtifactRelocationFailed,
    EngineLaunchFailed,
    GracefulShutdownTimeout,
    ProfileCleanupFailed,
    RunError,
)
from enginelab.core.utils import Deadline, ensure_dir, format_duration, resolve_executable
from enginelab.runner.engines import (
    EngineAdapter,
    EngineProcess,
    RunArtifacts,
    RunContext,
    adapter_for,
)
from enginelab.study.kinds import EngineKind
from enginelab.study.study import Engine, Site

logger = logging.getLogger(__name__)


class RunPhase(str, Enum):
    PENDING = "pending"
    LAUNCHED = "launched"
    STEADY = "steady"
    SHUTTING_DOWN = "shutting_down"
    EXITED = "exited"
    ARTIFACTS_RELOCATED = "artifacts_relocated"
    FAILED = "failed"


class RunController:
    """
    Runs one engine once and leaves its artifacts in the sample directory.

    Usage:
        controller = RunController(settings, base_dir=study.directory)
        artifacts = controller.run_once(engine, site, 1, 30, sample_path, open_time=10)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        base_dir: Optional[Path] = None,
        adapters: Optional[Dict[EngineKind, EngineAdapter]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or Settings()
        self.base_dir = base_dir
        self._adapters: Dict[EngineKind, EngineAdapter] = dict(adapters or {})
        self._sleep = sleep
        self._clock = clock

        self.phase = RunPhase.PENDING
        self.history: List[Tuple[RunPhase, float]] = []
        self.launches = 0
        self.cleanup_failures: List[ProfileCleanupFailed] = []

    def adapter(self, kind: EngineKind) -> EngineAdapter:
        if kind not in self._adapters:
            self._adapters[kind] = adapter_for(kind, self.settings, sleep=self._sleep)
        return self._adapters[kind]

    def _transition(self, phase: RunPhase) -> None:
        self.phase = phase
        self.history.append((phase, self._clock()))
        logger.debug(f"Run phase: {phase.value}")

    # ==========================================================================
    # Run
    # ==========================================================================

    def run_once(
        self,
        engine: Engine,
        site: Site,
        run_index: int,
        sample_size: int,
        result_dir: Path,
        open_time: float,
        extra_args: Optional[List[str]] = None,
    ) -> RunArtifacts:
        """
        Launch, measure, shut down, and relocate artifacts for one run.

        Raises a RunError subclass on failure. The per-run work directory is
        removed on every path.
        """
        self.history = []
        self._transition(RunPhase.PENDING)

        executable = resolve_executable(engine.path, self.base_dir)
        if executable is None:
            self._transition(RunPhase.FAILED)
            raise EngineLaunchFailed(f"Engine {engine.key}: {engine.path!r} not found or not executable")

        adapter = self.adapter(engine.kind)
        ensure_dir(result_dir)
        work_dir = Path(tempfile.mkdtemp(prefix=f"enginelab-{engine.key}-"))
        ctx = RunContext(
            engine=engine,
            site=site,
            run_index=run_index,
            sample_size=sample_size,
            result_dir=Path(result_dir),
            work_dir=work_dir,
            executable=executable,
            open_time=open_time,
            extra_args=list(extra_args or []),
            base_dir=self.base_dir,
        )

        logger.info(f"Run {run_index}/{sample_size}: {engine.key} on {site.url}")
        started = self._clock()
        proc: Optional[EngineProcess] = None
        try:
            proc = adapter.launch(ctx)
            self.launches += 1
            self._transition(RunPhase.LAUNCHED)

            adapter.await_ready(ctx, proc)
            self._transition(RunPhase.STEADY)
            adapter.capture_window(ctx, proc)

            self._transition(RunPhase.SHUTTING_DOWN)
            adapter.begin_shutdown(ctx, proc)
            self._shutdown(adapter, ctx, proc)
            self._transition(RunPhase.EXITED)

            artifacts = self._relocate(adapter, ctx)
            self._transition(RunPhase.ARTIFACTS_RELOCATED)
        except BaseException as e:
            self._transition(RunPhase.FAILED)
            if proc is not None and not isinstance(e, GracefulShutdownTimeout) and (
                proc.is_alive() or proc.live_descendants()
            ):
                self._abort(adapter, ctx, proc, e)
            raise
        finally:
            adapter.cleanup(ctx, proc)
            self._remove_work_dir(work_dir)

        logger.info(f"Run {run_index}/{sample_size} done in {format_duration(self._clock() - started)}")
        return artifacts

    # ==========================================================================
    # Shutdown
    # ==========================================================================

    def _shutdown(self, adapter: EngineAdapter, ctx: RunContext, proc: EngineProcess) -> None:
        """
        Repeat the engine's graceful termination until it exits, or time out.

        Processes the engine started must exit too, under the same deadline,
        before the run counts as exited.
        """
        timeout = self.settings.shutdown_timeout
        deadline = Deadline(timeout, clock=self._clock)
        interval = self.settings.poll_interval

        attempts = 0
        while proc.is_alive():
            if deadline.expired():
                self._give_up(proc, timeout, f"Engine pid {proc.pid} ignored {attempts} shutdown requests")
            proc.snapshot_descendants()
            adapter.shutdown(ctx, proc)
            attempts += 1
            proc.wait(min(interval, max(deadline.remaining(), 0.01)))

        logger.debug(f"Engine pid {proc.pid} exited with status {proc.returncode} after {attempts} request(s)")

        survivors = proc.live_descendants()
        while survivors:
            pids = [p.pid for p in survivors]
            if deadline.expired():
                self._give_up(
                    proc, timeout, f"Child processes {pids} of engine pid {proc.pid} ignored shutdown", pids
                )
            logger.debug(f"Waiting for child processes {pids} of engine pid {proc.pid}")
            proc.terminate_descendants()
            self._sleep(min(interval, max(deadline.remaining(), 0.01)))
            survivors = proc.live_descendants()

    def _give_up(self, proc: EngineProcess, timeout: float, reason: str, survivors: Optional[List[int]] = None) -> None:
        if self.settings.kill_on_timeout:
            logger.error(f"{reason}; killing them")
            proc.kill()
        else:
            logger.error(f"{reason}; leaving them running")
        raise GracefulShutdownTimeout(proc.pid, timeout, survivors)

    def _relocate(self, adapter: EngineAdapter, ctx: RunContext) -> RunArtifacts:
        try:
            return adapter.relocate_artifacts(ctx)
        except OSError as e:
            raise ArtifactRelocationFailed(
                f"Cannot store artifacts of run {ctx.run_index} in {ctx.result_dir}: {e}"
            ) from e

    def _abort(self, adapter: EngineAdapter, ctx: RunContext, proc: EngineProcess, cause: BaseException) -> None:
        """Best-effort graceful shutdown after a failure. The original error is re-raised by the caller."""
        logger.warning(f"Shutting down {ctx.engine.key} after {type(cause).__name__}")
        try:
            adapter.begin_shutdown(ctx, proc)
        except RunError as e:
            logger.warning(f"Ignoring {e} while aborting run")
        try:
            self._shutdown(adapter, ctx, proc)
        except RunError as e:
            logger.error(f"Engine shutdown after failure did not complete: {e}")

    # ==========================================================================
    # Cleanup
    # ==========================================================================

    def _remove_work_dir(self, work_dir: Path) -> None:
        """Delete the per-run work directory, retrying while the engine lets go of it."""
        retries = max(1, self.settings.cleanup_retries)
        last_error: Optional[OSError] = None
        for attempt in range(1, retries + 1):
            try:
                shutil.rmtree(work_dir)
                return
            except FileNotFoundError:
                return
            except OSError as e:
                last_error = e
                logger.warning(f"Failed to delete {work_dir} (attempt {attempt}/{retries}); will retry")
                if attempt < retries:
                    self._sleep(self.settings.poll_interval)

        failure = ProfileCleanupFailed(f"Gave up deleting {work_dir} after {retries} attempts: {last_error}")
        self.cleanup_failures.append(failure)
        logger.warning(str(failure))
