"""
Engine Variants

One adapter per engine kind. Each knows how to launch its engine with tracing
enabled, when it is ready, how to ask it to exit so that traces are flushed,
and where its artifacts end up.

    ServoLike         servoshell, SIGTERM, html + pftrace + manifest
    ChromiumLike      chromium, xdotool windowquit, pftrace
    ChromeDriverLike  chromedriver session, session deletion, pftrace
    ServoDriverLike   servoshell --webdriver, session deletion then SIGTERM
"""

import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Type

import psutil

from enginelab.core.config import Settings
from enginelab.core.exceptions import (
    ArtifactMissing,
    EngineLaunchFailed,
    WaitConditionFailed,
)
from enginelab.core.utils import resolve_executable, run_command_async, safe_json_dump
from enginelab.runner.webdriver import WebDriverClient, free_port
from enginelab.runner.window import quit_windows, run_window_hook, wait_for_window
from enginelab.study.kinds import EngineKind
from enginelab.study.layout import RunArtifactNames, artifact_names
from enginelab.study.study import Engine, Site

logger = logging.getLogger(__name__)

# Servo always writes its Perfetto trace to this name in its working directory
SERVO_PFTRACE = "servo.pftrace"
CHROMEDRIVER = "chromedriver"


@dataclass
class RunContext:
    """Everything an adapter needs to know about one run."""

    engine: Engine
    site: Site
    run_index: int
    sample_size: int
    result_dir: Path
    work_dir: Path
    executable: str
    open_time: float
    extra_args: List[str] = field(default_factory=list)
    base_dir: Optional[Path] = None

    @property
    def names(self) -> RunArtifactNames:
        return artifact_names(self.engine.kind, self.run_index, self.sample_size)

    @property
    def url(self) -> str:
        return self.site.url


@dataclass
class RunArtifacts:
    """Files a successful run left in its sample directory."""

    run_index: int
    trace: Path
    html: Optional[Path] = None
    manifest: Optional[Path] = None

    def paths(self) -> List[Path]:
        return [p for p in (self.html, self.trace, self.manifest) if p is not None]


class EngineProcess:
    """A launched engine (or WebDriver endpoint) and the processes it spawned."""

    def __init__(self, popen: subprocess.Popen, webdriver: Optional[WebDriverClient] = None):
        self.popen = popen
        self.webdriver = webdriver
        self._descendants: List[psutil.Process] = []

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.popen.poll()

    def is_alive(self) -> bool:
        return self.popen.poll() is None

    def wait(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for exit. Returns True once exited."""
        try:
            self.popen.wait(timeout=timeout)
            return True
        except subprocess.TimeoutExpired:
            return False

    def snapshot_descendants(self) -> None:
        """Remember child processes, so they can be awaited after the parent exits."""
        try:
            children = psutil.Process(self.pid).children(recursive=True)
        except psutil.Error:
            return
        known = {p.pid for p in self._descendants}
        self._descendants.extend(c for c in children if c.pid not in known)

    def live_descendants(self) -> List[psutil.Process]:
        """Remembered children that have not exited yet. Zombies count as exited."""
        alive = []
        for child in self._descendants:
            try:
                if child.is_running() and child.status() != psutil.STATUS_ZOMBIE:
                    alive.append(child)
            except psutil.NoSuchProcess:
                continue
        return alive

    def terminate_descendants(self) -> None:
        """Send SIGTERM to every remembered child still running."""
        for child in self.live_descendants():
            try:
                child.terminate()
            except psutil.NoSuchProcess:
                continue

    def kill(self) -> None:
        self.snapshot_descendants()
        for child in self._descendants:
            try:
                child.kill()
            except psutil.Error:
                pass
        if self.is_alive():
            self.popen.kill()
        self.popen.wait()
        psutil.wait_procs(self.live_descendants(), timeout=1)

    def close(self) -> None:
        if self.webdriver is not None:
            self.webdriver.close()


class EngineAdapter:
    """
    Base engine variant.

    The run controller drives an adapter through
    launch -> await_ready -> capture_window -> begin_shutdown -> shutdown (repeated)
    -> relocate_artifacts -> cleanup.
    """

    kind: EngineKind

    def __init__(self, settings: Optional[Settings] = None, sleep: Callable[[float], None] = time.sleep):
        self.settings = settings or Settings()
        self._sleep = sleep

    def artifact_names(self, run_index: int, sample_size: int) -> RunArtifactNames:
        return artifact_names(self.kind, run_index, sample_size)

    def launch(self, ctx: RunContext) -> EngineProcess:
        raise NotImplementedError

    def await_ready(self, ctx: RunContext, proc: EngineProcess) -> None:
        self._check_alive(proc)

    def capture_window(self, ctx: RunContext, proc: EngineProcess) -> None:
        """Keep the page open for the measurement window."""
        logger.debug(f"Keeping {ctx.engine.key} open for {ctx.open_time:.1f}s")
        self._sleep(ctx.open_time)

    def begin_shutdown(self, ctx: RunContext, proc: EngineProcess) -> None:
        """One-off step before the termination loop."""

    def shutdown(self, ctx: RunContext, proc: EngineProcess) -> None:
        """Send one graceful termination request. Called repeatedly until exit."""
        if proc.is_alive():
            proc.popen.terminate()

    def relocate_artifacts(self, ctx: RunContext) -> RunArtifacts:
        raise NotImplementedError

    def cleanup(self, ctx: RunContext, proc: Optional[EngineProcess]) -> None:
        if proc is not None:
            proc.close()

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def environment(self) -> Dict[str, str]:
        return os.environ.copy()

    def _spawn(self, cmd: List[str], ctx: RunContext) -> subprocess.Popen:
        logger.debug(f"Launching {ctx.engine.key}: {cmd}")
        try:
            return run_command_async(cmd, cwd=ctx.work_dir, env=self.environment())
        except OSError as e:
            raise EngineLaunchFailed(f"Cannot launch {ctx.engine.key} ({cmd[0]}): {e}") from e

    def _check_alive(self, proc: EngineProcess) -> None:
        if not proc.is_alive():
            raise EngineLaunchFailed(f"Engine pid {proc.pid} exited early with status {proc.returncode}")

    def _place_window(self, ctx: RunContext, proc: EngineProcess) -> None:
        """Wait for a visible window, then run the engine's window hook, if it has one.

        Engines with neither a window class nor a window hook are not waited for.
        """
        command = ctx.engine.window_command
        if not command and not ctx.engine.window_class:
            return
        if not wait_for_window(
            proc.pid,
            ctx.engine.window_class,
            timeout=self.settings.window_timeout,
            sleep=self._sleep,
        ):
            raise EngineLaunchFailed(
                f"{ctx.engine.key} (pid {proc.pid}) showed no window within {self.settings.window_timeout:.0f}s"
            )
        if command and not run_window_hook(command, proc.pid):
            raise EngineLaunchFailed(f"Window command {command} failed for pid {proc.pid}")

    def _require(self, path: Path, what: str) -> Path:
        if not path.is_file():
            raise ArtifactMissing(f"{what} not found at {path}")
        return path


# ============================================================================
# Servo
# ============================================================================


class ServoEngine(EngineAdapter):
    """servoshell, closed with SIGTERM, which flushes both traces."""

    kind = EngineKind.SERVO

    def environment(self) -> Dict[str, str]:
        env = super().environment()
        if self.settings.tracing:
            env["SERVO_TRACING"] = self.settings.tracing
        return env

    def command(self, ctx: RunContext) -> List[str]:
        return [
            ctx.executable,
            *self._servo_args(ctx),
            *ctx.extra_args,
            ctx.url,
        ]

    def _servo_args(self, ctx: RunContext) -> List[str]:
        args = [
            f"--profiler-trace-path={ctx.result_dir / ctx.names.html}",
            "--print-pwm",
            "--ignore-certificate-errors",
        ]
        if ctx.site.user_agent:
            args.append(f"--user-agent={ctx.site.user_agent}")
        if ctx.site.screen_size:
            width, height = ctx.site.screen_size
            args.append(f"--screen-size={width}x{height}")
        return args

    def launch(self, ctx: RunContext) -> EngineProcess:
        return EngineProcess(self._spawn(self.command(ctx), ctx))

    def await_ready(self, ctx: RunContext, proc: EngineProcess) -> None:
        super().await_ready(ctx, proc)
        self._place_window(ctx, proc)

    def relocate_artifacts(self, ctx: RunContext) -> RunArtifacts:
        names = ctx.names
        html = self._require(ctx.result_dir / names.html, "HTML trace")
        emitted = self._require(ctx.work_dir / SERVO_PFTRACE, "Perfetto trace")

        trace = ctx.result_dir / names.trace
        shutil.move(str(emitted), str(trace))

        manifest = ctx.result_dir / names.manifest
        safe_json_dump({"html": names.html, "perfetto": names.trace}, manifest)
        return RunArtifacts(run_index=ctx.run_index, trace=trace, html=html, manifest=manifest)


# ============================================================================
# Chromium
# ============================================================================


class ChromiumEngine(EngineAdapter):
    """
    Chromium with a throwaway profile.

    Chromium does not write its startup trace on SIGTERM, so it is closed by
    asking its window to quit.
    """

    kind = EngineKind.CHROMIUM

    def command(self, ctx: RunContext) -> List[str]:
        tracing = self.settings.tracing
        cmd = [
            ctx.executable,
            f"--user-data-dir={ctx.work_dir / 'profile'}",
            "--no-first-run",
            f"--trace-startup={tracing}" if tracing else "--trace-startup",
            f"--trace-startup-file={ctx.result_dir / ctx.names.trace}",
            "--ignore-certificate-errors",
        ]
        if ctx.site.user_agent:
            cmd.append(f"--user-agent={ctx.site.user_agent}")
        if ctx.site.screen_size:
            width, height = ctx.site.screen_size
            cmd.append(f"--window-size={width},{height}")
        return cmd + [*ctx.extra_args, ctx.url]

    def launch(self, ctx: RunContext) -> EngineProcess:
        return EngineProcess(self._spawn(self.command(ctx), ctx))

    def await_ready(self, ctx: RunContext, proc: EngineProcess) -> None:
        super().await_ready(ctx, proc)
        self._place_window(ctx, proc)

    def shutdown(self, ctx: RunContext, proc: EngineProcess) -> None:
        # No window is normal while Chromium is already closing
        quit_windows(proc.pid, ctx.engine.window_class)

    def relocate_artifacts(self, ctx: RunContext) -> RunArtifacts:
        trace = self._require(ctx.result_dir / ctx.names.trace, "Perfetto trace")
        return RunArtifacts(run_index=ctx.run_index, trace=trace)


# ============================================================================
# WebDriver-controlled engines
# ============================================================================


class WebDriverEngine(EngineAdapter):
    """Shared session handling for engines driven over WebDriver."""

    def capabilities(self, ctx: RunContext) -> Dict[str, Any]:
        return {"pageLoadStrategy": "none", "acceptInsecureCerts": True}

    def _connect(self, popen: subprocess.Popen, port: int) -> EngineProcess:
        return EngineProcess(popen, webdriver=WebDriverClient(f"http://127.0.0.1:{port}"))

    def await_ready(self, ctx: RunContext, proc: EngineProcess) -> None:
        super().await_ready(ctx, proc)
        driver = proc.webdriver
        driver.wait_until_ready(self.settings.driver_ready_timeout, sleep=self._sleep)
        driver.new_session(self.capabilities(ctx))
        logger.debug(f"Navigating to {ctx.url}")
        driver.navigate(ctx.url)

    def capture_window(self, ctx: RunContext, proc: EngineProcess) -> None:
        super().capture_window(ctx, proc)
        self.check_wait_conditions(ctx, proc)

    def check_wait_conditions(self, ctx: RunContext, proc: EngineProcess) -> None:
        """Each selector must match exactly its expected number of elements."""
        failures = []
        for selector, expected in ctx.site.wait_conditions.items():
            actual = proc.webdriver.find_elements(selector)
            logger.debug(f"{selector!r}: expected {expected}, found {actual}")
            if actual != expected:
                failures.append(f"{selector!r}: expected {expected}, actual {actual}")
        if failures:
            raise WaitConditionFailed(f"{ctx.site.key}: " + "; ".join(failures))

    def begin_shutdown(self, ctx: RunContext, proc: EngineProcess) -> None:
        if proc.webdriver is not None:
            proc.webdriver.delete_session()


class ChromeDriverEngine(WebDriverEngine):
    """
    Chromium under ChromeDriver.

    ChromeDriver gives Chromium a clean profile. Chromium does not rename its
    trace to the requested file under ChromeDriver, so the trace is written to
    a scratch directory and copied into the sample afterwards.
    """

    kind = EngineKind.CHROME_DRIVER

    def trace_dir(self, ctx: RunContext) -> Path:
        return ctx.work_dir / "trace"

    def capabilities(self, ctx: RunContext) -> Dict[str, Any]:
        tracing = self.settings.tracing
        args = [
            f"--trace-startup={tracing}" if tracing else "--trace-startup",
            f"--trace-startup-file={self.trace_dir(ctx) / 'chrome.pftrace'}",
            *ctx.extra_args,
        ]

        # ChromeDriver ignores the standard userAgent capability
        mobile_emulation: Dict[str, Any] = {}
        if ctx.site.user_agent:
            mobile_emulation["userAgent"] = ctx.site.user_agent
        if ctx.site.screen_size:
            width, height = ctx.site.screen_size
            mobile_emulation["deviceMetrics"] = {"width": width, "height": height}

        capabilities = super().capabilities(ctx)
        capabilities["goog:chromeOptions"] = {
            "binary": ctx.executable,
            "args": args,
            "mobileEmulation": mobile_emulation,
        }
        return capabilities

    def launch(self, ctx: RunContext) -> EngineProcess:
        driver_name = ctx.engine.driver_path or CHROMEDRIVER
        driver = resolve_executable(driver_name, ctx.base_dir)
        if driver is None:
            raise EngineLaunchFailed(f"ChromeDriver {driver_name!r} not found or not executable")

        self.trace_dir(ctx).mkdir(parents=True, exist_ok=True)
        port = free_port()
        return self._connect(self._spawn([driver, f"--port={port}"], ctx), port)

    def relocate_artifacts(self, ctx: RunContext) -> RunArtifacts:
        trace_dir = self.trace_dir(ctx)
        candidates = sorted(
            (p for p in trace_dir.iterdir() if p.is_file()) if trace_dir.is_dir() else [],
            key=lambda p: p.stat().st_mtime,
        )
        if not candidates:
            raise ArtifactMissing(f"Chromium left no trace in {trace_dir}")
        if len(candidates) > 1:
            logger.warning(f"Several traces in {trace_dir}; keeping the newest, {candidates[-1].name}")

        trace = ctx.result_dir / ctx.names.trace
        shutil.copyfile(candidates[-1], trace)
        return RunArtifacts(run_index=ctx.run_index, trace=trace)


class ServoDriverEngine(WebDriverEngine, ServoEngine):
    """servoshell with its WebDriver server enabled. Same artifacts as ServoEngine."""

    kind = EngineKind.SERVO_DRIVER

    def command(self, ctx: RunContext, port: int) -> List[str]:
        # The page is loaded over WebDriver once a session exists
        return [
            ctx.executable,
            f"--webdriver={port}",
            *self._servo_args(ctx),
            *ctx.extra_args,
            "about:blank",
        ]

    def launch(self, ctx: RunContext) -> EngineProcess:
        port = free_port()
        return self._connect(self._spawn(self.command(ctx, port), ctx), port)


ENGINE_ADAPTERS: Dict[EngineKind, Type[EngineAdapter]] = {
    EngineKind.SERVO: ServoEngine,
    EngineKind.CHROMIUM: ChromiumEngine,
    EngineKind.CHROME_DRIVER: ChromeDriverEngine,
    EngineKind.SERVO_DRIVER: ServoDriverEngine,
}


def adapter_for(
    kind: EngineKind,
    settings: Optional[Settings] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> EngineAdapter:
    """Instantiate the adapter for an engine kind."""
    return ENGINE_ADAPTERS[kind](settings, sleep=sleep)
