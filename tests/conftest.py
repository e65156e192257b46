"""
enginelab Test Configuration and Fixtures
=========================================
Shared fixtures: a fake sysfs/procfs/cgroup tree, study writer, fake engines.
"""

import json
import stat
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest
import yaml

from enginelab.core.config import Settings
from enginelab.runner.engines import RunArtifacts
from enginelab.study.layout import artifact_names


# =============================================================================
# Fake kernel interfaces
# =============================================================================


class FakeKernel:
    """
    Writable stand-in for /sys, /proc and /sys/fs/cgroup.

    ``cpus`` logical CPUs with ``threads_per_core`` SMT threads each, numbered
    the way Linux usually does: cpu N and cpu N + cores share a core.
    Every file starts at the value release() restores.
    """

    def __init__(self, root: Path, cpus: int = 16, threads_per_core: int = 2):
        self.root = root
        self.sysfs = root / "sys"
        self.procfs = root / "proc"
        self.cgroup = root / "cgroup"
        self.cpu_count = cpus
        self.core_count = cpus // threads_per_core

        self.cpu_dir = self.sysfs / "devices" / "system" / "cpu"
        for cpu in range(cpus):
            d = self.cpu_dir / f"cpu{cpu}"
            self.write(d / "topology" / "core_id", cpu % self.core_count)
            self.write(d / "topology" / "physical_package_id", 0)
            if cpu != 0:
                self.write(d / "online", 1)
            self.write(d / "cpufreq" / "scaling_governor", "schedutil")
        self.write(self.cpu_dir / "cpufreq" / "boost", 1)

        kernel = self.procfs / "sys" / "kernel"
        self.write(kernel / "randomize_va_space", 2)
        self.write(kernel / "perf_event_paranoid", 4)

        all_cpus = f"0-{cpus - 1}"
        self.write(self.cgroup / "cgroup.subtree_control", "cpu cpuset memory")
        for group in ("system.slice", "user.slice", "user.slice/user-1000.slice", "shield"):
            self.write(self.cgroup / group / "cpuset.cpus", all_cpus)
            self.write(self.cgroup / group / "cgroup.procs", "")
        self.write(self.cgroup / "shield" / "cpuset.cpus.partition", "member")

    @staticmethod
    def write(path: Path, value) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{value}\n" if value != "" else "")

    def read(self, relative: str) -> str:
        return (self.root / relative).read_text().strip()

    def cpu_file(self, cpu: int, name: str) -> Path:
        return self.cpu_dir / f"cpu{cpu}" / name

    def snapshot(self) -> Dict[str, bytes]:
        """Every file's bytes, except cgroup membership."""
        return {
            str(p.relative_to(self.root)): p.read_bytes()
            for p in sorted(self.root.rglob("*"))
            if p.is_file() and p.name != "cgroup.procs"
        }

    def env(self) -> Dict[str, str]:
        """ENGINELAB_* variables pointing the CLI at this tree."""
        return {
            "ENGINELAB_SYSFS_ROOT": str(self.sysfs),
            "ENGINELAB_PROCFS_ROOT": str(self.procfs),
            "ENGINELAB_CGROUP_ROOT": str(self.cgroup),
            "ENGINELAB_PARTITION_SETTLE_SECONDS": "0",
            "ENGINELAB_PARTITION_TIMEOUT": "0.5",
            "ENGINELAB_POLL_INTERVAL": "0.05",
            "ENGINELAB_SHUTDOWN_TIMEOUT": "10",
            "ENGINELAB_CLEANUP_RETRIES": "2",
        }


@pytest.fixture
def fake_kernel(tmp_path) -> FakeKernel:
    return FakeKernel(tmp_path / "host")


@pytest.fixture
def settings(fake_kernel) -> Settings:
    """Settings bound to the fake tree, with short waits."""
    return Settings(
        sysfs_root=fake_kernel.sysfs,
        procfs_root=fake_kernel.procfs,
        cgroup_root=fake_kernel.cgroup,
        partition_settle_seconds=0.0,
        partition_timeout=0.5,
        window_timeout=1.0,
        shutdown_timeout=10.0,
        driver_ready_timeout=1.0,
        cleanup_retries=2,
        poll_interval=0.05,
    )


# =============================================================================
# Studies
# =============================================================================


@pytest.fixture
def study_data() -> dict:
    """Smallest interesting study: one cpu config, one site, one engine of each trace format."""
    return {
        "sample_size": 2,
        "cpu_configs": {"2cpu": [14, 15]},
        "sites": {"servo.org": {"url": "https://servo.org/", "open_time": 0}},
        "engines": {
            "servo1": {"kind": "ServoLike", "path": "/bin/true"},
            "chromium1": {"kind": "ChromiumLike", "path": "/bin/true"},
        },
    }


@pytest.fixture
def write_study(tmp_path) -> Callable[..., Path]:
    """Write a study.yaml into a fresh study directory and return the directory."""

    def _write(data: dict, name: str = "study") -> Path:
        study_dir = tmp_path / name
        study_dir.mkdir(parents=True, exist_ok=True)
        with open(study_dir / "study.yaml", "w") as f:
            yaml.safe_dump(data, f, sort_keys=False)
        return study_dir

    return _write


# =============================================================================
# Engines
# =============================================================================

FAKE_ENGINE = """#!{python}
import signal
import sys
import time

{prelude}

args = sys.argv[1:]


def value(prefix):
    for arg in args:
        if arg.startswith(prefix):
            return arg[len(prefix):]
    return None


html = value("--profiler-trace-path=")
startup_trace = value("--trace-startup-file=")


def finish(signum, frame):
    if html:
        with open(html, "w") as f:
            f.write("<html>servo trace</html>\\n")
        with open("servo.pftrace", "wb") as f:
            f.write(b"servo perfetto trace")
    if startup_trace:
        with open(startup_trace, "wb") as f:
            f.write(b"chromium perfetto trace")
    sys.exit(0)


signal.signal(signal.SIGTERM, {handler})
while True:
    time.sleep(0.02)
"""


def _child_prelude(child_code: str) -> str:
    """Start a child process and record its pid in child.pid beside the script."""
    return (
        "import os\n"
        "import subprocess\n"
        f"child = subprocess.Popen([sys.executable, '-c', {child_code!r}])\n"
        "with open(os.path.join(os.path.dirname(os.path.abspath(__file__)), 'child.pid'), 'w') as f:\n"
        "    f.write(str(child.pid))\n"
    )


ENGINE_BEHAVIOURS = {
    # Writes its traces on SIGTERM, like servoshell
    "graceful": {"prelude": "", "handler": "finish"},
    # Never exits on SIGTERM
    "stubborn": {"prelude": "", "handler": "signal.SIG_IGN"},
    # Exits immediately without writing anything
    "crash": {"prelude": "sys.exit(3)", "handler": "finish"},
    # Graceful, but leaves behind a child that exits on SIGTERM
    "spawns_child": {"prelude": _child_prelude("import time; time.sleep(60)"), "handler": "finish"},
    # Graceful, but leaves behind a child that ignores SIGTERM
    "spawns_stubborn_child": {
        "prelude": _child_prelude(
            "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(60)"
        ),
        "handler": "finish",
    },
}


@pytest.fixture
def make_engine(tmp_path) -> Callable[..., Path]:
    """Create an executable fake engine script."""

    def _make(name: str = "fake-engine", behaviour: str = "graceful") -> Path:
        path = tmp_path / "bin" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(FAKE_ENGINE.format(python=sys.executable, **ENGINE_BEHAVIOURS[behaviour]))
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make


class StubRunController:
    """
    Stands in for RunController: writes the run's artifacts without launching anything.

    ``fail`` is called with (engine_key, site_key, run_index) and makes the run
    raise its return value, if any.
    """

    def __init__(self, fail: Optional[Callable[[str, str, int], Optional[Exception]]] = None):
        self.launches = 0
        self.calls: List[tuple] = []
        self.fail = fail

    def run_once(self, engine, site, run_index, sample_size, result_dir, open_time, extra_args=None):
        self.launches += 1
        self.calls.append((engine.key, site.key, run_index, open_time, list(extra_args or [])))
        result_dir = Path(result_dir)
        result_dir.mkdir(parents=True, exist_ok=True)

        names = artifact_names(engine.kind, run_index, sample_size)
        (result_dir / names.trace).write_bytes(f"trace {engine.key} {run_index}".encode())

        if self.fail is not None:
            error = self.fail(engine.key, site.key, run_index)
            if error is not None:
                raise error

        if names.html:
            (result_dir / names.html).write_text(f"<html>{run_index}</html>")
            with open(result_dir / names.manifest, "w") as f:
                json.dump({"html": names.html, "perfetto": names.trace}, f)
            return RunArtifacts(
                run_index=run_index,
                trace=result_dir / names.trace,
                html=result_dir / names.html,
                manifest=result_dir / names.manifest,
            )
        return RunArtifacts(run_index=run_index, trace=result_dir / names.trace)


@pytest.fixture
def stub_runs() -> Callable[..., StubRunController]:
    return StubRunController


# =============================================================================
# Test Markers
# =============================================================================


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow running")
    config.addinivalue_line("markers", "integration: marks integration tests")

