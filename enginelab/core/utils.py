"""
enginelab Utilities
Common helpers for subprocess management, sysfs I/O, CPU lists, and deadlines.
"""

import json
import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union
import logging

logger = logging.getLogger(__name__)


def run_command(
    cmd: List[str],
    timeout: int = 30,
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[Dict[str, str]] = None,
    capture_stderr: bool = True,
) -> Optional[str]:
    """
    Run a command and return stdout.
    Returns None on failure.
    """
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
            env=env or os.environ.copy(),
        )
        if result.returncode == 0:
            return result.stdout
        else:
            if capture_stderr:
                logger.debug(f"Command failed: {cmd}\nstderr: {result.stderr}")
            return None
    except subprocess.TimeoutExpired:
        logger.warning(f"Command timed out: {cmd}")
        return None
    except FileNotFoundError:
        logger.debug(f"Command not found: {cmd[0]}")
        return None
    except OSError as e:
        logger.debug(f"Command error: {cmd}, {e}")
        return None


def run_command_async(
    cmd: List[str],
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> subprocess.Popen:
    """
    Start a command asynchronously and return the Popen object.

    Output is inherited from the parent so a chatty engine can never block on
    a full pipe while the controller is sleeping.
    """
    return subprocess.Popen(
        cmd,
        stdin=subprocess.DEVNULL,
        cwd=cwd,
        env=dict(env) if env is not None else os.environ.copy(),
    )


def resolve_executable(path: str, base_dir: Optional[Path] = None) -> Optional[str]:
    """
    Resolve an engine path.

    Bare names are looked up on PATH; relative paths resolve against
    ``base_dir``. Returns None if the result is not an executable file.
    """
    if "/" not in path:
        return shutil.which(path)

    candidate = Path(path).expanduser()
    if not candidate.is_absolute() and base_dir is not None:
        candidate = base_dir / candidate

    if candidate.is_file() and os.access(candidate, os.X_OK):
        return str(candidate)
    return None


def safe_json_dump(data: Any, path: Union[str, Path], indent: int = 2) -> None:
    """Safely write JSON to file with atomic write pattern."""
    path = Path(path)
    temp_path = path.with_suffix(".tmp")

    try:
        with open(temp_path, "w") as f:
            json.dump(data, f, indent=indent, default=str)
        temp_path.replace(path)
    except Exception as e:
        logger.error(f"Failed to write JSON to {path}: {e}")
        if temp_path.exists():
            temp_path.unlink()
        raise


def read_sys_file(path: Union[str, Path]) -> Optional[str]:
    """Read a /proc or /sys file, return stripped content or None on failure."""
    try:
        with open(path, "r") as f:
            return f.read().strip()
    except OSError:
        return None


def write_sys_file(path: Union[str, Path], value: Union[str, int]) -> None:
    """
    Write a single value to a /proc, /sys, or cgroupfs file.

    Raises OSError on failure; callers decide whether that is fatal.
    """
    with open(path, "w") as f:
        f.write(f"{value}\n")


def format_cpu_list(cpus: Iterable[int]) -> str:
    """Convert CPU ids to cpuset format string, grouping consecutive ids into ranges."""
    sorted_cpus = sorted(set(cpus))
    if not sorted_cpus:
        return ""

    ranges = []
    start = end = sorted_cpus[0]

    for cpu in sorted_cpus[1:]:
        if cpu == end + 1:
            end = cpu
        else:
            ranges.append(str(start) if start == end else f"{start}-{end}")
            start = end = cpu

    ranges.append(str(start) if start == end else f"{start}-{end}")
    return ",".join(ranges)


def ensure_dir(path: Union[str, Path]) -> Path:
    """Ensure directory exists, create if needed."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def format_duration(seconds: float) -> str:
    """Format duration as human-readable string."""
    if seconds < 1:
        return f"{seconds * 1000:.0f} ms"
    elif seconds < 60:
        return f"{seconds:.1f} s"
    elif seconds < 3600:
        return f"{seconds / 60:.1f} min"
    else:
        return f"{seconds / 3600:.1f} h"


class Deadline:
    """Monotonic deadline for bounded waits."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self._expires_at


def poll_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """
    Call ``predicate`` until it returns True or ``timeout`` elapses.

    The predicate is always evaluated at least once. Returns its final value.
    """
    deadline = Deadline(timeout, clock=clock)
    while True:
        if predicate():
            return True
        if deadline.expired():
            return False
        sleep(min(interval, deadline.remaining()))
