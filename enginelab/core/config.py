"""
enginelab Settings
Runtime settings for isolation and run control, overridable from the environment.
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "ENGINELAB_"


@dataclass
class Settings:
    """
    Knobs shared by the isolation controller and the run controller.

    Every field can be overridden with an ``ENGINELAB_<FIELD>`` environment
    variable, e.g. ``ENGINELAB_BROWSER_OPEN_TIME=20``.
    """

    # Kernel interfaces (overridable so tests can point at a fake tree)
    sysfs_root: Path = Path("/sys")
    procfs_root: Path = Path("/proc")
    cgroup_root: Path = Path("/sys/fs/cgroup")
    cgroup_name: str = "shield"

    # Known-good defaults written on release
    default_aslr: int = 2
    default_perf_event_paranoid: int = 4
    default_governor: str = "schedutil"

    # Partition activation
    partition_settle_seconds: float = 0.75
    partition_timeout: float = 5.0

    # Engine tracing verbosity (SERVO_TRACING filter, Chromium trace categories)
    tracing: Optional[str] = None

    # Open-time override, used when a site does not set its own
    browser_open_time: Optional[float] = None

    # Run control
    window_timeout: float = 30.0
    shutdown_timeout: float = 120.0
    kill_on_timeout: bool = True
    driver_ready_timeout: float = 30.0
    cleanup_retries: int = 10
    poll_interval: float = 1.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from defaults overlaid with ENGINELAB_* variables."""
        environ = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}

        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            overrides[f.name] = _coerce(f.name, raw, f.default)

        if overrides:
            logger.debug(f"Settings overridden from environment: {sorted(overrides)}")
        return cls(**overrides)

    def with_overrides(self, **changes: Any) -> "Settings":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    @property
    def cpu_dir(self) -> Path:
        return self.sysfs_root / "devices" / "system" / "cpu"

    @property
    def kernel_dir(self) -> Path:
        return self.procfs_root / "sys" / "kernel"


def _coerce(name: str, raw: str, default: Any) -> Any:
    """Convert an environment string to the type of the field default."""
    try:
        if isinstance(default, bool):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        if isinstance(default, Path):
            return Path(raw)
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        if name == "browser_open_time":
            return float(raw)
    except ValueError as e:
        raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from e
    return raw
