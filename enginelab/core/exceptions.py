"""
enginelab Exceptions
Error taxonomy for study configuration, CPU isolation, and engine runs.
"""

from typing import List, Optional, Tuple


class EngineLabError(Exception):
    """Base class for all enginelab errors."""


# ============================================================================
# Configuration errors (fatal, raised before any kernel mutation)
# ============================================================================


class ConfigurationError(EngineLabError):
    """Bad study or CPU selection."""


class StudyError(ConfigurationError):
    """Malformed or invalid study configuration."""


class TopologyUnavailable(ConfigurationError):
    """CPU topology could not be read, so isolation cannot be verified safe."""


class OverlappingCoreSelection(ConfigurationError):
    """Two requested CPUs share a physical core."""

    def __init__(self, core: Tuple[int, int], cpus: List[int]):
        self.core = core
        self.cpus = cpus
        package_id, core_id = core
        super().__init__(
            f"CPUs {cpus} share physical core {core_id} (package {package_id}); "
            f"request at most one CPU per core"
        )


# ============================================================================
# Isolation errors (fatal, rollback attempted)
# ============================================================================


class IsolationError(EngineLabError):
    """Failure while changing kernel CPU or cgroup state."""


class SysfsWriteError(IsolationError):
    """A write to a sysfs, procfs, or cgroupfs file failed."""

    def __init__(self, path, value: str, cause: Optional[BaseException] = None):
        self.path = path
        self.value = value
        super().__init__(f"Failed to write {value!r} to {path}: {cause}")


class PartitionActivationFailed(IsolationError):
    """The reserved cgroup never reported itself as a partition root."""


class IsolationReleaseFailed(IsolationError):
    """One or more restore steps failed during release."""

    def __init__(self, failures: List[str]):
        self.failures = failures
        super().__init__("Isolation release incomplete: " + "; ".join(failures))


# ============================================================================
# Run errors (fatal to the sample)
# ============================================================================


class RunError(EngineLabError):
    """A single engine run failed."""


class EngineLaunchFailed(RunError):
    """Engine executable is missing, not runnable, or never showed a window."""


class GracefulShutdownTimeout(RunError):
    """Engine, or a process it started, did not exit after repeated graceful termination requests."""

    def __init__(self, pid: int, timeout: float, survivors: Optional[List[int]] = None):
        self.pid = pid
        self.timeout = timeout
        self.survivors = list(survivors or [])
        if self.survivors:
            what = f"Child processes {self.survivors} of engine pid {pid}"
        else:
            what = f"Engine pid {pid}"
        super().__init__(f"{what} still running {timeout:.0f}s after graceful shutdown began")


class ArtifactMissing(RunError):
    """Engine exited without producing an expected trace file."""


class ArtifactRelocationFailed(RunError):
    """A trace was produced but could not be moved into its sample directory."""


class WaitConditionFailed(RunError):
    """Page did not contain the expected number of elements for a selector."""


class WebDriverError(RunError):
    """WebDriver endpoint returned an error or was unreachable."""


class SampleFailed(EngineLabError):
    """A run failed, aborting its sample."""

    def __init__(self, sample: str, run_index: int, cause: RunError):
        self.sample = sample
        self.run_index = run_index
        self.cause = cause
        super().__init__(f"Sample {sample} failed at run {run_index}: {cause}")


# ============================================================================
# Non-fatal and collaborator errors
# ============================================================================


class ProfileCleanupFailed(EngineLabError):
    """Per-run profile or work directory could not be deleted. Logged, never fatal."""


class CollaboratorFailed(EngineLabError):
    """An external analyse, report, or traceconv command failed."""
