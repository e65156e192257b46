"""
enginelab

Reproducible, resumable benchmarking of browser engines on isolated CPU cores.
Collects per-run traces for a matrix of (cpu config, site, engine) samples
and hands them to external analysis and report tools.
"""

__version__ = "1.0.0"

from enginelab.core.config import Settings
from enginelab.core.exceptions import (
    ConfigurationError,
    EngineLabError,
    IsolationError,
    RunError,
    SampleFailed,
)

# Isolation
from enginelab.isolation import (
    CpuIsolation,
    CpuIsolationController,
    IsolationState,
    NullIsolation,
    Topology,
    TopologyInspector,
)

# Study
from enginelab.study import EngineKind, SampleId, Study, artifact_names, sample_dir

# Runs and collection
from enginelab.runner import RunController, RunPhase
from enginelab.collect import CollectReport, SampleScheduler, ScheduleReport, StudyDriver

__all__ = [
    # Core
    "Settings",
    "EngineLabError",
    "ConfigurationError",
    "IsolationError",
    "RunError",
    "SampleFailed",
    # Isolation
    "CpuIsolation",
    "CpuIsolationController",
    "IsolationState",
    "NullIsolation",
    "Topology",
    "TopologyInspector",
    # Study
    "EngineKind",
    "SampleId",
    "Study",
    "artifact_names",
    "sample_dir",
    # Runs and collection
    "RunController",
    "RunPhase",
    "CollectReport",
    "SampleScheduler",
    "ScheduleReport",
    "StudyDriver",
    # Version
    "__version__",
]
