"""
enginelab Study Module - Study configuration and sample addressing.
"""

from .kinds import EngineKind
from .layout import (
    DONE_MARKER,
    RunArtifactNames,
    SampleId,
    artifact_names,
    sample_dir,
    validate_key,
)
from .study import CpuConfig, Engine, Site, Study

__all__ = [
    "EngineKind",
    "DONE_MARKER",
    "RunArtifactNames",
    "SampleId",
    "artifact_names",
    "sample_dir",
    "validate_key",
    "CpuConfig",
    "Engine",
    "Site",
    "Study",
]
