"""
enginelab CPU Isolation Layer
Topology inspection and exclusive cpuset partitioning for measurement runs.
"""

from .topology import (
    CoreId,
    CpuInfo,
    Topology,
    TopologyInspector,
)

from .controller import (
    CpuIsolation,
    CpuIsolationController,
    IsolationState,
    NullIsolation,
)

__all__ = [
    "CoreId",
    "CpuInfo",
    "Topology",
    "TopologyInspector",
    "CpuIsolation",
    "CpuIsolationController",
    "IsolationState",
    "NullIsolation",
]
