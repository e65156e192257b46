"""
CPU Topology Inspector

Reads logical CPU to physical core mapping from sysfs, so isolation can
verify that a CPU selection takes at most one logical CPU per physical core.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from enginelab.core.config import Settings
from enginelab.core.exceptions import (
    ConfigurationError,
    OverlappingCoreSelection,
    TopologyUnavailable,
)
from enginelab.core.utils import read_sys_file

logger = logging.getLogger(__name__)

# (physical_package_id, core_id); core_id alone is only unique within a package
CoreId = Tuple[int, int]


@dataclass
class CpuInfo:
    """Topology of a single logical CPU."""

    cpu_id: int
    core: Optional[CoreId]  # None when the CPU is offline and sysfs hides its topology
    online: bool = True


@dataclass
class Topology:
    """
    Snapshot of logical CPU to physical core mapping.

    Includes every present logical CPU. Offline CPUs are listed, but their
    core is unknown until they are brought back online.
    """

    cpus_by_id: Dict[int, CpuInfo] = field(default_factory=dict)

    @property
    def cpus(self) -> List[int]:
        """Every present logical CPU, online or not."""
        return sorted(self.cpus_by_id)

    @property
    def online_cpus(self) -> List[int]:
        return sorted(cpu for cpu, info in self.cpus_by_id.items() if info.online)

    @property
    def cores(self) -> Dict[CoreId, List[int]]:
        """Physical core -> sorted logical CPUs with known topology."""
        result: Dict[CoreId, List[int]] = defaultdict(list)
        for cpu in self.cpus:
            core = self.cpus_by_id[cpu].core
            if core is not None:
                result[core].append(cpu)
        return dict(result)

    def core_of(self, cpu_id: int) -> CoreId:
        """Physical core of a logical CPU."""
        info = self.cpus_by_id.get(cpu_id)
        if info is None:
            raise TopologyUnavailable(f"cpu{cpu_id} is not present on this host")
        if info.core is None:
            raise TopologyUnavailable(
                f"cpu{cpu_id} topology is not readable (cpu{cpu_id} may be offline)"
            )
        return info.core

    def siblings_of(self, core: CoreId) -> Set[int]:
        """Every logical CPU on a physical core."""
        return set(self.cores.get(core, []))

    def validate_selection(self, requested: Iterable[int]) -> List[int]:
        """
        Check a CPU selection is non-empty, distinct, and one-per-core.

        Returns the selection as a list in request order.
        """
        selection = list(requested)
        if not selection:
            raise ConfigurationError("CPU selection is empty")

        duplicates = sorted({cpu for cpu in selection if selection.count(cpu) > 1})
        if duplicates:
            raise ConfigurationError(f"CPU selection repeats CPUs {duplicates}")

        seen: Dict[CoreId, int] = {}
        for cpu in selection:
            core = self.core_of(cpu)
            if core in seen:
                raise OverlappingCoreSelection(core, [seen[core], cpu])
            seen[core] = cpu

        return selection


class TopologyInspector:
    """
    CPU topology discovery from sysfs.

    Reads ``/sys/devices/system/cpu/cpuN/{online,topology/*}``. No mutation.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()

    @property
    def cpu_dir(self) -> Path:
        return self.settings.cpu_dir

    def read(self) -> Topology:
        """Discover CPU topology. Raises TopologyUnavailable if sysfs is unreadable."""
        if not self.cpu_dir.is_dir():
            raise TopologyUnavailable(f"CPU topology source {self.cpu_dir} not found (Linux sysfs required)")

        try:
            cpu_dirs = [p for p in self.cpu_dir.glob("cpu[0-9]*") if p.name[3:].isdigit()]
        except OSError as e:
            raise TopologyUnavailable(f"Cannot list {self.cpu_dir}: {e}") from e

        topology = Topology()
        for cpu_dir in cpu_dirs:
            cpu_id = int(cpu_dir.name[3:])
            topology.cpus_by_id[cpu_id] = self._read_cpu(cpu_id, cpu_dir)

        if not topology.cores:
            raise TopologyUnavailable(f"No readable CPU topology under {self.cpu_dir}")

        logger.debug(
            f"Topology: {len(topology.cpus)} CPUs, {len(topology.cores)} cores, "
            f"{len(topology.online_cpus)} online"
        )
        return topology

    def core_of(self, cpu_id: int) -> CoreId:
        return self.read().core_of(cpu_id)

    def siblings_of(self, core: CoreId) -> Set[int]:
        return self.read().siblings_of(core)

    def _read_cpu(self, cpu_id: int, cpu_dir: Path) -> CpuInfo:
        # cpu0 usually has no online file and cannot be offlined
        online_file = cpu_dir / "online"
        online = True
        if online_file.exists():
            online = read_sys_file(online_file) == "1"

        topo_dir = cpu_dir / "topology"
        core_id = read_sys_file(topo_dir / "core_id")
        package_id = read_sys_file(topo_dir / "physical_package_id")

        core: Optional[CoreId] = None
        if online and core_id is not None:
            try:
                core = (int(package_id) if package_id is not None else 0, int(core_id))
            except ValueError:
                logger.debug(f"cpu{cpu_id}: unparseable topology {package_id!r}/{core_id!r}")

        return CpuInfo(cpu_id=cpu_id, core=core, online=online)
