"""
CPU Isolation Controller

Exclusive CPU partitioning for deterministic browser measurements using:
- SMT sibling offlining, so no other thread shares the measured cores
- cgroups v2 cpuset partition root ("shield") owning the selected CPUs
- every other cgroup evicted to the remaining CPUs
- CPU governor, frequency boost, ASLR, and perf_event_paranoid control

Release does not replay recorded deltas. It writes known-good defaults, so it
is safe after a partial acquire and safe to call twice.
"""

import logging
import os
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from enginelab.core.config import Settings
from enginelab.core.exceptions import (
    EngineLabError,
    IsolationError,
    IsolationReleaseFailed,
    PartitionActivationFailed,
    SysfsWriteError,
    TopologyUnavailable,
)
from enginelab.core.utils import format_cpu_list, read_sys_file, write_sys_file
from enginelab.isolation.topology import TopologyInspector

logger = logging.getLogger(__name__)


@dataclass
class IsolationState:
    """Active CPU isolation, from acquire to release."""

    selected: List[int]
    others: List[int] = field(default_factory=list)
    offlined: List[int] = field(default_factory=list)
    partition_active: bool = False
    cgroup_path: Optional[Path] = None
    pid: Optional[int] = None
    start_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["cgroup_path"] = str(self.cgroup_path) if self.cgroup_path else None
        d["selected_cpuset"] = format_cpu_list(self.selected)
        d["others_cpuset"] = format_cpu_list(self.others)
        return d


class CpuIsolationController:
    """
    Acquires and releases exclusive CPU isolation.

    The controller assumes it is the only caller changing CPU and cgroup
    state for the duration of a session.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        inspector: Optional[TopologyInspector] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or Settings()
        self.inspector = inspector or TopologyInspector(self.settings)
        self._sleep = sleep
        self._clock = clock

    # ==========================================================================
    # Paths
    # ==========================================================================

    @property
    def cpu_dir(self) -> Path:
        return self.settings.cpu_dir

    @property
    def cgroup_root(self) -> Path:
        return self.settings.cgroup_root

    @property
    def shield_path(self) -> Path:
        return self.cgroup_root / self.settings.cgroup_name

    # ==========================================================================
    # Acquire
    # ==========================================================================

    def acquire(self, requested: Iterable[int], pid: Optional[int] = None) -> IsolationState:
        """
        Isolate the requested CPUs and move ``pid`` (default: this process) onto them.

        The selection is validated before any kernel state is touched. Any
        failure after the first write rolls back to defaults before propagating.
        """
        requested = list(requested)
        topology = self.inspector.read()
        offline = [cpu for cpu in requested if cpu in topology.cpus_by_id and not topology.cpus_by_id[cpu].online]
        if offline:
            raise TopologyUnavailable(
                f"Requested CPU(s) {format_cpu_list(offline)} offline, probably left so by an interrupted session; "
                "run `enginelab unisolate` to restore defaults, then retry"
            )
        selection = topology.validate_selection(requested)
        pid = os.getpid() if pid is None else pid

        logger.info(f"Isolating CPUs {format_cpu_list(selection)} for pid {pid}")
        state = IsolationState(selected=selection, pid=pid, start_time=time.time())

        try:
            self._apply(state)
        except BaseException as e:
            logger.error(f"CPU isolation failed, rolling back: {e}")
            self._rollback()
            raise

        logger.info(
            f"CPU isolation active: shield={format_cpu_list(state.selected)} "
            f"others={format_cpu_list(state.others)} offlined={format_cpu_list(state.offlined)}"
        )
        return state

    def _apply(self, state: IsolationState) -> None:
        kernel_dir = self.settings.kernel_dir

        # 1. Repeatable address layout, unprivileged perf counters
        self._write(kernel_dir / "randomize_va_space", 0)
        self._write(kernel_dir / "perf_event_paranoid", 0)

        # 2. No frequency boost; everything online before choosing siblings
        self._write_boost(0)
        self._set_all_online()

        # 3. Maximum frequency everywhere a governor is exposed
        self._set_governors("performance")

        # 4. Offline SMT siblings of the selected CPUs
        topology = self.inspector.read()
        offlined: List[int] = []
        for cpu in state.selected:
            siblings = topology.siblings_of(topology.core_of(cpu)) - {cpu}
            for sibling in sorted(siblings):
                online_file = self.cpu_dir / f"cpu{sibling}" / "online"
                if not online_file.exists():
                    raise IsolationError(f"cpu{sibling}, the SMT sibling of cpu{cpu}, cannot be taken offline")
                self._write(online_file, 0)
                offlined.append(sibling)
        state.offlined = offlined

        # 5. Everything else runs on the complement
        excluded = set(state.selected) | set(offlined)
        state.others = [cpu for cpu in topology.cpus if cpu not in excluded]
        if not state.others:
            raise IsolationError(
                f"Isolating CPUs {format_cpu_list(state.selected)} leaves no CPU for the rest of the system"
            )

        # 6. Shield partition
        self._create_partition(state)

        # 7. Move the session into the shield
        self._write(self.shield_path / "cgroup.procs", state.pid, skip_if_equal=False)

    def _create_partition(self, state: IsolationState) -> None:
        shield = self.shield_path
        try:
            shield.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SysfsWriteError(shield, "mkdir", e) from e
        state.cgroup_path = shield

        subtree_control = self.cgroup_root / "cgroup.subtree_control"
        if "cpuset" not in (read_sys_file(subtree_control) or "").split():
            self._write(subtree_control, "+cpuset", skip_if_equal=False)

        self._write(shield / "cpuset.cpus", format_cpu_list(state.selected))

        others = format_cpu_list(state.others)
        for cpus_file in self._group_cpuset_files():
            if cpus_file.parent == shield:
                continue
            self._write(cpus_file, others)

        # Partition transition is asynchronous in the kernel
        self._sleep(self.settings.partition_settle_seconds)
        partition_file = shield / "cpuset.cpus.partition"
        self._write(partition_file, "root", skip_if_equal=False)

        status = self._await_partition(partition_file)
        if status != "root":
            raise PartitionActivationFailed(
                f"{partition_file} reports {status!r} instead of 'root' "
                f"after {self.settings.partition_timeout:.1f}s"
            )
        state.partition_active = True

    def _await_partition(self, partition_file: Path) -> Optional[str]:
        deadline = self._clock() + self.settings.partition_timeout
        status = read_sys_file(partition_file)
        while status != "root" and self._clock() < deadline:
            self._sleep(min(0.1, self.settings.partition_timeout))
            status = read_sys_file(partition_file)
        return status

    def _rollback(self) -> None:
        try:
            self.release()
        except EngineLabError as e:
            logger.error(f"Rollback after failed isolation was incomplete: {e}")

    # ==========================================================================
    # Release
    # ==========================================================================

    def release(self, state: Optional[IsolationState] = None) -> None:
        """
        Restore known-good defaults.

        Every step is attempted even if an earlier one fails; failures are
        collected and raised together as IsolationReleaseFailed.
        """
        if state is not None:
            logger.info(f"Releasing CPU isolation of {format_cpu_list(state.selected)}")
        else:
            logger.info("Restoring default CPU and cgroup state")

        failures: List[str] = []
        kernel_dir = self.settings.kernel_dir

        def attempt(description: str, action: Callable[[], None]) -> None:
            try:
                action()
            except (OSError, IsolationError) as e:
                logger.error(f"Release step failed: {description}: {e}")
                failures.append(f"{description}: {e}")

        attempt("restore ASLR", lambda: self._write(kernel_dir / "randomize_va_space", self.settings.default_aslr))
        attempt(
            "restrict perf events",
            lambda: self._write(kernel_dir / "perf_event_paranoid", self.settings.default_perf_event_paranoid),
        )
        attempt("enable boost", lambda: self._write_boost(1))
        attempt("online all CPUs", self._set_all_online)
        self._set_governors(self.settings.default_governor)

        partition_file = self.shield_path / "cpuset.cpus.partition"
        if partition_file.exists():
            attempt("demote shield partition", lambda: self._write(partition_file, "member"))

        attempt("rebalance cgroups onto all CPUs", self._rebalance_all)

        if state is not None:
            state.partition_active = False

        if failures:
            raise IsolationReleaseFailed(failures)

        logger.info("CPU isolation released")

    def _rebalance_all(self) -> None:
        topology = self.inspector.read()
        all_cpus = format_cpu_list(topology.cpus)
        for cpus_file in self._group_cpuset_files():
            self._write(cpus_file, all_cpus)

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _group_cpuset_files(self) -> List[Path]:
        """Every cgroup's cpuset.cpus, parents before children."""
        if not self.cgroup_root.is_dir():
            raise IsolationError(f"cgroup v2 hierarchy not found at {self.cgroup_root}")
        return sorted(self.cgroup_root.rglob("cpuset.cpus"), key=lambda p: (len(p.parts), str(p)))

    def _cpu_dirs(self) -> List[Path]:
        return sorted(
            (p for p in self.cpu_dir.glob("cpu[0-9]*") if p.name[3:].isdigit()),
            key=lambda p: int(p.name[3:]),
        )

    def _set_all_online(self) -> None:
        for cpu_dir in self._cpu_dirs():
            online_file = cpu_dir / "online"
            if online_file.exists():
                self._write(online_file, 1)

    def _set_governors(self, governor: str) -> None:
        """Set the governor on every CPU that exposes one. Individual failures are tolerated."""
        for cpu_dir in self._cpu_dirs():
            governor_path = cpu_dir / "cpufreq" / "scaling_governor"
            if not governor_path.exists():
                continue
            try:
                self._write(governor_path, governor)
            except SysfsWriteError as e:
                logger.debug(f"Governor not set on {cpu_dir.name}: {e}")

    def _write_boost(self, value: int) -> None:
        boost = self.cpu_dir / "cpufreq" / "boost"
        if not boost.exists():
            logger.warning(f"{boost} not available; frequency boost left unchanged")
            return
        self._write(boost, value)

    def _write(self, path: Path, value: Union[str, int], skip_if_equal: bool = True) -> None:
        if skip_if_equal and read_sys_file(path) == str(value):
            return
        try:
            write_sys_file(path, value)
        except OSError as e:
            raise SysfsWriteError(path, str(value), e) from e
        logger.debug(f"{path} <- {value}")


class CpuIsolation:
    """
    Scoped CPU isolation.

    Usage:
        with CpuIsolation(controller, [14, 15]) as state:
            run_samples()

    Release runs on every exit path. If release fails while another
    exception is propagating, the release failure is logged and the original
    exception wins.
    """

    def __init__(self, controller: CpuIsolationController, cpus: Iterable[int], pid: Optional[int] = None):
        self.controller = controller
        self.cpus = list(cpus)
        self.pid = pid
        self.state: Optional[IsolationState] = None

    def __enter__(self) -> IsolationState:
        self.state = self.controller.acquire(self.cpus, pid=self.pid)
        return self.state

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        try:
            self.controller.release(self.state)
        except IsolationError as e:
            if exc_type is None:
                raise
            logger.error(f"Isolation release failed while handling {exc_type.__name__}: {e}")
        return False


class NullIsolation:
    """Same interface as CpuIsolation, for hosts without isolation support."""

    def __init__(self, cpus: Iterable[int]):
        self.cpus = list(cpus)
        self.state: Optional[IsolationState] = None

    def __enter__(self) -> IsolationState:
        logger.warning(f"CPU isolation disabled; CPUs {format_cpu_list(self.cpus)} are not reserved")
        self.state = IsolationState(selected=self.cpus, start_time=time.time())
        return self.state

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        return False
