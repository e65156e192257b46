"""
Study Driver

Top-level collection loop: for each cpu config, isolate its CPUs, run the
scheduler, and release isolation again whatever happened.
"""

import logging
import platform
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import psutil

from enginelab.collect.scheduler import SampleScheduler, ScheduleReport
from enginelab.core.config import Settings
from enginelab.core.exceptions import SampleFailed
from enginelab.core.utils import ensure_dir, format_cpu_list, safe_json_dump
from enginelab.isolation.controller import (
    CpuIsolation,
    CpuIsolationController,
    IsolationState,
    NullIsolation,
)
from enginelab.runner.run_controller import RunController
from enginelab.study.layout import SampleId
from enginelab.study.study import CpuConfig, Study

logger = logging.getLogger(__name__)

ISOLATION_RECORD = "isolation.json"


@dataclass
class HostInfo:
    hostname: str
    os: str
    architecture: str
    cpu_model: str
    logical_cpus: Optional[int]
    physical_cores: Optional[int]
    ram_gb: float

    @classmethod
    def collect(cls) -> "HostInfo":
        uname = platform.uname()
        return cls(
            hostname=uname.node,
            os=f"{uname.system} {uname.release}",
            architecture=uname.machine,
            cpu_model=platform.processor() or "Unknown",
            logical_cpus=psutil.cpu_count(logical=True),
            physical_cores=psutil.cpu_count(logical=False),
            ram_gb=round(psutil.virtual_memory().total / (1024**3), 1),
        )


@dataclass
class CollectReport:
    schedules: List[ScheduleReport] = field(default_factory=list)

    @property
    def completed(self) -> List[SampleId]:
        return [s for r in self.schedules for s in r.completed]

    @property
    def skipped(self) -> List[SampleId]:
        return [s for r in self.schedules for s in r.skipped]

    @property
    def failed(self) -> List[SampleFailed]:
        return [f for r in self.schedules for f in r.failed]

    @property
    def launches(self) -> int:
        return sum(r.launches for r in self.schedules)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.schedules)


class StudyDriver:
    """
    Collects every sample of a study.

    Usage:
        report = StudyDriver(study, Settings.from_env()).run()
    """

    def __init__(
        self,
        study: Study,
        settings: Optional[Settings] = None,
        isolate: bool = True,
        keep_going: bool = False,
        run_controller: Optional[RunController] = None,
        isolation_controller: Optional[CpuIsolationController] = None,
    ):
        self.study = study
        self.settings = settings or Settings()
        self.isolate = isolate
        self.keep_going = keep_going
        self.run_controller = run_controller or RunController(self.settings, base_dir=study.directory)
        self.isolation_controller = isolation_controller or CpuIsolationController(self.settings)

    def run(self) -> CollectReport:
        report = CollectReport()
        scheduler = SampleScheduler(
            self.study,
            self.run_controller,
            settings=self.settings,
            keep_going=self.keep_going,
        )

        for cpu_config in self.study.cpu_configs.values():
            logger.info(f"Collecting cpu config {cpu_config.key} (CPUs {format_cpu_list(cpu_config.cpus)})")
            with self._isolation(cpu_config) as state:
                self._record_isolation(cpu_config, state)
                report.schedules.append(scheduler.run(cpu_config.key))

        logger.info(
            f"Collection finished: {len(report.completed)} completed, {len(report.skipped)} skipped, "
            f"{len(report.failed)} failed, {report.launches} engine launches"
        )
        return report

    def _isolation(self, cpu_config: CpuConfig) -> Union[CpuIsolation, NullIsolation]:
        if self.isolate:
            return CpuIsolation(self.isolation_controller, cpu_config.cpus)
        return NullIsolation(cpu_config.cpus)

    def _record_isolation(self, cpu_config: CpuConfig, state: IsolationState) -> Path:
        """Write what was isolated, and on which host, next to the samples."""
        record: Dict[str, Any] = {
            "cpu_config": cpu_config.key,
            "isolated": self.isolate,
            "recorded_at": datetime.now().isoformat(),
            "state": state.to_dict(),
            "host": asdict(HostInfo.collect()),
        }
        path = ensure_dir(self.study.directory / cpu_config.key) / ISOLATION_RECORD
        safe_json_dump(record, path)
        return path
