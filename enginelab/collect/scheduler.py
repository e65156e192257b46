"""
Sample Scheduler

Walks the (site x engine) samples of one cpu config in study order. A sample
with a ``done`` marker is never touched again; any other sample directory is
cleared and re-run from run 1, so a crash never leaves a half-counted sample.
"""

import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from enginelab.core.config import Settings
from enginelab.core.exceptions import GracefulShutdownTimeout, RunError, SampleFailed
from enginelab.core.utils import ensure_dir
from enginelab.runner.run_controller import RunController
from enginelab.study.layout import SampleId, done_marker
from enginelab.study.study import Engine, Site, Study

logger = logging.getLogger(__name__)


class SampleStatus(str, Enum):
    DONE = "done"
    PARTIAL = "partial"
    PENDING = "pending"


def sample_status(study: Study, sample: SampleId) -> SampleStatus:
    path = sample.path(study.directory)
    if done_marker(path).exists():
        return SampleStatus.DONE
    if path.exists() and any(path.iterdir()):
        return SampleStatus.PARTIAL
    return SampleStatus.PENDING


def study_status(study: Study) -> Dict[SampleId, SampleStatus]:
    """Status of every sample of a study, in study order."""
    return {sample: sample_status(study, sample) for sample, _, _ in study.all_samples()}


@dataclass
class ScheduleReport:
    """Outcome of scheduling one cpu config."""

    cpu_key: str
    completed: List[SampleId] = field(default_factory=list)
    skipped: List[SampleId] = field(default_factory=list)
    failed: List[SampleFailed] = field(default_factory=list)
    launches: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed


class SampleScheduler:
    """
    Runs every incomplete sample of a cpu config.

    By default the first failed sample propagates as SampleFailed. With
    ``keep_going`` failed samples are recorded and skipped, except for a
    graceful shutdown timeout, which always stops the study because the
    engine may still be occupying the isolated CPUs.
    """

    def __init__(
        self,
        study: Study,
        run_controller: RunController,
        settings: Optional[Settings] = None,
        keep_going: bool = False,
    ):
        self.study = study
        self.run_controller = run_controller
        self.settings = settings or Settings()
        self.keep_going = keep_going

    def run(self, cpu_key: str) -> ScheduleReport:
        report = ScheduleReport(cpu_key=cpu_key)
        launches_before = self.run_controller.launches

        try:
            for sample, site, engine in self.study.samples(cpu_key):
                path = sample.path(self.study.directory)
                if done_marker(path).exists():
                    logger.info(f"Sample {sample} is already done; skipping")
                    report.skipped.append(sample)
                    continue

                try:
                    self.run_sample(sample, site, engine)
                except SampleFailed as e:
                    report.failed.append(e)
                    if not self.keep_going or isinstance(e.cause, GracefulShutdownTimeout):
                        raise
                    logger.error(f"{e}; continuing with the next sample")
                    continue

                report.completed.append(sample)
        finally:
            report.launches = self.run_controller.launches - launches_before

        logger.info(
            f"CPU config {cpu_key}: {len(report.completed)} completed, "
            f"{len(report.skipped)} skipped, {len(report.failed)} failed"
        )
        return report

    def run_sample(self, sample: SampleId, site: Site, engine: Engine) -> None:
        """Run all ``sample_size`` runs of one sample, then mark it done."""
        path = sample.path(self.study.directory)
        self._clear(path)

        sample_size = self.study.sample_size
        open_time = self.study.open_time_for(site, self.settings)
        extra_args = site.extra_args(engine.key)

        logger.info(f"Creating sample {sample} ({sample_size} runs, {open_time:.1f}s open time)")
        for run_index in range(1, sample_size + 1):
            try:
                self.run_controller.run_once(
                    engine,
                    site,
                    run_index,
                    sample_size,
                    path,
                    open_time=open_time,
                    extra_args=extra_args,
                )
            except RunError as e:
                raise SampleFailed(str(sample), run_index, e) from e

        done_marker(path).touch(exist_ok=False)
        logger.info(f"Marked sample {sample} as done")

    def _clear(self, path: Path) -> None:
        """Remove leftovers of an interrupted attempt."""
        if path.exists():
            leftovers = list(path.iterdir())
            if leftovers:
                logger.warning(f"Clearing {len(leftovers)} stale file(s) from incomplete sample {path}")
            for entry in leftovers:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
        ensure_dir(path)
