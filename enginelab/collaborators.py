"""
External Collaborators

Trace analysis and report rendering live outside enginelab. A study names
the commands to run, and this module invokes them against completed samples.

    traceconv_command ... json <trace.pftrace> <trace.json>
    analyse_command   ... <engine-kind> <url> <cpu>/<site>.<engine>
    report_command    ... <study-dir>

Every command runs with the study directory as its working directory.
"""

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from enginelab.core.exceptions import CollaboratorFailed, StudyError
from enginelab.study.layout import SampleId, done_marker
from enginelab.study.study import Study

logger = logging.getLogger(__name__)


@dataclass
class AnalyseReport:
    analysed: List[SampleId] = field(default_factory=list)
    incomplete: List[SampleId] = field(default_factory=list)
    converted: List[Path] = field(default_factory=list)


def _invoke(cmd: List[str], cwd: Path) -> None:
    logger.info(f"Running {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, cwd=cwd, stdin=subprocess.DEVNULL)
    except OSError as e:
        raise CollaboratorFailed(f"Cannot run {cmd[0]}: {e}") from e
    if result.returncode != 0:
        raise CollaboratorFailed(f"{cmd[0]} exited with status {result.returncode}")


def _required(command: Optional[List[str]], name: str) -> List[str]:
    if not command:
        raise StudyError(f"Study has no {name} configured")
    return list(command)


def convert_traces(study: Study, sample: SampleId) -> List[Path]:
    """Convert the sample's Perfetto traces to JSON, skipping ones already converted."""
    command = _required(study.traceconv_command, "traceconv_command")
    sample_path = sample.path(study.directory)

    converted = []
    for pftrace in sorted(sample_path.glob("*.pftrace")):
        json_path = pftrace.with_suffix(".json")
        if json_path.exists():
            continue
        _invoke(command + ["json", str(pftrace), str(json_path)], cwd=study.directory)
        converted.append(json_path)
    return converted


def analyse(study: Study) -> AnalyseReport:
    """Run the analysis command on every completed sample."""
    command = _required(study.analyse_command, "analyse_command")
    report = AnalyseReport()

    for sample, site, engine in study.all_samples():
        sample_path = sample.path(study.directory)
        if not done_marker(sample_path).exists():
            logger.warning(f"Sample {sample} is incomplete; not analysing it")
            report.incomplete.append(sample)
            continue

        if not engine.kind.dual_trace and study.traceconv_command:
            report.converted.extend(convert_traces(study, sample))

        _invoke(
            command + [engine.kind.value, site.url, str(sample_path.relative_to(study.directory))],
            cwd=study.directory,
        )
        report.analysed.append(sample)

    return report


def report(study: Study) -> None:
    """Render the study report with the configured report command."""
    command = _required(study.report_command, "report_command")
    _invoke(command + [str(study.directory)], cwd=study.directory)
