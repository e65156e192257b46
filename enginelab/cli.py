"""
enginelab Command Line Interface
Main entry point for collecting, analysing, and reporting browser engine studies.
"""

import logging
import sys
from pathlib import Path
from typing import Tuple

import click

from enginelab import __version__, collaborators
from enginelab.collect.driver import StudyDriver
from enginelab.collect.scheduler import SampleStatus, study_status
from enginelab.core.config import Settings
from enginelab.core.exceptions import EngineLabError
from enginelab.core.utils import format_cpu_list
from enginelab.isolation.controller import CpuIsolationController
from enginelab.isolation.topology import TopologyInspector
from enginelab.study.study import Study

STATUS_COLORS = {
    SampleStatus.DONE: "green",
    SampleStatus.PARTIAL: "yellow",
    SampleStatus.PENDING: "white",
}


# Configure logging
def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _fail(logger: logging.Logger, action: str, e: BaseException) -> None:
    logger.debug(f"{action} failed", exc_info=True)
    click.echo(click.style(f"\n✗ {action} failed: {e}", fg="red", bold=True), err=True)
    sys.exit(1)


def _interrupted() -> None:
    click.echo(click.style("\nInterrupted.", fg="yellow"), err=True)
    sys.exit(130)


@click.group()
@click.version_option(__version__, prog_name="enginelab")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """
    enginelab

    Reproducible browser engine benchmarking on isolated CPU cores.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    setup_logging(verbose)
    try:
        ctx.obj["settings"] = Settings.from_env()
    except ValueError as e:
        _fail(logging.getLogger("enginelab.cli"), "Reading settings", e)


@cli.command()
@click.argument("study_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--keep-going", is_flag=True, help="Record failed samples and continue with the rest")
@click.option("--no-isolation", is_flag=True, help="Do not isolate CPUs (hosts without cgroup v2 cpusets)")
@click.pass_context
def collect(ctx: click.Context, study_dir: Path, keep_going: bool, no_isolation: bool) -> None:
    """
    Collect every incomplete sample of a study.

    Samples already marked done are skipped, so an interrupted collection
    can simply be started again.
    """
    logger = logging.getLogger("enginelab.cli.collect")

    click.echo(click.style("\n╔══════════════════════════════════════════════╗", fg="cyan"))
    click.echo(click.style("║         enginelab - Sample Collection        ║", fg="cyan"))
    click.echo(click.style("╚══════════════════════════════════════════════╝\n", fg="cyan"))

    try:
        study = Study.load(study_dir)
        driver = StudyDriver(
            study,
            ctx.obj["settings"],
            isolate=not no_isolation,
            keep_going=keep_going,
        )
        report = driver.run()
    except KeyboardInterrupt:
        _interrupted()
    except EngineLabError as e:
        _fail(logger, "Collection", e)

    click.echo(click.style("\n═══ Collection ═══", fg="green" if report.ok else "red", bold=True))
    click.echo(f"Completed:  {len(report.completed)}")
    click.echo(f"Skipped:    {len(report.skipped)} (already done)")
    click.echo(f"Failed:     {len(report.failed)}")
    click.echo(f"Launches:   {report.launches}")

    if not report.ok:
        for failure in report.failed:
            click.echo(click.style(f"  ✗ {failure}", fg="red"))
        sys.exit(1)

    click.echo(click.style(f"\n✓ Results in {study.directory}", fg="green"))


@cli.command()
@click.argument("study_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
def analyse(study_dir: Path) -> None:
    """Run the study's analyse_command on every completed sample."""
    logger = logging.getLogger("enginelab.cli.analyse")
    try:
        study = Study.load(study_dir)
        result = collaborators.analyse(study)
    except KeyboardInterrupt:
        _interrupted()
    except EngineLabError as e:
        _fail(logger, "Analysis", e)

    click.echo(click.style(f"\n✓ Analysed {len(result.analysed)} sample(s)", fg="green"))
    if result.converted:
        click.echo(f"  Converted {len(result.converted)} trace(s) to JSON")
    if result.incomplete:
        click.echo(click.style(f"  {len(result.incomplete)} incomplete sample(s) skipped", fg="yellow"))


@cli.command()
@click.argument("study_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
def report(study_dir: Path) -> None:
    """Render the study report with the study's report_command."""
    logger = logging.getLogger("enginelab.cli.report")
    try:
        collaborators.report(Study.load(study_dir))
    except KeyboardInterrupt:
        _interrupted()
    except EngineLabError as e:
        _fail(logger, "Report", e)

    click.echo(click.style("\n✓ Report generated", fg="green"))


@cli.command()
@click.argument("study_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
def status(study_dir: Path) -> None:
    """Show which samples are done, partial, or pending."""
    logger = logging.getLogger("enginelab.cli.status")
    try:
        study = Study.load(study_dir)
    except EngineLabError as e:
        _fail(logger, "Loading study", e)

    statuses = study_status(study)
    click.echo(click.style(f"\n═══ {study.directory.name} ═══", fg="cyan", bold=True))
    for sample, state in statuses.items():
        click.echo(f"  {sample.name:<50} " + click.style(state.value, fg=STATUS_COLORS[state]))

    done = sum(1 for s in statuses.values() if s is SampleStatus.DONE)
    click.echo(f"\n{done}/{len(statuses)} samples done")


@cli.command()
@click.pass_context
def topology(ctx: click.Context) -> None:
    """Show logical CPUs grouped by physical core."""
    logger = logging.getLogger("enginelab.cli.topology")
    try:
        topo = TopologyInspector(ctx.obj["settings"]).read()
    except EngineLabError as e:
        _fail(logger, "Reading topology", e)

    click.echo(click.style("\n═══ CPU Topology ═══", fg="cyan", bold=True))
    online = set(topo.online_cpus)
    for (package_id, core_id), cpus in sorted(topo.cores.items()):
        labels = [str(c) if c in online else click.style(f"{c} (offline)", fg="yellow") for c in cpus]
        click.echo(f"  package {package_id} core {core_id:<4} {', '.join(labels)}")

    offline_unknown = [c for c in topo.cpus if topo.cpus_by_id[c].core is None]
    if offline_unknown:
        click.echo(click.style(f"  offline, core unknown: {format_cpu_list(offline_unknown)}", fg="yellow"))


@cli.command()
@click.argument("pid", type=int)
@click.argument("cpus", type=int, nargs=-1, required=True)
@click.pass_context
def isolate(ctx: click.Context, pid: int, cpus: Tuple[int, ...]) -> None:
    """
    Isolate CPUS and move PID onto them, until `enginelab unisolate`.
    """
    logger = logging.getLogger("enginelab.cli.isolate")
    try:
        state = CpuIsolationController(ctx.obj["settings"]).acquire(list(cpus), pid=pid)
    except KeyboardInterrupt:
        _interrupted()
    except EngineLabError as e:
        _fail(logger, "Isolation", e)

    click.echo(click.style(f"\n✓ pid {pid} isolated on CPUs {format_cpu_list(state.selected)}", fg="green"))
    click.echo(f"  Others:   {format_cpu_list(state.others)}")
    if state.offlined:
        click.echo(f"  Offlined: {format_cpu_list(state.offlined)}")


@cli.command()
@click.pass_context
def unisolate(ctx: click.Context) -> None:
    """Restore default CPU, frequency, and cgroup settings."""
    logger = logging.getLogger("enginelab.cli.unisolate")
    try:
        CpuIsolationController(ctx.obj["settings"]).release()
    except EngineLabError as e:
        _fail(logger, "Release", e)

    click.echo(click.style("\n✓ CPU isolation released", fg="green"))


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
