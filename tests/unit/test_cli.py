"""
enginelab Test Suite - CLI Tests
================================
Tests for command-line interface.
"""

import pytest
from click.testing import CliRunner
from unittest.mock import patch

from enginelab import __version__
from enginelab.cli import cli
from enginelab.collaborators import AnalyseReport
from enginelab.study.layout import SampleId


@pytest.fixture
def cli_runner():
    """Create CLI test runner."""
    return CliRunner()


class TestCLIHelp:
    """Tests for CLI help commands."""

    def test_main_help(self, cli_runner):
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "enginelab" in result.output
        for command in ("collect", "analyse", "report", "status", "topology", "isolate", "unisolate"):
            assert command in result.output

    def test_collect_help(self, cli_runner):
        result = cli_runner.invoke(cli, ["collect", "--help"])

        assert result.exit_code == 0
        assert "--keep-going" in result.output
        assert "--no-isolation" in result.output


class TestCLIVersion:
    def test_version(self, cli_runner):
        result = cli_runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output


class TestSettingsFromEnvironment:
    def test_invalid_setting_fails(self, cli_runner, tmp_path):
        result = cli_runner.invoke(cli, ["status", str(tmp_path)], env={"ENGINELAB_SHUTDOWN_TIMEOUT": "soon"})

        assert result.exit_code == 1
        assert "ENGINELAB_SHUTDOWN_TIMEOUT" in result.output


class TestStatusCommand:
    def test_status(self, cli_runner, write_study, study_data):
        study_dir = write_study(study_data)
        done = SampleId("2cpu", "servo.org", "servo1").path(study_dir)
        done.mkdir(parents=True)
        (done / "done").touch()

        result = cli_runner.invoke(cli, ["status", str(study_dir)])

        assert result.exit_code == 0
        assert "2cpu/servo.org.servo1" in result.output
        assert "2cpu/servo.org.chromium1" in result.output
        assert "1/2 samples done" in result.output

    def test_invalid_study(self, cli_runner, write_study, study_data):
        study_data["sample_size"] = 1
        result = cli_runner.invoke(cli, ["status", str(write_study(study_data))])

        assert result.exit_code == 1
        assert "✗ Loading study failed" in result.output


class TestKernelCommands:
    """Commands that touch kernel state, pointed at the fake tree."""

    def test_topology(self, cli_runner, fake_kernel):
        result = cli_runner.invoke(cli, ["topology"], env=fake_kernel.env())

        assert result.exit_code == 0
        assert "core 6" in result.output
        assert "6, 14" in result.output

    def test_isolate_then_unisolate(self, cli_runner, fake_kernel):
        before = fake_kernel.snapshot()

        result = cli_runner.invoke(cli, ["isolate", "4321", "14", "15"], env=fake_kernel.env())
        assert result.exit_code == 0, result.output
        assert "isolated on CPUs 14-15" in result.output
        assert "Offlined: 6-7" in result.output
        assert fake_kernel.read("cgroup/shield/cgroup.procs") == "4321"

        result = cli_runner.invoke(cli, ["unisolate"], env=fake_kernel.env())
        assert result.exit_code == 0, result.output
        assert fake_kernel.snapshot() == before

    def test_isolate_smt_pair(self, cli_runner, fake_kernel):
        before = fake_kernel.snapshot()
        result = cli_runner.invoke(cli, ["isolate", "4321", "6", "14"], env=fake_kernel.env())

        assert result.exit_code == 1
        assert "✗ Isolation failed" in result.output
        assert fake_kernel.snapshot() == before


class TestCollectCommand:
    def test_invalid_engine_path(self, cli_runner, fake_kernel, write_study, study_data):
        study_data["engines"]["servo1"]["path"] = "/nonexistent/servo"
        study_dir = write_study(study_data)
        before = fake_kernel.snapshot()

        result = cli_runner.invoke(cli, ["collect", str(study_dir)], env=fake_kernel.env())

        assert result.exit_code == 1
        assert "✗ Collection failed" in result.output
        assert "/nonexistent/servo" in result.output
        assert not SampleId("2cpu", "servo.org", "servo1").path(study_dir).joinpath("done").exists()
        assert fake_kernel.snapshot() == before

    def test_missing_study(self, cli_runner, tmp_path):
        result = cli_runner.invoke(cli, ["collect", str(tmp_path)])

        assert result.exit_code == 1
        assert "No study file" in result.output


class TestCollaboratorCommands:
    @patch("enginelab.cli.collaborators.analyse")
    def test_analyse(self, mock_analyse, cli_runner, write_study, study_data):
        mock_analyse.return_value = AnalyseReport(
            analysed=[SampleId("2cpu", "servo.org", "servo1")],
            incomplete=[SampleId("2cpu", "servo.org", "chromium1")],
        )
        result = cli_runner.invoke(cli, ["analyse", str(write_study(study_data))])

        assert result.exit_code == 0
        assert "Analysed 1 sample(s)" in result.output
        assert "1 incomplete sample(s) skipped" in result.output

    def test_report_not_configured(self, cli_runner, write_study, study_data):
        result = cli_runner.invoke(cli, ["report", str(write_study(study_data))])

        assert result.exit_code == 1
        assert "report_command" in result.output
