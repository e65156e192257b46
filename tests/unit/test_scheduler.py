"""
enginelab Test Suite - Sample Scheduler Tests
=============================================
Resumable sample collection against a stub run controller.
"""

import pytest

from enginelab.collect.scheduler import (
    SampleScheduler,
    SampleStatus,
    sample_status,
    study_status,
)
from enginelab.core.config import Settings
from enginelab.core.exceptions import ArtifactMissing, GracefulShutdownTimeout, SampleFailed
from enginelab.study.layout import SampleId
from enginelab.study.study import Study

SERVO = SampleId("2cpu", "servo.org", "servo1")
CHROMIUM = SampleId("2cpu", "servo.org", "chromium1")


@pytest.fixture
def study(write_study, study_data):
    return Study.load(write_study(study_data))


def _tree(path):
    """Relative path -> bytes for every file under ``path``."""
    return {str(p.relative_to(path)): p.read_bytes() for p in sorted(path.rglob("*")) if p.is_file()}


class TestScheduling:
    def test_runs_every_sample(self, study, stub_runs):
        runs = stub_runs()
        report = SampleScheduler(study, runs).run("2cpu")

        assert report.completed == [SERVO, CHROMIUM]
        assert report.ok
        assert report.launches == 4
        assert [call[:3] for call in runs.calls] == [
            ("servo1", "servo.org", 1),
            ("servo1", "servo.org", 2),
            ("chromium1", "servo.org", 1),
            ("chromium1", "servo.org", 2),
        ]

        servo_dir = SERVO.path(study.directory)
        assert sorted(p.name for p in servo_dir.iterdir()) == [
            "done",
            "manifest1.json",
            "manifest2.json",
            "trace1.html",
            "trace1.pftrace",
            "trace2.html",
            "trace2.pftrace",
        ]
        assert sorted(p.name for p in CHROMIUM.path(study.directory).iterdir()) == [
            "done",
            "trace1.pftrace",
            "trace2.pftrace",
        ]

    def test_done_samples_untouched(self, study, stub_runs):
        SampleScheduler(study, stub_runs()).run("2cpu")
        before = _tree(study.directory / "2cpu")

        runs = stub_runs()
        report = SampleScheduler(study, runs).run("2cpu")

        assert report.skipped == [SERVO, CHROMIUM]
        assert report.completed == []
        assert report.launches == 0
        assert runs.calls == []
        assert _tree(study.directory / "2cpu") == before

    def test_partial_sample_is_cleared_and_restarted(self, study, stub_runs):
        path = SERVO.path(study.directory)
        path.mkdir(parents=True)
        (path / "trace1.pftrace").write_bytes(b"stale")
        (path / "trace1.html").write_text("stale")
        (path / "leftover").mkdir()

        runs = stub_runs()
        SampleScheduler(study, runs).run("2cpu")

        assert runs.calls[0][:3] == ("servo1", "servo.org", 1)
        assert (path / "trace1.pftrace").read_bytes() == b"trace servo1 1"
        assert not (path / "leftover").exists()
        assert (path / "done").exists()

    def test_open_time_and_extra_args(self, write_study, study_data, stub_runs):
        study_data["sites"]["servo.org"]["extra_args_by_engine"] = {"servo1": ["--pref", "dom.svg.enabled"]}
        del study_data["sites"]["servo.org"]["open_time"]
        study = Study.load(write_study(study_data))
        runs = stub_runs()

        SampleScheduler(study, runs, settings=Settings(browser_open_time=4)).run("2cpu")

        servo_call, chromium_call = runs.calls[0], runs.calls[2]
        assert servo_call[3] == 4
        assert servo_call[4] == ["--pref", "dom.svg.enabled"]
        assert chromium_call[4] == []


class TestFailures:
    """A failed run aborts its sample and leaves it without a done marker."""

    @staticmethod
    def _fail_servo_run_2(engine_key, site_key, run_index):
        if engine_key == "servo1" and run_index == 2:
            return ArtifactMissing("Perfetto trace not found")
        return None

    def test_failure_propagates(self, study, stub_runs):
        runs = stub_runs(fail=self._fail_servo_run_2)
        with pytest.raises(SampleFailed) as exc_info:
            SampleScheduler(study, runs).run("2cpu")

        assert exc_info.value.sample == "2cpu/servo.org.servo1"
        assert exc_info.value.run_index == 2
        assert isinstance(exc_info.value.cause, ArtifactMissing)
        assert not (SERVO.path(study.directory) / "done").exists()
        # The next sample never started
        assert not CHROMIUM.path(study.directory).exists()

    def test_keep_going(self, study, stub_runs):
        runs = stub_runs(fail=self._fail_servo_run_2)
        report = SampleScheduler(study, runs, keep_going=True).run("2cpu")

        assert not report.ok
        assert [f.sample for f in report.failed] == ["2cpu/servo.org.servo1"]
        assert report.completed == [CHROMIUM]
        assert report.launches == 4

    def test_shutdown_timeout_stops_even_with_keep_going(self, study, stub_runs):
        def fail(engine_key, site_key, run_index):
            return GracefulShutdownTimeout(4242, 120) if engine_key == "servo1" else None

        runs = stub_runs(fail=fail)
        with pytest.raises(SampleFailed) as exc_info:
            SampleScheduler(study, runs, keep_going=True).run("2cpu")
        assert isinstance(exc_info.value.cause, GracefulShutdownTimeout)
        assert runs.launches == 1

    def test_failed_sample_rerun_from_first_run(self, study, stub_runs):
        with pytest.raises(SampleFailed):
            SampleScheduler(study, stub_runs(fail=self._fail_servo_run_2)).run("2cpu")
        assert sample_status(study, SERVO) is SampleStatus.PARTIAL

        runs = stub_runs()
        report = SampleScheduler(study, runs).run("2cpu")
        assert report.completed == [SERVO, CHROMIUM]
        assert runs.calls[0][:3] == ("servo1", "servo.org", 1)

    def test_interrupt_is_not_converted(self, study, stub_runs):
        runs = stub_runs(fail=lambda *args: KeyboardInterrupt())
        with pytest.raises(KeyboardInterrupt):
            SampleScheduler(study, runs, keep_going=True).run("2cpu")
        assert not (SERVO.path(study.directory) / "done").exists()


class TestStatus:
    def test_study_status(self, study, stub_runs):
        assert set(study_status(study).values()) == {SampleStatus.PENDING}

        SERVO.path(study.directory).mkdir(parents=True)
        (SERVO.path(study.directory) / "trace1.pftrace").write_bytes(b"x")
        assert sample_status(study, SERVO) is SampleStatus.PARTIAL

        SampleScheduler(study, stub_runs()).run("2cpu")
        assert study_status(study) == {SERVO: SampleStatus.DONE, CHROMIUM: SampleStatus.DONE}

    def test_empty_directory_is_pending(self, study):
        SERVO.path(study.directory).mkdir(parents=True)
        assert sample_status(study, SERVO) is SampleStatus.PENDING
