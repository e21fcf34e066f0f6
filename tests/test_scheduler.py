# =============================================================================
# PKGFORGE SCHEDULER TESTS
# =============================================================================
# Tests for bounded parallelism, fail-open scheduling and cancellation.
# =============================================================================

import threading
import time
from unittest.mock import MagicMock

import pytest

from pkgforge.core.job import BuildJob
from pkgforge.core.recipes import ImageTarget
from pkgforge.core.scheduler import Scheduler, SchedulerReport
from pkgforge.domain.models import BuildTarget, JobState

from conftest import make_recipe


def _jobs(recipes, registry, driver, tmp_path, scheduler, image="debian10"):
    return [
        BuildJob(
            recipe,
            ImageTarget(image, BuildTarget.GZIP),
            registry,
            driver,
            tmp_path / "work",
            session_id="s1",
            cancel_event=scheduler._cancel,
        )
        for recipe in recipes
    ]


class TestParallelism:
    """Test the concurrency bound."""

    def test_never_exceeds_max_jobs(self, registry, fake_driver, tmp_path):
        active = {"now": 0, "peak": 0}
        lock = threading.Lock()

        def hook(container_id, command):
            if command != "make":
                return
            with lock:
                active["now"] += 1
                active["peak"] = max(active["peak"], active["now"])
            time.sleep(0.05)
            with lock:
                active["now"] -= 1

        fake_driver.exec_hook = hook
        scheduler = Scheduler(max_jobs=2)
        jobs = _jobs([make_recipe() for _ in range(6)], registry, fake_driver, tmp_path, scheduler)
        report = scheduler.run(jobs)

        assert report.ok
        assert len(report.results) == 6
        assert scheduler.peak_active <= 2
        assert active["peak"] <= 2
        assert len(fake_driver.removed) == 6

    def test_results_in_submission_order(self, registry, fake_driver, tmp_path):
        scheduler = Scheduler(max_jobs=3)
        recipes = [make_recipe(metadata={"name": f"pkg{i}"}) for i in range(5)]
        report = scheduler.run(_jobs(recipes, registry, fake_driver, tmp_path, scheduler))
        assert [r.recipe for r in report.results] == [f"pkg{i}" for i in range(5)]

    def test_empty_run(self):
        report = Scheduler().run([])
        assert report.results == []
        assert report.ok

    def test_rejects_zero_workers(self):
        with pytest.raises(ValueError):
            Scheduler(max_jobs=0)


class TestFailOpen:
    """Test that one failure does not stop siblings."""

    def test_failure_does_not_cancel_siblings(self, registry, fake_driver, tmp_path):
        fake_driver.fail_on = {"broken-step": 2}
        recipes = [
            make_recipe(metadata={"name": "bad"}, build={"steps": [{"cmd": "broken-step"}]}),
            make_recipe(metadata={"name": "good"}),
        ]
        scheduler = Scheduler(max_jobs=1)
        report = scheduler.run(_jobs(recipes, registry, fake_driver, tmp_path, scheduler))

        assert [r.state for r in report.results] == [JobState.FAILED, JobState.SUCCEEDED]
        assert not report.ok
        assert len(report.failed) == 1

    def test_crashing_job_becomes_failed(self):
        job = MagicMock()
        job.id = "crashy"
        job.recipe.name = "tool"
        job.image = "debian10"
        job.target = BuildTarget.GZIP
        job.state = JobState.BUILDING
        job.arch = "x86_64"
        job.run.side_effect = RuntimeError("unexpected")

        report = Scheduler(max_jobs=1).run([job])

        (result,) = report.results
        assert result.state is JobState.FAILED
        assert result.phase is JobState.BUILDING
        assert "RuntimeError" in result.error


class TestCancellation:
    """Test run-wide cancellation."""

    def test_cancel_stops_running_and_skips_queued(self, registry, fake_driver, tmp_path):
        scheduler = Scheduler(max_jobs=1)

        def hook(container_id, command):
            if command == "make":
                scheduler.cancel()

        fake_driver.exec_hook = hook
        recipes = [make_recipe(metadata={"name": f"pkg{i}"}) for i in range(3)]
        report = scheduler.run(_jobs(recipes, registry, fake_driver, tmp_path, scheduler))

        assert [r.state for r in report.results] == [JobState.CANCELLED] * 3
        assert len(fake_driver.created) == 1
        assert fake_driver.stopped[0] == fake_driver.created[0]
        assert fake_driver.removed == fake_driver.created
        assert not report.ok

    def test_cancel_before_run(self, registry, fake_driver, tmp_path):
        scheduler = Scheduler(max_jobs=2)
        scheduler.cancel()
        report = scheduler.run(_jobs([make_recipe()], registry, fake_driver, tmp_path, scheduler))
        assert report.cancelled and not report.succeeded
        assert fake_driver.created == []


class TestSchedulerReport:
    """Test the aggregate verdict."""

    def test_empty_report_is_ok(self):
        assert SchedulerReport().ok
