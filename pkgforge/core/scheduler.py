# Copyright 2026 Pramod Kumar Voola
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# -----------------------------------------------------------------------------
# SCHEDULER
# -----------------------------------------------------------------------------
# Responsibility: Runs Build Jobs on a bounded pool of worker threads.
#
# - At most `max_jobs` jobs are active at once; the rest wait in submission
#   order
# - A failed job never cancels its siblings (fail-open scheduling); the
#   report is ok only if every job succeeded (fail-closed verdict)
# - Cancellation sets one shared flag: queued jobs end Cancelled without
#   starting, running jobs get their containers stopped
# -----------------------------------------------------------------------------

import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from rich.console import Console
from rich.markup import escape

from pkgforge.core.job import BuildJob, JobResult
from pkgforge.domain.models import JobState

console = Console()

DEFAULT_MAX_JOBS = 4
POLL_INTERVAL = 0.2


@dataclass
class SchedulerReport:
    """Results of every submitted job, in submission order."""

    results: list[JobResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[JobResult]:
        return [r for r in self.results if r.state is JobState.SUCCEEDED]

    @property
    def failed(self) -> list[JobResult]:
        return [r for r in self.results if r.state is JobState.FAILED]

    @property
    def cancelled(self) -> list[JobResult]:
        return [r for r in self.results if r.state is JobState.CANCELLED]

    @property
    def ok(self) -> bool:
        return len(self.succeeded) == len(self.results)


class Scheduler:
    """
    Bounded-parallelism job runner.

    Args:
        max_jobs: Maximum number of concurrently running jobs.
        cancel_event: Cancellation flag shared with the jobs.
    """

    def __init__(self, max_jobs: int = DEFAULT_MAX_JOBS, cancel_event: threading.Event | None = None) -> None:
        if max_jobs < 1:
            raise ValueError("max_jobs must be at least 1")
        self.max_jobs = max_jobs
        self._cancel = cancel_event if cancel_event is not None else threading.Event()
        self._running: set[BuildJob] = set()
        self._lock = threading.Lock()
        self._peak_active = 0

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def peak_active(self) -> int:
        """Highest number of jobs that were running at the same time."""
        return self._peak_active

    def cancel(self) -> None:
        """Stop starting jobs and stop every running job's container."""
        if not self._cancel.is_set():
            console.print("[yellow][SCHEDULER] Cancellation requested, stopping running jobs...[/yellow]")
        self._cancel.set()
        with self._lock:
            running = list(self._running)
        for job in running:
            job.cancel()

    def run(self, jobs: list[BuildJob]) -> SchedulerReport:
        """
        Run `jobs` and wait until each one reached a terminal state.

        Returns:
            SchedulerReport with one result per job, in submission order.
        """
        if not jobs:
            return SchedulerReport()

        workers = min(self.max_jobs, len(jobs))
        console.print(f"[cyan][SCHEDULER] Running {len(jobs)} job(s), {workers} at a time[/cyan]")

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pkgforge-job")
        try:
            futures = [executor.submit(self._run_one, job) for job in jobs]
            pending = set(futures)
            # Poll so the main thread stays responsive to signal handlers
            while pending:
                _done, pending = wait(pending, timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
        finally:
            executor.shutdown(wait=True)

        report = SchedulerReport(results=[f.result() for f in futures])
        colour = "green" if report.ok else "red"
        console.print(
            f"[{colour}][SCHEDULER] {len(report.succeeded)} succeeded, {len(report.failed)} failed, "
            f"{len(report.cancelled)} cancelled[/{colour}]"
        )
        return report

    def _run_one(self, job: BuildJob) -> JobResult:
        with self._lock:
            if self._cancel.is_set():
                start = False
            else:
                start = True
                self._running.add(job)
                self._peak_active = max(self._peak_active, len(self._running))
        if not start:
            return job.cancelled_result()

        try:
            return job.run()
        except Exception as e:
            console.print(f"[red][SCHEDULER] Job {job.id} crashed: {escape(str(e))}[/red]")
            return JobResult(
                job_id=job.id,
                recipe=job.recipe.name,
                image=job.image,
                target=job.target,
                state=JobState.FAILED,
                phase=job.state,
                error=f"{type(e).__name__}: {e}",
                arch=job.arch,
            )
        finally:
            with self._lock:
                self._running.discard(job)
