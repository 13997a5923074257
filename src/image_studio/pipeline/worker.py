"""Queue worker that runs expand-prompt and generate-image jobs."""

from __future__ import annotations

import logging
import random
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from image_studio.pipeline.error_normalizer import format_error_for_log
from image_studio.pipeline.executor import (
    Cancelled,
    ExecutionOutcome,
    Failed,
    RetryScheduled,
    SubTaskExecutor,
    Success,
)
from image_studio.pipeline.expansion import PromptExpansionOrchestrator
from image_studio.pipeline.models import JobName, JobView
from image_studio.pipeline.repository import StudioRepository
from image_studio.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    cancelled: int = 0
    deferred: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.cancelled += other.cancelled
        self.deferred += other.deferred
        self.idle_polls += other.idle_polls


class StudioWorker:
    """Consumes queued jobs and dispatches them to expansion or sub-task execution."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: StudioRepository,
        executor: SubTaskExecutor,
        expansion: PromptExpansionOrchestrator,
        worker_id: str,
        poll_interval_seconds: float = 2.0,
        retry_base_seconds: int = 5,
        retry_max_seconds: int = 300,
        lock_ttl_seconds: int = 600,
        stale_job_seconds: int | None = None,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.expansion = expansion
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.lock_ttl_seconds = lock_ttl_seconds
        self.stale_job_seconds = (
            stale_job_seconds if stale_job_seconds is not None else lock_ttl_seconds
        )
        self._random = random.Random()  # noqa: S311
        self._stop_requested = False

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        job = self._claim_job()
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        if job.job_name == JobName.EXPAND_PROMPT:
            self._run_expand_job(job=job, summary=summary)
        else:
            self._run_generate_job(job=job, summary=summary)
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until queue is idle or max_jobs reached.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
                Retries scheduled with backoff count as not ready until their
                run-after time, so raise this to wait them out.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self) -> None:
        self._stop_requested = True

    def _claim_job(self) -> JobView | None:
        if self.stale_job_seconds > 0:
            recovered = self.repository.recover_stale_running_jobs(
                stale_after=timedelta(seconds=self.stale_job_seconds),
            )
            if recovered:
                logger.warning("Requeued %d stale running job(s)", recovered)
        return self.repository.claim_next_ready_job(worker_id=self.worker_id)

    def _run_expand_job(self, *, job: JobView, summary: WorkerRunSummary) -> None:
        task_id = str(job.payload.get("task_id") or "")
        if not task_id:
            self.repository.fail_job(job_id=job.job_id, error_summary="Job payload has no task_id")
            summary.failed = 1
            return

        result = self.expansion.expand_task(task_id)
        if result.error is not None:
            self.repository.fail_job(job_id=job.job_id, error_summary=result.error)
            summary.failed = 1
            return
        self.repository.complete_job(job_id=job.job_id)
        summary.succeeded = 1

    def _run_generate_job(self, *, job: JobView, summary: WorkerRunSummary) -> None:
        sub_task_id = str(job.payload.get("sub_task_id") or "")
        if not sub_task_id:
            self.repository.fail_job(
                job_id=job.job_id,
                error_summary="Job payload has no sub_task_id",
            )
            summary.failed = 1
            return
        if self.repository.get_sub_task(sub_task_id=sub_task_id) is None:
            self.repository.fail_job(
                job_id=job.job_id,
                error_summary=f"Sub-task not found: {sub_task_id}",
            )
            summary.failed = 1
            return

        acquired = self.repository.try_acquire_sub_task(
            sub_task_id=sub_task_id,
            worker_id=self.worker_id,
            ttl=timedelta(seconds=self.lock_ttl_seconds),
        )
        if not acquired:
            logger.info("Sub-task %s is locked by another worker, deferring", sub_task_id)
            self.repository.requeue_job(
                job_id=job.job_id,
                run_after=utc_now() + timedelta(seconds=max(self.poll_interval_seconds, 1.0)),
                error_summary="Sub-task locked by another worker",
            )
            summary.deferred = 1
            return

        try:
            outcome = self.executor.execute(sub_task_id)
        finally:
            self.repository.release_sub_task_lock(sub_task_id=sub_task_id, worker_id=self.worker_id)
        self._settle_job(job=job, outcome=outcome, summary=summary)

    def _settle_job(
        self,
        *,
        job: JobView,
        outcome: ExecutionOutcome,
        summary: WorkerRunSummary,
    ) -> None:
        if isinstance(outcome, RetryScheduled):
            delay_seconds = self._compute_retry_delay(retry_number=outcome.retry_count)
            self.repository.requeue_job(
                job_id=job.job_id,
                run_after=utc_now() + timedelta(seconds=delay_seconds),
                error_summary=format_error_for_log(outcome.error),
            )
            logger.info(
                "Sub-task %s retry %d scheduled in %.1fs",
                outcome.sub_task_id,
                outcome.retry_count,
                delay_seconds,
            )
            summary.retried = 1
            return
        if isinstance(outcome, Failed):
            self.repository.fail_job(
                job_id=job.job_id,
                error_summary=format_error_for_log(outcome.error),
            )
            summary.failed = 1
            return

        self.repository.complete_job(job_id=job.job_id)
        if isinstance(outcome, Success):
            summary.succeeded = 1
        elif isinstance(outcome, Cancelled):
            summary.cancelled = 1

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping after the current job", name)
            self._stop_requested = True

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
