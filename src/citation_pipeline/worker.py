from __future__ import annotations

import logging
import os
import socket
import threading
import time
from collections.abc import Callable
from typing import Protocol

from citation_pipeline.errors import JobExhausted, PipelineError
from citation_pipeline.models import DrainResult, Job, JobOutcome, JobStatus
from citation_pipeline.pipeline import ProcessedJob, Sleeper
from citation_pipeline.storage import PipelineStore

logger = logging.getLogger(__name__)

PROCESSED_META_KEY = "jobs_processed"
ERRORS_META_KEY = "job_errors"
DEAD_LETTERED_META_KEY = "jobs_dead_lettered"
LAST_DRAIN_META_KEY = "last_drain_utc"
WORKER_STARTED_META_KEY = "worker_started_utc"


class Processor(Protocol):
    def process(self, job: Job) -> ProcessedJob: ...


def default_claimant() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class WorkerState:
    """In-process re-entrancy guard; a second drain while one is running is a no-op."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._busy = False

    def is_busy(self) -> bool:
        with self._lock:
            return self._busy

    def mark_busy(self) -> bool:
        """Take the guard; False when another drain already holds it."""
        with self._lock:
            if self._busy:
                return False
            self._busy = True
            return True

    def release(self) -> None:
        with self._lock:
            self._busy = False


class QueueWorker:
    def __init__(
        self,
        store: PipelineStore,
        processor: Processor,
        *,
        state: WorkerState | None = None,
        claimant: str | None = None,
        batch_size: int = 3,
        max_cycles: int = 5,
        stale_after_seconds: float = 300.0,
        inter_job_delay_seconds: float = 2.0,
        sleep: Sleeper = time.sleep,
    ):
        self.store = store
        self.processor = processor
        self.state = state or WorkerState()
        self.claimant = claimant or default_claimant()
        self.batch_size = batch_size
        self.max_cycles = max_cycles
        self.stale_after_seconds = stale_after_seconds
        self.inter_job_delay_seconds = inter_job_delay_seconds
        self.sleep = sleep

    def drain(self) -> DrainResult:
        """Claim and process batches until the queue is empty or ``max_cycles`` is reached."""
        if not self.state.mark_busy():
            logger.info("drain skipped: worker already busy")
            return DrainResult(cycles=0, outcomes=[], reclaimed=0, dead_lettered=[], skipped_busy=True)

        outcomes: list[JobOutcome] = []
        dead_lettered: list[int] = []
        reclaimed = 0
        cycles = 0
        try:
            while cycles < self.max_cycles:
                reclaimed += self.store.reclaim_stale(self.stale_after_seconds)
                batch = self.store.claim_batch(self.batch_size, self.claimant)
                if not batch:
                    break
                cycles += 1
                logger.info("cycle %d: claimed %d job(s)", cycles, len(batch))

                for index, job in enumerate(batch):
                    if index > 0 and self.inter_job_delay_seconds > 0:
                        self.sleep(self.inter_job_delay_seconds)
                    outcome = self._run_job(job)
                    outcomes.append(outcome)
                    if outcome.status == JobStatus.FAILED:
                        dead_lettered.append(job.id)
        finally:
            self.store.set_meta(LAST_DRAIN_META_KEY, self.store.now_iso())
            self.state.release()

        result = DrainResult(
            cycles=cycles,
            outcomes=outcomes,
            reclaimed=reclaimed,
            dead_lettered=dead_lettered,
        )
        logger.info(
            "drain finished: cycles=%d processed=%d errors=%d dead_lettered=%d reclaimed=%d",
            result.cycles,
            result.processed_count,
            result.error_count,
            len(result.dead_lettered),
            result.reclaimed,
        )
        return result

    def _run_job(self, job: Job) -> JobOutcome:
        try:
            processed = self.processor.process(job)
        except (PipelineError, ValueError) as exc:
            return self._fail(job, str(exc))
        except Exception as exc:  # pragma: no cover - defensive boundary
            logger.exception("job %s raised unexpectedly", job.id)
            return self._fail(job, f"unexpected error: {exc}")

        self.store.complete(job.id, processed.summary)
        self.store.increment_meta(PROCESSED_META_KEY)
        logger.info(
            "job %s completed: %d citations, %d analyses, %d citation errors",
            job.id,
            processed.citation_count,
            processed.analyses_written,
            processed.citation_errors,
        )
        return JobOutcome(
            job_id=job.id,
            status=JobStatus.COMPLETED,
            citation_count=processed.citation_count,
            analyses_written=processed.analyses_written,
            citation_errors=processed.citation_errors,
        )

    def _fail(self, job: Job, error: str) -> JobOutcome:
        updated = self.store.fail(job.id, error)
        self.store.increment_meta(ERRORS_META_KEY)
        if updated.status == JobStatus.FAILED:
            self.store.increment_meta(DEAD_LETTERED_META_KEY)
            logger.error("%s", JobExhausted(job.id, updated.attempts, updated.last_error))
        else:
            logger.warning(
                "job %s attempt %d/%d failed, back to pending: %s",
                job.id,
                updated.attempts,
                updated.max_attempts,
                error,
            )
        return JobOutcome(job_id=job.id, status=updated.status, error=error)

    def poll_forever(
        self,
        interval_seconds: float,
        *,
        should_continue: Callable[[], bool] = lambda: True,
    ) -> None:
        self.store.set_meta(WORKER_STARTED_META_KEY, self.store.now_iso())
        while should_continue():
            self.drain()
            if not should_continue():
                break
            self.sleep(interval_seconds)
