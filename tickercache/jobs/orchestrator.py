"""
Orchestrator loop: drive a job chunk by chunk within a wall-clock budget.

One call to Orchestrator.run processes as many chunks as fit in the budget,
then leaves the job paused (resume by calling run again) or completed.
BackgroundRunner keeps calling run in a dedicated thread until the job is
finished, so a long job needs no external re-invocation.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, NoReturn, Optional

from loguru import logger

from tickercache.data.ingestion.worker import IngestionWorker
from tickercache.data.records import FillResult, Job, JobStatus
from tickercache.exceptions import (
    ChunkError,
    ConcurrentUpdateError,
    JobStateError,
    StoreUnavailableError,
    TickerCacheError,
)
from tickercache.jobs.batch import BatchJobManager
from tickercache.utils.retry import Backoff, RetryError, retry_call


@dataclass
class RunResult:
    """Outcome of one orchestrator invocation."""

    completed: bool
    chunks_processed: int
    job: Job


class Orchestrator:
    """
    Runs chunks of a job through the ingestion worker.

    A chunk-level exception marks the job failed; it is not resumed. With
    chunk_retries > 0, transient store failures during a chunk are retried
    with backoff first.
    """

    def __init__(
        self,
        jobs: BatchJobManager,
        worker: IngestionWorker,
        chunk_delay: float = 1.0,
        chunk_retries: int = 0,
        retry_base_delay: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if chunk_retries < 0:
            raise ValueError("chunk_retries must be >= 0")
        self.jobs = jobs
        self.worker = worker
        self.chunk_delay = chunk_delay
        self.chunk_retries = chunk_retries
        self.retry_base_delay = retry_base_delay
        self._clock = clock
        self._sleep = sleep

    def run(
        self,
        job_id: str,
        wall_clock_budget: float = 240.0,
        stop_event: Optional[threading.Event] = None,
    ) -> RunResult:
        """
        Process chunks until the job completes or the budget runs out.

        Args:
            job_id: Job to run
            wall_clock_budget: Seconds available to this invocation
            stop_event: When set, stop before the next chunk as if the
                budget had run out

        Returns:
            RunResult; completed is False when the job was left paused

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the job already failed
            ChunkError: If a chunk failed as a whole (job is now failed)
            ConcurrentUpdateError: If another writer updated the job meanwhile
        """
        job = self.jobs.require_job(job_id)

        if job.status == JobStatus.FAILED:
            raise JobStateError(f"Batch job {job_id} has failed and cannot be resumed: {job.error}")
        if job.status == JobStatus.COMPLETED:
            logger.info(f"Batch job {job_id} already completed")
            return RunResult(completed=True, chunks_processed=0, job=job)

        start = self._clock()
        chunks_processed = 0
        logger.info(
            f"Orchestrating job {job_id}: chunk {job.current_chunk + 1}/{job.total_chunks}, "
            f"budget {wall_clock_budget:.0f}s"
        )

        while job.current_chunk < job.total_chunks:
            if self._clock() - start >= wall_clock_budget:
                logger.info(f"Budget exhausted for job {job_id} after {chunks_processed} chunks")
                break
            if stop_event is not None and stop_event.is_set():
                logger.info(f"Stop requested for job {job_id}")
                break

            if job.status != JobStatus.RUNNING:
                job = self.jobs.mark_running(job)

            chunk = self.jobs.next_chunk(job)
            chunk_number = job.current_chunk + 1
            logger.info(f"Chunk {chunk_number}/{job.total_chunks} of {job_id}: {', '.join(chunk)}")

            # Any store error inside the chunk, including registry
            # compare-and-set exhaustion, fails the job
            try:
                result = self._fill(chunk)
            except Exception as e:
                self._chunk_failed(job_id, chunk_number, e)

            try:
                job = self.jobs.record_chunk_result(job, result)
            except ConcurrentUpdateError:
                logger.warning(f"Batch job {job_id} was updated by another writer; stopping")
                raise
            except Exception as e:
                self._chunk_failed(job_id, chunk_number, e)

            chunks_processed += 1

            if job.current_chunk < job.total_chunks and self.chunk_delay > 0:
                self._sleep(self.chunk_delay)

        if job.status != JobStatus.COMPLETED:
            job = self.jobs.mark_paused(job)

        return RunResult(
            completed=job.status == JobStatus.COMPLETED,
            chunks_processed=chunks_processed,
            job=job,
        )

    def _fill(self, chunk: list[str]) -> FillResult:
        if self.chunk_retries == 0:
            return self.worker.fill_chunk(chunk)
        return retry_call(
            self.worker.fill_chunk,
            chunk,
            max_retries=self.chunk_retries,
            backoff=Backoff(base_delay=self.retry_base_delay),
            exceptions=(StoreUnavailableError,),
            sleep=self._sleep,
        )

    def _chunk_failed(self, job_id: str, chunk_number: int, error: Exception) -> NoReturn:
        cause = error.last_exception if isinstance(error, RetryError) and error.last_exception else error
        reason = f"Chunk {chunk_number} failed: {cause}"
        self._fail(job_id, reason)
        raise ChunkError(reason, job_id=job_id, chunk=chunk_number) from cause

    def _fail(self, job_id: str, reason: str) -> None:
        # Reload: the in-memory job may hold a half-applied chunk
        try:
            job = self.jobs.require_job(job_id)
            if not job.status.is_terminal:
                self.jobs.mark_failed(job, reason)
        except TickerCacheError as e:
            logger.error(f"Could not mark job {job_id} failed: {e}")


class BackgroundRunner:
    """
    Runs a job to completion in one long-lived thread.

    Each slice is an Orchestrator.run call with slice_budget seconds, so the
    job is persisted as paused between slices and can be picked up by another
    process if this one dies. At most one runner per job id per process.
    """

    _active: Dict[str, "BackgroundRunner"] = {}
    _registry_lock = threading.Lock()

    def __init__(self, orchestrator: Orchestrator, job_id: str, slice_budget: float = 240.0):
        self.orchestrator = orchestrator
        self.job_id = job_id
        self.slice_budget = slice_budget
        self.result: Optional[RunResult] = None
        self.error: Optional[BaseException] = None
        self.slices = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def is_running(cls, job_id: str) -> bool:
        with cls._registry_lock:
            return job_id in cls._active

    def start(self) -> "BackgroundRunner":
        """
        Raises:
            JobStateError: If a runner for this job is already active
        """
        with self._registry_lock:
            if self.job_id in self._active:
                raise JobStateError(f"Batch job {self.job_id} already has an active runner")
            self._active[self.job_id] = self
            self._thread = threading.Thread(
                target=self._run, name=f"runner-{self.job_id}", daemon=True
            )
            self._thread.start()
        logger.info(f"Background runner started for {self.job_id}")
        return self

    def stop(self) -> None:
        """Ask the runner to stop after the current chunk; the job is left paused."""
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the runner. Returns True if it has finished."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        try:
            while not self._stop.is_set():
                self.result = self.orchestrator.run(self.job_id, self.slice_budget, stop_event=self._stop)
                self.slices += 1
                if self.result.completed:
                    logger.info(f"Background runner finished {self.job_id} in {self.slices} slices")
                    break
        except Exception as e:
            self.error = e
            logger.error(f"Background runner for {self.job_id} stopped: {e}")
        finally:
            with self._registry_lock:
                self._active.pop(self.job_id, None)
