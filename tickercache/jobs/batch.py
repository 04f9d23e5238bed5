"""
Batch job management.

A Job is created from a symbol list once (after the coverage check has
removed cached and known-bad symbols), then advanced one chunk at a time.
Every change is persisted with compare-and-set against the version the job
was read at, so two writers cannot silently overwrite each other.
"""

from __future__ import annotations

import math
import secrets
import string
import time
from typing import Any, Dict, List, Optional

from loguru import logger

from tickercache.data.constants import (
    BATCH_JOB_PREFIX,
    JOB_TTL_SECONDS,
    MAX_CHUNK_SIZE,
    MAX_SYMBOLS_PER_JOB,
    MIN_CHUNK_SIZE,
)
from tickercache.data.coverage import CoverageChecker, CoverageReport, dedupe_symbols
from tickercache.data.records import VALID_TRANSITIONS, FillResult, Job, JobStatus, utc_now, utc_now_iso
from tickercache.data.store import KeyValueStore
from tickercache.exceptions import InvalidRequestError, JobError, JobNotFoundError, JobStateError, RecordValidationError

_BASE36 = string.digits + string.ascii_lowercase

# Chunk number recorded for symbols eliminated before the job started
PRE_ELIMINATED_CHUNK = -1


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_job_id() -> str:
    """batch_job_<base36 epoch millis>_<5 random base36 chars>"""
    timestamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(5))
    return f"{BATCH_JOB_PREFIX}_{timestamp}_{suffix}"


def job_key(job_id: str) -> str:
    return f"{BATCH_JOB_PREFIX}:{job_id}"


def chunk_at_cursor(job: Job) -> List[str]:
    """Symbols of the chunk at the cursor; [] when exhausted or terminal."""
    if job.status.is_terminal or job.current_chunk >= job.total_chunks:
        return []
    start = job.current_chunk * job.chunk_size
    return job.symbols_to_process[start:start + job.chunk_size]


def status_message(job: Job) -> str:
    """Human-readable one-liner for a job's state."""
    if job.status == JobStatus.PENDING:
        return "Batch job created and waiting to start"
    if job.status == JobStatus.RUNNING:
        return (
            f"Processing chunk {job.current_chunk + 1} of {job.total_chunks}. "
            f"{job.remaining_chunks} chunks remaining."
        )
    if job.status == JobStatus.COMPLETED:
        return f"Batch job completed! Processed {job.successful} tickers successfully, {job.failed} failed."
    if job.status == JobStatus.FAILED:
        return f"Batch job failed. Processed {job.processed} of {job.total_symbols} tickers before failure."
    if job.status == JobStatus.PAUSED:
        return f"Batch job paused at chunk {job.current_chunk + 1} of {job.total_chunks}."
    return "Unknown job status"


class BatchJobManager:
    """Creates, advances and persists batch jobs."""

    def __init__(
        self,
        store: KeyValueStore,
        coverage: CoverageChecker,
        default_chunk_size: int = 5,
        job_ttl_seconds: float = JOB_TTL_SECONDS,
    ):
        self.store = store
        self.coverage = coverage
        self.default_chunk_size = default_chunk_size
        self.job_ttl_seconds = job_ttl_seconds

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def validate_request(self, symbols: Any, chunk_size: Any) -> None:
        """
        Raises:
            InvalidRequestError: On a malformed symbol list or chunk size
        """
        if not isinstance(symbols, (list, tuple)) or not all(isinstance(s, str) for s in symbols):
            raise InvalidRequestError("symbols must be a list of strings")
        if len(symbols) > MAX_SYMBOLS_PER_JOB:
            raise InvalidRequestError(
                f"Too many symbols: {len(symbols)} (max {MAX_SYMBOLS_PER_JOB})"
            )
        if isinstance(chunk_size, bool) or not isinstance(chunk_size, int):
            raise InvalidRequestError("chunk_size must be an integer")
        if not MIN_CHUNK_SIZE <= chunk_size <= MAX_CHUNK_SIZE:
            raise InvalidRequestError(
                f"chunk_size must be between {MIN_CHUNK_SIZE} and {MAX_CHUNK_SIZE}, got {chunk_size}"
            )

    def create_job(self, symbols: List[str], chunk_size: Optional[int] = None) -> tuple[Job, CoverageReport]:
        """
        Create and persist a job for the symbols that still need fetching.

        Cached symbols count as processed and successful up front; symbols in
        the failed-ticker registry count as processed and failed. A job with
        nothing left to fetch is created already completed.

        Args:
            symbols: Symbols requested (duplicates collapsed)
            chunk_size: Symbols per chunk (default: manager default)

        Returns:
            (job, coverage report)

        Raises:
            InvalidRequestError: On invalid input
        """
        chunk_size = self.default_chunk_size if chunk_size is None else chunk_size
        self.validate_request(symbols, chunk_size)

        unique = dedupe_symbols(list(symbols))
        if not unique:
            raise InvalidRequestError("symbols must contain at least one non-empty symbol")

        report = self.coverage.check_coverage(unique)
        job_id = generate_job_id()

        job = Job(
            job_id=job_id,
            total_symbols=len(unique),
            symbols_to_process=list(report.missing),
            chunk_size=chunk_size,
            total_chunks=math.ceil(len(report.missing) / chunk_size),
            processed=len(report.cached) + len(report.eliminated),
            successful=len(report.cached),
            failed=len(report.eliminated),
            successful_tickers=list(report.cached),
            failed_tickers=[
                {"ticker": e["symbol"], "error": e["reason"], "chunk": PRE_ELIMINATED_CHUNK}
                for e in report.eliminated
            ],
        )

        if job.total_chunks == 0:
            job.status = JobStatus.COMPLETED
            job.estimated_seconds_remaining = 0

        self.persist(job)
        logger.info(
            f"Created batch job {job_id}: {len(unique)} total, {len(report.missing)} to process "
            f"in {job.total_chunks} chunks of {chunk_size}, {len(report.eliminated)} previously failed"
        )
        return job, report

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[Job]:
        raw, version = self.store.get_with_version(job_key(job_id))
        if raw is None:
            return None
        return Job.from_dict(raw, version=version)

    def require_job(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"No batch job found with ID: {job_id}")
        return job

    def persist(self, job: Job) -> Job:
        """
        Write the job, refreshing its TTL.

        Raises:
            ConcurrentUpdateError: If the stored job changed since it was read
        """
        job.last_updated_at = utc_now_iso()
        job.version = self.store.compare_and_set(
            job_key(job.job_id), job.to_dict(), job.version, ttl=self.job_ttl_seconds
        )
        return job

    def list_jobs(self) -> List[Job]:
        """Every live job, newest first."""
        keys: List[str] = []
        cursor = 0
        while True:
            cursor, page = self.store.scan(cursor, count=100, pattern=f"{BATCH_JOB_PREFIX}:*")
            keys.extend(page)
            if cursor == 0:
                break

        jobs = []
        for key, raw in zip(keys, self.store.mget(keys)):
            if raw is None:
                continue
            try:
                jobs.append(Job.from_dict(raw))
            except RecordValidationError as e:
                logger.warning(f"Skipping unreadable job record {key}: {e}")
        return sorted(jobs, key=lambda j: j.started_at, reverse=True)

    def delete_job(self, job_id: str) -> bool:
        return self.store.delete(job_key(job_id))

    # ------------------------------------------------------------------
    # Advancing
    # ------------------------------------------------------------------

    def next_chunk(self, job: Job) -> List[str]:
        """Symbols of the chunk at the cursor; [] when exhausted or terminal."""
        return chunk_at_cursor(job)

    def record_chunk_result(self, job: Job, result: FillResult) -> Job:
        """
        Fold a chunk's outcome into the job, advance the cursor and persist.

        Raises:
            JobStateError: If the job is terminal
            JobError: If the result does not cover exactly the current chunk
        """
        if job.status.is_terminal:
            raise JobStateError(f"Cannot record results on {job.status.value} job {job.job_id}")

        chunk = self.next_chunk(job)
        attempted = set(result.success) | {e["ticker"] for e in result.errors}
        if attempted != set(chunk):
            raise JobError(
                f"Chunk {job.current_chunk + 1} of job {job.job_id} incomplete: "
                f"expected {sorted(chunk)}, got {sorted(attempted)}"
            )

        job.successful += len(result.success)
        job.failed += len(result.errors)
        job.processed += len(result.success) + len(result.errors)
        job.current_chunk += 1

        job.successful_tickers.extend(result.success)
        job.failed_tickers.extend(
            {"ticker": e["ticker"], "error": e["error"], "chunk": job.current_chunk} for e in result.errors
        )
        job.warnings.extend(result.warnings)

        if job.current_chunk >= job.total_chunks:
            self._transition(job, JobStatus.COMPLETED)
            job.estimated_seconds_remaining = 0
            logger.info(f"Batch job {job.job_id} completed! {job.successful} successful, {job.failed} failed")
        else:
            self._transition(job, JobStatus.RUNNING)
            elapsed = job.elapsed_seconds()
            job.estimated_seconds_remaining = round(elapsed / job.current_chunk * job.remaining_chunks)

        return self.persist(job)

    def mark_running(self, job: Job) -> Job:
        self._transition(job, JobStatus.RUNNING)
        return self.persist(job)

    def mark_paused(self, job: Job) -> Job:
        self._transition(job, JobStatus.PAUSED)
        logger.info(f"Batch job {job.job_id} paused at chunk {job.current_chunk + 1}/{job.total_chunks}")
        return self.persist(job)

    def mark_failed(self, job: Job, reason: str) -> Job:
        self._transition(job, JobStatus.FAILED)
        job.error = reason
        job.estimated_seconds_remaining = None
        logger.error(f"Batch job {job.job_id} failed: {reason}")
        return self.persist(job)

    def _transition(self, job: Job, new_status: JobStatus) -> None:
        if new_status not in VALID_TRANSITIONS[job.status]:
            raise JobStateError(
                f"Invalid status transition for job {job.job_id}: "
                f"{job.status.value} -> {new_status.value}"
            )
        if new_status == JobStatus.RUNNING and job.processing_started_at is None:
            job.processing_started_at = utc_now_iso()
            logger.info(f"Processing started: job {job.job_id} at {job.processing_started_at}")
        job.status = new_status

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def get_progress(self, job_id: str) -> Dict[str, Any]:
        """
        Raises:
            JobNotFoundError: If the job does not exist or has expired
        """
        job = self.require_job(job_id)
        return progress_of(job)


def progress_of(job: Job) -> Dict[str, Any]:
    """
    JSON-ready progress snapshot of a job.

    current_ticker is the first symbol of the chunk in flight (or next up
    for a pending or paused job); None once the job is done.
    """
    chunk = chunk_at_cursor(job)
    return {
        "job_id": job.job_id,
        "processed": job.processed,
        "total": job.total_symbols,
        "percentage": round(job.percentage, 1),
        "successful": job.successful,
        "failed": job.failed,
        "current_chunk": job.current_chunk,
        "total_chunks": job.total_chunks,
        "status": job.status.value,
        "current_ticker": chunk[0] if chunk else None,
        "estimated_seconds_remaining": job.estimated_seconds_remaining,
        "elapsed_seconds": round(job.elapsed_seconds(utc_now())),
        "message": status_message(job),
    }
