"""
Tests for the orchestrator loop and the background runner.

Tests cover:
- End-to-end run with a cached, a fetched and a failing symbol
- Budget exhaustion pauses the job; a second run resumes it
- Completed and failed jobs
- Chunk-level failures mark the job failed
- Optional bounded retry of transient store failures
- Lost compare-and-set stops the run without clobbering the job
- BackgroundRunner slices and single-runner guard
"""

import threading
from unittest.mock import Mock, patch

import pytest

from tickercache.data.records import JobStatus
from tickercache.exceptions import (
    ChunkError,
    ConcurrentUpdateError,
    JobNotFoundError,
    JobStateError,
    StoreUnavailableError,
)
from tickercache.jobs.orchestrator import BackgroundRunner, Orchestrator


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def slow_worker(worker, clock, seconds_per_chunk=60.0):
    """Make every chunk take seconds_per_chunk on the fake clock."""
    real_fill = worker.fill_chunk

    def fill(chunk):
        result = real_fill(chunk)
        clock.advance(seconds_per_chunk)
        return result

    worker.fill_chunk = fill
    return worker


class TestEndToEnd:
    """Tests for a full run."""

    def test_aapl_and_failing_symbol(self, orchestrator, manager, cache):
        job, _ = manager.create_job(["AAPL", "ZZZZFAIL"], 5)

        result = orchestrator.run(job.job_id, wall_clock_budget=60)

        assert result.completed is True
        assert result.chunks_processed == 1
        job = result.job
        assert job.status == JobStatus.COMPLETED
        assert (job.processed, job.successful, job.failed) == (2, 1, 1)
        assert job.successful_tickers == ["AAPL"]
        assert job.failed_tickers[0]["ticker"] == "ZZZZFAIL"
        assert cache.get_ticker("AAPL") is not None
        assert "ZZZZFAIL" in cache.get_failed_registry()

    def test_rerun_fetches_nothing(self, orchestrator, manager, fake_source):
        first, _ = manager.create_job(["AAPL", "ZZZZFAIL"], 5)
        orchestrator.run(first.job_id)
        calls_before = len(fake_source.price_calls)

        second, report = manager.create_job(["AAPL", "ZZZZFAIL"], 5)

        assert second.status == JobStatus.COMPLETED
        assert report.cached == ["AAPL"]
        assert report.eliminated_symbols == ["ZZZZFAIL"]
        assert orchestrator.run(second.job_id).completed is True
        assert len(fake_source.price_calls) == calls_before

    def test_cleared_failure_is_retried(self, orchestrator, manager, cache, fake_source):
        job, _ = manager.create_job(["ZZZZFAIL"], 5)
        orchestrator.run(job.job_id)
        cache.clear_failed(["ZZZZFAIL"])
        fake_source.prices[("ZZZZFAIL", 2021)] = 3.0
        fake_source.shares[("ZZZZFAIL", 2021)] = 1e6

        job, report = manager.create_job(["ZZZZFAIL"], 5)
        assert report.missing == ["ZZZZFAIL"]
        assert orchestrator.run(job.job_id).job.successful == 1
        assert "ZZZZFAIL" not in cache.get_failed_registry()

    def test_unknown_job(self, orchestrator):
        with pytest.raises(JobNotFoundError):
            orchestrator.run("batch_job_missing_00000")


class TestBudget:
    """Tests for wall-clock budget handling."""

    def test_budget_exhaustion_pauses_then_resumes(self, manager, worker):
        clock = FakeClock()
        orchestrator = Orchestrator(manager, slow_worker(worker, clock), chunk_delay=0, clock=clock)
        job, _ = manager.create_job(["AAPL", "MSFT", "SPY"], 1)

        first = orchestrator.run(job.job_id, wall_clock_budget=100)

        assert first.completed is False
        assert first.chunks_processed == 2
        assert first.job.status == JobStatus.PAUSED
        stored = manager.require_job(job.job_id)
        assert stored.status == JobStatus.PAUSED
        assert stored.current_chunk == 2

        second = orchestrator.run(job.job_id, wall_clock_budget=100)

        assert second.completed is True
        assert second.chunks_processed == 1
        assert second.job.successful_tickers == ["AAPL", "MSFT", "SPY"]

    def test_zero_budget_pauses_pending_job(self, orchestrator, manager, fake_source):
        job, _ = manager.create_job(["AAPL"], 1)
        result = orchestrator.run(job.job_id, wall_clock_budget=0)
        assert result.chunks_processed == 0
        assert result.job.status == JobStatus.PAUSED
        assert fake_source.price_calls == []

    def test_stop_event_pauses(self, orchestrator, manager):
        job, _ = manager.create_job(["AAPL", "MSFT"], 1)
        stop = threading.Event()
        stop.set()
        result = orchestrator.run(job.job_id, wall_clock_budget=600, stop_event=stop)
        assert result.job.status == JobStatus.PAUSED

    def test_delay_between_chunks_only(self, manager, worker):
        sleep = Mock()
        orchestrator = Orchestrator(manager, worker, chunk_delay=1.0, sleep=sleep)
        job, _ = manager.create_job(["AAPL", "MSFT", "SPY"], 1)
        orchestrator.run(job.job_id)
        assert sleep.call_count == 2
        sleep.assert_called_with(1.0)


class TestTerminalJobs:
    """Tests for completed and failed jobs."""

    def test_completed_job_returns_immediately(self, orchestrator, manager, cache, fake_source):
        job, _ = manager.create_job(["AAPL"], 1)
        orchestrator.run(job.job_id)
        calls = len(fake_source.price_calls)

        result = orchestrator.run(job.job_id)

        assert result.completed is True
        assert result.chunks_processed == 0
        assert len(fake_source.price_calls) == calls

    def test_failed_job_rejected(self, orchestrator, manager):
        job, _ = manager.create_job(["AAPL"], 1)
        manager.mark_failed(job, "earlier chunk failure")
        with pytest.raises(JobStateError):
            orchestrator.run(job.job_id)


class TestChunkFailure:
    """Tests for chunk-level exceptions."""

    def test_store_failure_marks_job_failed(self, orchestrator, manager, worker):
        job, _ = manager.create_job(["AAPL", "MSFT"], 1)

        with patch.object(worker, "fill_chunk", side_effect=StoreUnavailableError("disk gone")):
            with pytest.raises(ChunkError) as exc_info:
                orchestrator.run(job.job_id)

        assert exc_info.value.job_id == job.job_id
        assert exc_info.value.chunk == 1
        stored = manager.require_job(job.job_id)
        assert stored.status == JobStatus.FAILED
        assert "disk gone" in stored.error
        assert stored.current_chunk == 0

        with pytest.raises(JobStateError):
            orchestrator.run(job.job_id)

    def test_failure_after_progress_keeps_progress(self, orchestrator, manager, worker):
        job, _ = manager.create_job(["AAPL", "MSFT"], 1)
        real_fill = worker.fill_chunk

        def fill(chunk):
            if chunk == ["MSFT"]:
                raise StoreUnavailableError("disk gone")
            return real_fill(chunk)

        with patch.object(worker, "fill_chunk", side_effect=fill):
            with pytest.raises(ChunkError):
                orchestrator.run(job.job_id)

        stored = manager.require_job(job.job_id)
        assert stored.status == JobStatus.FAILED
        assert stored.current_chunk == 1
        assert stored.successful == 1

    def test_registry_contention_inside_chunk_fails_job(self, orchestrator, manager, cache):
        """Registry compare-and-set exhaustion is a chunk error, not a lost job write."""
        job, _ = manager.create_job(["ZZZZFAIL"], 1)
        contended = ConcurrentUpdateError("Could not update failed-ticker registry after 10 attempts")

        with patch.object(cache, "store_failed", side_effect=contended):
            with pytest.raises(ChunkError) as exc_info:
                orchestrator.run(job.job_id)

        assert exc_info.value.__cause__ is contended
        stored = manager.require_job(job.job_id)
        assert stored.status == JobStatus.FAILED
        assert "failed-ticker registry" in stored.error

    def test_transient_failure_retried_when_enabled(self, manager, worker):
        orchestrator = Orchestrator(manager, worker, chunk_delay=0, chunk_retries=2, retry_base_delay=0)
        job, _ = manager.create_job(["AAPL"], 1)
        real_fill = worker.fill_chunk
        attempts = []

        def fill(chunk):
            attempts.append(chunk)
            if len(attempts) == 1:
                raise StoreUnavailableError("blip")
            return real_fill(chunk)

        worker.fill_chunk = fill
        result = orchestrator.run(job.job_id)

        assert result.completed is True
        assert len(attempts) == 2

    def test_retries_exhausted_fails_job(self, manager, worker):
        orchestrator = Orchestrator(manager, worker, chunk_delay=0, chunk_retries=1, retry_base_delay=0)
        job, _ = manager.create_job(["AAPL"], 1)
        attempts = []

        def fill(chunk):
            attempts.append(chunk)
            raise StoreUnavailableError("down")

        worker.fill_chunk = fill
        with pytest.raises(ChunkError) as exc_info:
            orchestrator.run(job.job_id)

        assert len(attempts) == 2
        assert isinstance(exc_info.value.__cause__, StoreUnavailableError)
        assert manager.require_job(job.job_id).status == JobStatus.FAILED

    def test_non_transient_error_not_retried(self, manager, worker):
        orchestrator = Orchestrator(manager, worker, chunk_delay=0, chunk_retries=3, retry_base_delay=0)
        job, _ = manager.create_job(["AAPL"], 1)
        attempts = []

        def fill(chunk):
            attempts.append(chunk)
            raise RuntimeError("bug")

        worker.fill_chunk = fill
        with pytest.raises(ChunkError):
            orchestrator.run(job.job_id)

        assert len(attempts) == 1

    def test_lost_update_does_not_fail_job(self, orchestrator, manager):
        job, _ = manager.create_job(["AAPL", "MSFT"], 1)

        with patch.object(manager, "record_chunk_result", side_effect=ConcurrentUpdateError("lost")):
            with pytest.raises(ConcurrentUpdateError):
                orchestrator.run(job.job_id)

        assert manager.require_job(job.job_id).status == JobStatus.RUNNING

    def test_negative_retries_rejected(self, manager, worker):
        with pytest.raises(ValueError):
            Orchestrator(manager, worker, chunk_retries=-1)


class TestBackgroundRunner:
    """Tests for BackgroundRunner."""

    def test_runs_slices_until_completed(self, manager, worker):
        clock = FakeClock()
        orchestrator = Orchestrator(manager, slow_worker(worker, clock), chunk_delay=0, clock=clock)
        job, _ = manager.create_job(["AAPL", "MSFT", "SPY"], 1)

        runner = BackgroundRunner(orchestrator, job.job_id, slice_budget=50).start()

        assert runner.join(timeout=10)
        assert runner.error is None
        assert runner.slices == 3
        assert runner.result.completed is True
        assert manager.require_job(job.job_id).status == JobStatus.COMPLETED
        assert not BackgroundRunner.is_running(job.job_id)

    def test_second_runner_refused(self, orchestrator, manager, worker):
        job, _ = manager.create_job(["AAPL"], 1)
        release = threading.Event()
        real_fill = worker.fill_chunk

        def blocked_fill(chunk):
            release.wait(5)
            return real_fill(chunk)

        worker.fill_chunk = blocked_fill
        runner = BackgroundRunner(orchestrator, job.job_id).start()
        try:
            with pytest.raises(JobStateError):
                BackgroundRunner(orchestrator, job.job_id).start()
        finally:
            release.set()
            runner.join(timeout=10)

        assert runner.result.completed is True

    def test_stop_leaves_job_paused(self, orchestrator, manager, worker):
        job, _ = manager.create_job(["AAPL", "MSFT"], 1)
        real_fill = worker.fill_chunk
        runner = BackgroundRunner(orchestrator, job.job_id)

        def fill(chunk):
            runner.stop()
            return real_fill(chunk)

        worker.fill_chunk = fill
        runner.start()
        assert runner.join(timeout=10)

        stored = manager.require_job(job.job_id)
        assert stored.status == JobStatus.PAUSED
        assert stored.current_chunk == 1

    def test_error_is_captured(self, orchestrator, manager):
        job, _ = manager.create_job(["AAPL"], 1)
        manager.mark_failed(job, "earlier")

        runner = BackgroundRunner(orchestrator, job.job_id).start()

        assert runner.join(timeout=10)
        assert isinstance(runner.error, JobStateError)
