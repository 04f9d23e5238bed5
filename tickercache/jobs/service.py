"""
Ingestion service: the single entry point used by the CLI and by callers
embedding tickercache.

Wires the store, cache, coverage checker, job manager, worker and
orchestrator together from one Config. Results are returned as plain dicts
ready for JSON output.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from tickercache.data.coverage import CoverageChecker
from tickercache.data.ingestion.worker import IngestionWorker
from tickercache.data.sources.base import UpstreamSourceBase
from tickercache.data.store import KeyValueStore, get_store
from tickercache.data.ticker_cache import TickerCache
from tickercache.jobs.batch import BatchJobManager, progress_of
from tickercache.jobs.orchestrator import BackgroundRunner, Orchestrator
from tickercache.utils.config import Config, get_config


class IngestionService:
    """
    Facade over the batch ingestion pipeline.

    The upstream source is created on first use, so read-only operations
    (progress, coverage, failed-ticker management) work without an API token.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: Optional[Config] = None,
        source: Optional[UpstreamSourceBase] = None,
    ):
        self.config = config or get_config()
        self.store = store
        self.cache = TickerCache(store)
        self.coverage = CoverageChecker(self.cache)
        self.jobs = BatchJobManager(
            store,
            self.coverage,
            default_chunk_size=self.config.batch.chunk_size,
            job_ttl_seconds=self.config.batch.job_ttl_hours * 3600,
        )
        self._source = source
        self._orchestrator: Optional[Orchestrator] = None

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "IngestionService":
        config = config or get_config()
        return cls(get_store(config.store.db_path), config=config)

    @property
    def source(self) -> UpstreamSourceBase:
        if self._source is None:
            from tickercache.data.sources.eodhd_source import EODHDSource

            self._source = EODHDSource(store=self.store)
        return self._source

    @property
    def orchestrator(self) -> Orchestrator:
        if self._orchestrator is None:
            batch = self.config.batch
            worker = IngestionWorker(self.source, self.cache, max_workers=batch.max_workers)
            self._orchestrator = Orchestrator(
                self.jobs,
                worker,
                chunk_delay=batch.chunk_delay,
                chunk_retries=batch.chunk_retries,
            )
        return self._orchestrator

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(self, symbols: List[str], chunk_size: Optional[int] = None) -> Dict[str, Any]:
        job, report = self.jobs.create_job(symbols, chunk_size)
        return {
            "job_id": job.job_id,
            "total_chunks": job.total_chunks,
            "already_cached": len(report.cached),
            "to_process": len(report.missing),
            "eliminated": len(report.eliminated),
            "status": job.status.value,
        }

    def run_orchestrator(self, job_id: str, wall_clock_budget_seconds: Optional[float] = None) -> Dict[str, Any]:
        budget = wall_clock_budget_seconds
        if budget is None:
            budget = self.config.batch.wall_clock_budget
        result = self.orchestrator.run(job_id, budget)
        return {
            "completed": result.completed,
            "chunks_processed": result.chunks_processed,
            "progress": progress_of(result.job),
        }

    def start_background(self, job_id: str, slice_budget: Optional[float] = None) -> BackgroundRunner:
        """Run the job to completion in a background thread."""
        self.jobs.require_job(job_id)
        runner = BackgroundRunner(
            self.orchestrator, job_id, slice_budget or self.config.batch.wall_clock_budget
        )
        return runner.start()

    def get_progress(self, job_id: str) -> Dict[str, Any]:
        return self.jobs.get_progress(job_id)

    def list_jobs(self) -> List[Dict[str, Any]]:
        return [progress_of(job) for job in self.jobs.list_jobs()]

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def check_coverage(self, symbols: List[str]) -> Dict[str, Any]:
        return self.coverage.check_coverage(symbols).to_dict()

    def clear_failed(self, symbols: Optional[Iterable[str]] = None) -> int:
        return self.cache.clear_failed(symbols)

    def list_failed(self) -> List[Dict[str, str]]:
        return [{"ticker": f.ticker, **f.to_dict()} for f in self.cache.list_failed()]

    def load_frame(self, symbols: Optional[Iterable[str]] = None) -> pd.DataFrame:
        return self.cache.load_frame(symbols)
