"""
Record schemas for everything tickercache persists.

Payloads are validated when they cross the store boundary: from_dict raises
RecordValidationError on anything malformed instead of letting a bad dict
travel through the pipeline.

Persisted shapes:
    ticker-data:<SYMBOL>   {"2001": {"price": 1.2, "market_cap": 3.4e9, "shares_outstanding": 2.8e9}, ...}
    failed-tickers         {"ZZZZ": {"reason": "...", "failed_at": "...", "last_attempt": "..."}, ...}
    batch_job:<job_id>     Job.to_dict(), stamped with schema_version
"""

from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from tickercache.data.constants import SCHEMA_VERSION
from tickercache.exceptions import RecordValidationError

_YEAR_RE = re.compile(r"^\d{4}$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def _positive_number(value: Any, name: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RecordValidationError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(value) or value <= 0:
        raise RecordValidationError(f"{name} must be positive and finite, got {value!r}")
    return float(value)


# =============================================================================
# Ticker data
# =============================================================================


@dataclass(frozen=True)
class TickerYear:
    """Start-of-year snapshot for one symbol."""

    price: float
    market_cap: float | None = None
    shares_outstanding: float | None = None

    def to_dict(self) -> dict[str, float]:
        data = {"price": self.price}
        if self.market_cap is not None:
            data["market_cap"] = self.market_cap
        if self.shares_outstanding is not None:
            data["shares_outstanding"] = self.shares_outstanding
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "TickerYear":
        if not isinstance(data, dict):
            raise RecordValidationError(f"Year entry must be an object, got {type(data).__name__}")
        price = _positive_number(data.get("price"), "price")
        if price is None:
            raise RecordValidationError("Year entry is missing price")
        return cls(
            price=price,
            market_cap=_positive_number(data.get("market_cap"), "market_cap"),
            shares_outstanding=_positive_number(data.get("shares_outstanding"), "shares_outstanding"),
        )


@dataclass
class TickerData:
    """Sparse year -> TickerYear map for one symbol."""

    years: dict[str, TickerYear] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.years)

    def __contains__(self, year: object) -> bool:
        return str(year) in self.years

    def get(self, year: int | str) -> TickerYear | None:
        return self.years.get(str(year))

    def add(self, year: int | str, entry: TickerYear) -> None:
        self.years[str(year)] = entry

    def to_dict(self) -> dict[str, dict[str, float]]:
        return {year: self.years[year].to_dict() for year in sorted(self.years)}

    @classmethod
    def from_dict(cls, data: Any) -> "TickerData":
        if not isinstance(data, dict):
            raise RecordValidationError(f"Ticker data must be an object, got {type(data).__name__}")
        years = {}
        for year, entry in data.items():
            if not _YEAR_RE.match(str(year)):
                raise RecordValidationError(f"Invalid year key {year!r}")
            years[str(year)] = TickerYear.from_dict(entry)
        return cls(years=years)


# =============================================================================
# Failed-ticker registry
# =============================================================================


@dataclass
class FailedTicker:
    """Negative-cache entry for a symbol that yielded no usable year."""

    ticker: str
    reason: str
    failed_at: str = field(default_factory=utc_now_iso)
    last_attempt: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, str]:
        return {"reason": self.reason, "failed_at": self.failed_at, "last_attempt": self.last_attempt}

    @classmethod
    def from_dict(cls, ticker: str, data: Any) -> "FailedTicker":
        if not isinstance(data, dict) or not isinstance(data.get("reason"), str):
            raise RecordValidationError(f"Invalid failed-ticker entry for {ticker}: {data!r}")
        return cls(
            ticker=ticker,
            reason=data["reason"],
            failed_at=str(data.get("failed_at", "")),
            last_attempt=str(data.get("last_attempt", data.get("failed_at", ""))),
        )


# =============================================================================
# Batch jobs
# =============================================================================


class JobStatus(str, Enum):
    """Status of a batch ingestion job."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


VALID_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.PAUSED: {JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),  # Terminal state
    JobStatus.FAILED: set(),     # Terminal state
}


@dataclass
class Job:
    """
    One batch ingestion run.

    Attributes:
        job_id: Opaque unique id (time + random derived)
        total_symbols: Size of the de-duplicated submitted symbol list
        symbols_to_process: Symbols needing fetch, fixed at creation
        chunk_size: Symbols per chunk
        total_chunks: ceil(len(symbols_to_process) / chunk_size)
        current_chunk: 0-based cursor; never decreases
        processed / successful / failed: Progress counters over total_symbols
        status: JobStatus
        version: Store version this record was read at (not persisted)
    """

    job_id: str
    total_symbols: int
    symbols_to_process: list[str]
    chunk_size: int
    total_chunks: int
    current_chunk: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    status: JobStatus = JobStatus.PENDING
    started_at: str = field(default_factory=utc_now_iso)
    processing_started_at: str | None = None
    last_updated_at: str = field(default_factory=utc_now_iso)
    estimated_seconds_remaining: int | None = None
    successful_tickers: list[str] = field(default_factory=list)
    failed_tickers: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    version: int | None = None

    @property
    def remaining_chunks(self) -> int:
        return max(0, self.total_chunks - self.current_chunk)

    @property
    def percentage(self) -> float:
        if self.total_symbols == 0:
            return 100.0
        return self.processed / self.total_symbols * 100

    def elapsed_seconds(self, now: datetime | None = None) -> float:
        now = now or utc_now()
        return (now - datetime.fromisoformat(self.started_at)).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("version")
        data["status"] = self.status.value
        data["schema_version"] = SCHEMA_VERSION
        return data

    @classmethod
    def from_dict(cls, data: Any, version: int | None = None) -> "Job":
        if not isinstance(data, dict):
            raise RecordValidationError(f"Job record must be an object, got {type(data).__name__}")

        schema_version = data.get("schema_version", 1)
        if not isinstance(schema_version, int) or schema_version > SCHEMA_VERSION:
            raise RecordValidationError(f"Unsupported job schema_version {schema_version!r}")

        required_ints = ("total_symbols", "chunk_size", "total_chunks", "current_chunk",
                         "processed", "successful", "failed")
        for name in required_ints:
            value = data.get(name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise RecordValidationError(f"Job field {name} must be a non-negative int, got {value!r}")

        if not isinstance(data.get("job_id"), str) or not data["job_id"]:
            raise RecordValidationError("Job record is missing job_id")
        symbols = data.get("symbols_to_process")
        if not isinstance(symbols, list) or not all(isinstance(s, str) for s in symbols):
            raise RecordValidationError("symbols_to_process must be a list of strings")

        try:
            status = JobStatus(data.get("status"))
        except ValueError as e:
            raise RecordValidationError(f"Unknown job status {data.get('status')!r}") from e

        eta = data.get("estimated_seconds_remaining")
        return cls(
            job_id=data["job_id"],
            total_symbols=data["total_symbols"],
            symbols_to_process=list(symbols),
            chunk_size=data["chunk_size"],
            total_chunks=data["total_chunks"],
            current_chunk=data["current_chunk"],
            processed=data["processed"],
            successful=data["successful"],
            failed=data["failed"],
            status=status,
            started_at=data.get("started_at") or utc_now_iso(),
            processing_started_at=data.get("processing_started_at"),
            last_updated_at=data.get("last_updated_at") or utc_now_iso(),
            estimated_seconds_remaining=int(eta) if eta is not None else None,
            successful_tickers=list(data.get("successful_tickers", [])),
            failed_tickers=list(data.get("failed_tickers", [])),
            warnings=list(data.get("warnings", [])),
            error=data.get("error"),
            version=version,
        )


# =============================================================================
# Fill results
# =============================================================================


@dataclass
class FillResult:
    """Outcome of filling a chunk of symbols. Not persisted."""

    success: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    warnings: list[dict[str, str]] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.success) + len(self.errors)

    def merge(self, other: "FillResult") -> None:
        self.success.extend(other.success)
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)

    def to_dict(self) -> dict[str, list]:
        return {"success": list(self.success), "errors": list(self.errors), "warnings": list(self.warnings)}
