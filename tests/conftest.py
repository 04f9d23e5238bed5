"""
Pytest configuration and fixtures for tickercache tests.
"""

import os
import tempfile
from datetime import date
from typing import Generator

import pytest

from tickercache.data.coverage import CoverageChecker
from tickercache.data.ingestion.worker import IngestionWorker
from tickercache.data.sources.base import KnownSymbols, PriceBar, UpstreamSourceBase
from tickercache.data.store import KeyValueStore, get_store
from tickercache.data.ticker_cache import TickerCache
from tickercache.jobs.batch import BatchJobManager
from tickercache.jobs.orchestrator import Orchestrator
from tickercache.utils.config import reset_config

TEST_YEARS = [2020, 2021, 2022]


class FakeSource(UpstreamSourceBase):
    """
    In-memory upstream source.

    prices: {(symbol, year): price}; a bar is served for any date from
        first_day[(symbol, year)] (default Jan 2) through Jan 10 of that year
    shares: {(symbol, year): shares outstanding}
    """

    source_name = "fake"

    def __init__(self, prices=None, shares=None, first_day=None, known=None):
        self.prices = dict(prices or {})
        self.shares = dict(shares or {})
        self.first_day = dict(first_day or {})
        self.known = known
        self.price_calls: list[tuple[tuple[str, ...], date]] = []
        self.shares_calls: list[tuple[str, date]] = []
        self.raise_for: dict[str, Exception] = {}

    def get_price(self, symbol_formats, on):
        self.price_calls.append((tuple(symbol_formats), on))
        symbol = symbol_formats[0]
        if symbol in self.raise_for:
            raise self.raise_for[symbol]
        price = self.prices.get((symbol, on.year))
        first = self.first_day.get((symbol, on.year), 2)
        if price is None or on.month != 1 or not first <= on.day <= 10:
            return None
        return PriceBar(date=on, adjusted_close=price, symbol_format=symbol)

    def get_shares_outstanding(self, symbol, as_of):
        self.shares_calls.append((symbol, as_of))
        return self.shares.get((symbol, as_of.year))

    def list_known_symbols(self):
        return self.known

    def symbols_priced(self) -> set[str]:
        return {formats[0] for formats, _ in self.price_calls}


@pytest.fixture(autouse=True)
def clean_config() -> Generator[None, None, None]:
    """Isolate tests from a developer's environment and cached config."""
    saved = {k: os.environ.pop(k) for k in list(os.environ) if k.startswith(("TICKERCACHE_", "EODHD_"))}
    reset_config()
    yield
    reset_config()
    os.environ.update(saved)


@pytest.fixture
def temp_db():
    """Create a temporary DuckDB database path for testing.

    Note: We create then delete the file so DuckDB can create a fresh database.
    NamedTemporaryFile creates an empty file that DuckDB can't open.
    """
    with tempfile.NamedTemporaryFile(suffix=".duckdb", delete=False) as f:
        db_path = f.name

    os.remove(db_path)
    KeyValueStore.reset()

    yield db_path

    KeyValueStore.reset()
    for path in (db_path, db_path + ".wal"):
        if os.path.exists(path):
            os.remove(path)


@pytest.fixture
def store(temp_db: str) -> KeyValueStore:
    return get_store(temp_db)


@pytest.fixture
def cache(store: KeyValueStore) -> TickerCache:
    return TickerCache(store)


@pytest.fixture
def coverage(cache: TickerCache) -> CoverageChecker:
    return CoverageChecker(cache)


@pytest.fixture
def fake_source() -> FakeSource:
    """AAPL/MSFT complete, SPY price only, NOSHARES price without shares."""
    prices, shares = {}, {}
    for i, year in enumerate(TEST_YEARS):
        prices[("AAPL", year)] = 70.0 + 10 * i
        shares[("AAPL", year)] = 4_000_000_000.0
        prices[("MSFT", year)] = 150.0 + 20 * i
        shares[("MSFT", year)] = 7_500_000_000.0
        prices[("SPY", year)] = 320.0 + 30 * i
        prices[("NOSHARES", year)] = 12.0
    return FakeSource(
        prices=prices,
        shares=shares,
        known=KnownSymbols(active={"AAPL", "AAPL.US", "MSFT", "MSFT.US", "SPY", "SPY.US"}),
    )


@pytest.fixture
def worker(fake_source: FakeSource, cache: TickerCache) -> IngestionWorker:
    return IngestionWorker(fake_source, cache, max_workers=2, years=TEST_YEARS)


@pytest.fixture
def manager(store: KeyValueStore, coverage: CoverageChecker) -> BatchJobManager:
    return BatchJobManager(store, coverage, default_chunk_size=5)


@pytest.fixture
def orchestrator(manager: BatchJobManager, worker: IngestionWorker) -> Orchestrator:
    return Orchestrator(manager, worker, chunk_delay=0)
