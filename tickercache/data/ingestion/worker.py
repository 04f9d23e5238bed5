"""
Per-symbol ingestion: walk every year, fetch price and shares outstanding,
derive market cap, apply the data-quality gate and persist the result.

The worker writes ticker records and the failed-ticker registry; it never
touches job state.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date
from typing import Iterable, Optional

from loguru import logger

from tickercache.data.constants import (
    EXCHANGE_SUFFIX,
    INDEX_FUNDS,
    MIN_YEAR,
    START_OF_YEAR_DAY,
    START_OF_YEAR_MONTH,
)
from tickercache.data.records import FillResult, TickerData, TickerYear, utc_now
from tickercache.data.sources.base import KnownSymbols, UpstreamSourceBase
from tickercache.data.ticker_cache import TickerCache
from tickercache.exceptions import StoreError

NO_PRICE_REASON = "No price data found for any year"


def is_index_fund(symbol: str) -> bool:
    """Index funds have no meaningful shares outstanding; only price is required."""
    bare = symbol[: -len(EXCHANGE_SUFFIX)] if symbol.endswith(EXCHANGE_SUFFIX) else symbol
    return bare in INDEX_FUNDS


def year_range(min_year: int = MIN_YEAR, max_year: Optional[int] = None) -> range:
    """Inclusive [min_year, max_year]; max_year defaults to the current year."""
    return range(min_year, (max_year or utc_now().year) + 1)


def start_of_year(year: int) -> date:
    return date(year, START_OF_YEAR_MONTH, START_OF_YEAR_DAY)


class IngestionWorker:
    """
    Fetches, validates and persists symbols.

    Example:
        worker = IngestionWorker(EODHDSource(), TickerCache(get_store()))
        result = worker.fill_chunk(["AAPL", "MSFT"])
    """

    def __init__(
        self,
        source: UpstreamSourceBase,
        cache: TickerCache,
        max_workers: int = 4,
        years: Optional[Iterable[int]] = None,
        classify_failures: bool = True,
    ):
        """
        Args:
            source: Upstream data source
            cache: Ticker cache and failed-ticker registry
            max_workers: Symbols fetched concurrently within a chunk
            years: Years to fetch (default: MIN_YEAR through the current year)
            classify_failures: Consult the provider's symbol list to word the
                reason of a total failure
        """
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")

        self.source = source
        self.cache = cache
        self.max_workers = max_workers
        self.years = list(years) if years is not None else None
        self.classify_failures = classify_failures

        self._known: Optional[KnownSymbols] = None
        self._known_loaded = False
        self._known_lock = threading.Lock()

    # ------------------------------------------------------------------
    # One year
    # ------------------------------------------------------------------

    def fetch_year(
        self, symbol: str, year: int, index_fund: bool, pool: ThreadPoolExecutor
    ) -> tuple[Optional[TickerYear], Optional[dict]]:
        """
        Price and shares for one year, requested concurrently.

        Returns:
            (entry, warning): entry is None when the year is not stored;
            warning is set when the year was dropped by the quality gate
        """
        target = start_of_year(year)

        price_future = pool.submit(self.source.get_price_with_fallback, symbol, target)
        shares_future = None if index_fund else pool.submit(self.source.get_shares_outstanding, symbol, target)

        bar = price_future.result()
        shares = shares_future.result() if shares_future is not None else None

        if bar is None or not bar.adjusted_close:
            return None, None

        price = bar.adjusted_close
        if index_fund:
            return TickerYear(price=price), None

        if not shares:
            return None, {
                "ticker": symbol,
                "year": str(year),
                "issue": (
                    f"DATA QUALITY ERROR: {year} - Price available (${price:.2f}) but historical "
                    "shares outstanding unavailable. This ticker requires historical fundamentals data."
                ),
            }

        market_cap = price * shares
        if not market_cap or market_cap <= 0:
            return None, {
                "ticker": symbol,
                "year": str(year),
                "issue": (
                    f"DATA QUALITY ERROR: {year} - Price available (${price:.2f}) but market cap "
                    f"calculation failed. Shares: {shares:,.0f}"
                ),
            }

        return TickerYear(price=price, market_cap=market_cap, shares_outstanding=shares), None

    # ------------------------------------------------------------------
    # One symbol
    # ------------------------------------------------------------------

    def fetch_symbol(
        self, symbol: str, years: Optional[Iterable[int]] = None
    ) -> tuple[TickerData, Optional[str], list[dict]]:
        """
        Fetch every year for symbol and persist the outcome.

        At least one stored year replaces the symbol's cached record and
        clears it from the failed-ticker registry. Zero years registers a
        failure.

        Args:
            symbol: Normalized symbol
            years: Years to fetch (default: the worker's year range)

        Returns:
            (data, error, warnings); error is None on success

        Raises:
            StoreError: If the result cannot be persisted
        """
        years = list(years) if years is not None else (self.years or list(year_range()))
        index_fund = is_index_fund(symbol)
        data = TickerData()
        warnings: list[dict] = []

        logger.info(f"Processing {symbol} ({len(years)} years{', index fund' if index_fund else ''})")

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"year-{symbol}") as pool:
            for year in years:
                try:
                    entry, warning = self.fetch_year(symbol, year, index_fund, pool)
                except Exception as e:
                    logger.debug(f"{symbol} {year}: {e}")
                    continue

                if warning is not None:
                    warnings.append(warning)
                    logger.warning(warning["issue"])
                if entry is not None:
                    data.add(year, entry)

        if len(data) > 0:
            self.cache.set_ticker(symbol, data)
            self.cache.remove_failed(symbol)
            logger.info(f"{symbol}: Successfully cached {len(data)} years of data")
            return data, None, warnings

        reason = self._failure_reason(symbol, warnings)
        self.cache.store_failed(symbol, reason)
        logger.error(f"{symbol}: {reason}")
        return data, reason, warnings

    def _failure_reason(self, symbol: str, warnings: list[dict]) -> str:
        if warnings:
            return (
                f"No complete year of data: price available for {len(warnings)} years "
                "but historical shares outstanding unavailable"
            )

        known = self._known_symbols()
        if known is not None:
            status = known.classify(symbol)
            if status == "unknown":
                return f"{NO_PRICE_REASON} (not a known US symbol)"
            if status == "delisted":
                return f"{NO_PRICE_REASON} (delisted)"
        return NO_PRICE_REASON

    def _known_symbols(self) -> Optional[KnownSymbols]:
        if not self.classify_failures:
            return None
        with self._known_lock:
            if not self._known_loaded:
                try:
                    self._known = self.source.list_known_symbols()
                except StoreError:
                    raise
                except Exception as e:
                    logger.debug(f"Symbol list unavailable: {e}")
                    self._known = None
                self._known_loaded = True
        return self._known

    # ------------------------------------------------------------------
    # One chunk
    # ------------------------------------------------------------------

    def fill_chunk(self, symbols: list[str]) -> FillResult:
        """
        Attempt every symbol in the chunk with bounded concurrency.

        A symbol's failure is recorded and never aborts the chunk; a store
        failure does, since nothing from the chunk can be trusted to persist.

        Returns:
            FillResult in chunk order

        Raises:
            StoreError: If the store fails while persisting any symbol
        """
        outcomes: dict[str, tuple[Optional[str], list[dict]]] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="fill") as pool:
            future_to_symbol = {pool.submit(self.fetch_symbol, symbol): symbol for symbol in symbols}

            store_error: Optional[StoreError] = None
            for future in as_completed(future_to_symbol):
                symbol = future_to_symbol[future]
                try:
                    _, error, warnings = future.result()
                except StoreError as e:
                    store_error = store_error or e
                    continue
                except Exception as e:
                    logger.error(f"{symbol}: Failed to process - {e}")
                    error, warnings = str(e) or type(e).__name__, []
                    try:
                        self.cache.store_failed(symbol, error)
                    except StoreError as se:
                        store_error = store_error or se
                outcomes[symbol] = (error, warnings)

        if store_error is not None:
            raise store_error

        result = FillResult()
        for symbol in symbols:
            error, warnings = outcomes[symbol]
            if error is None:
                result.success.append(symbol)
            else:
                result.errors.append({"ticker": symbol, "error": error})
            result.warnings.extend(warnings)

        logger.info(
            f"Chunk done: {len(result.success)} succeeded, {len(result.errors)} failed, "
            f"{len(result.warnings)} warnings"
        )
        return result
