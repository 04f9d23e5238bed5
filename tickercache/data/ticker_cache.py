"""
Permanent per-symbol cache and the failed-ticker registry.

Both live in the key-value store. Ticker records never expire; the registry
is a single shared record updated with compare-and-set so concurrent workers
(threads or processes) cannot drop each other's entries.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, Iterable, List, Optional

import pandas as pd
from loguru import logger

from tickercache.data.constants import FAILED_TICKERS_KEY, TICKER_DATA_PREFIX
from tickercache.data.records import FailedTicker, TickerData, utc_now_iso
from tickercache.data.store import KeyValueStore
from tickercache.exceptions import ConcurrentUpdateError, RecordValidationError

# Attempts at a registry read-modify-write before giving up
REGISTRY_CAS_ATTEMPTS = 10

FRAME_COLUMNS = ["symbol", "year", "price", "market_cap", "shares_outstanding"]


def normalize_symbol(symbol: str) -> str:
    return symbol.strip().upper()


def ticker_key(symbol: str) -> str:
    return f"{TICKER_DATA_PREFIX}:{symbol}"


class TickerCache:
    """Typed access to ticker records and the failed-ticker registry."""

    def __init__(self, store: KeyValueStore):
        self.store = store
        # In-process writers queue here; compare-and-set covers other processes
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Ticker records
    # ------------------------------------------------------------------

    def get_ticker(self, symbol: str) -> Optional[TickerData]:
        raw = self.store.get(ticker_key(symbol))
        if raw is None:
            return None
        return TickerData.from_dict(raw)

    def set_ticker(self, symbol: str, data: TickerData) -> None:
        """Replace the symbol's record wholesale. Records never expire."""
        self.store.set(ticker_key(symbol), data.to_dict())

    def mget_tickers(self, symbols: List[str]) -> Dict[str, Optional[TickerData]]:
        """
        Bulk read of ticker records in one store round trip.

        A record that fails validation is reported as absent so the symbol is
        fetched again and the bad record overwritten.
        """
        raws = self.store.mget([ticker_key(s) for s in symbols])
        out: Dict[str, Optional[TickerData]] = {}
        for symbol, raw in zip(symbols, raws):
            if raw is None:
                out[symbol] = None
                continue
            try:
                out[symbol] = TickerData.from_dict(raw)
            except RecordValidationError as e:
                logger.warning(f"Discarding invalid cached record for {symbol}: {e}")
                out[symbol] = None
        return out

    def list_cached_tickers(self) -> List[str]:
        prefix = f"{TICKER_DATA_PREFIX}:"
        return [k[len(prefix):] for k in self.store.keys(f"{prefix}*")]

    def load_frame(self, symbols: Optional[Iterable[str]] = None) -> pd.DataFrame:
        """
        Cached data as a long DataFrame for downstream simulation.

        Args:
            symbols: Symbols to load (default: every cached symbol)

        Returns:
            DataFrame with columns: symbol, year, price, market_cap,
            shares_outstanding; one row per cached (symbol, year)
        """
        symbols = [normalize_symbol(s) for s in symbols] if symbols is not None else self.list_cached_tickers()

        rows = []
        for symbol, data in self.mget_tickers(symbols).items():
            if data is None:
                continue
            for year, entry in sorted(data.years.items()):
                rows.append({
                    "symbol": symbol,
                    "year": int(year),
                    "price": entry.price,
                    "market_cap": entry.market_cap,
                    "shares_outstanding": entry.shares_outstanding,
                })

        if not rows:
            logger.warning(f"No cached data found for {len(symbols)} symbols")
            return pd.DataFrame(columns=FRAME_COLUMNS)

        return pd.DataFrame(rows, columns=FRAME_COLUMNS).sort_values(["symbol", "year"]).reset_index(drop=True)

    # ------------------------------------------------------------------
    # Failed-ticker registry
    # ------------------------------------------------------------------

    def get_failed_registry(self) -> Dict[str, FailedTicker]:
        raw, _ = self.store.get_with_version(FAILED_TICKERS_KEY)
        return self._parse_registry(raw)

    def list_failed(self) -> List[FailedTicker]:
        return sorted(self.get_failed_registry().values(), key=lambda f: f.ticker)

    def store_failed(self, symbol: str, reason: str) -> FailedTicker:
        """
        Register a total failure. A repeat failure keeps the original
        failed_at and refreshes last_attempt and reason.
        """
        now = utc_now_iso()
        entry = FailedTicker(ticker=symbol, reason=reason, failed_at=now, last_attempt=now)

        def mutate(registry: Dict[str, FailedTicker]) -> bool:
            previous = registry.get(symbol)
            if previous is not None:
                entry.failed_at = previous.failed_at or now
            registry[symbol] = entry
            return True

        self._update_registry(mutate)
        logger.info(f"Stored failed ticker {symbol}: {reason}")
        return entry

    def remove_failed(self, symbol: str) -> bool:
        """Drop symbol from the registry. Returns True if it was present."""
        removed = []

        def mutate(registry: Dict[str, FailedTicker]) -> bool:
            if registry.pop(symbol, None) is None:
                return False
            removed.append(symbol)
            return True

        self._update_registry(mutate)
        if removed:
            logger.info(f"Removed {symbol} from failed tickers registry")
        return bool(removed)

    def clear_failed(self, symbols: Optional[Iterable[str]] = None) -> int:
        """
        Remove entries so the symbols are retried on the next job.

        Args:
            symbols: Symbols to clear; None clears the whole registry

        Returns:
            Number of entries removed
        """
        targets = {normalize_symbol(s) for s in symbols} if symbols is not None else None
        cleared: List[str] = []

        def mutate(registry: Dict[str, FailedTicker]) -> bool:
            cleared.clear()
            for symbol in list(registry):
                if targets is None or symbol in targets:
                    del registry[symbol]
                    cleared.append(symbol)
            return bool(cleared)

        self._update_registry(mutate)
        logger.info(f"Cleared {len(cleared)} failed tickers")
        return len(cleared)

    def _parse_registry(self, raw) -> Dict[str, FailedTicker]:
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise RecordValidationError(f"Failed-ticker registry must be an object, got {type(raw).__name__}")
        return {ticker: FailedTicker.from_dict(ticker, data) for ticker, data in raw.items()}

    def _update_registry(self, mutate: Callable[[Dict[str, FailedTicker]], bool]) -> None:
        """Read-modify-write the registry; mutate returns False when nothing changed."""
        with self._registry_lock:
            for attempt in range(1, REGISTRY_CAS_ATTEMPTS + 1):
                raw, version = self.store.get_with_version(FAILED_TICKERS_KEY)
                registry = self._parse_registry(raw)
                if not mutate(registry):
                    return
                payload = {ticker: entry.to_dict() for ticker, entry in sorted(registry.items())}
                try:
                    self.store.compare_and_set(FAILED_TICKERS_KEY, payload, version)
                    return
                except ConcurrentUpdateError:
                    logger.debug(f"Failed-ticker registry changed underneath us (attempt {attempt}), retrying")

        raise ConcurrentUpdateError(
            f"Could not update failed-ticker registry after {REGISTRY_CAS_ATTEMPTS} attempts"
        )
