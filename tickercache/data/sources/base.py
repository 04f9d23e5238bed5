"""
Base class for upstream data source adapters.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, timedelta

from loguru import logger

from tickercache.data.constants import DELISTED_SUFFIX, EXCHANGE_SUFFIX, PRICE_FALLBACK_DAYS


@dataclass(frozen=True)
class PriceBar:
    """One daily bar as returned by the provider."""

    date: date
    adjusted_close: float
    close: float | None = None
    open: float | None = None
    high: float | None = None
    low: float | None = None
    volume: float | None = None
    symbol_format: str | None = None


@dataclass
class KnownSymbols:
    """Provider's symbol universe, split into listed and delisted codes."""

    active: set[str] = field(default_factory=set)
    delisted: set[str] = field(default_factory=set)

    def classify(self, symbol: str) -> str:
        """Return 'active', 'delisted' or 'unknown' for a bare or suffixed symbol."""
        candidates = {symbol, f"{symbol}{EXCHANGE_SUFFIX}"}
        if candidates & self.active:
            return "active"
        if candidates & self.delisted:
            return "delisted"
        return "unknown"


def ticker_formats(symbol: str) -> list[str]:
    """
    Ticker codes to try, in order, for one symbol.

    Bare symbol first, then with the exchange suffix, then the provider's
    code for delisted instruments. Duplicates are removed.
    """
    formats = [
        symbol,
        symbol if "." in symbol else f"{symbol}{EXCHANGE_SUFFIX}",
        symbol if symbol.endswith(".DELISTED") else f"{symbol.split('.')[0]}{DELISTED_SUFFIX}",
    ]
    return list(dict.fromkeys(formats))


class UpstreamSourceBase(ABC):
    """
    Abstract base class for upstream fundamentals/price providers.

    All provider adapters should inherit from this class.
    """

    source_name: str = "base"

    @abstractmethod
    def get_price(self, symbol_formats: list[str], on: date) -> PriceBar | None:
        """
        Fetch the bar for one date, trying each ticker format in order.

        Args:
            symbol_formats: Provider codes to try; first one with data wins
            on: Trading date

        Returns:
            PriceBar, or None if no format has data for that date
        """
        pass

    @abstractmethod
    def get_shares_outstanding(self, symbol: str, as_of: date) -> float | None:
        """
        Shares outstanding from the last quarterly report strictly before as_of.

        Returns:
            Share count, or None when no qualifying quarter exists
        """
        pass

    @abstractmethod
    def list_known_symbols(self) -> KnownSymbols | None:
        """Provider's active/delisted symbol lists, or None if unavailable."""
        pass

    def get_price_with_fallback(
        self,
        symbol: str,
        target: date,
        max_days_forward: int = PRICE_FALLBACK_DAYS,
    ) -> PriceBar | None:
        """
        Price near target: the exact date, then up to max_days_forward later.

        Markets are closed on some target dates and the provider lags on
        others, so a miss on the exact date is not final.

        Args:
            symbol: Bare symbol
            target: Preferred date
            max_days_forward: Extra days probed after target

        Returns:
            First PriceBar found, or None
        """
        formats = ticker_formats(symbol)
        for offset in range(max_days_forward + 1):
            probe = target + timedelta(days=offset)
            try:
                bar = self.get_price(formats, probe)
            except Exception as e:
                logger.debug(f"Price lookup failed for {symbol} on {probe}: {e}")
                continue
            if bar is not None:
                if offset:
                    logger.info(f"Used fallback date {probe} instead of {target} for {symbol}")
                return bar

        logger.debug(
            f"No price data found for {symbol} around {target} "
            f"(tried exact date + {max_days_forward} days forward)"
        )
        return None
