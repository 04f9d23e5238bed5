"""
EODHD data source adapter for tickercache.

End-of-day prices, quarterly balance-sheet shares outstanding and the US
exchange symbol list. Requires EODHD_API_TOKEN.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from datetime import date, datetime
from typing import Any

import requests
from loguru import logger

from tickercache.data.constants import EXCHANGE_SUFFIX, TICKER_LISTS_TTL_SECONDS, VALID_TICKERS_KEY
from tickercache.data.sources.base import KnownSymbols, PriceBar, UpstreamSourceBase
from tickercache.exceptions import UpstreamConfigError, UpstreamError
from tickercache.utils.config import get_config
from tickercache.utils.log_filter import register_secret
from tickercache.utils.rate_limiter import RateLimiter

# Quarterly report dates cached per symbol; every year of one symbol reuses them
QUARTER_CACHE_SIZE = 64


class EODHDSource(UpstreamSourceBase):
    """
    EODHD (eodhd.com) data source.

    Every HTTP call is gated by a shared token-bucket rate limiter and carries
    its own short timeout. Transport errors on the price endpoint are treated
    as "no data for this format", so the caller's fallback moves on.
    """

    source_name = "eodhd"

    def __init__(
        self,
        api_token: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        rate_limiter: RateLimiter | None = None,
        store: Any = None,
    ):
        """
        Initialize the EODHD source.

        Args:
            api_token: EODHD API token. If None, loads from config/environment.
            base_url: API root (default https://eodhd.com/api)
            timeout: Per-request timeout in seconds
            rate_limiter: Shared limiter; built from config if None
            store: Optional KeyValueStore used to cache the symbol list
        """
        api_config = get_config().api

        self.api_token = api_token or api_config.eodhd_api_token
        if not self.api_token:
            raise UpstreamConfigError(
                "EODHD_API_TOKEN not found. Set it in .env or pass to constructor."
            )
        register_secret(self.api_token)

        self.base_url = (base_url or api_config.eodhd_base_url).rstrip("/")
        self.timeout = timeout or api_config.request_timeout
        self.symbol_list_timeout = api_config.symbol_list_timeout
        self.rate_limiter = rate_limiter or RateLimiter.from_config(api_config)
        self.store = store
        self._quarters: OrderedDict[str, dict[str, Any] | None] = OrderedDict()
        self._quarters_lock = threading.Lock()

        logger.info("EODHD data source initialized")

    def _request(self, path: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> requests.Response:
        self.rate_limiter.acquire()
        query = {"api_token": self.api_token, "fmt": "json", **(params or {})}
        return requests.get(f"{self.base_url}/{path}", params=query, timeout=timeout or self.timeout)

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------

    def get_price(self, symbol_formats: list[str], on: date) -> PriceBar | None:
        """
        Fetch the adjusted bar for one date, trying each ticker format.

        Args:
            symbol_formats: Provider codes in preference order
            on: Trading date

        Returns:
            PriceBar for the first format with an adjusted close, else None
        """
        day = on.isoformat()

        for code in symbol_formats:
            try:
                response = self._request(f"eod/{code}", {"from": day, "to": day})

                if response.status_code == 404:
                    logger.debug(f"No data found for {code} on {day} (404)")
                    continue
                if response.status_code != 200:
                    logger.debug(f"EODHD returned {response.status_code} for {code} on {day}")
                    continue

                data = response.json()
            except (requests.RequestException, ValueError) as e:
                logger.debug(f"Failed to fetch {code} on {day}: {e}")
                continue

            if not data:
                logger.debug(f"No data found for {code} on {day} (empty response)")
                continue

            bar = data[0] if isinstance(data, list) else data
            if not isinstance(bar, dict) or not bar.get("adjusted_close"):
                continue

            if code != symbol_formats[0]:
                logger.info(f"Found data for {symbol_formats[0]} using format: {code}")

            return PriceBar(
                date=datetime.strptime(bar.get("date", day), "%Y-%m-%d").date(),
                adjusted_close=float(bar["adjusted_close"]),
                close=_as_float(bar.get("close")),
                open=_as_float(bar.get("open")),
                high=_as_float(bar.get("high")),
                low=_as_float(bar.get("low")),
                volume=_as_float(bar.get("volume")),
                symbol_format=code,
            )

        return None

    # ------------------------------------------------------------------
    # Shares outstanding
    # ------------------------------------------------------------------

    def _quarterly_balance_sheets(self, code: str) -> dict[str, Any] | None:
        with self._quarters_lock:
            if code in self._quarters:
                self._quarters.move_to_end(code)
                return self._quarters[code]

        response = self._request(
            f"fundamentals/{code}", {"filter": "Financials::Balance_Sheet::quarterly"}
        )
        if response.status_code != 200:
            # Not cached: a 429 or 5xx must not cost the symbol's other years
            logger.warning(f"Failed to get quarterly periods for {code}: {response.status_code}")
            return None

        payload = response.json()
        quarters = payload if isinstance(payload, dict) and payload else None

        with self._quarters_lock:
            self._quarters[code] = quarters
            while len(self._quarters) > QUARTER_CACHE_SIZE:
                self._quarters.popitem(last=False)
        return quarters

    def get_shares_outstanding(self, symbol: str, as_of: date) -> float | None:
        """
        Shares outstanding from the most recent quarter strictly before as_of.

        Two calls: the list of quarterly balance-sheet dates, then the
        commonStockSharesOutstanding of the chosen quarter.

        Args:
            symbol: Bare symbol (the exchange suffix is added here)
            as_of: Cut-off date

        Returns:
            Share count, or None (young companies and foreign filers often
            have no qualifying quarter)
        """
        code = symbol if "." in symbol else f"{symbol}{EXCHANGE_SUFFIX}"

        try:
            quarters = self._quarterly_balance_sheets(code)
            if not quarters:
                return None

            best = None
            for report_date in sorted(quarters, reverse=True):
                try:
                    parsed = datetime.strptime(report_date, "%Y-%m-%d").date()
                except ValueError:
                    continue
                if parsed < as_of:
                    best = report_date
                    break

            if best is None:
                logger.debug(f"No quarterly reports found before {as_of} for {code}")
                return None

            response = self._request(
                f"fundamentals/{code}",
                {"filter": f"Financials::Balance_Sheet::quarterly::{best}::commonStockSharesOutstanding"},
            )
            if response.status_code != 200:
                logger.debug(f"Failed to get shares outstanding for {code} on {best}: {response.status_code}")
                return None

            shares = _as_float(response.json())
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"Failed fetching shares outstanding for {code}: {e}")
            return None

        if shares is None or shares <= 0:
            logger.debug(f"Invalid shares outstanding value for {code} on {best}: {shares}")
            return None

        logger.debug(f"Shares outstanding for {code} as of {best}: {shares:,.0f}")
        return shares

    # ------------------------------------------------------------------
    # Symbol universe
    # ------------------------------------------------------------------

    def list_known_symbols(self, bypass_cache: bool = False) -> KnownSymbols | None:
        """
        Active and delisted US symbols, cached in the store for 24 hours.

        Args:
            bypass_cache: Skip the cached copy and refetch

        Returns:
            KnownSymbols, or None if the list cannot be fetched
        """
        if self.store is not None and not bypass_cache:
            cached = self.store.get(VALID_TICKERS_KEY)
            if isinstance(cached, dict) and cached.get("active") is not None:
                logger.debug(
                    f"Cache hit for ticker lists: {len(cached['active'])} active, "
                    f"{len(cached.get('delisted', []))} delisted"
                )
                return KnownSymbols(active=set(cached["active"]), delisted=set(cached.get("delisted", [])))

        logger.info("Fetching complete ticker list from EODHD...")
        try:
            response = self._request("exchange-symbol-list/US", timeout=self.symbol_list_timeout)
            if response.status_code != 200:
                raise UpstreamError(f"Failed to fetch ticker list: {response.status_code}")
            rows = response.json()
            if not isinstance(rows, list):
                raise UpstreamError("Invalid ticker list response format")
        except (requests.RequestException, ValueError, UpstreamError) as e:
            logger.error(f"Error fetching valid US tickers: {e}")
            return None

        known = KnownSymbols()
        for row in rows:
            code = row.get("Code") if isinstance(row, dict) else None
            if not code or not row.get("Name"):
                continue
            target = known.delisted if row.get("IsDelisted") in (True, 1, "1") else known.active
            target.add(code)
            target.add(f"{code}{EXCHANGE_SUFFIX}")

        if self.store is not None:
            self.store.set(
                VALID_TICKERS_KEY,
                {"active": sorted(known.active), "delisted": sorted(known.delisted)},
                ttl=TICKER_LISTS_TTL_SECONDS,
            )
            logger.info(f"Cached ticker lists: {len(known.active)} active, {len(known.delisted)} delisted")

        return known


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
