"""
Coverage check: split requested symbols into cached, eliminated and missing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from loguru import logger

from tickercache.data.ticker_cache import TickerCache, normalize_symbol


@dataclass
class CoverageReport:
    """
    Partition of a de-duplicated symbol list.

    missing: no usable cached data and not known-bad; must be fetched
    eliminated: in the failed-ticker registry ({"symbol", "reason"})
    cached: at least one cached year
    """

    missing: List[str] = field(default_factory=list)
    eliminated: List[Dict[str, str]] = field(default_factory=list)
    cached: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.missing) + len(self.eliminated) + len(self.cached)

    @property
    def eliminated_symbols(self) -> List[str]:
        return [e["symbol"] for e in self.eliminated]

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "cached": list(self.cached),
            "missing": list(self.missing),
            "eliminated": [dict(e) for e in self.eliminated],
        }


def dedupe_symbols(symbols: List[str]) -> List[str]:
    """Normalize and de-duplicate, keeping first-seen order; blanks dropped."""
    seen = dict.fromkeys(normalize_symbol(s) for s in symbols if s and s.strip())
    return list(seen)


class CoverageChecker:
    """Read-only; running it twice on an unchanged store gives the same report."""

    def __init__(self, cache: TickerCache):
        self.cache = cache

    def check_coverage(self, symbols: List[str]) -> CoverageReport:
        unique = dedupe_symbols(symbols)
        report = CoverageReport()
        if not unique:
            return report

        registry = self.cache.get_failed_registry()
        records = self.cache.mget_tickers([s for s in unique if s not in registry])

        for symbol in unique:
            if symbol in registry:
                report.eliminated.append({"symbol": symbol, "reason": registry[symbol].reason})
            elif records.get(symbol):
                report.cached.append(symbol)
            else:
                report.missing.append(symbol)

        logger.info(
            f"Coverage for {len(unique)} symbols: {len(report.cached)} cached, "
            f"{len(report.missing)} missing, {len(report.eliminated)} eliminated"
        )
        return report
