"""Constants for the data layer."""

# First year fetched for every symbol
MIN_YEAR = 2000

# Month/day used as "start of year"; Jan 2 dodges the New Year holiday
START_OF_YEAR_MONTH = 1
START_OF_YEAR_DAY = 2

# Days probed forward when the start-of-year date has no bar
PRICE_FALLBACK_DAYS = 5

# Exchange suffixes tried after the bare symbol
EXCHANGE_SUFFIX = ".US"
DELISTED_SUFFIX = ".US.DELISTED"

# Index-fund-like instruments: price only, no shares outstanding or market cap
INDEX_FUNDS = frozenset({
    "SPY", "QQQ", "IWM", "VTI", "EFA", "VEA", "EEM", "VWO", "AGG",
    "BND", "TLT", "GLD", "VB", "VTV", "VUG", "VXUS",
})

# Key-value store key prefixes
TICKER_DATA_PREFIX = "ticker-data"
FAILED_TICKERS_KEY = "failed-tickers"
BATCH_JOB_PREFIX = "batch_job"
VALID_TICKERS_KEY = "valid-us-tickers-complete-list"

# Expiry windows (seconds)
JOB_TTL_SECONDS = 24 * 3600
TICKER_LISTS_TTL_SECONDS = 24 * 3600

# Job submission limits
MIN_CHUNK_SIZE = 1
MAX_CHUNK_SIZE = 50
MAX_SYMBOLS_PER_JOB = 10_000

# Schema version stamped on persisted job records
SCHEMA_VERSION = 1
