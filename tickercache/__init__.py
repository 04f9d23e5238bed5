"""
tickercache - resumable historical fundamentals cache

Ingests start-of-year price, shares outstanding and market cap per symbol
from EODHD into a permanent key-value store, in resumable chunked batch jobs.

Typical embedding:

    from tickercache.jobs.service import IngestionService

    service = IngestionService.from_config()
    job = service.create_job(["AAPL", "MSFT", "SPY"])
    service.start_background(job["job_id"]).join()
    frame = service.load_frame(["AAPL", "MSFT"])
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tickercache")
except PackageNotFoundError:
    # Running from a source checkout without an install
    __version__ = "0.0.0"
