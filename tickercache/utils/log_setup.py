"""Loguru sink configuration for tickercache entry points."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

from tickercache.utils.log_filter import filter_secrets

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level:<8} | {name}:{line} | {message}"


def _mask_secrets(record: dict) -> None:
    record["message"] = filter_secrets(record["message"])


def setup_logging(level: str = "INFO", log_file: Path | str | None = None) -> None:
    """
    Configure loguru to write to stderr and, optionally, a rotating log file.

    Every record passes through filter_secrets first, so request URLs carrying
    the API token can be logged safely.

    Args:
        level: Minimum level for both sinks
        log_file: Optional path of a log file (rotated at 10 MB, kept 30 days)
    """
    logger.remove()
    logger.configure(patcher=_mask_secrets)
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_path),
            rotation="10 MB",
            retention="30 days",
            level=level,
            format=LOG_FORMAT,
        )
