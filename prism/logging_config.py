from __future__ import annotations

import logging
import sys
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from . import config


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging for the CLI.

    Uses ``config.LOG_LEVEL`` unless a level name is given, and writes to stdout.
    """
    log_level = getattr(logging, (level or config.LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )
    for noisy in ("httpx", "urllib3", "google"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.info(f"Logging configured at level: {logging.getLevelName(log_level)}")


@contextmanager
def log_timer(logger: logging.Logger, label: str) -> Iterator[None]:
    logger.debug(f"Timer started: {label}")
    start = time.perf_counter()
    try:
        yield
    finally:
        logger.debug(f"Timer ended: {label} ({time.perf_counter() - start:.3f}s)")


def preview(text: object, limit: int = 100) -> str:
    s = str(text)
    return s if len(s) <= limit else s[:limit] + "..."
