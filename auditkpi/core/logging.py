from __future__ import annotations

import logging

from auditkpi.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once per process so scripts and workers share one format.
    resolved = (level or get_settings().log_level or "INFO").upper()
    logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    logging.getLogger().setLevel(resolved)
    # SQL echo is too noisy at INFO for batch jobs.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
