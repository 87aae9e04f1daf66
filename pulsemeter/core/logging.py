from __future__ import annotations

import logging

from pulsemeter.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Apply one format for scripts and workers so key=value events stay greppable.
    resolved = (level or get_settings().log_level or "INFO").upper()
    logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    logging.getLogger("pulsemeter").setLevel(resolved)
    # Keep SQL echo out of metering logs unless explicitly requested.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
