from __future__ import annotations

import logging

from eventcurator.core.config import get_settings


LOG_FORMAT = "%(asctime)s | %(levelname)-5s | %(name)-30s | %(message)s"

_logging_configured = False


def configure_logging(level: str | None = None) -> None:
    """Install the root handler once at startup; later calls only change the level.

    Modules keep using ``logging.getLogger(__name__)``. The level defaults to
    ``Settings.log_level`` (``LOG_LEVEL`` in the environment).
    """
    global _logging_configured
    resolved = (level or get_settings().log_level).upper()
    if not _logging_configured:
        logging.basicConfig(level=resolved, format=LOG_FORMAT)
        _logging_configured = True
    logging.getLogger("eventcurator").setLevel(resolved)
