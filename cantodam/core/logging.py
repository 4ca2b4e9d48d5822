from __future__ import annotations

import logging

from cantodam.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Apply one root configuration so module loggers share format and level.
    settings = get_settings()
    resolved = (level or settings.log_level or "INFO").upper()
    logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    logging.getLogger("cantodam").setLevel(resolved)
    # httpx logs every request at INFO; keep it below the connector's own events.
    logging.getLogger("httpx").setLevel(logging.WARNING)
