from __future__ import annotations

import logging

from stsaccess.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure root logging once per process; workers and scripts share one format.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # Keep HTTP client chatter out of provisioning logs unless debugging.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
