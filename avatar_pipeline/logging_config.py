"""Process-wide logging setup for the API and worker processes."""

import logging
from typing import Optional

from avatar_pipeline.config import settings

_configured = False


def configure_logging(level: Optional[str] = None) -> None:
    """Install a single stream handler on the root logger.

    Safe to call more than once; only the first call installs the handler,
    later calls just adjust the level.
    """
    global _configured
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())
    if _configured:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(settings.log_format))
    root.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
