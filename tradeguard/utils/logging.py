"""Root logger configuration."""

import logging

from tradeguard.config import settings

_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_configured = False


def setup_logging(level: str | None = None):
    """Configure the root logger once; later calls only adjust the level."""
    global _configured
    log_level = (level or settings.log_level).upper()

    if not _configured:
        logging.basicConfig(level=log_level, format=_FORMAT)
        # Chatty third-party loggers
        logging.getLogger("apscheduler").setLevel(logging.WARNING)
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        _configured = True
    else:
        logging.getLogger().setLevel(log_level)
