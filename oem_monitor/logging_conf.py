"""Logging setup."""
import logging
import sys

from oem_monitor.config import config


def setup_logging(level: str | None = None) -> None:
    """Configure root logger with a single stream handler."""
    root = logging.getLogger()
    root.setLevel((level or config.LOG_LEVEL).upper())
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )
    root.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
