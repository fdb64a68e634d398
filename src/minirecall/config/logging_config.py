"""
Logging setup shared by every entry point.
"""

import logging
import sys

from minirecall.config.settings import RecallSettings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(settings: RecallSettings) -> None:
    """
    Configure the ``minirecall`` logger tree from settings.

    Only the package logger is touched so host applications keep control
    of the root logger.
    """
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    logger = logging.getLogger("minirecall")
    logger.setLevel(level)
    if not any(h.get_name() == "minirecall" for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.set_name("minirecall")
        logger.addHandler(handler)
