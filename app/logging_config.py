import logging
from logging.handlers import RotatingFileHandler
import os

from config import LOG_DIR, LOG_LEVEL

os.makedirs(LOG_DIR, exist_ok=True)

FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def get_logger(name, filename, level=None):
    """One logger per component, writing to LOG_DIR/<filename> and stderr."""
    logger = logging.getLogger(name)
    logger.setLevel(level or LOG_LEVEL)

    # Avoid duplicated handlers
    if logger.handlers:
        return logger

    formatter = logging.Formatter(FORMAT)
    file_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, filename),
        maxBytes=5_000_000,
        backupCount=3
    )
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.propagate = False

    return logger
