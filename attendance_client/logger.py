import logging
import os
from logging.handlers import RotatingFileHandler

from .config import LOG_DIR

LOG_FILE = "attendance_client.log"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logger(name: str) -> logging.Logger:
    """Named logger writing to the rotating client log and to stderr.

    Handlers are attached once per name.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logger.setLevel(os.getenv("CLIENT_LOG_LEVEL", "INFO").upper())
    logger.propagate = False
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers: list[logging.Handler] = [
        RotatingFileHandler(LOG_DIR / LOG_FILE, maxBytes=2_000_000, backupCount=5, encoding="utf-8"),
        logging.StreamHandler(),
    ]
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger
