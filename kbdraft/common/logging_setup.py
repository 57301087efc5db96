"""Logging configuration: console plus a rotating file under ~/.kbdraft/logs."""

import logging
import sys
from logging.handlers import RotatingFileHandler

from .config import LOGS_DIR

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO", log_to_file: bool = True) -> logging.Logger:
    root_logger = logging.getLogger()
    level_value = getattr(logging, str(level).upper(), logging.INFO)
    root_logger.setLevel(level_value)
    root_logger.handlers = []

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level_value)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_to_file:
        try:
            LOGS_DIR.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                LOGS_DIR / "kbdraft.log", maxBytes=10 * 1024 * 1024, backupCount=5
            )
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.warning("File logging disabled: %s", e)

    # Request lines from the HTTP clients are noise at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    return root_logger
