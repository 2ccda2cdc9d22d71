import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def default_log_dir() -> str:
    return os.environ.get(
        "CLEARMAIL_LOG_DIR", os.path.join(os.path.expanduser("~"), ".clearmail", "logs")
    )


def setup_logger(
    name: str = "clearmail",
    level: Optional[str] = None,
    log_dir: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the package logger to write to a rotating file and stderr.

    Every module logs through `logging.getLogger(__name__)`, so configuring
    the `clearmail` logger once covers the whole package. Calling this again
    only updates the level.
    """
    logger = logging.getLogger(name)
    level = level or os.environ.get("CLEARMAIL_LOG_LEVEL", "INFO")
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    if getattr(logger, "_clearmail_configured", False):
        return logger

    formatter = logging.Formatter(LOG_FORMAT)

    # Max 5MB, keep 3 backups
    log_dir = log_dir or default_log_dir()
    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "clearmail.log"),
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as e:
        sys.stderr.write(f"clearmail: file logging disabled ({e})\n")

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    logger._clearmail_configured = True
    return logger
