"""
Watermark persistence: the timestamp of the last processing session.

A single ISO-8601 string in a plain text file. A missing or unreadable file
yields a watermark three months in the past.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK = timedelta(days=90)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing 'Z'."""
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class WatermarkStore:
    """File-backed watermark store."""

    def __init__(self, path: str, lookback: timedelta = DEFAULT_LOOKBACK):
        self.path = os.path.abspath(os.path.expanduser(path))
        self.lookback = lookback

    def read(self) -> str:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                value = f.read().strip()
            parse_iso(value)
            return value
        except (OSError, ValueError) as e:
            fallback = (datetime.now(timezone.utc) - self.lookback).isoformat()
            logger.info(f"No usable watermark at {self.path} ({e}); using {fallback}")
            return fallback

    def write(self, timestamp: Optional[str] = None) -> str:
        """Persist `timestamp` (default: now). Raises OSError on failure."""
        timestamp = timestamp or utc_now_iso()
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(timestamp)
        os.replace(tmp_path, self.path)
        logger.debug(f"Watermark {timestamp} written to {self.path}")
        return timestamp
