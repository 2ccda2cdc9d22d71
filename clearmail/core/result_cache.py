"""
Content-addressed result cache for classification verdicts.

Reduces LLM calls by memoizing identical (request, backend parameters)
pairs. Entries are kept in an in-memory index backed by an append-only
JSON-lines file, so results survive across sessions.

Failure policy:
- Lookup failures (I/O errors, malformed entries) are cache misses.
- Write failures are logged and swallowed; the caller already holds a
  valid in-memory result.
"""

import hashlib
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..providers.base import ClassificationRequest

logger = logging.getLogger(__name__)


def compute_fingerprint(request: ClassificationRequest, params: Dict[str, Any]) -> str:
    """
    Compute a consistent SHA-256 fingerprint for a request.

    Args:
        request: Classification request content
        params: Backend parameters (kind, model, temperature, categories, rules)

    Returns:
        64-character hex digest
    """
    canonical = json.dumps(
        {"request": request.to_dict(), "params": params},
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    """A cached backend response."""
    response: Dict[str, Any]
    stored_at: float
    hit_count: int = 0


class ResultCache:
    """
    Durable, append-only verdict cache keyed by fingerprint.

    Usage:
        cache = ResultCache("~/.clearmail/cache/verdicts.jsonl")

        cached = cache.get(fingerprint)
        if cached is None:
            response = call_backend(...)
            cache.put(fingerprint, response)

    No eviction is performed; `get`/`put` are the only operations callers
    rely on, so a bounded policy can be added behind them.
    """

    def __init__(self, path: Optional[str] = None, enabled: bool = True):
        """
        Args:
            path: JSON-lines file backing the cache. None keeps it in memory.
            enabled: When False every lookup is a miss and nothing is stored.
        """
        self.path = os.path.abspath(os.path.expanduser(path)) if path else None
        self.enabled = enabled

        self._entries: Dict[str, CacheEntry] = {}
        self._loaded = False
        self._lock = threading.Lock()

        self._stats = {"hits": 0, "misses": 0, "stores": 0, "write_errors": 0, "corrupt": 0}

    def _load(self) -> None:
        """Load the backing file into the index. Called with the lock held."""
        if self._loaded:
            return
        self._loaded = True

        if not self.path or not os.path.exists(self.path):
            return

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                for line_no, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = json.loads(line)
                        fingerprint = record["fingerprint"]
                        response = record["response"]
                        if not isinstance(fingerprint, str) or not isinstance(response, dict):
                            raise ValueError("unexpected record shape")
                    except (ValueError, KeyError, TypeError) as e:
                        self._stats["corrupt"] += 1
                        logger.debug(f"Skipping malformed cache line {line_no}: {e}")
                        continue
                    # Later lines win
                    self._entries[fingerprint] = CacheEntry(
                        response=response, stored_at=record.get("stored_at", 0.0)
                    )
        except OSError as e:
            logger.warning(f"Result cache unavailable ({self.path}): {e}")

        logger.debug(f"Loaded {len(self._entries)} cached verdicts from {self.path}")

    def get(self, fingerprint: str) -> Optional[Dict[str, Any]]:
        """
        Look up a cached response.

        Returns:
            A copy of the cached response dict, or None on miss/error
        """
        if not self.enabled:
            return None

        with self._lock:
            try:
                self._load()
                entry = self._entries.get(fingerprint)
            except Exception as e:
                logger.warning(f"Result cache lookup failed, treating as miss: {e}")
                entry = None

            if entry is None:
                self._stats["misses"] += 1
                return None

            entry.hit_count += 1
            self._stats["hits"] += 1
            return dict(entry.response)

    def put(self, fingerprint: str, response: Dict[str, Any]) -> bool:
        """
        Store a response. Best effort: never raises.

        Returns:
            True if the entry was persisted (or kept in memory when no path)
        """
        if not self.enabled:
            return False

        now = time.time()
        with self._lock:
            try:
                self._load()
                self._entries[fingerprint] = CacheEntry(response=dict(response), stored_at=now)
                self._stats["stores"] += 1
                if self.path:
                    self._append(fingerprint, response, now)
                return True
            except Exception as e:
                self._stats["write_errors"] += 1
                logger.warning(f"Failed to persist cached verdict {fingerprint[:12]}: {e}")
                return False

    def _append(self, fingerprint: str, response: Dict[str, Any], stored_at: float) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        line = json.dumps(
            {"fingerprint": fingerprint, "response": response, "stored_at": stored_at},
            ensure_ascii=False,
        )
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def __contains__(self, fingerprint: str) -> bool:
        with self._lock:
            self._load()
            return fingerprint in self._entries

    def __len__(self) -> int:
        with self._lock:
            self._load()
            return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            lookups = self._stats["hits"] + self._stats["misses"]
            return {
                **self._stats,
                "size": len(self._entries),
                "hit_rate": round(self._stats["hits"] / lookups, 3) if lookups else 0.0,
                "enabled": self.enabled,
                "path": self.path,
            }

    def clear(self) -> None:
        """Drop the in-memory index (the backing file is left untouched)."""
        with self._lock:
            self._entries.clear()
            self._loaded = True
        logger.info("Result cache cleared")
