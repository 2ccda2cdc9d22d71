"""
Base provider interface for LLM classification backends.

This module defines the abstract base class and the value objects shared by
all backends (OpenAI, local OpenAI-compatible servers).
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional


class Judgment(Enum):
    """Tri-state classification outcome."""
    KEEP = "keep"        # Leave in the primary inbox
    REJECT = "reject"    # Move out of the inbox
    UNKNOWN = "unknown"  # Do not act


@dataclass(frozen=True)
class ClassificationRequest:
    """
    Read-only request derived from one mail item.

    Attributes:
        subject: Decoded subject line
        sender: Decoded From header
        body: Plain-text body, already truncated to the configured length
        date: Message date as an ISO-8601 string (may be empty)
    """
    subject: str
    sender: str
    body: str
    date: str = ""

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass(frozen=True)
class Verdict:
    """
    Structured result of one classification.

    Attributes:
        judgment: keep / reject / unknown
        category: Destination category (one of the configured set when rejected)
        explanation: Free-text rationale from the model
        source: Where the verdict came from (llm, cache, fallback)
    """
    judgment: Judgment
    category: str = ""
    explanation: str = ""
    source: str = "llm"

    @classmethod
    def unknown(cls, explanation: str = "") -> "Verdict":
        return cls(judgment=Judgment.UNKNOWN, explanation=explanation, source="fallback")

    @property
    def is_actionable(self) -> bool:
        return self.judgment is not Judgment.UNKNOWN

    def to_cache_payload(self) -> Dict[str, Any]:
        """Serialized form stored in the result cache."""
        return {
            "meets_criteria": self.judgment is Judgment.KEEP,
            "category": self.category,
            "explanation": self.explanation,
        }


class LLMProvider(ABC):
    """
    Abstract base class for classification backends.

    A provider performs exactly one HTTP round trip per `invoke` call and
    returns the raw text produced by the model. Retries, timeouts and
    concurrency limits are applied by the caller.

    Providers raise `RateLimitError` (status_code 429) for rate-limited calls
    and `BackendError` for any other failure.
    """

    @abstractmethod
    def invoke(self, messages: list) -> str:
        """
        Send one chat request and return the raw model output.

        Args:
            messages: Chat messages ([{"role": ..., "content": ...}, ...])

        Returns:
            Raw response text (not yet normalized or parsed)
        """
        pass

    @abstractmethod
    def get_name(self) -> str:
        """
        Return the backend kind used for concurrency bounding and logging.
        """
        pass

    @abstractmethod
    def parameters(self) -> Dict[str, Any]:
        """
        Return the request parameters that influence the model output.

        These are folded into the request fingerprint so that changing the
        model or temperature never serves a stale cached verdict.
        """
        pass

    def health_check(self) -> bool:
        """Check if the backend is reachable. Defaults to True."""
        return True

    @property
    def is_local(self) -> bool:
        """Whether the backend runs locally (no cloud costs)."""
        return False

    def close(self) -> None:
        """Release any pooled connections."""
        return None


def error_status(error: Optional[BaseException]) -> Optional[int]:
    """Extract an HTTP-like status code from an exception, if any."""
    if error is None:
        return None
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None
