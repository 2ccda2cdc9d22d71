"""
Local LLM provider for OpenAI-compatible servers (LM Studio, llama.cpp, vLLM).

Zero cloud cost; the server decides which model is loaded.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from .base import LLMProvider
from ..errors import BackendError, RateLimitError

logger = logging.getLogger(__name__)


class LocalLLMProvider(LLMProvider):
    """
    Local LLM provider speaking the OpenAI chat completions protocol.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize local provider.

        Args:
            config: Provider configuration dict with:
                - post_url: Chat completions URL
                  (default: http://localhost:1234/v1/chat/completions)
                - temperature: Sampling temperature (default: 0.7)
                - timeout: Request timeout in seconds (default: 60)
        """
        config = config or {}
        self.post_url = config.get("post_url", "http://localhost:1234/v1/chat/completions")
        self.temperature = config.get("temperature", 0.7)
        self.timeout = config.get("timeout", 60)
        self._session = requests.Session()

    def get_name(self) -> str:
        return "local"

    def parameters(self) -> Dict[str, Any]:
        return {"backend": "local", "url": self.post_url, "temperature": self.temperature}

    @property
    def is_local(self) -> bool:
        return True

    def health_check(self) -> bool:
        """Check that the server answers on its models endpoint."""
        models_url = self.post_url.rsplit("/chat/completions", 1)[0] + "/models"
        try:
            response = self._session.get(models_url, timeout=5)
            return response.status_code == 200
        except requests.exceptions.RequestException as e:
            logger.warning(f"Local LLM health check failed: {e}")
            return False

    def invoke(self, messages: List[Dict[str, str]]) -> str:
        payload = {
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": -1,
            "stream": False,
        }

        try:
            response = self._session.post(self.post_url, json=payload, timeout=self.timeout)
        except requests.exceptions.ConnectionError as e:
            raise BackendError(f"Could not connect to local LLM at {self.post_url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise BackendError(f"Local LLM request failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitError("Local LLM rate limit exceeded")
        if response.status_code >= 400:
            raise BackendError(
                f"Local LLM HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise BackendError(f"Unexpected local LLM response shape: {e}") from e

        return (content or "").strip()

    def close(self) -> None:
        self._session.close()
