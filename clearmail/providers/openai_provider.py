"""
OpenAI provider for cloud LLM inference.

Uses the chat completions endpoint in JSON mode. One `invoke` call is one
HTTP request; retries are handled by the backoff executor.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from .base import LLMProvider
from ..errors import BackendError, RateLimitError
from ..utils.secrets import get_api_key

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """
    OpenAI provider for cloud LLM inference.

    Features:
    - gpt-4o-mini by default (cheap, fast, relatively accurate)
    - JSON response format
    - Rate-limit responses surfaced as RateLimitError for the backoff executor
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize OpenAI provider.

        Args:
            config: Provider configuration with:
                - model: Model name (default: gpt-4o-mini)
                - api_key: API key (or OPENAI_API_KEY / keyring)
                - base_url: API base URL (for Azure/proxies)
                - timeout: HTTP timeout in seconds
                - temperature: Sampling temperature
        """
        config = config or {}
        self.model = config.get("model", "gpt-4o-mini")
        self.api_key = config.get("api_key") or get_api_key("openai")
        self.base_url = config.get("base_url", "https://api.openai.com/v1").rstrip("/")
        self.timeout = config.get("timeout", 30)
        self.temperature = config.get("temperature", 0.7)
        self._session = requests.Session()

        if not self.api_key:
            raise ValueError(
                "OpenAI API key not configured. "
                "Set OPENAI_API_KEY or store it via clearmail.utils.secrets.set_api_key('openai', 'sk-...')"
            )

    def get_name(self) -> str:
        return "openai"

    def parameters(self) -> Dict[str, Any]:
        return {"backend": "openai", "model": self.model, "temperature": self.temperature}

    def health_check(self) -> bool:
        """
        Check if OpenAI API is accessible.
        Uses the models endpoint for a lightweight check.
        """
        try:
            response = self._session.get(
                f"{self.base_url}/models",
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=10,
            )
            if response.status_code == 401:
                logger.error("OpenAI API key is invalid")
                return False
            if response.status_code == 429:
                logger.warning("OpenAI rate limit hit during health check")
                return True  # Reachable, just rate limited
            return response.status_code == 200
        except requests.exceptions.RequestException as e:
            logger.warning(f"OpenAI health check failed: {e}")
            return False

    def invoke(self, messages: List[Dict[str, str]]) -> str:
        try:
            response = self._session.post(
                f"{self.base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.model,
                    "messages": messages,
                    "response_format": {"type": "json_object"},
                    "temperature": self.temperature,
                },
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise BackendError(f"OpenAI request timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise BackendError(f"OpenAI request failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitError(f"OpenAI rate limit exceeded: {response.text[:200]}")

        if response.status_code >= 400:
            raise BackendError(
                f"OpenAI HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise BackendError(f"Unexpected OpenAI response shape: {e}") from e

        usage = data.get("usage", {})
        logger.debug(f"OpenAI response received ({usage.get('total_tokens', 0)} tokens)")
        return (content or "").strip()

    def close(self) -> None:
        self._session.close()
