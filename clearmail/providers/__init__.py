"""
Classification backends for ClearMail.

- OpenAI: hosted chat completions (gpt-4o-mini by default)
- Local: any OpenAI-compatible local server (LM Studio, llama.cpp)

Use the ProviderFactory for creating provider instances:
    from clearmail.providers import ProviderFactory
    provider = ProviderFactory.create("openai", config)
"""

from .base import ClassificationRequest, Judgment, LLMProvider, Verdict
from .factory import ProviderFactory
from .local_provider import LocalLLMProvider
from .openai_provider import OpenAIProvider

__all__ = [
    "ClassificationRequest",
    "Judgment",
    "LLMProvider",
    "Verdict",
    "ProviderFactory",
    "LocalLLMProvider",
    "OpenAIProvider",
]
