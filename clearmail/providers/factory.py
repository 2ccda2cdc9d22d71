"""
Provider factory for backend instantiation.

Single entry point to instantiate any classification backend, using a
registry of provider classes keyed by backend kind.
"""

import logging
from typing import Dict, List, Optional, Type

from .base import LLMProvider
from .local_provider import LocalLLMProvider
from .openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)


class ProviderFactory:
    """
    Registry-based factory for LLM providers.

    Instances are not cached: each orchestrator owns the providers it creates
    and closes them when it is done.
    """

    _providers: Dict[str, Type[LLMProvider]] = {}

    @classmethod
    def register(cls, name: str, provider_class: Type[LLMProvider]) -> None:
        """
        Register a provider class.

        Args:
            name: Backend kind (e.g. 'openai', 'local')
            provider_class: LLMProvider subclass
        """
        cls._providers[name] = provider_class
        logger.debug(f"Registered provider: {name}")

    @classmethod
    def create(cls, name: str, config: Optional[Dict] = None) -> LLMProvider:
        """
        Create a provider instance.

        Raises:
            ValueError: If provider name is unknown
        """
        if name not in cls._providers:
            available = list(cls._providers.keys())
            raise ValueError(f"Unknown provider: '{name}'. Available: {available}")

        try:
            instance = cls._providers[name](config or {})
            logger.info(f"Created provider instance: {name}")
            return instance
        except Exception as e:
            logger.error(f"Failed to create provider '{name}': {e}")
            raise

    @classmethod
    def list_providers(cls) -> List[str]:
        """List all registered provider names."""
        return list(cls._providers.keys())

    @classmethod
    def is_registered(cls, name: str) -> bool:
        return name in cls._providers

    @classmethod
    def unregister(cls, name: str) -> bool:
        """Unregister a provider (mainly for testing)."""
        return cls._providers.pop(name, None) is not None


ProviderFactory.register("openai", OpenAIProvider)
ProviderFactory.register("local", LocalLLMProvider)
