"""Model client selection.

``create_model_client`` builds the client named by ``APP_MODEL_PROVIDER``.
Further providers can be added at runtime with ``ProviderRegistry.register``.
"""

import logging

from services.agent.base import ModelClient
from services.agent.ollama_provider import OllamaModelClient
from services.agent.openai_provider import OpenAIModelClient
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Provider name to ``ModelClient`` subclass."""

    _providers: dict[str, type[ModelClient]] = {
        "openai": OpenAIModelClient,
        "ollama": OllamaModelClient,
    }

    @classmethod
    def register(cls, name: str, provider_class: type[ModelClient]) -> None:
        cls._providers[name] = provider_class
        logger.info(f"Registered model provider: {name}")

    @classmethod
    def get_provider_class(cls, name: str) -> type[ModelClient]:
        """Client class for ``name``; unknown names raise ``ValueError``."""
        if name not in cls._providers:
            available = ", ".join(cls._providers.keys())
            raise ValueError(f"Unknown model provider: '{name}'. Available providers: {available}")
        return cls._providers[name]

    @classmethod
    def list_providers(cls) -> list[str]:
        return list(cls._providers.keys())


def create_model_client(settings: Settings) -> ModelClient:
    """Create the model client selected by ``settings.model_provider``.

    The client is returned even when it is not reachable yet (no API key,
    Ollama not running); a warning is logged and /ready reports it.
    """
    provider_name = settings.model_provider
    provider_class = ProviderRegistry.get_provider_class(provider_name)

    client = provider_class(settings)

    if not client.is_available():
        logger.warning(
            f"Model provider '{provider_name}' is not fully available. "
            f"Check configuration (e.g., API keys, running server)."
        )

    logger.info(f"Created model client: {provider_name} ({client.model_id})")
    return client
