"""Abstract base class for generative model clients.

Document stages talk to the model through
``invoke(schema, system_prompt, messages)``, which returns an object validated
against ``schema`` plus raw token counters. Freeform chat uses
``complete(system_prompt, messages)``, which returns plain text. Providers
(OpenAI, Ollama) implement both so callers stay provider-agnostic.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

from abc import ABC, abstractmethod
from typing import Generic, Literal, TypeVar

from pydantic import BaseModel, Field

from services.shared.config import Settings

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class ModelInvocationError(Exception):
    """Transport or provider failure while calling the model."""


class ModelRefusalError(ModelInvocationError):
    """Raised when the model refuses to process the request."""


class ModelIncompleteError(ModelInvocationError):
    """Raised when the response is truncated due to token limits."""


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    """A page image as base64-encoded PNG (no data URL prefix)."""

    type: Literal["image"] = "image"
    image: str


class ModelMessage(BaseModel):
    role: Literal["user", "assistant"] = "user"
    content: list[TextPart | ImagePart] = Field(default_factory=list)


class TokenUsage(BaseModel):
    """Raw token counters reported by the provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ModelResponse(BaseModel, Generic[SchemaT]):
    """Schema-shaped model output plus token usage."""

    output: SchemaT
    usage: TokenUsage


class TextResponse(BaseModel):
    """Free-text model reply plus token usage."""

    text: str
    usage: TokenUsage


class ModelClient(ABC):
    """Abstract base class for model providers.

    Example implementations:
    - OpenAIModelClient: Uses OpenAI API (cloud-based)
    - OllamaModelClient: Uses a self-hosted Ollama server
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize client with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    def invoke(
        self,
        schema: type[SchemaT],
        system_prompt: str,
        messages: list[ModelMessage],
    ) -> ModelResponse[SchemaT]:
        """Run one structured-output completion.

        Args:
            schema: Pydantic model the output must conform to
            system_prompt: Stage instructions
            messages: Conversation content (text and page images)

        Returns:
            Validated output and token usage

        Raises:
            ModelInvocationError: On any transport, provider or parsing failure
        """
        pass

    @abstractmethod
    def complete(self, system_prompt: str, messages: list[ModelMessage]) -> TextResponse:
        """Run one free-text completion over a conversation.

        Raises:
            ModelInvocationError: On any transport or provider failure, or an empty reply
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is configured and reachable.

        Returns:
            True if provider can be used, False otherwise
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get provider name for logging/metrics."""
        pass

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Model identifier recorded in the usage ledger and used for pricing."""
        pass
