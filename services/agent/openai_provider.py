"""OpenAI-based model client using structured outputs.

Page images are sent as PNG data URLs and the stage's Pydantic schema is
passed as ``response_format`` so the reply is parsed and validated by the SDK.
Freeform chat replies use a plain chat completion.
No retries are attempted: a failed call surfaces once to the caller.
"""

import logging
import os
from typing import Any

from openai import OpenAI, OpenAIError

from services.agent.base import (
    ImagePart,
    ModelClient,
    ModelIncompleteError,
    ModelInvocationError,
    ModelMessage,
    ModelRefusalError,
    ModelResponse,
    SchemaT,
    TextPart,
    TextResponse,
    TokenUsage,
)
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class OpenAIModelClient(ModelClient):
    """OpenAI chat completions client with vision input and parsed output.

    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenAI model client.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: OpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "openai"

    @property
    def model_id(self) -> str:
        return self.settings.openai_model

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured.

        Returns:
            True if OPENAI_API_KEY environment variable is set
        """
        return os.getenv("OPENAI_API_KEY") is not None

    def _get_client(self) -> OpenAI:
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ModelInvocationError("OPENAI_API_KEY environment variable not set")
        if self._client is None or self._client.api_key != api_key:
            self._client = OpenAI(api_key=api_key)
        return self._client

    @staticmethod
    def _convert_messages(system_prompt: str, messages: list[ModelMessage]) -> list[dict[str, Any]]:
        """Convert provider-neutral messages to chat completion messages."""
        converted: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for message in messages:
            content: list[dict[str, Any]] = []
            for part in message.content:
                if isinstance(part, TextPart):
                    content.append({"type": "text", "text": part.text})
                elif isinstance(part, ImagePart):
                    content.append(
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:image/png;base64,{part.image}"},
                        }
                    )
            converted.append({"role": message.role, "content": content})
        return converted

    def invoke(
        self,
        schema: type[SchemaT],
        system_prompt: str,
        messages: list[ModelMessage],
    ) -> ModelResponse[SchemaT]:
        """Call OpenAI with the schema as structured output format.

        Raises:
            ModelRefusalError: If the model refuses the request
            ModelIncompleteError: If the response is truncated
            ModelInvocationError: For API errors or missing parsed output
        """
        client = self._get_client()

        try:
            response = client.chat.completions.parse(
                model=self.model_id,
                messages=self._convert_messages(system_prompt, messages),  # type: ignore[arg-type]
                response_format=schema,
                temperature=self.settings.openai_temperature,
            )
        except OpenAIError as e:
            logger.error(f"OpenAI API call failed for {schema.__name__}: {e}")
            raise ModelInvocationError(f"OpenAI API error: {e}") from e

        choice = response.choices[0]
        if choice.finish_reason == "length":
            raise ModelIncompleteError(
                "Response truncated due to token limit. Try a smaller document."
            )

        message = choice.message
        if message.refusal:
            raise ModelRefusalError(f"Model refused to process the request: {message.refusal}")

        if message.parsed is None:
            raise ModelInvocationError("No structured output in API response")

        response_type = ModelResponse[schema]  # type: ignore[valid-type]
        return response_type(output=message.parsed, usage=self._token_usage(response))

    def complete(self, system_prompt: str, messages: list[ModelMessage]) -> TextResponse:
        """Plain chat completion for freeform conversation.

        Raises:
            ModelRefusalError: If the model refuses the request
            ModelIncompleteError: If the response is truncated
            ModelInvocationError: For API errors or an empty reply
        """
        client = self._get_client()

        try:
            response = client.chat.completions.create(
                model=self.model_id,
                messages=self._convert_messages(system_prompt, messages),  # type: ignore[arg-type]
                temperature=self.settings.openai_temperature,
            )
        except OpenAIError as e:
            logger.error(f"OpenAI chat completion failed: {e}")
            raise ModelInvocationError(f"OpenAI API error: {e}") from e

        choice = response.choices[0]
        if choice.finish_reason == "length":
            raise ModelIncompleteError("Response truncated due to token limit.")

        message = choice.message
        if message.refusal:
            raise ModelRefusalError(f"Model refused to process the request: {message.refusal}")
        if not message.content:
            raise ModelInvocationError("Empty reply in API response")

        return TextResponse(text=message.content, usage=self._token_usage(response))

    @staticmethod
    def _token_usage(response: Any) -> TokenUsage:
        usage = response.usage
        return TokenUsage(
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            total_tokens=usage.total_tokens if usage else 0,
        )
