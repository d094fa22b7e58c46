"""Ollama-based model client for self-hosted vision LLM inference.

Uses the local Ollama chat endpoint with a JSON-schema ``format`` so the
model's reply is constrained to the stage schema. Supports data sovereignty
requirements by running entirely on-premises.

Requires Ollama server running on localhost:11434 with a vision model.
See: https://ollama.ai/
"""

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from services.agent.base import (
    ImagePart,
    ModelClient,
    ModelIncompleteError,
    ModelInvocationError,
    ModelMessage,
    ModelResponse,
    SchemaT,
    TextPart,
    TextResponse,
    TokenUsage,
)
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class OllamaModelClient(ModelClient):
    """Ollama-based model client for self-hosted inference.

    Supports vision models like Qwen2.5-VL and Llama 3.2 Vision.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize Ollama model client.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._base_url = settings.ollama_base_url
        self._model = settings.ollama_model
        self._client = httpx.Client(timeout=settings.ollama_timeout_seconds)

    @property
    def provider_name(self) -> str:
        return "ollama"

    @property
    def model_id(self) -> str:
        return self._model

    def is_available(self) -> bool:
        """Check if Ollama server is running and model is available.

        Returns:
            True if Ollama server responds and model is loaded
        """
        try:
            response = self._client.get(f"{self._base_url}/api/tags")
            if response.status_code != 200:
                return False
            models = response.json().get("models", [])
            model_names = [m.get("name", "").split(":")[0] for m in models]
            return self._model.split(":")[0] in model_names
        except Exception:
            return False

    @staticmethod
    def _convert_messages(system_prompt: str, messages: list[ModelMessage]) -> list[dict[str, Any]]:
        """Flatten each message into Ollama's text + images shape."""
        converted: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for message in messages:
            texts = [part.text for part in message.content if isinstance(part, TextPart)]
            images = [part.image for part in message.content if isinstance(part, ImagePart)]
            entry: dict[str, Any] = {"role": message.role, "content": "\n\n".join(texts)}
            if images:
                entry["images"] = images
            converted.append(entry)
        return converted

    def invoke(
        self,
        schema: type[SchemaT],
        system_prompt: str,
        messages: list[ModelMessage],
    ) -> ModelResponse[SchemaT]:
        """Call Ollama chat with the schema as output format.

        Raises:
            ModelIncompleteError: If generation stopped on the token limit
            ModelInvocationError: On HTTP errors or output not matching the schema
        """
        body = self._chat(
            system_prompt, messages, schema.__name__, output_format=schema.model_json_schema()
        )
        content = body.get("message", {}).get("content", "")
        try:
            output = schema.model_validate_json(content)
        except ValidationError as e:
            logger.warning(f"Ollama output did not match {schema.__name__}: {e}")
            raise ModelInvocationError(f"Model output did not match schema: {e}") from e

        response_type = ModelResponse[schema]  # type: ignore[valid-type]
        return response_type(output=output, usage=self._token_usage(body))

    def complete(self, system_prompt: str, messages: list[ModelMessage]) -> TextResponse:
        """Free-text chat reply.

        Raises:
            ModelIncompleteError: If generation stopped on the token limit
            ModelInvocationError: On HTTP errors or an empty reply
        """
        body = self._chat(system_prompt, messages, "chat reply")
        content = body.get("message", {}).get("content", "")
        if not content:
            raise ModelInvocationError("Empty reply from Ollama")
        return TextResponse(text=content, usage=self._token_usage(body))

    def _chat(
        self,
        system_prompt: str,
        messages: list[ModelMessage],
        label: str,
        output_format: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": self._convert_messages(system_prompt, messages),
            "stream": False,
            "options": {"temperature": 0},
        }
        if output_format is not None:
            payload["format"] = output_format

        try:
            response = self._client.post(f"{self._base_url}/api/chat", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Ollama API call failed for {label}: {e}")
            raise ModelInvocationError(f"Ollama API error: {e}") from e

        body: dict[str, Any] = response.json()
        if body.get("done_reason") == "length":
            raise ModelIncompleteError("Response truncated due to token limit.")
        return body

    @staticmethod
    def _token_usage(body: dict[str, Any]) -> TokenUsage:
        prompt_tokens = int(body.get("prompt_eval_count", 0))
        completion_tokens = int(body.get("eval_count", 0))
        return TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )
