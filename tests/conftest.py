"""Shared fixtures: in-memory stores, a controllable clock and a scripted model."""

import base64
import os
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta

import pytest
from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

# The API module builds its stores at import time
os.environ.setdefault("APP_DATABASE_URL", "sqlite://")

from services.agent.base import (  # noqa: E402
    ModelClient,
    ModelInvocationError,
    ModelMessage,
    ModelResponse,
    SchemaT,
    TextResponse,
    TokenUsage,
)
from services.shared.config import Settings  # noqa: E402
from services.shared.database import build_engine, build_session_factory, init_db  # noqa: E402


class MutableClock:
    """Clock whose current time is set by the test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeModelClient(ModelClient):
    """Model client returning queued outputs per schema and queued chat replies.

    Queue an exception instead of an output or reply to make that call fail.
    """

    def __init__(self, model: str = "gpt-4o", usage: TokenUsage | None = None) -> None:
        super().__init__(Settings(_env_file=None))
        self._model = model
        self.usage = usage or TokenUsage(prompt_tokens=100, completion_tokens=50, total_tokens=150)
        self.outputs: dict[type[BaseModel], list[BaseModel | Exception]] = {}
        self.calls: list[tuple[type[BaseModel], str, list[ModelMessage]]] = []
        self.replies: list[str | Exception] = []
        self.completions: list[tuple[str, list[ModelMessage]]] = []

    def queue(self, schema: type[BaseModel], *outputs: BaseModel | Exception) -> None:
        self.outputs.setdefault(schema, []).extend(outputs)

    def queue_reply(self, *replies: str | Exception) -> None:
        self.replies.extend(replies)

    def calls_for(self, schema: type[BaseModel]) -> list[tuple[str, list[ModelMessage]]]:
        """System prompts and messages of every call made with ``schema``."""
        return [(prompt, messages) for called, prompt, messages in self.calls if called is schema]

    def invoke(
        self,
        schema: type[SchemaT],
        system_prompt: str,
        messages: list[ModelMessage],
    ) -> ModelResponse[SchemaT]:
        self.calls.append((schema, system_prompt, messages))
        queued = self.outputs.get(schema)
        if not queued:
            raise ModelInvocationError(f"No scripted model output for {schema.__name__}")
        output = queued.pop(0)
        if isinstance(output, Exception):
            raise output
        return ModelResponse[schema](output=output, usage=self.usage)  # type: ignore[valid-type]

    def complete(self, system_prompt: str, messages: list[ModelMessage]) -> TextResponse:
        self.completions.append((system_prompt, messages))
        if not self.replies:
            raise ModelInvocationError("No scripted chat reply")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return TextResponse(text=reply, usage=self.usage)

    def is_available(self) -> bool:
        return True

    @property
    def provider_name(self) -> str:
        return "fake"

    @property
    def model_id(self) -> str:
        return self._model


def _page_image(label: str = "page-1") -> str:
    return base64.b64encode(b"\x89PNG\r\n\x1a\n" + label.encode()).decode("ascii")


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def session_factory() -> Iterator[sessionmaker[Session]]:
    """Fresh in-memory database with every table created."""
    engine = build_engine("sqlite://")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def model_client() -> FakeModelClient:
    return FakeModelClient()


@pytest.fixture
def page_image() -> Callable[..., str]:
    """Builds small valid base64 payloads standing in for rendered PNG pages."""
    return _page_image
