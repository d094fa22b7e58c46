"""Freeform chat about invoices.

A user turn is saved to the thread first, then the whole stored history
(pipeline messages included) is sent to the model and the reply is saved as
an assistant message. Chat replies are not metered in the usage ledger,
which only covers the document stages.
"""

import logging
import time

from prometheus_client import Counter, Histogram
from pydantic import BaseModel

from services.agent.base import (
    ModelClient,
    ModelInvocationError,
    ModelMessage,
    TextPart,
    TokenUsage,
)
from services.agent.prompts import CHAT_PROMPT
from services.chat.repository import ChatMessage, ChatRepository

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 80

chat_replies_total = Counter(
    "chat_replies_total",
    "Freeform chat replies by outcome",
    ["outcome"],  # success, error
)

chat_reply_duration_seconds = Histogram(
    "chat_reply_duration_seconds",
    "Model time spent on a freeform chat reply",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)


class ChatReply(BaseModel):
    user_message: ChatMessage
    reply: ChatMessage
    token_usage: TokenUsage


def _title_from(content: str) -> str:
    first_line = content.strip().splitlines()[0]
    return first_line[:TITLE_MAX_LENGTH]


class ChatAssistant:
    """Answers user messages in a chat thread."""

    def __init__(self, model_client: ModelClient, chats: ChatRepository) -> None:
        self.model_client = model_client
        self.chats = chats

    def reply(self, chat_id: str, user_id: str, content: str) -> ChatReply:
        """Save a user message and answer it.

        The chat is created on first use, titled after the message.

        Raises:
            ValueError: If the message is blank
            ChatAccessError: If the chat belongs to another user
            PersistenceError: If the thread cannot be read or written
            ModelInvocationError: If the model call fails (the user turn stays saved)
        """
        if not content.strip():
            raise ValueError("Message content must not be empty")

        self.chats.ensure_chat(chat_id, user_id, title=_title_from(content))
        user_message = self.chats.save_message(chat_id, "user", content)

        # The new turn goes last even if its timestamp ties an earlier message
        history = [m for m in self.chats.get_messages(chat_id) if m.id != user_message.id]
        history.append(user_message)
        messages = [
            ModelMessage(role=m.role, content=[TextPart(text=m.content)])
            for m in history
            if m.role in ("user", "assistant")
        ]

        start_time = time.time()
        try:
            response = self.model_client.complete(CHAT_PROMPT, messages)
        except ModelInvocationError as e:
            chat_replies_total.labels(outcome="error").inc()
            logger.error(f"Chat reply failed in chat {chat_id}: {e}")
            raise
        finally:
            chat_reply_duration_seconds.observe(time.time() - start_time)

        reply = self.chats.save_message(chat_id, "assistant", response.text)
        chat_replies_total.labels(outcome="success").inc()
        logger.info(f"Answered message in chat {chat_id} ({response.usage.total_tokens} tokens)")
        return ChatReply(user_message=user_message, reply=reply, token_usage=response.usage)
