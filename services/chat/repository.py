"""Persistence for chat threads and their messages."""

import logging
import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from services.chat.models import Chat, ChatMessageRecord
from services.shared.database import Clock, PersistenceError, as_utc, utcnow

logger = logging.getLogger(__name__)

Role = Literal["user", "assistant", "system"]


class ChatAccessError(Exception):
    """The chat exists but belongs to another user."""


class ChatThread(BaseModel):
    id: str
    user_id: str
    title: str
    created_at: datetime


class ChatMessage(BaseModel):
    """A message as shown in the chat thread."""

    id: str
    chat_id: str
    role: Role
    content: str
    created_at: datetime


def _to_message(record: ChatMessageRecord) -> ChatMessage:
    return ChatMessage(
        id=record.id,
        chat_id=record.chat_id,
        role=record.role,  # type: ignore[arg-type]
        content=record.content,
        created_at=as_utc(record.created_at),
    )


class ChatRepository:
    """Chat store backed by the ``chats`` and ``chat_messages`` tables."""

    def __init__(self, session_factory: sessionmaker[Session], clock: Clock = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def ensure_chat(self, chat_id: str, user_id: str, title: str) -> None:
        """Create the chat thread if it does not exist yet.

        Raises:
            ChatAccessError: If the chat belongs to another user
            PersistenceError: If the store fails
        """
        try:
            with self._session_factory() as session, session.begin():
                chat = session.get(Chat, chat_id)
                if chat is None:
                    session.add(
                        Chat(
                            id=chat_id,
                            user_id=user_id,
                            title=title[:255],
                            created_at=self._clock(),
                        )
                    )
                    logger.info(f"Created chat {chat_id} for user {user_id}")
                elif chat.user_id != user_id:
                    raise ChatAccessError(f"Chat {chat_id} belongs to another user")
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create chat {chat_id}: {e}") from e

    def save_message(self, chat_id: str, role: Role, content: str) -> ChatMessage:
        """Append a message to a chat thread."""
        record = ChatMessageRecord(
            id=str(uuid.uuid4()),
            chat_id=chat_id,
            role=role,
            content=content,
            created_at=self._clock(),
        )
        try:
            with self._session_factory() as session, session.begin():
                session.add(record)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save message in chat {chat_id}: {e}") from e
        return _to_message(record)

    def get_messages(self, chat_id: str) -> list[ChatMessage]:
        """Messages of a chat thread, oldest first."""
        try:
            with self._session_factory() as session:
                records = session.scalars(
                    select(ChatMessageRecord)
                    .where(ChatMessageRecord.chat_id == chat_id)
                    .order_by(ChatMessageRecord.created_at.asc())
                ).all()
                return [_to_message(record) for record in records]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read messages of chat {chat_id}: {e}") from e

    def get_chat(self, chat_id: str) -> ChatThread | None:
        try:
            with self._session_factory() as session:
                chat = session.get(Chat, chat_id)
                if chat is None:
                    return None
                return ChatThread(
                    id=chat.id,
                    user_id=chat.user_id,
                    title=chat.title,
                    created_at=as_utc(chat.created_at),
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read chat {chat_id}: {e}") from e
