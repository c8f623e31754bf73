"""
Conversation persistence for chat replay.

Messages are replayed oldest-first; only the most recent `limit` messages
are returned so a long conversation cannot blow the prompt budget.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docrag.core.config import settings
from docrag.core.exceptions import StoreError
from docrag.llm.base import ChatMessage
from docrag.models.conversations import Conversation, Message

logger = logging.getLogger(__name__)


class ConversationHistory:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        limit:           int | None = None,
    ) -> None:
        if session_factory is None:
            from docrag.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory
        self._limit           = limit or settings.chat_history_limit

    async def create_conversation(self) -> UUID:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    conversation = Conversation()
                    session.add(conversation)
                    await session.flush()
                    conversation_id = conversation.id
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to create conversation: {exc}") from exc
        logger.info("History | conversation created id=%s", conversation_id)
        return conversation_id

    async def conversation_exists(self, conversation_id: UUID) -> bool:
        async with self._session_factory() as session:
            count = await session.scalar(
                select(func.count()).select_from(Conversation).where(Conversation.id == conversation_id)
            )
        return bool(count)

    async def get_messages(self, conversation_id: UUID) -> list[ChatMessage]:
        try:
            async with self._session_factory() as session:
                rows = (
                    await session.execute(
                        select(Message.role, Message.content)
                        .where(Message.conversation_id == conversation_id)
                        .order_by(Message.created_at.desc())
                        .limit(self._limit)
                    )
                ).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to fetch conversation history: {exc}") from exc

        messages = [ChatMessage(role=row.role, content=row.content) for row in reversed(rows)]
        logger.debug("History | conversation=%s messages=%d", conversation_id, len(messages))
        return messages

    async def save_message_pair(self, conversation_id: UUID, user_message: str, assistant_message: str) -> None:
        # explicit timestamps: now() is fixed per transaction, so both rows would tie
        asked_at = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add_all([
                        Message(conversation_id=conversation_id, role="user", content=user_message, created_at=asked_at),
                        Message(
                            conversation_id=conversation_id,
                            role="assistant",
                            content=assistant_message,
                            created_at=asked_at + timedelta(microseconds=1),
                        ),
                    ])
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to save messages: {exc}") from exc
