"""
chatdash/features/chat/store.py

Conversation history storage.

Every operation is scoped to the owning user; a conversation that exists
but belongs to someone else is reported as not found.
"""

import logging
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import delete, select, update

from chatdash.core.database import get_db_session, chat_conversations, chat_messages
from chatdash.core.errors import NotFoundError
from chatdash.core.timeutil import as_utc, utc_now
from chatdash.models.chat import ChatMessage, Conversation


logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"


def _row_to_conversation(row) -> Conversation:
    return Conversation(
        id=row.id,
        user_id=row.user_id,
        title=row.title,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _row_to_message(row) -> ChatMessage:
    return ChatMessage(
        role=row.role,
        content=row.content,
        used_tools=row.used_tools,
        timestamp=as_utc(row.created_at),
    )


class ConversationStore:
    def create(self, user_id: str, title: Optional[str] = None) -> Conversation:
        now = utc_now()
        values = {
            "id": str(uuid4()),
            "user_id": user_id,
            "title": (title or "").strip() or DEFAULT_TITLE,
            "created_at": now,
            "updated_at": now,
        }
        with get_db_session() as session:
            session.execute(chat_conversations.insert().values(**values))
        return Conversation(**values)

    def list(self, user_id: str) -> List[Conversation]:
        """Most recently active first."""
        with get_db_session() as session:
            rows = session.execute(
                select(chat_conversations)
                .where(chat_conversations.c.user_id == user_id)
                .order_by(chat_conversations.c.updated_at.desc())
            ).all()
        return [_row_to_conversation(r) for r in rows]

    def get(self, user_id: str, conversation_id: str) -> Conversation:
        with get_db_session() as session:
            row = session.execute(
                select(chat_conversations)
                .where(chat_conversations.c.id == conversation_id)
                .where(chat_conversations.c.user_id == user_id)
            ).first()
        if row is None:
            raise NotFoundError("Conversation not found")
        return _row_to_conversation(row)

    def rename(self, user_id: str, conversation_id: str, title: str) -> Conversation:
        title = (title or "").strip()
        if not title:
            title = DEFAULT_TITLE
        with get_db_session() as session:
            result = session.execute(
                update(chat_conversations)
                .where(chat_conversations.c.id == conversation_id)
                .where(chat_conversations.c.user_id == user_id)
                .values(title=title, updated_at=utc_now())
            )
            if result.rowcount == 0:
                raise NotFoundError("Conversation not found")
        return self.get(user_id, conversation_id)

    def delete(self, user_id: str, conversation_id: str) -> None:
        # Messages are removed explicitly; SQLite does not enforce ON DELETE CASCADE by default
        self.get(user_id, conversation_id)
        with get_db_session() as session:
            session.execute(
                delete(chat_messages).where(chat_messages.c.conversation_id == conversation_id)
            )
            session.execute(
                delete(chat_conversations)
                .where(chat_conversations.c.id == conversation_id)
                .where(chat_conversations.c.user_id == user_id)
            )

    def messages(self, user_id: str, conversation_id: str) -> List[ChatMessage]:
        """Oldest first."""
        self.get(user_id, conversation_id)
        with get_db_session() as session:
            rows = session.execute(
                select(chat_messages)
                .where(chat_messages.c.conversation_id == conversation_id)
                .order_by(chat_messages.c.created_at.asc(), chat_messages.c.id.asc())
            ).all()
        return [_row_to_message(r) for r in rows]

    def save_message(self, user_id: str, conversation_id: str, message: ChatMessage) -> ChatMessage:
        """Append a message and bump the conversation's updated_at."""
        self.get(user_id, conversation_id)
        created_at = as_utc(message.timestamp) or utc_now()
        with get_db_session() as session:
            session.execute(
                chat_messages.insert().values(
                    conversation_id=conversation_id,
                    role=message.role,
                    content=message.content,
                    used_tools=message.used_tools,
                    created_at=created_at,
                )
            )
            session.execute(
                update(chat_conversations)
                .where(chat_conversations.c.id == conversation_id)
                .values(updated_at=utc_now())
            )
        return ChatMessage(
            role=message.role,
            content=message.content,
            used_tools=message.used_tools,
            timestamp=created_at,
        )
