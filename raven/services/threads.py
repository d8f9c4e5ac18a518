"""
Chat threads and their message history.

Threads are per user; every read is scoped by user_id so one user can never
see another's thread. Attachments are stored as file names only and rendered
into the model history as an inline note.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from ..core.database import Database
from ..core.errors import PersistenceError
from ..models.base import as_utc, utcnow
from ..models.conversation import Message, Thread

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 60
DEFAULT_TITLE = "New chat"
DEFAULT_HISTORY_WINDOW = 20

_WHITESPACE = re.compile(r"\s+")


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: Any) -> "MessageRole":
        if value in ("assistant", cls.ASSISTANT):
            return cls.ASSISTANT
        if value in ("system", cls.SYSTEM):
            return cls.SYSTEM
        return cls.USER


@dataclass
class ThreadRecord:
    id: str
    user_id: str
    title: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class MessageRecord:
    id: int
    thread_id: str
    role: MessageRole
    content: str
    attachments: list[str] = field(default_factory=list)
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "role": self.role.value,
            "content": self.content,
            "attachments": list(self.attachments),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ── Helpers ──────────────────────────────────────────────────────────

def normalize_thread_title(message: str) -> str:
    title = _WHITESPACE.sub(" ", (message or "").strip())
    return title[:MAX_TITLE_LENGTH] if title else DEFAULT_TITLE


def normalize_attachments(value: Any) -> list[str]:
    """Keep non-empty string names only."""
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def format_user_message_for_model(content: str, attachments: list[str]) -> str:
    if not attachments:
        return content
    return f"{content}\n\nAttached files (names only): {', '.join(attachments)}"


def build_model_history(messages: list[MessageRecord], window: int = DEFAULT_HISTORY_WINDOW) -> list[dict]:
    """Last `window` messages as completion input, oldest first."""
    history = []
    for message in messages[-window:] if window > 0 else []:
        content = message.content
        if message.role == MessageRole.USER and message.attachments:
            content = format_user_message_for_model(content, message.attachments)
        history.append({"role": message.role.value, "content": content})
    return history


def is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _to_thread(row: Thread) -> ThreadRecord:
    return ThreadRecord(
        id=row.id,
        user_id=row.user_id,
        title=row.title or DEFAULT_TITLE,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _to_message(row: Message) -> MessageRecord:
    return MessageRecord(
        id=row.id,
        thread_id=row.thread_id,
        role=MessageRole.parse(row.role),
        content=row.content or "",
        attachments=normalize_attachments(row.attachments),
        created_at=as_utc(row.created_at),
    )


# ── Store ────────────────────────────────────────────────────────────

class ThreadStore:
    def __init__(self, db: Database):
        self.db = db

    async def get_thread(self, user_id: str, thread_id: str) -> Optional[ThreadRecord]:
        if not thread_id or not is_uuid(thread_id):
            return None
        async with self.db.session() as session:
            result = await session.execute(
                select(Thread).where(Thread.id == thread_id, Thread.user_id == user_id)
            )
            row = result.scalar_one_or_none()
        return _to_thread(row) if row else None

    async def create_thread(self, user_id: str, title: str) -> ThreadRecord:
        now = utcnow()
        row = Thread(
            user_id=user_id,
            title=normalize_thread_title(title),
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.db.session() as session:
                session.add(row)
                await session.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create thread: {e}") from e
        logger.info("Created thread %s for %s", row.id, user_id)
        return _to_thread(row)

    async def list_threads(self, user_id: str, limit: int = 100) -> list[ThreadRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Thread)
                .where(Thread.user_id == user_id)
                .order_by(Thread.updated_at.desc())
                .limit(limit)
            )
            rows = result.scalars().all()
        return [_to_thread(row) for row in rows]

    async def add_message(
        self,
        user_id: str,
        thread_id: str,
        role: MessageRole,
        content: str,
        attachments: Optional[list[str]] = None,
    ) -> MessageRecord:
        row = Message(
            thread_id=thread_id,
            user_id=user_id,
            role=MessageRole.parse(role).value,
            content=content,
            attachments=normalize_attachments(attachments or []),
            created_at=utcnow(),
            updated_at=utcnow(),
        )
        try:
            async with self.db.session() as session:
                session.add(row)
                await session.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save {row.role} message: {e}") from e
        return _to_message(row)

    async def list_messages(self, user_id: str, thread_id: str) -> list[MessageRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.thread_id == thread_id, Message.user_id == user_id)
                .order_by(Message.id)
            )
            rows = result.scalars().all()
        return [_to_message(row) for row in rows]

    async def list_recent_messages(
        self,
        user_id: str,
        thread_id: str,
        limit: int = DEFAULT_HISTORY_WINDOW,
    ) -> list[MessageRecord]:
        """Most recent `limit` messages, oldest first."""
        async with self.db.session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.thread_id == thread_id, Message.user_id == user_id)
                .order_by(Message.id.desc())
                .limit(limit)
            )
            rows = list(result.scalars().all())
        rows.reverse()
        return [_to_message(row) for row in rows]

    async def touch_thread(self, thread_id: str) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(Thread).where(Thread.id == thread_id).values(updated_at=utcnow())
            )

    async def rename_thread(self, user_id: str, thread_id: str, title: str) -> Optional[ThreadRecord]:
        if not is_uuid(thread_id):
            return None
        async with self.db.session() as session:
            result = await session.execute(
                update(Thread)
                .where(Thread.id == thread_id, Thread.user_id == user_id)
                .values(title=normalize_thread_title(title), updated_at=utcnow())
            )
            if not result.rowcount:
                return None
        return await self.get_thread(user_id, thread_id)

    async def delete_thread(self, user_id: str, thread_id: str) -> bool:
        if not is_uuid(thread_id):
            return False
        async with self.db.session() as session:
            # Messages first: SQLite ignores ON DELETE CASCADE unless foreign keys are enabled
            await session.execute(
                delete(Message).where(Message.thread_id == thread_id, Message.user_id == user_id)
            )
            result = await session.execute(
                delete(Thread).where(Thread.id == thread_id, Thread.user_id == user_id)
            )
        deleted = (result.rowcount or 0) > 0
        if deleted:
            logger.info("Deleted thread %s for %s", thread_id, user_id)
        return deleted
