"""
Memory and settings persistence.

The stores translate database failures into two soft errors the rest of the
system understands: the memory tables are not installed
(MemorySchemaMissingError) or the database failed for some other reason
(MemoryStoreUnavailableError). Rows are normalized on the way out; a row whose
content normalizes to empty is treated as absent.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from ..core.database import Database
from ..core.errors import MemorySchemaMissingError, MemoryStoreUnavailableError
from ..models.base import as_utc, utcnow
from ..models.memory import MEMORY_TABLES, UserMemory, UserSettings
from .types import (
    MemoryEntry,
    MemoryKind,
    MemorySource,
    UserSettingsRecord,
    coerce_confidence,
    normalize_guidance,
    normalize_memory_text,
)

logger = logging.getLogger(__name__)

MAX_MEMORY_FETCH = 100


def is_schema_missing_error(exc: BaseException) -> bool:
    """True when the error says one of the memory tables does not exist."""
    message = str(exc).lower()
    if not any(table in message for table in MEMORY_TABLES):
        return False
    return "does not exist" in message or "no such table" in message


@asynccontextmanager
async def _guard(operation: str):
    try:
        yield
    except (SQLAlchemyError, OSError) as e:
        if is_schema_missing_error(e):
            raise MemorySchemaMissingError(
                f"Memory schema is not installed ({operation})."
            ) from e
        logger.warning("Memory store %s failed: %s", operation, e)
        raise MemoryStoreUnavailableError(f"Memory store {operation} failed.") from e


def _to_entry(row: UserMemory) -> Optional[MemoryEntry]:
    content = normalize_memory_text(row.content)
    if not content or not row.id or row.id <= 0:
        return None
    return MemoryEntry(
        id=row.id,
        user_id=row.user_id,
        content=content,
        kind=MemoryKind.parse(row.kind),
        source=MemorySource.parse(row.source),
        confidence=coerce_confidence(row.confidence, default=1.0),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        last_used_at=as_utc(row.last_used_at),
    )


def _to_settings(row: UserSettings) -> UserSettingsRecord:
    return UserSettingsRecord(
        user_id=row.user_id,
        personalization_guidance=normalize_guidance(row.personalization_guidance),
        memory_enabled=row.memory_enabled is not False,
        auto_memory_enabled=row.auto_memory_enabled is not False,
        updated_at=as_utc(row.updated_at) or utcnow(),
    )


# ── Interfaces ───────────────────────────────────────────────────────

class MemoryStore(ABC):
    @abstractmethod
    async def list_memories(self, user_id: str, limit: int = MAX_MEMORY_FETCH) -> list[MemoryEntry]:
        """Active memories, most recently updated first."""

    @abstractmethod
    async def create_memory(
        self,
        user_id: str,
        content: str,
        kind: Any = MemoryKind.OTHER,
        source: Any = MemorySource.MANUAL,
        confidence: Any = 1.0,
    ) -> MemoryEntry:
        ...

    @abstractmethod
    async def deactivate_memory(self, user_id: str, memory_id: int) -> bool:
        ...

    @abstractmethod
    async def touch_memories(self, user_id: str, memory_ids: Iterable[int]) -> None:
        ...


class SettingsStore(ABC):
    @abstractmethod
    async def get_or_create(self, user_id: str) -> UserSettingsRecord:
        ...

    @abstractmethod
    async def upsert(
        self,
        user_id: str,
        personalization_guidance: Optional[str] = None,
        memory_enabled: Optional[bool] = None,
        auto_memory_enabled: Optional[bool] = None,
    ) -> UserSettingsRecord:
        ...


# ── SQL implementations ──────────────────────────────────────────────

class SqlMemoryStore(MemoryStore):
    def __init__(self, db: Database):
        self.db = db

    async def list_memories(self, user_id: str, limit: int = MAX_MEMORY_FETCH) -> list[MemoryEntry]:
        limit = min(max(int(limit), 1), MAX_MEMORY_FETCH)
        async with _guard("list"):
            async with self.db.session() as session:
                result = await session.execute(
                    select(UserMemory)
                    .where(
                        UserMemory.user_id == user_id,
                        UserMemory.is_active == True,  # noqa: E712
                    )
                    .order_by(UserMemory.updated_at.desc(), UserMemory.id.desc())
                    .limit(limit)
                )
                rows = result.scalars().all()

        entries = [_to_entry(row) for row in rows]
        return [entry for entry in entries if entry is not None]

    async def create_memory(
        self,
        user_id: str,
        content: str,
        kind: Any = MemoryKind.OTHER,
        source: Any = MemorySource.MANUAL,
        confidence: Any = 1.0,
    ) -> MemoryEntry:
        text = normalize_memory_text(content)
        if not text:
            raise ValueError("Memory text is required.")

        now = utcnow()
        row = UserMemory(
            user_id=user_id,
            content=text,
            kind=MemoryKind.parse(kind).value,
            source=MemorySource.parse(source).value,
            confidence=coerce_confidence(confidence, default=1.0),
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        async with _guard("create"):
            async with self.db.session() as session:
                session.add(row)
                await session.flush()

        entry = _to_entry(row)
        logger.debug("Saved memory %d for %s: %s", row.id, user_id, text[:50])
        return entry

    async def deactivate_memory(self, user_id: str, memory_id: int) -> bool:
        if not isinstance(memory_id, int) or memory_id <= 0:
            return False
        async with _guard("deactivate"):
            async with self.db.session() as session:
                result = await session.execute(
                    update(UserMemory)
                    .where(
                        UserMemory.user_id == user_id,
                        UserMemory.id == memory_id,
                        UserMemory.is_active == True,  # noqa: E712
                    )
                    .values(is_active=False, updated_at=utcnow())
                )
        return (result.rowcount or 0) > 0

    async def touch_memories(self, user_id: str, memory_ids: Iterable[int]) -> None:
        ids = sorted({i for i in memory_ids if isinstance(i, int) and i > 0})
        if not ids:
            return
        now = utcnow()
        async with _guard("touch"):
            async with self.db.session() as session:
                await session.execute(
                    update(UserMemory)
                    .where(
                        UserMemory.user_id == user_id,
                        UserMemory.id.in_(ids),
                        UserMemory.is_active == True,  # noqa: E712
                    )
                    .values(last_used_at=now, updated_at=now)
                )


class SqlSettingsStore(SettingsStore):
    def __init__(self, db: Database):
        self.db = db

    async def _fetch(self, session, user_id: str) -> Optional[UserSettings]:
        result = await session.execute(
            select(UserSettings).where(UserSettings.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, user_id: str) -> UserSettingsRecord:
        async with _guard("settings read"):
            async with self.db.session() as session:
                row = await self._fetch(session, user_id)
                if row is None:
                    # Two first requests can race here; the loser keeps the winner's row
                    now = utcnow()
                    await session.execute(
                        self.db.insert(UserSettings)
                        .values(
                            user_id=user_id,
                            personalization_guidance="",
                            memory_enabled=True,
                            auto_memory_enabled=True,
                            created_at=now,
                            updated_at=now,
                        )
                        .on_conflict_do_nothing(index_elements=["user_id"])
                    )
                    row = await self._fetch(session, user_id)

        if row is None:
            return UserSettingsRecord.default(user_id)
        return _to_settings(row)

    async def upsert(
        self,
        user_id: str,
        personalization_guidance: Optional[str] = None,
        memory_enabled: Optional[bool] = None,
        auto_memory_enabled: Optional[bool] = None,
    ) -> UserSettingsRecord:
        changes: dict[str, Any] = {}
        if personalization_guidance is not None:
            changes["personalization_guidance"] = normalize_guidance(personalization_guidance)
        if memory_enabled is not None:
            changes["memory_enabled"] = bool(memory_enabled)
        if auto_memory_enabled is not None:
            changes["auto_memory_enabled"] = bool(auto_memory_enabled)

        if not changes:
            return await self.get_or_create(user_id)

        now = utcnow()
        values = {
            "user_id": user_id,
            "personalization_guidance": "",
            "memory_enabled": True,
            "auto_memory_enabled": True,
            "created_at": now,
            "updated_at": now,
            **changes,
        }
        stmt = self.db.insert(UserSettings).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id"],
            set_={**changes, "updated_at": now},
        )

        async with _guard("settings write"):
            async with self.db.session() as session:
                await session.execute(stmt)
                row = await self._fetch(session, user_id)

        logger.info("Settings updated for %s: %s", user_id, sorted(changes))
        return _to_settings(row)
