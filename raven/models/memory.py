"""
User memory persistence.

Stores durable facts about a user that persist across threads, plus the
per-user personalization settings. Rows are soft-deleted via is_active.
Kinds: preference, profile, project, other. Sources: manual, auto.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, Boolean, Float, Integer, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from .base import TimestampedBase

# Optional schema: may be absent when FF_CREATE_MEMORY_SCHEMA is off
MEMORY_TABLES = ("chat_user_settings", "chat_user_memories")


class UserMemory(TimestampedBase):
    __tablename__ = "chat_user_memories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False, default="other")
    source: Mapped[str] = mapped_column(String, nullable=False, default="manual")
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class UserSettings(TimestampedBase):
    __tablename__ = "chat_user_settings"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    personalization_guidance: Mapped[str] = mapped_column(Text, nullable=False, default="")
    memory_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    auto_memory_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
