"""
Memory system data types.

Closed enums for kind and source, the records handed around by the stores, and
the text normalizers every boundary applies.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ..models.base import utcnow

MAX_MEMORY_LENGTH = 280
MAX_PERSONALIZATION_LENGTH = 1_200

_WHITESPACE = re.compile(r"\s+")


class MemoryKind(str, Enum):
    PREFERENCE = "preference"
    PROFILE = "profile"
    PROJECT = "project"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "MemoryKind":
        """Unknown kinds map to OTHER."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.OTHER


class MemorySource(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"

    @classmethod
    def parse(cls, value: Any) -> "MemorySource":
        """Anything that is not explicitly auto counts as manual."""
        if value == cls.AUTO or value == "auto":
            return cls.AUTO
        return cls.MANUAL


def normalize_text(value: Any, max_length: int) -> str:
    """Trim, collapse whitespace runs to one space, cap length. Non-strings become ''."""
    if not isinstance(value, str):
        return ""
    return _WHITESPACE.sub(" ", value.strip())[:max_length]


def normalize_memory_text(value: Any) -> str:
    return normalize_text(value, MAX_MEMORY_LENGTH)


def normalize_guidance(value: Any) -> str:
    return normalize_text(value, MAX_PERSONALIZATION_LENGTH)


def dedup_key(value: str) -> str:
    """Case- and whitespace-insensitive identity of a memory's text."""
    return _WHITESPACE.sub(" ", value.strip()).lower()


def coerce_confidence(value: Any, default: float) -> float:
    """Finite number clamped to [0, 1]; anything else becomes `default`."""
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return default
    else:
        return default
    if not math.isfinite(number):
        return default
    return min(max(number, 0.0), 1.0)


@dataclass
class MemoryEntry:
    id: int
    user_id: str
    content: str
    kind: MemoryKind = MemoryKind.OTHER
    source: MemorySource = MemorySource.MANUAL
    confidence: float = 1.0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "content": self.content,
            "kind": self.kind.value,
            "source": self.source.value,
            "confidence": self.confidence,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }


@dataclass
class UserSettingsRecord:
    user_id: str
    personalization_guidance: str = ""
    memory_enabled: bool = True
    auto_memory_enabled: bool = True
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def default(cls, user_id: str) -> "UserSettingsRecord":
        return cls(user_id=user_id)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "personalization_guidance": self.personalization_guidance,
            "memory_enabled": self.memory_enabled,
            "auto_memory_enabled": self.auto_memory_enabled,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class AutoMemoryCandidate:
    """A fact proposed by the extraction pass. Never stored as-is."""
    content: str
    kind: MemoryKind = MemoryKind.OTHER
    confidence: float = 0.0
