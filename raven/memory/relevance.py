"""
Relevance selection for stored memories.

Ranks a user's memories against the latest message with lexical overlap plus
small recency / manual-origin / confidence bonuses. When at least one memory
shares a token with the message, only overlapping memories are kept; otherwise
every memory competes on the bonuses alone so generic turns still get some
personalization.
"""

import re
from datetime import datetime, timezone
from typing import Any, Optional

from .types import MemoryEntry, MemorySource

DEFAULT_SELECT_LIMIT = 8
MIN_TOKEN_LENGTH = 3
UNKNOWN_AGE_DAYS = 30.0

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


def tokenize(text: str) -> set[str]:
    cleaned = _NON_ALNUM.sub(" ", (text or "").lower())
    return {token for token in cleaned.split() if len(token) >= MIN_TOKEN_LENGTH}


def _age_days(updated_at: Any, now: datetime) -> float:
    if isinstance(updated_at, str):
        try:
            updated_at = datetime.fromisoformat(updated_at.strip().replace("Z", "+00:00"))
        except ValueError:
            return UNKNOWN_AGE_DAYS
    if not isinstance(updated_at, datetime):
        return UNKNOWN_AGE_DAYS
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    return max((now - updated_at).total_seconds() / 86400, 0.0)


def score_memory(memory: MemoryEntry, prompt_tokens: set[str], now: datetime) -> tuple[int, float]:
    """Returns (overlap, score)."""
    overlap = len(tokenize(memory.content) & prompt_tokens) if prompt_tokens else 0
    recency_bonus = max(0.0, 1.5 - _age_days(memory.updated_at, now) / 20)
    manual_bonus = 0.3 if memory.source == MemorySource.MANUAL else 0.0
    confidence_bonus = memory.confidence * 0.7
    return overlap, overlap * 2 + recency_bonus + manual_bonus + confidence_bonus


def select_relevant_memories(
    memories: list[MemoryEntry],
    latest_message: str,
    limit: int = DEFAULT_SELECT_LIMIT,
    now: Optional[datetime] = None,
) -> list[MemoryEntry]:
    if not memories or limit <= 0:
        return []

    now = now or datetime.now(timezone.utc)
    prompt_tokens = tokenize(latest_message)

    scored = []
    for memory in memories:
        overlap, score = score_memory(memory, prompt_tokens, now)
        scored.append((memory, overlap, score))

    if any(overlap > 0 for _, overlap, _ in scored):
        scored = [item for item in scored if item[1] > 0]

    # sorted() is stable, so equal scores keep input order
    ranked = sorted(scored, key=lambda item: item[2], reverse=True)
    return [memory for memory, _, _ in ranked[:limit]]
