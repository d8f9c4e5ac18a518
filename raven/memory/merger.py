"""
Merge extracted candidates into the user's memory set.

Gate on confidence, drop anything textually equal (case and whitespace
insensitive) to an active memory or an earlier candidate, cap inserts per turn.
"""

import logging

from .types import AutoMemoryCandidate, MemoryEntry, MemorySource, dedup_key

logger = logging.getLogger(__name__)

MIN_AUTO_MEMORY_CONFIDENCE = 0.78
MAX_AUTO_INSERT_PER_TURN = 3


def plan_auto_memories(
    candidates: list[AutoMemoryCandidate],
    existing: list[MemoryEntry],
) -> list[AutoMemoryCandidate]:
    """Pick the candidates that should be persisted, in their original order."""
    seen = {dedup_key(memory.content) for memory in existing}
    accepted = []

    for candidate in candidates:
        if len(accepted) >= MAX_AUTO_INSERT_PER_TURN:
            break
        if candidate.confidence < MIN_AUTO_MEMORY_CONFIDENCE:
            continue
        key = dedup_key(candidate.content)
        if not key or key in seen:
            continue
        seen.add(key)
        accepted.append(candidate)

    return accepted


async def merge_auto_memories(
    store,
    user_id: str,
    candidates: list[AutoMemoryCandidate],
    existing: list[MemoryEntry],
) -> list[MemoryEntry]:
    accepted = plan_auto_memories(candidates, existing)
    created = []
    for candidate in accepted:
        memory = await store.create_memory(
            user_id,
            candidate.content,
            kind=candidate.kind,
            source=MemorySource.AUTO,
            confidence=candidate.confidence,
        )
        created.append(memory)

    if candidates:
        logger.info(
            "Auto-memory merge for %s: %d candidate(s), %d saved",
            user_id, len(candidates), len(created),
        )
    return created
