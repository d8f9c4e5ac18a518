"""
Auto-memory extraction.

After a turn, a second constrained completion call is asked to pull durable
facts about the user out of the exchange. The reply is parsed defensively:
models wrap JSON in code fences or chatter around it, so several recovery
strategies are tried in order. Nothing here ever raises to the caller.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Union

from .types import AutoMemoryCandidate, MemoryKind, coerce_confidence, normalize_memory_text

logger = logging.getLogger(__name__)

MIN_CAPTURE_LENGTH = 14
MAX_CANDIDATES = 6

# ── Capture gate ─────────────────────────────────────────────────────

CAPTURE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bi\s+(?:really\s+)?prefer\b",
        r"\bcall\s+me\b",
        r"\bremember\s+(?:that|this)\b",
        r"\bmy\s+(?:name|timezone|time\s+zone|project|role|company|goal)\b",
        r"\bi\s+am\s+an?\b",
        r"\bi'?m\s+an?\b",
        r"\bi\s+(?:work|live)\s+(?:at|in|for)\b",
        r"\bi\s+(?:like|love|hate|dislike)\b",
        r"\b(?:always|never)\s+(?:use|answer|reply|respond)\b",
        r"\bdon'?t\s+(?:use|call)\b",
    )
]


def should_attempt_capture(message: str) -> bool:
    """Cheap gate so most turns never pay for an extraction call."""
    text = (message or "").strip()
    if len(text) < MIN_CAPTURE_LENGTH:
        return False
    return any(pattern.search(text) for pattern in CAPTURE_PATTERNS)


# ── Instruction ──────────────────────────────────────────────────────

EXTRACTION_INSTRUCTION = """You extract durable facts about the user from one chat exchange.
Only keep facts that will still be true and useful in future conversations:
stable preferences, identity details, ongoing projects, standing instructions.
Ignore one-off requests, questions, and anything about the assistant.

Return strict JSON and nothing else, in this exact shape:
{"save": [{"content": "<short fact in third person>", "kind": "preference|profile|project|other", "confidence": 0.0}], "delete": []}

Rules:
- "content" is one short sentence, at most 280 characters.
- "confidence" is between 0 and 1. Use 0.9 or higher only when the user stated it explicitly.
- Return {"save": [], "delete": []} when nothing qualifies."""


def build_extraction_messages(user_message: str, assistant_reply: str) -> list[dict]:
    exchange = f"User message:\n{user_message.strip()}\n\nAssistant reply:\n{assistant_reply.strip()}"
    return [
        {"role": "system", "content": EXTRACTION_INSTRUCTION},
        {"role": "user", "content": exchange},
    ]


# ── Parsing ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Parsed:
    value: dict


@dataclass(frozen=True)
class Malformed:
    reason: str


ParseResult = Union[Parsed, Malformed]

_FENCE = re.compile(r"```[a-zA-Z0-9_-]*\s*([\s\S]*?)```")


def _load_object(text: str) -> Optional[dict]:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def parse_extraction_reply(reply: str) -> ParseResult:
    """
    Try, in order: the whole reply, the inside of a code fence, the span from
    the first '{' to the last '}'. First one that yields a JSON object wins.
    """
    text = (reply or "").strip()
    if not text:
        return Malformed("empty reply")

    attempts = [text]

    fenced = _FENCE.search(text)
    if fenced:
        attempts.append(fenced.group(1).strip())

    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        attempts.append(text[start:end + 1])

    for attempt in attempts:
        value = _load_object(attempt)
        if value is not None:
            return Parsed(value)

    return Malformed("no JSON object found in reply")


def _parse_candidate(item: Any) -> Optional[AutoMemoryCandidate]:
    if not isinstance(item, dict):
        return None
    content = normalize_memory_text(item.get("content"))
    if not content:
        return None
    return AutoMemoryCandidate(
        content=content,
        kind=MemoryKind.parse(item.get("kind")),
        confidence=coerce_confidence(item.get("confidence"), default=0.0),
    )


def normalize_candidates(payload: dict) -> list[AutoMemoryCandidate]:
    """Validate the `save` array. The optional `delete` array is ignored."""
    items = payload.get("save")
    if not isinstance(items, list):
        return []

    candidates = []
    for item in items:
        candidate = _parse_candidate(item)
        if candidate is not None:
            candidates.append(candidate)
        if len(candidates) >= MAX_CANDIDATES:
            break
    return candidates


# ── Extractor ────────────────────────────────────────────────────────

class MemoryExtractor:
    def __init__(self, llm, timeout_seconds: float = 20.0):
        self._llm = llm
        self._timeout = timeout_seconds

    async def extract(
        self,
        user_message: str,
        assistant_reply: str,
        provider: Optional[str] = None,
    ) -> list[AutoMemoryCandidate]:
        messages = build_extraction_messages(user_message, assistant_reply)
        try:
            completion = await asyncio.wait_for(
                self._llm.complete(messages, provider=provider, reasoning=False),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Memory extraction timed out after %.1fs", self._timeout)
            return []
        except Exception as e:
            logger.warning("Memory extraction call failed: %s", e)
            return []

        result = parse_extraction_reply(completion.reply)
        if isinstance(result, Malformed):
            logger.info("Memory extraction reply unusable: %s", result.reason)
            return []

        candidates = normalize_candidates(result.value)
        logger.info("Memory extraction: %d candidate(s)", len(candidates))
        return candidates
