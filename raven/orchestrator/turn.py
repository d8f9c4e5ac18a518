"""
Turn orchestration.

Quota → append user message → load history → select memories → compose →
primary completion → append assistant message → respond.

Marking used memories and the extract+merge pass are handed to the background
worker once the response is settled; they can fail without affecting the turn.
Memory failures degrade the turn to no-memory behavior instead of failing it.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from ..core.background import BackgroundWorker
from ..core.errors import (
    MemorySchemaMissingError,
    MemoryStoreUnavailableError,
    PrimaryCompletionError,
    ProviderError,
    QuotaExceededError,
)
from ..core.flags import FeatureFlags
from ..memory.extractor import MemoryExtractor, should_attempt_capture
from ..memory.merger import merge_auto_memories
from ..memory.prompt import compose_personalization_prompt
from ..memory.relevance import select_relevant_memories
from ..memory.store import MemoryStore, SettingsStore
from ..memory.types import MemoryEntry, UserSettingsRecord
from ..services.quota import QuotaGate, QuotaResult
from ..services.threads import MessageRole, ThreadStore, build_model_history, normalize_attachments

logger = logging.getLogger(__name__)


@dataclass
class MemoryContext:
    settings: UserSettingsRecord
    memories: list[MemoryEntry] = field(default_factory=list)
    memory_enabled: bool = True
    store_available: bool = True


@dataclass
class TurnResult:
    reply: str
    provider: str
    quota: QuotaResult
    thread_id: str

    def to_dict(self) -> dict:
        return {
            "reply": self.reply,
            "provider": self.provider,
            "quota": self.quota.to_dict(),
            "thread_id": self.thread_id,
        }


class TurnOrchestrator:
    def __init__(
        self,
        *,
        quota_gate: QuotaGate,
        threads: ThreadStore,
        memory_store: MemoryStore,
        settings_store: SettingsStore,
        llm,
        extractor: MemoryExtractor,
        worker: BackgroundWorker,
        flags: FeatureFlags,
        history_window: int = 20,
        memory_fetch_limit: int = 100,
        memory_prompt_limit: int = 8,
        completion_timeout: float = 180.0,
    ):
        self.quota_gate = quota_gate
        self.threads = threads
        self.memory_store = memory_store
        self.settings_store = settings_store
        self.llm = llm
        self.extractor = extractor
        self.worker = worker
        self.flags = flags
        self.history_window = history_window
        self.memory_fetch_limit = memory_fetch_limit
        self.memory_prompt_limit = memory_prompt_limit
        self.completion_timeout = completion_timeout

    async def run_turn(
        self,
        user_id: str,
        message: str,
        attachments: Optional[list[str]] = None,
        thread_id: Optional[str] = None,
        reasoning_enabled: bool = False,
        provider: Optional[str] = None,
    ) -> TurnResult:
        start = time.monotonic()
        message = (message or "").strip()
        if not message:
            raise ValueError("Message is required.")
        attachments = normalize_attachments(attachments or [])

        # 1. Quota. A denied turn leaves no trace.
        quota = await self.quota_gate.consume(user_id)
        if not quota.allowed:
            raise QuotaExceededError(quota)

        # 2. Thread + user message. If this write fails the turn stops here.
        thread = None
        if thread_id and thread_id.strip():
            thread = await self.threads.get_thread(user_id, thread_id.strip())
        if thread is None:
            thread = await self.threads.create_thread(user_id, message)
        await self.threads.add_message(user_id, thread.id, MessageRole.USER, message, attachments)

        # 3. History
        recent = await self.threads.list_recent_messages(user_id, thread.id, limit=self.history_window)
        history = build_model_history(recent, window=self.history_window)

        # 4. Memories + compose
        context = await self._load_memory_context(user_id)
        selected: list[MemoryEntry] = []
        if context.memory_enabled and context.memories:
            selected = select_relevant_memories(
                context.memories, message, limit=self.memory_prompt_limit,
            )
        block = compose_personalization_prompt(
            context.settings.personalization_guidance,
            [memory.content for memory in selected],
        )
        model_messages = history
        if block:
            model_messages = [
                {"role": "system", "content": block},
                {"role": "system", "content": self.llm.system_prompt},
            ] + history

        # 5. Primary completion
        try:
            completion = await asyncio.wait_for(
                self.llm.complete(model_messages, provider=provider, reasoning=reasoning_enabled),
                timeout=self.completion_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.exception("Primary completion timed out after %.0fs (thread=%s)", self.completion_timeout, thread.id)
            raise PrimaryCompletionError(
                f"Completion timed out after {self.completion_timeout:.0f}s.", provider=provider,
            ) from e
        except ProviderError as e:
            logger.exception("Primary completion failed (thread=%s): %s", thread.id, e)
            raise PrimaryCompletionError(str(e), provider=e.provider) from e

        # 6. Assistant message
        await self.threads.add_message(user_id, thread.id, MessageRole.ASSISTANT, completion.reply, [])
        try:
            await self.threads.touch_thread(thread.id)
        except Exception as e:
            logger.warning("Failed to touch thread %s: %s", thread.id, e)

        result = TurnResult(
            reply=completion.reply,
            provider=completion.provider,
            quota=quota,
            thread_id=thread.id,
        )

        # 7. Background work, after the response is settled
        if selected:
            ids = [memory.id for memory in selected]
            self.worker.submit(
                "touch-memories",
                lambda: self.memory_store.touch_memories(user_id, ids),
            )
        if self._should_capture(context, message):
            self.worker.submit(
                "auto-memory",
                lambda: self._capture_memories(user_id, message, completion.reply, completion.provider),
            )

        logger.info(
            "Turn done: user=%s thread=%s provider=%s memories=%d quota=%d/%d %dms",
            user_id, thread.id, completion.provider, len(selected),
            quota.used, quota.limit, int((time.monotonic() - start) * 1000),
        )
        return result

    # ── Memory context ───────────────────────────────────────────────

    async def _load_memory_context(self, user_id: str) -> MemoryContext:
        """Settings + active memories, degrading to defaults when the store fails."""
        try:
            settings = await self.settings_store.get_or_create(user_id)
            memory_enabled = self.flags.enable_memory and settings.memory_enabled
            memories = []
            if memory_enabled:
                memories = await self.memory_store.list_memories(user_id, limit=self.memory_fetch_limit)
            return MemoryContext(settings=settings, memories=memories, memory_enabled=memory_enabled)
        except MemorySchemaMissingError:
            logger.warning("Memory schema missing, continuing without memory (user=%s)", user_id)
        except MemoryStoreUnavailableError as e:
            logger.warning("Memory store unavailable, continuing without memory (user=%s): %s", user_id, e)

        return MemoryContext(
            settings=UserSettingsRecord.default(user_id),
            memories=[],
            memory_enabled=False,
            store_available=False,
        )

    def _should_capture(self, context: MemoryContext, message: str) -> bool:
        return (
            self.flags.enable_auto_memory
            and context.store_available
            and context.memory_enabled
            and context.settings.auto_memory_enabled
            and should_attempt_capture(message)
        )

    async def _capture_memories(self, user_id: str, message: str, reply: str, provider: str) -> None:
        candidates = await self.extractor.extract(message, reply, provider=provider)
        if not candidates:
            return
        # Re-read so candidates are deduped against what is stored right now
        existing = await self.memory_store.list_memories(user_id, limit=self.memory_fetch_limit)
        await merge_auto_memories(self.memory_store, user_id, candidates, existing)
