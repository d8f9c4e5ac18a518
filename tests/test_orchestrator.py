import json

import pytest
from sqlalchemy import func, select

from raven.core.background import BackgroundWorker
from raven.core.errors import (
    MemorySchemaMissingError,
    MemoryStoreUnavailableError,
    PersistenceError,
    PrimaryCompletionError,
    QuotaExceededError,
)
from raven.core.flags import FeatureFlags
from raven.memory.extractor import MemoryExtractor
from raven.memory.store import SqlMemoryStore, SqlSettingsStore
from raven.memory.types import MemorySource, UserSettingsRecord
from raven.models.conversation import Message, Thread
from raven.orchestrator import turn as turn_module
from raven.orchestrator.turn import TurnOrchestrator
from raven.services.threads import ThreadStore

from fakes import (
    FailingLLM,
    FakeLLM,
    FakeMemoryStore,
    FakeQuotaGate,
    FakeSettingsStore,
    UnwritableThreadStore,
)

CAPTURE_MESSAGE = "I prefer answers in bullet points, and call me Sam"


async def _build(db, llm, quota=None, memory_store=None, settings_store=None, flags=None, timeout=5.0):
    worker = BackgroundWorker(concurrency=1, queue_size=16)
    worker.start()
    orchestrator = TurnOrchestrator(
        quota_gate=quota or FakeQuotaGate(),
        threads=ThreadStore(db),
        memory_store=memory_store or SqlMemoryStore(db),
        settings_store=settings_store or SqlSettingsStore(db),
        llm=llm,
        extractor=MemoryExtractor(llm, timeout_seconds=1),
        worker=worker,
        flags=flags or FeatureFlags(_env_file=None),
        completion_timeout=timeout,
    )
    return orchestrator, worker


async def _count(db, model) -> int:
    async with db.session() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


def _system_text(call) -> str:
    return "\n".join(m["content"] for m in call["messages"] if m["role"] == "system")


@pytest.mark.asyncio
async def test_denied_quota_leaves_no_trace(db):
    llm = FakeLLM()
    orchestrator, worker = await _build(db, llm, quota=FakeQuotaGate(allowed=False))

    with pytest.raises(QuotaExceededError) as exc:
        await orchestrator.run_turn("u1", "hello")

    assert exc.value.quota.allowed is False
    assert llm.calls == []
    assert await _count(db, Thread) == 0
    assert await _count(db, Message) == 0
    await worker.shutdown()


@pytest.mark.asyncio
async def test_turn_persists_both_messages_and_returns_result(db):
    llm = FakeLLM(replies=["Hi! How can I help?"])
    orchestrator, worker = await _build(db, llm)

    result = await orchestrator.run_turn("u1", "  hello there  ", attachments=["notes.txt"])
    await worker.drain()

    assert result.reply == "Hi! How can I help?"
    assert result.provider == "koboldcpp"
    assert result.quota.used == 1
    messages = await orchestrator.threads.list_messages("u1", result.thread_id)
    assert [(m.role.value, m.content) for m in messages] == [
        ("user", "hello there"), ("assistant", "Hi! How can I help?"),
    ]
    assert llm.calls[0]["messages"][-1]["content"] == (
        "hello there\n\nAttached files (names only): notes.txt"
    )
    await worker.shutdown()


@pytest.mark.asyncio
async def test_existing_thread_is_continued_and_unknown_id_starts_new(db):
    llm = FakeLLM(replies=["one", "two", "three"])
    orchestrator, worker = await _build(db, llm)

    first = await orchestrator.run_turn("u1", "first")
    second = await orchestrator.run_turn("u1", "second", thread_id=first.thread_id)
    third = await orchestrator.run_turn("u1", "third", thread_id="0b0e3a3c-0000-4000-8000-000000000000")

    assert second.thread_id == first.thread_id
    assert third.thread_id != first.thread_id
    assert [m["content"] for m in llm.calls[1]["messages"]] == ["first", "one", "second"]
    await worker.shutdown()


@pytest.mark.asyncio
async def test_empty_message_is_rejected_before_quota(db):
    quota = FakeQuotaGate()
    orchestrator, worker = await _build(db, FakeLLM(), quota=quota)

    with pytest.raises(ValueError):
        await orchestrator.run_turn("u1", "   ")
    assert quota.calls == 0
    await worker.shutdown()


@pytest.mark.asyncio
async def test_relevant_memories_are_injected_and_touched(db):
    store = SqlMemoryStore(db)
    relevant = await store.create_memory("u1", "Writes Python for data pipelines")
    await store.create_memory("u1", "Has a cat named Miso")
    await SqlSettingsStore(db).upsert("u1", personalization_guidance="Keep it short.")

    llm = FakeLLM(replies=["Sure."])
    orchestrator, worker = await _build(db, llm, memory_store=store)

    await orchestrator.run_turn("u1", "how do I speed up my python script?")
    await worker.drain()

    system = _system_text(llm.calls[0])
    assert "- Writes Python for data pipelines" in system
    assert "Miso" not in system
    assert "Keep it short." in system
    assert FakeLLM.system_prompt in system

    [touched] = [m for m in await store.list_memories("u1") if m.id == relevant.id]
    assert touched.last_used_at is not None
    await worker.shutdown()


@pytest.mark.asyncio
async def test_memory_disabled_skips_selection_and_memory_block(db, monkeypatch):
    store = FakeMemoryStore()
    store.add("Writes Python for data pipelines")
    settings = FakeSettingsStore(UserSettingsRecord(user_id="u1", memory_enabled=False))

    def explode(*args, **kwargs):
        raise AssertionError("selection must not run")

    monkeypatch.setattr(turn_module, "select_relevant_memories", explode)

    llm = FakeLLM(replies=["ok"])
    orchestrator, worker = await _build(db, llm, memory_store=store, settings_store=settings)

    await orchestrator.run_turn("u1", "python question")
    await worker.drain()

    assert "Known facts" not in _system_text(llm.calls[0])
    assert store.list_calls == 0
    await worker.shutdown()


@pytest.mark.asyncio
async def test_schema_missing_degrades_to_defaults(db):
    error = MemorySchemaMissingError("not installed")
    store = FakeMemoryStore(error=error)
    settings = FakeSettingsStore(error=error)

    llm = FakeLLM(replies=["fine", json.dumps({"save": [{"content": "Name is Sam", "confidence": 1}]})])
    orchestrator, worker = await _build(db, llm, memory_store=store, settings_store=settings)

    context = await orchestrator._load_memory_context("u1")
    assert context.settings.personalization_guidance == ""
    assert context.settings.memory_enabled is True
    assert context.settings.auto_memory_enabled is True
    assert context.memories == []

    result = await orchestrator.run_turn("u1", CAPTURE_MESSAGE)
    await worker.drain()

    assert result.reply == "fine"
    # No extraction call when the store is unavailable
    assert len(llm.calls) == 1
    await worker.shutdown()


@pytest.mark.asyncio
async def test_store_unavailable_degrades_without_failing(db):
    store = FakeMemoryStore(error=MemoryStoreUnavailableError("db down"))
    llm = FakeLLM(replies=["still here"])
    orchestrator, worker = await _build(db, llm, memory_store=store)

    result = await orchestrator.run_turn("u1", CAPTURE_MESSAGE)
    await worker.drain()

    assert result.reply == "still here"
    assert len(llm.calls) == 1
    await worker.shutdown()


@pytest.mark.asyncio
async def test_auto_memory_is_extracted_and_merged_in_background(db):
    store = SqlMemoryStore(db)
    await store.create_memory("u1", "Prefers answers in bullet points")
    extraction = {"save": [
        {"content": "prefers answers in   BULLET points", "kind": "preference", "confidence": 0.95},
        {"content": "Goes by Sam", "kind": "profile", "confidence": 0.9},
        {"content": "Might like cats", "kind": "other", "confidence": 0.4},
    ]}
    llm = FakeLLM(replies=["Got it, Sam.", f"```json\n{json.dumps(extraction)}\n```"])
    orchestrator, worker = await _build(db, llm, memory_store=store)

    await orchestrator.run_turn("u1", CAPTURE_MESSAGE)
    await worker.drain()

    assert len(llm.calls) == 2
    assert llm.calls[1]["reasoning"] is False
    memories = await store.list_memories("u1")
    assert sorted(m.content for m in memories) == ["Goes by Sam", "Prefers answers in bullet points"]
    [auto] = [m for m in memories if m.source == MemorySource.AUTO]
    assert auto.confidence == 0.9
    await worker.shutdown()


@pytest.mark.asyncio
async def test_unparsable_extraction_persists_nothing(db):
    store = SqlMemoryStore(db)
    llm = FakeLLM(replies=["Noted!", "Sure, I will remember that you like bullet points."])
    orchestrator, worker = await _build(db, llm, memory_store=store)

    await orchestrator.run_turn("u1", CAPTURE_MESSAGE)
    await worker.drain()

    assert len(llm.calls) == 2
    assert await store.list_memories("u1") == []
    await worker.shutdown()


@pytest.mark.asyncio
async def test_auto_memory_respects_user_and_global_switches(db):
    settings = FakeSettingsStore(UserSettingsRecord(user_id="u1", auto_memory_enabled=False))
    llm = FakeLLM(replies=["ok"])
    orchestrator, worker = await _build(db, llm, settings_store=settings)
    await orchestrator.run_turn("u1", CAPTURE_MESSAGE)
    await worker.drain()
    assert len(llm.calls) == 1
    await worker.shutdown()

    flags = FeatureFlags(_env_file=None, FF_ENABLE_AUTO_MEMORY=False)
    llm = FakeLLM(replies=["ok"])
    orchestrator, worker = await _build(db, llm, flags=flags)
    await orchestrator.run_turn("u1", CAPTURE_MESSAGE)
    await worker.drain()
    assert len(llm.calls) == 1
    await worker.shutdown()


@pytest.mark.asyncio
async def test_primary_failure_is_hard_and_carries_provider(db):
    orchestrator, worker = await _build(db, FailingLLM(provider="openrouter"))

    with pytest.raises(PrimaryCompletionError) as exc:
        await orchestrator.run_turn("u1", "hello")

    assert exc.value.provider == "openrouter"
    async with db.session() as session:
        roles = (await session.execute(select(Message.role))).scalars().all()
    assert roles == ["user"]
    await worker.shutdown()


@pytest.mark.asyncio
async def test_unsaved_user_message_fails_before_completion(db):
    llm = FakeLLM(replies=["never sent"])
    orchestrator, worker = await _build(db, llm)
    orchestrator.threads = UnwritableThreadStore(db)

    with pytest.raises(PersistenceError):
        await orchestrator.run_turn("u1", "hello")

    assert llm.calls == []
    assert await _count(db, Message) == 0
    assert worker.stats()["submitted_total"] == 0
    await worker.shutdown()


@pytest.mark.asyncio
async def test_primary_timeout_fails_the_turn(db):
    orchestrator, worker = await _build(db, FakeLLM(replies=["late"], delay=0.5), timeout=0.01)

    with pytest.raises(PrimaryCompletionError, match="timed out"):
        await orchestrator.run_turn("u1", "hello")
    await worker.shutdown()


@pytest.mark.asyncio
async def test_background_failures_do_not_reach_the_caller(db):
    class TouchFails(FakeMemoryStore):
        async def touch_memories(self, user_id, memory_ids):
            raise RuntimeError("touch exploded")

    store = TouchFails()
    store.add("Writes Python for data pipelines")
    orchestrator, worker = await _build(db, FakeLLM(replies=["ok"]), memory_store=store)

    result = await orchestrator.run_turn("u1", "python question")
    await worker.drain()

    assert result.reply == "ok"
    assert worker.stats()["failed_total"] == 1
    await worker.shutdown()
