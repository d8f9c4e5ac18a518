import asyncio
import logging

import pytest

from raven.core.background import BackgroundWorker


@pytest.mark.asyncio
async def test_jobs_run_and_failures_are_logged_not_raised(caplog):
    worker = BackgroundWorker(concurrency=2, queue_size=8)
    worker.start()
    done = []

    async def ok():
        done.append("ok")

    async def boom():
        raise RuntimeError("kaboom")

    with caplog.at_level(logging.ERROR, logger="raven.core.background"):
        assert worker.submit("ok-job", ok)
        assert worker.submit("boom-job", boom)
        await worker.drain()

    assert done == ["ok"]
    stats = worker.stats()
    assert stats["succeeded_total"] == 1
    assert stats["failed_total"] == 1
    assert "boom-job" in stats["last_error"]
    assert any("boom-job" in record.getMessage() for record in caplog.records)

    await worker.shutdown()
    assert not worker.running


@pytest.mark.asyncio
async def test_full_queue_drops_jobs():
    worker = BackgroundWorker(concurrency=1, queue_size=1)
    # Not started, so nothing drains the queue
    assert worker.submit("first", lambda: asyncio.sleep(0))
    assert worker.submit("second", lambda: asyncio.sleep(0)) is False
    assert worker.stats()["dropped_total"] == 1

    worker.start()
    await worker.drain()
    await worker.shutdown()
