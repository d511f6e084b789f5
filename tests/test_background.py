import asyncio

import pytest

from background import BackgroundTasks


@pytest.mark.asyncio
async def test_failures_are_logged_not_raised(caplog):
    tasks = BackgroundTasks()

    async def boom():
        raise RuntimeError("kaput")

    task = tasks.spawn(boom(), name="boom")
    assert await task is None
    assert "Background task boom failed" in caplog.text


@pytest.mark.asyncio
async def test_tasks_are_held_until_done():
    tasks = BackgroundTasks()
    gate = asyncio.Event()

    async def wait():
        await gate.wait()
        return "ok"

    task = tasks.spawn(wait())
    assert len(tasks) == 1
    gate.set()
    assert await task == "ok"
    await asyncio.sleep(0)
    assert len(tasks) == 0


@pytest.mark.asyncio
async def test_drain_cancels_stragglers():
    tasks = BackgroundTasks()
    finished = []

    async def quick():
        finished.append("quick")

    async def slow():
        await asyncio.sleep(60)
        finished.append("slow")

    tasks.spawn(quick())
    slow_task = tasks.spawn(slow())
    await tasks.drain(timeout=0.05)
    assert finished == ["quick"]
    assert slow_task.cancelled()
