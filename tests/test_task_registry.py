"""
Tests for the background task registry.
"""

import asyncio

import pytest

from playhub.task_registry import TaskRegistry


async def forever():
    await asyncio.Event().wait()


class TestTaskRegistry:
    @pytest.mark.asyncio
    async def test_keyed_tasks_can_be_cancelled(self):
        registry = TaskRegistry()
        task = registry.spawn(forever(), name="watch", key="session:1")

        assert registry.get("session:1") is task
        assert registry.cancel("session:1")
        await asyncio.gather(task, return_exceptions=True)

        assert task.cancelled()
        assert registry.get("session:1") is None
        assert not registry.cancel("session:1")

    @pytest.mark.asyncio
    async def test_same_key_replaces_previous_task(self):
        registry = TaskRegistry()
        first = registry.spawn(forever(), key="auto-sync")
        second = registry.spawn(forever(), key="auto-sync")
        await asyncio.sleep(0)

        assert first.cancelled()
        assert registry.get("auto-sync") is second
        await registry.cancel_all_tasks(timeout=1.0)

    @pytest.mark.asyncio
    async def test_finished_tasks_are_forgotten(self):
        registry = TaskRegistry()
        task = registry.spawn(asyncio.sleep(0), key="quick")
        await task
        await asyncio.sleep(0)

        assert registry.get("quick") is None
        assert registry.get_active_task_count() == 0

    @pytest.mark.asyncio
    async def test_cancel_all_and_shutdown_state(self):
        registry = TaskRegistry()
        registry.spawn(forever())
        registry.spawn(forever())

        assert await registry.cancel_all_tasks(timeout=1.0) == 2

        late = registry.spawn(forever())
        await asyncio.sleep(0)
        assert late.cancelled()

        registry.reset_shutdown_state()
        task = registry.spawn(forever())
        assert registry.get_active_task_count() == 1
        await registry.cancel_all_tasks(timeout=1.0)
        assert task.cancelled()
