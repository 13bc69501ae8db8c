from __future__ import annotations

import asyncio

import pytest

from telegram_pi_bot.core.serial_queue import SerialQueue


class BoomError(Exception):
    pass


def test_tasks_run_one_at_a_time_in_submission_order() -> None:
    async def scenario() -> list[str]:
        queue = SerialQueue()
        events: list[str] = []

        def make_task(name: str, delay: float):
            async def task() -> str:
                events.append(f"start:{name}")
                await asyncio.sleep(delay)
                events.append(f"end:{name}")
                return name

            return task

        results = await asyncio.gather(
            queue.enqueue(make_task("a", 0.02)),
            queue.enqueue(make_task("b", 0.0)),
            queue.enqueue(make_task("c", 0.01)),
        )
        assert results == ["a", "b", "c"]
        return events

    assert asyncio.run(scenario()) == ["start:a", "end:a", "start:b", "end:b", "start:c", "end:c"]


def test_failed_task_does_not_block_following_tasks() -> None:
    async def scenario() -> None:
        queue = SerialQueue()

        async def failing() -> None:
            raise BoomError

        async def succeeding() -> str:
            return "ok"

        results = await asyncio.gather(queue.enqueue(failing), queue.enqueue(succeeding), return_exceptions=True)
        assert isinstance(results[0], BoomError)
        assert results[1] == "ok"

    asyncio.run(scenario())


def test_is_idle_tracks_queued_and_running_tasks() -> None:
    async def scenario() -> None:
        queue = SerialQueue()
        release = asyncio.Event()

        async def blocked() -> None:
            await release.wait()

        assert queue.is_idle()
        first = asyncio.create_task(queue.enqueue(blocked))
        second = asyncio.create_task(queue.enqueue(blocked))
        await asyncio.sleep(0)
        assert not queue.is_idle()

        release.set()
        await asyncio.gather(first, second)
        assert queue.is_idle()

    asyncio.run(scenario())


def test_exception_is_raised_to_the_enqueuing_caller() -> None:
    async def scenario() -> None:
        queue = SerialQueue()

        async def failing() -> None:
            raise BoomError("boom")

        with pytest.raises(BoomError, match="boom"):
            await queue.enqueue(failing)
        assert queue.is_idle()

    asyncio.run(scenario())
