"""Tests for RequestCoalescer."""

import asyncio
import gc

import pytest

from schoolsync.services.deduplicator import RequestCoalescer
from schoolsync.services.errors import ServerError


@pytest.mark.asyncio
async def test__coalesce__failure_after_all_subscribers_left_is_not_reported() -> None:
    loop = asyncio.get_running_loop()
    reported: list[dict] = []
    previous_handler = loop.get_exception_handler()
    loop.set_exception_handler(lambda _loop, context: reported.append(context))

    coalescer = RequestCoalescer()
    gate = asyncio.Event()

    async def failing_fetch() -> None:
        await gate.wait()
        raise ServerError("Internal Server Error", status=500)

    try:
        subscriber = asyncio.create_task(coalescer.coalesce("student:42", failing_fetch))
        await asyncio.sleep(0.01)
        subscriber.cancel()
        await asyncio.sleep(0.01)

        gate.set()
        await asyncio.sleep(0.01)
        del subscriber
        gc.collect()
    finally:
        loop.set_exception_handler(previous_handler)

    assert coalescer.get_in_flight_keys() == []
    assert coalescer.get_stats().abandoned == 1
    assert reported == []


@pytest.mark.asyncio
async def test__coalesce__forget_starts_a_new_request() -> None:
    coalescer = RequestCoalescer()
    gate = asyncio.Event()
    calls = 0

    async def fetch() -> int:
        nonlocal calls
        calls += 1
        await gate.wait()
        return calls

    first = asyncio.create_task(coalescer.coalesce("student", fetch))
    await asyncio.sleep(0)
    assert await coalescer.forget(["student"]) == 1
    second = asyncio.create_task(coalescer.coalesce("student", fetch))
    await asyncio.sleep(0.01)

    gate.set()
    await asyncio.gather(first, second)

    assert calls == 2
    assert coalescer.get_stats().total == 2
