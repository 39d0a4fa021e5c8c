from __future__ import annotations

import asyncio

from tabsync.writer import Coalescer


def test_burst_runs_once_with_latest_payload() -> None:
    async def scenario() -> None:
        runs: list[str] = []

        async def write(payload: str) -> None:
            runs.append(payload)

        writer: Coalescer[str] = Coalescer(20, write, name="write")
        first = writer.schedule("one")
        second = writer.schedule("two")
        third = writer.schedule("three")
        assert writer.pending
        assert await asyncio.gather(first, second, third) == [True, True, True]
        assert runs == ["three"]
        assert not writer.pending

    asyncio.run(scenario())


def test_first_request_fixes_the_fire_time() -> None:
    async def scenario() -> None:
        runs: list[str] = []

        async def write(payload: str) -> None:
            runs.append(payload)

        writer: Coalescer[str] = Coalescer(100, write)
        writer.schedule("early")
        await asyncio.sleep(0.05)
        writer.schedule("late")
        await asyncio.sleep(0.08)
        # A resetting debounce would still be waiting here.
        assert runs == ["late"]

    asyncio.run(scenario())


def test_requests_during_a_run_open_a_new_burst() -> None:
    async def scenario() -> None:
        runs: list[str] = []
        writer: Coalescer[str]

        async def write(payload: str) -> None:
            runs.append(payload)
            if payload == "one":
                writer.schedule("two")

        writer = Coalescer(5, write)
        await writer.schedule("one")
        await asyncio.sleep(0.05)
        assert runs == ["one", "two"]

    asyncio.run(scenario())


def test_failed_run_resolves_waiters_false(caplog) -> None:
    async def scenario() -> None:
        async def write(payload: str) -> None:
            raise OSError("disk full")

        writer: Coalescer[str] = Coalescer(5, write, name="write")
        assert await writer.schedule("one") is False
        assert not writer.pending

    asyncio.run(scenario())
    assert "write run failed" in caplog.text


def test_flush_runs_now_and_cancel_drops() -> None:
    async def scenario() -> None:
        runs: list[str] = []

        async def write(payload: str) -> None:
            runs.append(payload)

        writer: Coalescer[str] = Coalescer(10_000, write)
        waiter = writer.schedule("now")
        await writer.flush()
        assert runs == ["now"]
        assert await waiter is True

        dropped = writer.schedule("never")
        writer.cancel()
        assert await dropped is False
        assert runs == ["now"]

    asyncio.run(scenario())
