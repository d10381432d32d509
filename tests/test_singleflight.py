"""
tests/test_singleflight.py -- Unit tests for client/singleflight.py.

Driven with asyncio.run() so no async pytest plugin is needed.
"""

from __future__ import annotations

import asyncio

import pytest

from client.singleflight import SingleFlight


def test_concurrent_callers_share_one_run() -> None:
    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.05)
        return f"result-{calls}"

    async def scenario() -> list[str]:
        flight: SingleFlight[str] = SingleFlight()
        return await asyncio.gather(*(flight.do(operation) for _ in range(5)))

    assert asyncio.run(scenario()) == ["result-1"] * 5
    assert calls == 1


def test_failure_reaches_every_caller_once() -> None:
    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        raise RuntimeError("refresh rejected")

    async def scenario() -> list[object]:
        flight: SingleFlight[str] = SingleFlight()
        return await asyncio.gather(*(flight.do(operation) for _ in range(3)), return_exceptions=True)

    results = asyncio.run(scenario())
    assert calls == 1
    assert all(isinstance(r, RuntimeError) for r in results)


def test_flight_is_discarded_after_completion() -> None:
    calls = 0

    async def operation() -> int:
        nonlocal calls
        calls += 1
        return calls

    async def scenario() -> tuple[int, int, bool]:
        flight: SingleFlight[int] = SingleFlight()
        first = await flight.do(operation)
        second = await flight.do(operation)
        return first, second, flight.in_flight

    assert asyncio.run(scenario()) == (1, 2, False)


def test_leader_failure_without_followers_raises() -> None:
    async def operation() -> int:
        raise ValueError("boom")

    async def scenario() -> None:
        flight: SingleFlight[int] = SingleFlight()
        await flight.do(operation)

    with pytest.raises(ValueError, match="boom"):
        asyncio.run(scenario())


def test_in_flight_while_running() -> None:
    async def scenario() -> tuple[bool, bool]:
        flight: SingleFlight[None] = SingleFlight()
        gate = asyncio.Event()

        async def operation() -> None:
            await gate.wait()

        task = asyncio.create_task(flight.do(operation))
        await asyncio.sleep(0)
        during = flight.in_flight
        gate.set()
        await task
        return during, flight.in_flight

    assert asyncio.run(scenario()) == (True, False)
