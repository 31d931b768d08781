from __future__ import annotations

import asyncio
import random

from binance_kline_monitor.sources.batch import BatchConnectionState, ConnectionBatch
from binance_kline_monitor.sources.heartbeat import HeartbeatSupervisor


class FakeTransport:
    def __init__(self, fail_pong: bool = False) -> None:
        self.pongs = 0
        self.closed = False
        self._fail_pong = fail_pong

    async def pong(self, data: bytes = b"") -> None:
        if self._fail_pong:
            raise ConnectionResetError("socket gone")
        self.pongs += 1

    async def close(self) -> None:
        self.closed = True


class FixedRandom(random.Random):
    def uniform(self, a: float, b: float) -> float:
        return 7.25


def _state(transport: FakeTransport | None) -> BatchConnectionState:
    return BatchConnectionState(
        batch=ConnectionBatch(index=0, symbols=("BTCUSDT",), interval="1h"),
        transport=transport,
    )


def test_keepalive_sends_pong_every_interval() -> None:
    async def scenario() -> tuple[list[float], FakeTransport]:
        transport = FakeTransport()
        state = _state(transport)
        slept: list[float] = []

        async def fake_sleep(delay: float) -> None:
            slept.append(delay)
            if len(slept) == 3:
                state.transport = None

        supervisor = HeartbeatSupervisor(interval_seconds=120.0, sleep=fake_sleep)
        supervisor.start(state)
        assert state.heartbeat_task is not None
        await state.heartbeat_task
        return slept, transport

    slept, transport = asyncio.run(scenario())

    assert slept == [120.0, 120.0, 120.0]
    assert transport.pongs == 2


def test_failed_keepalive_closes_transport() -> None:
    async def scenario() -> FakeTransport:
        transport = FakeTransport(fail_pong=True)
        state = _state(transport)

        async def fake_sleep(delay: float) -> None:
            return None

        supervisor = HeartbeatSupervisor(sleep=fake_sleep)
        supervisor.start(state)
        assert state.heartbeat_task is not None
        await state.heartbeat_task
        return transport

    transport = asyncio.run(scenario())

    assert transport.closed is True


def test_ping_is_answered_after_jittered_delay() -> None:
    async def scenario() -> tuple[list[float], FakeTransport, BatchConnectionState]:
        transport = FakeTransport()
        state = _state(transport)
        slept: list[float] = []

        async def fake_sleep(delay: float) -> None:
            slept.append(delay)

        supervisor = HeartbeatSupervisor(pong_jitter_seconds=600.0, rng=FixedRandom(), sleep=fake_sleep)
        supervisor.handle_ping(state)
        assert len(state.pong_tasks) == 1
        await asyncio.gather(*state.pong_tasks)
        return slept, transport, state

    slept, transport, state = asyncio.run(scenario())

    assert slept == [7.25]
    assert transport.pongs == 1
    assert state.pong_tasks == set()


def test_stop_cancels_pending_work_and_is_idempotent() -> None:
    async def scenario() -> tuple[bool, bool, BatchConnectionState]:
        transport = FakeTransport()
        state = _state(transport)
        supervisor = HeartbeatSupervisor(rng=FixedRandom())

        supervisor.start(state)
        supervisor.handle_ping(state)
        heartbeat_task = state.heartbeat_task
        pong_task = next(iter(state.pong_tasks))

        supervisor.stop(state)
        supervisor.stop(state)
        await asyncio.sleep(0)
        assert heartbeat_task is not None
        return heartbeat_task.cancelled(), pong_task.cancelled(), state

    heartbeat_cancelled, pong_cancelled, state = asyncio.run(scenario())

    assert heartbeat_cancelled
    assert pong_cancelled
    assert state.heartbeat_task is None
    assert state.pong_tasks == set()


def test_ping_without_transport_is_ignored() -> None:
    async def scenario() -> BatchConnectionState:
        state = _state(None)
        HeartbeatSupervisor().handle_ping(state)
        return state

    assert asyncio.run(scenario()).pong_tasks == set()
