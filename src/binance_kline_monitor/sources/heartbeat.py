from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

from binance_kline_monitor.sources.batch import BatchConnectionState

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class HeartbeatSupervisor:
    """Keepalive and ping handling for every open batch connection.

    Each open connection gets a keepalive task that sends an unsolicited pong
    frame every ``interval_seconds``. Remote ``ping`` text frames are answered
    after a delay drawn uniformly from ``[0, pong_jitter_seconds]`` so that
    many connections to the same endpoint do not answer in lockstep. There is
    no timeout on our side for the delayed answer; if the remote gives up
    first, the close path reconnects the batch.
    """

    def __init__(
        self,
        *,
        interval_seconds: float = 120.0,
        pong_jitter_seconds: float = 600.0,
        rng: random.Random | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._interval_seconds = interval_seconds
        self._pong_jitter_seconds = pong_jitter_seconds
        self._rng = rng or random.Random()
        self._sleep = sleep

    def start(self, state: BatchConnectionState) -> None:
        self.stop(state)
        transport = state.transport
        if transport is None:
            return
        state.heartbeat_task = asyncio.create_task(
            self._keepalive_loop(state, transport),
            name=f"heartbeat-{state.index}",
        )

    def handle_ping(self, state: BatchConnectionState) -> None:
        transport = state.transport
        if transport is None:
            return
        delay = self._rng.uniform(0.0, self._pong_jitter_seconds)
        task = asyncio.create_task(
            self._delayed_pong(state, transport, delay),
            name=f"delayed-pong-{state.index}",
        )
        state.pong_tasks.add(task)
        task.add_done_callback(state.pong_tasks.discard)

    def stop(self, state: BatchConnectionState) -> None:
        current = asyncio.current_task() if _has_running_loop() else None
        if state.heartbeat_task is not None:
            if state.heartbeat_task is not current:
                state.heartbeat_task.cancel()
            state.heartbeat_task = None
        for task in list(state.pong_tasks):
            if task is not current:
                task.cancel()
        state.pong_tasks.clear()

    async def _keepalive_loop(self, state: BatchConnectionState, transport: Any) -> None:
        while True:
            await self._sleep(self._interval_seconds)
            if state.transport is not transport:
                return
            try:
                await transport.pong()
            except Exception:
                logger.exception("Keepalive pong failed; closing connection", extra={"batch": state.index})
                await _close_quietly(transport, state.index)
                return
            logger.debug("Sent keepalive pong", extra={"batch": state.index})

    async def _delayed_pong(self, state: BatchConnectionState, transport: Any, delay: float) -> None:
        await self._sleep(delay)
        if state.transport is not transport:
            return
        try:
            await transport.pong()
        except Exception:
            logger.exception("Delayed pong failed; closing connection", extra={"batch": state.index})
            await _close_quietly(transport, state.index)
            return
        logger.debug("Answered ping", extra={"batch": state.index, "delay_seconds": round(delay, 3)})


def _has_running_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


async def _close_quietly(transport: Any, batch_index: int) -> None:
    try:
        await transport.close()
    except Exception:
        logger.exception("Closing connection failed", extra={"batch": batch_index})
