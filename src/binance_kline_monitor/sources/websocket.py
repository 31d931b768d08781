from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from binance_kline_monitor.core.enums import ConnectionPhase
from binance_kline_monitor.core.schema import Candle
from binance_kline_monitor.sources.batch import BatchConnectionState, BatchStatus, ConnectionBatch
from binance_kline_monitor.sources.heartbeat import HeartbeatSupervisor, SleepFn
from binance_kline_monitor.sources.reconnect import ReconnectController

PING_SENTINEL = "ping"

logger = logging.getLogger(__name__)

CandleHandler = Callable[[str, Candle], Awaitable[Any]]
ConnectFn = Callable[..., Any]


def now_ms() -> int:
    return int(datetime.now(tz=UTC).timestamp() * 1000)


class MalformedKlineEvent(ValueError):
    """Raised when a kline event is missing fields or carries unparsable values."""


@dataclass(frozen=True, slots=True)
class KlineEvent:
    symbol: str
    interval: str
    candle: Candle
    is_closed: bool
    event_time: int | None = None


def parse_kline_event(message: dict[str, Any]) -> KlineEvent | None:
    """Return the kline carried by ``message``, or ``None`` for any other payload.

    Accepts raw stream payloads and combined-stream envelopes
    (``{"stream": ..., "data": {...}}``).
    """
    payload = message.get("data") if isinstance(message.get("data"), dict) else message
    if payload.get("e") != "kline":
        return None

    kline = payload.get("k")
    if not isinstance(kline, dict):
        raise MalformedKlineEvent("kline event without 'k' object")

    try:
        symbol = str(payload.get("s") or kline["s"]).upper()
        candle = Candle.from_kline_payload(kline)
        event_time = payload.get("E")
        return KlineEvent(
            symbol=symbol,
            interval=str(kline.get("i", "")),
            candle=candle,
            is_closed=bool(kline.get("x", False)),
            event_time=int(event_time) if event_time is not None else None,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedKlineEvent(f"Unparsable kline event: {exc}") from exc


class KlineConnectionPool:
    """One websocket connection per :class:`ConnectionBatch`.

    Every batch runs as its own task: connect, subscribe, read until the
    transport closes, then ask the reconnect controller whether and when to try
    again. Batches never share state, so a batch that exhausts its reconnect
    budget goes dark without affecting the others.
    """

    def __init__(
        self,
        *,
        url: str,
        on_candle: CandleHandler,
        heartbeat: HeartbeatSupervisor | None = None,
        reconnect: ReconnectController | None = None,
        connect: ConnectFn | None = None,
        sleep: SleepFn = asyncio.sleep,
        open_stagger_seconds: float = 0.5,
        status_interval_seconds: float = 60.0,
    ) -> None:
        self._url = url
        self._on_candle = on_candle
        self._heartbeat = heartbeat or HeartbeatSupervisor()
        self._reconnect = reconnect or ReconnectController()
        self._connect = connect or websockets.connect
        self._sleep = sleep
        self._open_stagger_seconds = open_stagger_seconds
        self._status_interval_seconds = status_interval_seconds
        self._states: dict[int, BatchConnectionState] = {}
        self._pending: set[asyncio.Task[None]] = set()
        self._stopping = False

    def states(self) -> list[BatchStatus]:
        return [
            BatchStatus(
                index=state.index,
                phase=state.phase,
                attempts=state.attempts,
                symbol_count=len(state.batch.symbols),
                last_message_ms=state.last_message_ms,
            )
            for state in sorted(self._states.values(), key=lambda item: item.index)
        ]

    async def run(self, batches: Sequence[ConnectionBatch]) -> None:
        self._stopping = False
        status_task = asyncio.create_task(self._status_loop(), name="ws-status")
        try:
            for position, batch in enumerate(batches):
                await self.open(batch)
                if self._open_stagger_seconds > 0 and position < len(batches) - 1:
                    await self._sleep(self._open_stagger_seconds)

            while True:
                tasks = [state.run_task for state in self._states.values() if state.run_task is not None]
                active = [task for task in tasks if not task.done()]
                if not active:
                    break
                await asyncio.wait(active, return_when=asyncio.ALL_COMPLETED)
        finally:
            status_task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def open(self, batch: ConnectionBatch) -> BatchConnectionState:
        state = self._states.get(batch.index)
        if state is None:
            state = BatchConnectionState(batch=batch)
            self._states[batch.index] = state
        elif state.batch != batch:
            raise ValueError(f"batch {batch.index} membership is immutable; create a new batch index instead")

        # supersede whatever run currently owns this index
        state.generation += 1
        previous = state.transport
        if previous is not None:
            self._release(state, previous)
            await self._close_transport(previous, state.index)

        generation = state.generation
        state.phase = ConnectionPhase.CONNECTING
        state.run_task = asyncio.create_task(self._run_batch(state, generation), name=f"ws-batch-{batch.index}")
        return state

    async def stop(self) -> None:
        self._stopping = True
        for state in self._states.values():
            transport = state.transport
            if transport is not None:
                self._release(state, transport)
                await self._close_transport(transport, state.index)
            if state.run_task is not None and not state.run_task.done():
                state.run_task.cancel()
            state.phase = ConnectionPhase.STOPPED
        tasks = [state.run_task for state in self._states.values() if state.run_task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def _run_batch(self, state: BatchConnectionState, generation: int) -> None:
        while not self._stopping:
            if state.generation != generation:
                return

            state.phase = ConnectionPhase.CONNECTING
            transport: Any | None = None
            try:
                async with self._connect(
                    self._url,
                    ping_interval=None,
                    close_timeout=5,
                    max_size=2**22,
                ) as websocket:
                    if state.generation != generation or self._stopping:
                        logger.info("Discarding stale connection", extra={"batch": state.index})
                        return
                    transport = websocket
                    await self._on_open(state, websocket)
                    await self._read_loop(state, websocket)
            except asyncio.CancelledError:
                raise
            except ConnectionClosed as exc:
                logger.warning("WebSocket connection closed", extra={"batch": state.index, "reason": str(exc)})
            except (OSError, WebSocketException) as exc:
                logger.warning(
                    "WebSocket connect failed",
                    extra={"batch": state.index, "url": self._url, "reason": repr(exc)},
                )
            except Exception:
                logger.exception("WebSocket batch failed", extra={"batch": state.index, "url": self._url})
            finally:
                if transport is not None:
                    self._release(state, transport)

            if self._stopping or state.generation != generation:
                return

            delay = self._reconnect.next_delay(state)
            if delay is None:
                state.phase = ConnectionPhase.FAILED
                return
            state.phase = ConnectionPhase.RECONNECTING
            await self._sleep(delay)

    async def _on_open(self, state: BatchConnectionState, websocket: Any) -> None:
        state.transport = websocket
        self._reconnect.reset(state)
        await websocket.send(json.dumps(state.batch.subscribe_message()))
        self._heartbeat.start(state)
        state.phase = ConnectionPhase.OPEN
        logger.info(
            "WebSocket batch subscribed",
            extra={"batch": state.index, "symbols": len(state.batch.symbols), "interval": state.batch.interval},
        )

    async def _read_loop(self, state: BatchConnectionState, websocket: Any) -> None:
        while state.transport is websocket:
            try:
                payload = await websocket.recv()
            except ConnectionClosed as exc:
                logger.info("WebSocket closed by peer", extra={"batch": state.index, "reason": str(exc)})
                return
            state.last_message_ms = now_ms()
            self._handle_message(state, payload)

    def _handle_message(self, state: BatchConnectionState, payload: str | bytes) -> None:
        raw_text = payload.decode("utf-8") if isinstance(payload, bytes) else payload

        if raw_text.strip() == PING_SENTINEL:
            self._heartbeat.handle_ping(state)
            return

        try:
            message = json.loads(raw_text)
        except json.JSONDecodeError:
            logger.debug("Dropping non-JSON WebSocket payload", extra={"batch": state.index})
            return
        if not isinstance(message, dict):
            return

        try:
            event = parse_kline_event(message)
        except MalformedKlineEvent:
            logger.warning("Dropping malformed kline event", extra={"batch": state.index}, exc_info=True)
            return

        if event is None:
            if "result" in message and "id" in message:
                logger.debug("Subscription acknowledged", extra={"batch": state.index, "id": message["id"]})
            return
        if not event.is_closed:
            return

        task = asyncio.create_task(self._dispatch(event), name=f"candle-{event.symbol}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _dispatch(self, event: KlineEvent) -> None:
        try:
            await self._on_candle(event.symbol, event.candle)
        except Exception:
            logger.exception(
                "Candle handler failed",
                extra={"symbol": event.symbol, "open_time": event.candle.open_time},
            )

    def _release(self, state: BatchConnectionState, transport: Any) -> None:
        if state.transport is not transport:
            return
        self._heartbeat.stop(state)
        state.transport = None

    async def _status_loop(self) -> None:
        while True:
            await asyncio.sleep(self._status_interval_seconds)
            for status in self.states():
                logger.info(
                    "WebSocket batch status",
                    extra={
                        "batch": status.index,
                        "phase": status.phase.value,
                        "attempts": status.attempts,
                        "symbols": status.symbol_count,
                        "last_message_ms": status.last_message_ms,
                    },
                )

    @staticmethod
    async def _close_transport(transport: Any, batch_index: int) -> None:
        try:
            await transport.close()
        except Exception:
            logger.exception("Closing connection failed", extra={"batch": batch_index})
