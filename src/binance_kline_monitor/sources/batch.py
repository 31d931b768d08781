from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from binance_kline_monitor.core.config import MAX_STREAMS_PER_BATCH
from binance_kline_monitor.core.enums import ConnectionPhase


@dataclass(frozen=True, slots=True)
class ConnectionBatch:
    index: int
    symbols: tuple[str, ...]
    interval: str

    def stream_names(self) -> list[str]:
        return [f"{symbol.lower()}@kline_{self.interval}" for symbol in self.symbols]

    def subscribe_message(self) -> dict[str, Any]:
        return {"method": "SUBSCRIBE", "params": self.stream_names(), "id": self.index}


@dataclass(slots=True)
class BatchConnectionState:
    batch: ConnectionBatch
    phase: ConnectionPhase = ConnectionPhase.CONNECTING
    attempts: int = 0
    generation: int = 0
    transport: Any | None = None
    heartbeat_task: asyncio.Task[None] | None = None
    pong_tasks: set[asyncio.Task[None]] = field(default_factory=set)
    run_task: asyncio.Task[None] | None = None
    last_message_ms: int | None = None

    @property
    def index(self) -> int:
        return self.batch.index


@dataclass(frozen=True, slots=True)
class BatchStatus:
    index: int
    phase: ConnectionPhase
    attempts: int
    symbol_count: int
    last_message_ms: int | None


def partition_symbols(
    symbols: Iterable[str],
    interval: str,
    batch_size: int = MAX_STREAMS_PER_BATCH,
) -> list[ConnectionBatch]:
    if batch_size < 1 or batch_size > MAX_STREAMS_PER_BATCH:
        raise ValueError(f"batch_size must be within 1..{MAX_STREAMS_PER_BATCH}, got {batch_size}")

    unique: list[str] = []
    seen: set[str] = set()
    for symbol in symbols:
        normalized = symbol.strip().upper()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        unique.append(normalized)

    return [
        ConnectionBatch(index=index, symbols=tuple(unique[offset : offset + batch_size]), interval=interval)
        for index, offset in enumerate(range(0, len(unique), batch_size))
    ]
