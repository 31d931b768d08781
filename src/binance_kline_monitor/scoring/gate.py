from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime

from binance_kline_monitor.core.enums import Signal
from binance_kline_monitor.core.time_utils import utc_now
from binance_kline_monitor.scoring.report import AnalysisReport


@dataclass(frozen=True, slots=True)
class SignalMemory:
    signal: Signal | None
    emitted_at: datetime


class SignalGate:
    """Forwards a report only when its signal differs from the last one emitted for the symbol."""

    def __init__(self) -> None:
        self._memory: dict[str, SignalMemory] = {}
        self._lock = threading.Lock()

    def should_emit(self, report: AnalysisReport, now: datetime | None = None) -> bool:
        with self._lock:
            previous = self._memory.get(report.symbol)
            if previous is not None and previous.signal == report.signal:
                return False
            self._memory[report.symbol] = SignalMemory(signal=report.signal, emitted_at=now or utc_now())
            return True

    def last_emitted(self, symbol: str) -> SignalMemory | None:
        with self._lock:
            return self._memory.get(symbol)
