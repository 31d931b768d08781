from __future__ import annotations

import logging
from datetime import UTC, datetime

from rich.console import Console

from binance_kline_monitor.core.enums import RiskLevel, Signal
from binance_kline_monitor.core.logging import ExtraFieldsFormatter
from binance_kline_monitor.notify.console import ConsoleReportSink
from binance_kline_monitor.scoring.report import (
    ERROR_INSUFFICIENT_HISTORY,
    AnalysisReport,
    CategoryScores,
    PriceSnapshot,
    Recommendation,
)

TS = datetime(2025, 1, 1, tzinfo=UTC)


def test_console_sink_renders_full_report() -> None:
    console = Console(record=True, width=120)
    report = AnalysisReport(
        symbol="BTCUSDT",
        timestamp=TS,
        price=PriceSnapshot(current=101.5, open=100.0, high=102.0, low=99.0),
        scores=CategoryScores(trend=100.0, momentum=60.0, volatility=10.0, volume=100.0, support=80.0),
        total_score=77.0,
        signal=Signal.BUY,
        risk_level=RiskLevel.LOW,
        recommendation=Recommendation(action="Consider a long position", confidence="medium", reasons=("strong uptrend",)),
    )

    ConsoleReportSink(console, auto_trading=True).emit(report)

    text = console.export_text()
    assert "BTCUSDT" in text
    assert "BUY" in text
    assert "77.00" in text
    assert "strong uptrend" in text
    assert "auto trading" in text


def test_console_sink_renders_degraded_report() -> None:
    console = Console(record=True, width=120)

    ConsoleReportSink(console).emit(AnalysisReport.degraded("ETHUSDT", TS, ERROR_INSUFFICIENT_HISTORY))

    text = console.export_text()
    assert "ETHUSDT" in text
    assert ERROR_INSUFFICIENT_HISTORY in text


def test_extra_fields_formatter_appends_context() -> None:
    formatter = ExtraFieldsFormatter("%(message)s")
    record = logging.LogRecord("test", logging.INFO, __file__, 1, "Scheduling reconnect", None, None)
    record.batch = 3
    record.sleep_seconds = 5.0

    assert formatter.format(record) == "Scheduling reconnect [batch=3 sleep_seconds=5.0]"

    plain = logging.LogRecord("test", logging.INFO, __file__, 1, "plain", None, None)
    assert formatter.format(plain) == "plain"
