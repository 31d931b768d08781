from __future__ import annotations

from typing import Protocol

from rich.console import Console
from rich.table import Table

from binance_kline_monitor.core.enums import Signal
from binance_kline_monitor.scoring.report import AnalysisReport

_SIGNAL_STYLES = {
    Signal.STRONG_BUY: "bold green",
    Signal.BUY: "green",
    Signal.NEUTRAL: "yellow",
    Signal.SELL: "red",
    Signal.STRONG_SELL: "bold red",
}


class ReportSink(Protocol):
    def emit(self, report: AnalysisReport) -> None: ...


def _fmt(value: float | None, digits: int = 4) -> str:
    if value is None:
        return "-"
    return f"{value:.{digits}f}"


class ConsoleReportSink:
    def __init__(self, console: Console | None = None, *, auto_trading: bool = False) -> None:
        self._console = console or Console()
        self._auto_trading = auto_trading

    def set_auto_trading(self, enabled: bool) -> None:
        self._auto_trading = enabled

    def emit(self, report: AnalysisReport) -> None:
        title = f"{report.symbol} analysis @ {report.timestamp.isoformat()}"
        if report.is_degraded:
            self._console.print(f"[bold]{title}[/bold] [red]error:[/red] {report.error}")
            return

        table = Table(title=title, show_header=False)
        table.add_column("field")
        table.add_column("value")

        if report.price is not None:
            table.add_row("price", _fmt(report.price.current))
        indicators = report.indicators
        if indicators is not None:
            table.add_row("ema5 / ema13", f"{_fmt(indicators.ema5)} / {_fmt(indicators.ema13)}")
            table.add_row("rsi", _fmt(indicators.rsi, 2))
            if indicators.macd is not None:
                table.add_row("macd histogram", _fmt(indicators.macd.histogram, 2))

        scores = report.scores
        if scores is not None:
            table.add_row("trend", _fmt(scores.trend, 2))
            table.add_row("momentum", _fmt(scores.momentum, 2))
            table.add_row("volatility", _fmt(scores.volatility, 2))
            table.add_row("volume", _fmt(scores.volume, 2))
            table.add_row("support", _fmt(scores.support, 2))
        table.add_row("total", _fmt(report.total_score, 2))

        if report.signal is not None:
            style = _SIGNAL_STYLES.get(report.signal, "")
            table.add_row("signal", f"[{style}]{report.signal.value}[/{style}]" if style else report.signal.value)
        if report.risk_level is not None:
            table.add_row("risk", report.risk_level.value)
        if report.recommendation is not None:
            table.add_row("action", report.recommendation.action)
            table.add_row("confidence", report.recommendation.confidence)
            table.add_row("reasons", ", ".join(report.recommendation.reasons) or "-")
        if self._auto_trading:
            table.add_row("auto trading", "enabled")

        self._console.print(table)
