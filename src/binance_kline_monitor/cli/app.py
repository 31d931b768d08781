from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import typer
from rich.console import Console

from binance_kline_monitor.core.config import ConfigurationError, Settings
from binance_kline_monitor.core.logging import configure_logging
from binance_kline_monitor.core.time_utils import from_ms
from binance_kline_monitor.notify.console import ConsoleReportSink
from binance_kline_monitor.pipeline.orchestrator import SignalMonitor
from binance_kline_monitor.storage.series_store import SeriesStore

app = typer.Typer(help="Binance futures kline monitor CLI")
console = Console()


def _parse_utc_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _parse_symbol_list(value: str | None) -> list[str]:
    if value is None:
        return []
    symbols: list[str] = []
    for part in value.split(","):
        normalized = part.strip().upper()
        if normalized and normalized not in symbols:
            symbols.append(normalized)
    return symbols


def _settings_with_symbols(symbols: str | None) -> Settings:
    settings = Settings()
    explicit = _parse_symbol_list(symbols)
    if explicit:
        settings = settings.model_copy(update={"symbols": explicit})
    return settings


@app.command("symbols")
def list_symbols(
    limit: int | None = typer.Option(default=None, min=1, help="Number of top symbols by 24h quote volume"),
    all_trading: bool = typer.Option(default=False, help="List every TRADING contract for the quote asset"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)

    monitor = SignalMonitor(settings)
    try:
        if all_trading:
            symbols = monitor.rest.fetch_trading_symbols(settings.quote_asset)
        else:
            symbols = monitor.rest.fetch_top_symbols_by_quote_volume(
                limit=limit or settings.top_symbols,
                quote_asset=settings.quote_asset,
            )
    finally:
        monitor.close()

    console.print(f"Symbols ({len(symbols)}):")
    for symbol in symbols:
        console.print(f" - {symbol}")


@app.command("backfill")
def backfill(
    symbols: str | None = typer.Option(default=None, help="Comma separated symbols; defaults to discovery"),
    at: str | None = typer.Option(default=None, help="Optional UTC ISO datetime used as the backfill end"),
) -> None:
    settings = _settings_with_symbols(symbols)
    configure_logging(settings.log_level)

    end_at = _parse_utc_datetime(at) if at is not None else None
    monitor = SignalMonitor(settings)
    try:
        targets = monitor.discover_symbols()
        results = monitor.backfill(targets, now=end_at)
    finally:
        monitor.close()

    failed = 0
    for result in results:
        if result.error is not None:
            failed += 1
            console.print(f"[red]{result.symbol}[/red] failed: {result.error}")
        elif result.up_to_date:
            console.print(f"{result.symbol}: up to date")
        else:
            console.print(
                f"{result.symbol}: fetched={result.candles_fetched}, "
                f"pages={result.pages}, rows={result.series_length}"
            )
    console.print(f"Backfill complete: symbols={len(results)}, failed={failed}")

    if failed:
        raise typer.Exit(code=1)


@app.command("monitor")
def monitor(
    symbols: str | None = typer.Option(default=None, help="Comma separated symbols; defaults to discovery"),
    skip_backfill: bool = typer.Option(default=False, help="Stream without catching up history first"),
    from_store: bool = typer.Option(default=False, help="Monitor the symbols already present in the store"),
    auto_trade: bool = typer.Option(default=False, help="Place orders on STRONG_BUY / STRONG_SELL"),
) -> None:
    settings = _settings_with_symbols(symbols)
    configure_logging(settings.log_level)

    sink = ConsoleReportSink(console)
    signal_monitor = SignalMonitor(settings, sinks=[sink])
    try:
        if auto_trade or settings.enable_auto_trading:
            try:
                signal_monitor.enable_auto_trading()
            except ConfigurationError as exc:
                console.print(f"[red]{exc}[/red]")
                raise typer.Exit(code=2) from exc
            sink.set_auto_trading(True)

        if from_store:
            targets = signal_monitor.store.symbols(settings.interval)
        else:
            targets = signal_monitor.discover_symbols()
        if not targets:
            console.print("[red]No symbols to monitor.[/red]")
            raise typer.Exit(code=1)

        if not skip_backfill:
            signal_monitor.backfill(targets)

        console.print(f"Monitoring {len(targets)} symbols on {settings.interval} klines")
        try:
            asyncio.run(signal_monitor.run(targets))
        except KeyboardInterrupt:
            console.print("Stopped.")
    finally:
        signal_monitor.close()


@app.command("analyze")
def analyze(symbol: str) -> None:
    settings = Settings()
    configure_logging(settings.log_level)

    signal_monitor = SignalMonitor(settings)
    try:
        report = signal_monitor.analyze(symbol)
    finally:
        signal_monitor.close()

    if report is None:
        console.print(f"No stored series for {symbol.upper()}; run `backfill` first.")
        raise typer.Exit(code=1)
    ConsoleReportSink(console).emit(report)


@app.command("show-series")
def show_series(symbol: str, interval: str | None = typer.Option(default=None)) -> None:
    settings = Settings()
    configure_logging(settings.log_level)

    interval_value = interval or settings.interval
    store = SeriesStore(settings.root_dir)
    series = store.load(symbol, interval_value)
    if series.is_empty():
        console.print(f"No stored series for {symbol.upper()} ({interval_value})")
        return

    first_open = from_ms(int(series["open_time"][0]))
    last_open = from_ms(int(series["open_time"][-1]))
    console.print(
        f"Series[{symbol.upper()}, {interval_value}] rows={series.height}, "
        f"first={first_open.isoformat()}, last=[bold]{last_open.isoformat()}[/bold]"
    )


if __name__ == "__main__":
    app()
