from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime

from binance_kline_monitor.core.config import ConfigurationError, Settings
from binance_kline_monitor.core.schema import Candle
from binance_kline_monitor.execution.trader import AutoTrader, BinanceFuturesTrader, ExecutionService
from binance_kline_monitor.notify.console import ReportSink
from binance_kline_monitor.pipeline.backfill import BackfillCoordinator, BackfillResult
from binance_kline_monitor.scoring.engine import ScoringEngine
from binance_kline_monitor.scoring.gate import SignalGate
from binance_kline_monitor.scoring.report import AnalysisReport
from binance_kline_monitor.sources.batch import BatchStatus, partition_symbols
from binance_kline_monitor.sources.heartbeat import HeartbeatSupervisor, SleepFn
from binance_kline_monitor.sources.reconnect import ReconnectController, ReconnectPolicy
from binance_kline_monitor.sources.rest import BinanceRESTClient
from binance_kline_monitor.sources.websocket import ConnectFn, KlineConnectionPool
from binance_kline_monitor.storage.series_store import PersistenceError, SeriesStore

logger = logging.getLogger(__name__)

TraderFactory = Callable[[str, str], ExecutionService]


class SignalMonitor:
    """Ties discovery, backfill, streaming, scoring and emission together.

    Every closed candle is handled under a per-symbol lock: merge into the
    store, reload the series, score it, pass the report through the signal
    gate, then hand it to the sinks and, when enabled, the auto trader.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: SeriesStore | None = None,
        rest_client: BinanceRESTClient | None = None,
        sinks: Sequence[ReportSink] = (),
        scoring_engine: ScoringEngine | None = None,
        gate: SignalGate | None = None,
        connect: ConnectFn | None = None,
        sleep: SleepFn = asyncio.sleep,
        rng: random.Random | None = None,
        trader_factory: TraderFactory | None = None,
    ) -> None:
        self._settings = settings
        self._store = store or SeriesStore(settings.root_dir)
        self._rest = rest_client or BinanceRESTClient(
            base_url=settings.rest_base_url,
            timeout_seconds=settings.rest_timeout_seconds,
            retries=settings.rest_max_retries,
        )
        self._sinks = list(sinks)
        self._scoring = scoring_engine or ScoringEngine(
            weights=settings.score_weights,
            thresholds=settings.signal_thresholds,
            min_history=settings.min_history,
        )
        self._gate = gate or SignalGate()
        self._connect = connect
        self._sleep = sleep
        self._rng = rng
        self._trader_factory = trader_factory or self._default_trader
        self._symbol_locks: dict[str, asyncio.Lock] = {}
        self._auto_trader: AutoTrader | None = None
        self._execution: ExecutionService | None = None
        self._pool: KlineConnectionPool | None = None

    @property
    def store(self) -> SeriesStore:
        return self._store

    @property
    def rest(self) -> BinanceRESTClient:
        return self._rest

    @property
    def gate(self) -> SignalGate:
        return self._gate

    @property
    def auto_trading_enabled(self) -> bool:
        return self._auto_trader is not None

    def close(self) -> None:
        self._rest.close()
        closer = getattr(self._execution, "close", None)
        if callable(closer):
            closer()

    def add_sink(self, sink: ReportSink) -> None:
        self._sinks.append(sink)

    def discover_symbols(self) -> list[str]:
        if self._settings.symbols:
            return [symbol.upper() for symbol in self._settings.symbols]

        try:
            symbols = self._rest.fetch_top_symbols_by_quote_volume(
                limit=self._settings.top_symbols,
                quote_asset=self._settings.quote_asset,
            )
        except Exception:
            logger.exception("Symbol discovery failed; falling back to stored series")
            symbols = []

        if symbols:
            return symbols
        return self._store.symbols(self._settings.interval)

    def backfill(self, symbols: Iterable[str], now: datetime | None = None) -> list[BackfillResult]:
        coordinator = BackfillCoordinator(
            self._rest,
            self._store,
            interval=self._settings.interval,
            retention_days=self._settings.retention_days,
            page_limit=self._settings.backfill_page_limit,
            page_delay_seconds=self._settings.backfill_page_delay_seconds,
            symbol_delay_seconds=self._settings.backfill_symbol_delay_seconds,
        )
        results = coordinator.backfill_all(symbols, now=now)
        failed = [result.symbol for result in results if result.error is not None]
        logger.info(
            "Backfill finished",
            extra={"symbols": len(results), "failed": len(failed), "interval": self._settings.interval},
        )
        return results

    def analyze(self, symbol: str) -> AnalysisReport | None:
        """Score the latest stored candle for ``symbol``; ``None`` when nothing is stored."""
        series = self._store.load(symbol, self._settings.interval)
        if series.is_empty():
            return None
        candle = Candle.from_record(series.row(-1, named=True))
        return self._scoring.analyze(symbol.upper(), candle, series)

    async def handle_closed_candle(self, symbol: str, candle: Candle) -> AnalysisReport | None:
        """Process one closed candle; returns the report when it was emitted."""
        symbol_upper = symbol.upper()
        lock = self._symbol_locks.setdefault(symbol_upper, asyncio.Lock())
        async with lock:
            interval = self._settings.interval
            try:
                series = await asyncio.to_thread(self._store.merge_frame, symbol_upper, interval, [candle])
            except PersistenceError:
                logger.exception(
                    "Dropping candle after persistence failure",
                    extra={"symbol": symbol_upper, "open_time": candle.open_time},
                )
                return None

            report = await asyncio.to_thread(self._scoring.analyze, symbol_upper, candle, series)
            if not self._gate.should_emit(report):
                logger.debug(
                    "Signal unchanged; report suppressed",
                    extra={"symbol": symbol_upper, "signal": report.signal.value if report.signal else None},
                )
                return None

            self._emit(report)
            trader = self._auto_trader
            if trader is not None and not report.is_degraded:
                await asyncio.to_thread(trader.execute, report)
            return report

    def enable_auto_trading(self, api_key: str | None = None, api_secret: str | None = None) -> None:
        key = api_key or (self._settings.api_key.get_secret_value() if self._settings.api_key else None)
        secret = api_secret or (self._settings.api_secret.get_secret_value() if self._settings.api_secret else None)
        if not key or not secret:
            raise ConfigurationError("auto trading requires both an API key and an API secret")

        self._execution = self._trader_factory(key, secret)
        self._auto_trader = AutoTrader(self._execution, self._settings.trading)
        logger.warning(
            "Auto trading enabled",
            extra={
                "leverage": self._settings.trading.leverage,
                "position_size": self._settings.trading.position_size,
                "max_positions": self._settings.trading.max_positions,
            },
        )

    def disable_auto_trading(self) -> None:
        self._auto_trader = None
        logger.info("Auto trading disabled")

    async def run(self, symbols: Sequence[str]) -> None:
        if self._settings.enable_auto_trading and self._auto_trader is None:
            self.enable_auto_trading()

        batches = partition_symbols(symbols, self._settings.interval, self._settings.batch_size)
        if not batches:
            logger.warning("No symbols to monitor")
            return

        self._pool = KlineConnectionPool(
            url=self._settings.websocket_base_url,
            on_candle=self.handle_closed_candle,
            heartbeat=HeartbeatSupervisor(
                interval_seconds=self._settings.heartbeat_interval_seconds,
                pong_jitter_seconds=self._settings.pong_jitter_seconds,
                rng=self._rng,
                sleep=self._sleep,
            ),
            reconnect=ReconnectController(
                ReconnectPolicy(
                    base_delay_seconds=self._settings.reconnect_base_delay_seconds,
                    max_delay_seconds=self._settings.reconnect_max_delay_seconds,
                    max_attempts=self._settings.reconnect_max_attempts,
                )
            ),
            connect=self._connect,
            sleep=self._sleep,
            open_stagger_seconds=self._settings.batch_open_stagger_seconds,
            status_interval_seconds=self._settings.status_log_interval_seconds,
        )
        logger.info(
            "Starting stream",
            extra={
                "symbols": sum(len(batch.symbols) for batch in batches),
                "batches": len(batches),
                "interval": self._settings.interval,
            },
        )
        await self._pool.run(batches)

    async def stop(self) -> None:
        if self._pool is not None:
            await self._pool.stop()

    def connection_states(self) -> list[BatchStatus]:
        if self._pool is None:
            return []
        return self._pool.states()

    def _emit(self, report: AnalysisReport) -> None:
        for sink in self._sinks:
            try:
                sink.emit(report)
            except Exception:
                logger.exception("Report sink failed", extra={"symbol": report.symbol})

    def _default_trader(self, api_key: str, api_secret: str) -> ExecutionService:
        return BinanceFuturesTrader(
            base_url=self._settings.rest_base_url,
            api_key=api_key,
            api_secret=api_secret,
            timeout_seconds=self._settings.rest_timeout_seconds,
        )
