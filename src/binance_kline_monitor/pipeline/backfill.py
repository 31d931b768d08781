from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from binance_kline_monitor.core.schema import Candle
from binance_kline_monitor.core.time_utils import from_ms, interval_to_ms, to_ms, utc_now
from binance_kline_monitor.storage.series_store import SeriesStore

logger = logging.getLogger(__name__)


class KlineSource(Protocol):
    def fetch_klines(
        self,
        symbol: str,
        start_time: datetime,
        end_time: datetime,
        interval: str = ...,
        limit: int = ...,
    ) -> list[Candle]: ...


@dataclass(frozen=True, slots=True)
class BackfillResult:
    symbol: str
    interval: str
    start_ms: int
    end_ms: int
    candles_fetched: int = 0
    pages: int = 0
    up_to_date: bool = False
    series_length: int | None = None
    error: str | None = None


def dedupe_sorted(candles: Iterable[Candle]) -> list[Candle]:
    by_open_time: dict[int, Candle] = {}
    for candle in candles:
        by_open_time[candle.open_time] = candle
    return [by_open_time[key] for key in sorted(by_open_time)]


class BackfillCoordinator:
    """Incremental historical catch-up for ``(symbol, interval)`` series.

    Resumes from the last stored ``open_time`` (+1 ms) or from the start of the
    retention window, fetches fixed-size pages until a short page signals the
    live edge, and commits everything through ``SeriesStore.merge``.
    """

    def __init__(
        self,
        rest_client: KlineSource,
        store: SeriesStore,
        *,
        interval: str = "1h",
        retention_days: int = 200,
        page_limit: int = 1000,
        page_delay_seconds: float = 0.1,
        symbol_delay_seconds: float = 0.3,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._rest = rest_client
        self._store = store
        self._interval = interval
        self._interval_ms = interval_to_ms(interval)
        self._retention = timedelta(days=retention_days)
        self._page_limit = page_limit
        self._page_delay_seconds = page_delay_seconds
        self._symbol_delay_seconds = symbol_delay_seconds
        self._sleep = sleep
        self._clock = clock

    def start_boundary_ms(self, symbol: str, now: datetime) -> int:
        last_known = self._store.last_known_time(symbol, self._interval)
        if last_known is not None:
            return last_known + 1
        return to_ms(now - self._retention)

    def backfill_symbol(self, symbol: str, now: datetime | None = None) -> BackfillResult:
        now_utc = (now or self._clock()).astimezone(UTC)
        end_ms = to_ms(now_utc)
        start_ms = self.start_boundary_ms(symbol, now_utc)

        if start_ms >= end_ms:
            logger.info("Series already up to date", extra={"symbol": symbol, "interval": self._interval})
            return BackfillResult(
                symbol=symbol,
                interval=self._interval,
                start_ms=start_ms,
                end_ms=end_ms,
                up_to_date=True,
            )

        logger.info(
            "Backfilling series",
            extra={
                "symbol": symbol,
                "interval": self._interval,
                "start": from_ms(start_ms).isoformat(),
                "end": now_utc.isoformat(),
            },
        )
        candles, pages = self._fetch_pages(symbol, start_ms, end_ms)
        series_length = None
        if candles:
            series_length = self._store.merge(symbol, self._interval, candles)

        return BackfillResult(
            symbol=symbol,
            interval=self._interval,
            start_ms=start_ms,
            end_ms=end_ms,
            candles_fetched=len(candles),
            pages=pages,
            series_length=series_length,
        )

    def backfill_all(self, symbols: Iterable[str], now: datetime | None = None) -> list[BackfillResult]:
        symbol_list = list(symbols)
        results: list[BackfillResult] = []
        for index, symbol in enumerate(symbol_list):
            try:
                results.append(self.backfill_symbol(symbol, now=now))
            except Exception as exc:
                logger.exception("Backfill failed", extra={"symbol": symbol, "interval": self._interval})
                results.append(
                    BackfillResult(
                        symbol=symbol,
                        interval=self._interval,
                        start_ms=0,
                        end_ms=0,
                        error=f"{exc.__class__.__name__}: {exc}",
                    )
                )

            if self._symbol_delay_seconds > 0 and index < len(symbol_list) - 1:
                self._sleep(self._symbol_delay_seconds)
        return results

    def _fetch_pages(self, symbol: str, start_ms: int, end_ms: int) -> tuple[list[Candle], int]:
        page_span_ms = self._page_limit * self._interval_ms
        accumulated: list[Candle] = []
        cursor = start_ms
        pages = 0

        while cursor < end_ms:
            page_end = min(cursor + page_span_ms, end_ms)
            batch = self._rest.fetch_klines(
                symbol,
                from_ms(cursor),
                from_ms(page_end),
                interval=self._interval,
                limit=self._page_limit,
            )
            pages += 1
            accumulated.extend(dedupe_sorted(batch))

            if len(batch) < self._page_limit:
                break
            cursor = page_end
            # soften burst rate against REST limits
            self._sleep(self._page_delay_seconds)

        return dedupe_sorted(accumulated), pages
