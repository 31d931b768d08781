from __future__ import annotations

import logging
import random
import time
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from binance_kline_monitor.core.schema import Candle
from binance_kline_monitor.core.time_utils import to_ms

logger = logging.getLogger(__name__)


class BinanceRESTClient:
    def __init__(
        self,
        base_url: str,
        timeout_seconds: int = 20,
        retries: int = 5,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
        )
        self._retries = max(1, retries)
        self._min_retry_delay_seconds = 1.0
        self._max_backoff_seconds = 60.0
        self._min_interval_seconds = 0.1  # ~10 requests/sec to avoid burst 429s
        self._last_request_monotonic: float | None = None

    def close(self) -> None:
        self._client.close()

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        last_transport_error: httpx.TransportError | None = None

        for attempt in range(1, self._retries + 1):
            try:
                # simple client-side rate limiter to avoid 429 bursts
                now = time.monotonic()
                if self._last_request_monotonic is not None:
                    wait = self._min_interval_seconds - (now - self._last_request_monotonic)
                    if wait > 0:
                        time.sleep(wait)
                response = self._client.get(path, params=params)
                self._last_request_monotonic = time.monotonic()
            except httpx.TransportError as exc:
                last_transport_error = exc
                if attempt >= self._retries:
                    raise
                self._sleep_before_retry(attempt=attempt, path=path, status_code=None, reason=exc.__class__.__name__)
                continue

            if response.status_code < 400:
                return response.json()

            if self._is_retryable_status(response.status_code) and attempt < self._retries:
                self._sleep_before_retry(
                    attempt=attempt,
                    path=path,
                    status_code=response.status_code,
                    reason=f"HTTP {response.status_code}",
                    retry_after_seconds=self._parse_retry_after_seconds(response=response),
                )
                continue

            response.raise_for_status()

        if last_transport_error is not None:
            raise last_transport_error
        raise RuntimeError("REST call exhausted retries without a concrete error")

    @staticmethod
    def _is_retryable_status(status_code: int) -> bool:
        return status_code == 429 or 500 <= status_code < 600

    @staticmethod
    def _parse_retry_after_seconds(response: httpx.Response) -> float | None:
        raw_value = response.headers.get("Retry-After")
        if raw_value is None:
            return None

        raw_value = raw_value.strip()
        try:
            return max(0.0, float(raw_value))
        except ValueError:
            pass

        try:
            parsed = parsedate_to_datetime(raw_value)
        except (TypeError, ValueError):
            return None

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return max(0.0, float((parsed.astimezone(UTC) - datetime.now(tz=UTC)).total_seconds()))

    def _sleep_before_retry(
        self,
        *,
        attempt: int,
        path: str,
        status_code: int | None,
        reason: str,
        retry_after_seconds: float | None = None,
    ) -> None:
        if retry_after_seconds is not None:
            delay = retry_after_seconds
        else:
            delay = min(
                self._max_backoff_seconds,
                self._min_retry_delay_seconds * (2 ** max(attempt - 1, 0)),
            )
        # add small jitter to desynchronize from exchange rate limits
        delay += random.uniform(0.0, 0.3)  # noqa: S311

        logger.warning(
            "Retrying Binance REST request",
            extra={
                "path": path,
                "attempt": attempt,
                "max_attempts": self._retries,
                "status_code": status_code,
                "reason": reason,
                "sleep_seconds": round(delay, 3),
            },
        )
        time.sleep(delay)

    def fetch_klines(
        self,
        symbol: str,
        start_time: datetime,
        end_time: datetime,
        interval: str = "1h",
        limit: int = 1000,
    ) -> list[Candle]:
        payload = self._get(
            "/fapi/v1/klines",
            {
                "symbol": symbol.upper(),
                "interval": interval,
                "startTime": to_ms(start_time),
                "endTime": to_ms(end_time),
                "limit": limit,
            },
        )
        return [Candle.from_rest_row(item) for item in payload]

    def fetch_trading_symbols(self, quote_asset: str = "USDT") -> list[str]:
        payload = self._get("/fapi/v1/exchangeInfo")
        quote = quote_asset.upper()
        return [
            item["symbol"]
            for item in payload.get("symbols", [])
            if item.get("status") == "TRADING" and item.get("quoteAsset") == quote
        ]

    def fetch_top_symbols_by_quote_volume(self, limit: int = 50, quote_asset: str = "USDT") -> list[str]:
        """Symbols quoted in ``quote_asset`` ranked by 24h quote volume, largest first."""
        payload = self._get("/fapi/v1/ticker/24hr")
        quote = quote_asset.upper()
        tickers = [
            (item["symbol"], float(item.get("quoteVolume", 0.0) or 0.0))
            for item in payload
            if str(item.get("symbol", "")).endswith(quote)
        ]
        tickers.sort(key=lambda item: item[1], reverse=True)
        ranked = tickers[:limit]
        if ranked:
            logger.info(
                "Ranked symbols by 24h quote volume",
                extra={"count": len(ranked), "top": [symbol for symbol, _ in ranked[:5]]},
            )
        return [symbol for symbol, _ in ranked]
