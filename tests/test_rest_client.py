from datetime import UTC, datetime

import httpx
import pytest

from binance_kline_monitor.sources.rest import BinanceRESTClient


def _kline_row(open_time: int, close: str = "100.5") -> list[object]:
    return [open_time, "100.0", "101.0", "99.0", close, "12.5", open_time + 3_599_999, "1250.0", 42, "6.0", "600.0", "0"]


def test_rest_client_retries_on_429_then_succeeds() -> None:
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        if call_count < 3:
            return httpx.Response(
                status_code=429,
                request=request,
                headers={"Retry-After": "0"},
                json={"code": -1003, "msg": "Too many requests"},
            )
        return httpx.Response(status_code=200, request=request, json=[_kline_row(1_735_689_600_000)])

    client = BinanceRESTClient(
        base_url="https://fapi.binance.com",
        retries=3,
        transport=httpx.MockTransport(handler),
    )
    try:
        candles = client.fetch_klines(
            "BTCUSDT",
            datetime(2025, 1, 1, tzinfo=UTC),
            datetime(2025, 1, 2, tzinfo=UTC),
        )
    finally:
        client.close()

    assert call_count == 3
    assert len(candles) == 1
    assert candles[0].open_time == 1_735_689_600_000
    assert candles[0].close == 100.5
    assert candles[0].trade_count == 42


def test_rest_client_does_not_retry_on_400() -> None:
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        return httpx.Response(status_code=400, request=request, json={"code": -1100, "msg": "Bad request"})

    client = BinanceRESTClient(
        base_url="https://fapi.binance.com",
        retries=5,
        transport=httpx.MockTransport(handler),
    )
    try:
        with pytest.raises(httpx.HTTPStatusError):
            client.fetch_klines(
                "BTCUSDT",
                datetime(2025, 1, 1, tzinfo=UTC),
                datetime(2025, 1, 2, tzinfo=UTC),
            )
    finally:
        client.close()

    assert call_count == 1


def test_retry_after_header_forms() -> None:
    def parse(value: str | None) -> float | None:
        headers = {} if value is None else {"Retry-After": value}
        return BinanceRESTClient._parse_retry_after_seconds(httpx.Response(status_code=429, headers=headers))

    assert parse(None) is None
    assert parse(" 2.5 ") == 2.5
    assert parse("-3") == 0.0
    assert parse("Wed, 01 Jan 2020 00:00:00 GMT") == 0.0
    assert parse("soon") is None


def test_fetch_klines_sends_window_in_epoch_ms() -> None:
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(dict(request.url.params))
        return httpx.Response(status_code=200, request=request, json=[])

    client = BinanceRESTClient(base_url="https://fapi.binance.com", transport=httpx.MockTransport(handler))
    try:
        client.fetch_klines(
            "ethusdt",
            datetime(2025, 1, 1, tzinfo=UTC),
            datetime(2025, 1, 1, 1, tzinfo=UTC),
            interval="15m",
            limit=500,
        )
    finally:
        client.close()

    assert seen == {
        "symbol": "ETHUSDT",
        "interval": "15m",
        "startTime": "1735689600000",
        "endTime": "1735693200000",
        "limit": "500",
    }


def test_symbol_discovery_filters_and_ranks() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/exchangeInfo"):
            return httpx.Response(
                status_code=200,
                request=request,
                json={
                    "symbols": [
                        {"symbol": "BTCUSDT", "status": "TRADING", "quoteAsset": "USDT"},
                        {"symbol": "ETHBUSD", "status": "TRADING", "quoteAsset": "BUSD"},
                        {"symbol": "LUNAUSDT", "status": "SETTLING", "quoteAsset": "USDT"},
                    ]
                },
            )
        return httpx.Response(
            status_code=200,
            request=request,
            json=[
                {"symbol": "ETHUSDT", "quoteVolume": "500.0"},
                {"symbol": "BTCUSDT", "quoteVolume": "900.0"},
                {"symbol": "ETHBTC", "quoteVolume": "99999.0"},
                {"symbol": "SOLUSDT", "quoteVolume": "100.0"},
            ],
        )

    client = BinanceRESTClient(base_url="https://fapi.binance.com", transport=httpx.MockTransport(handler))
    try:
        trading = client.fetch_trading_symbols("USDT")
        top = client.fetch_top_symbols_by_quote_volume(limit=2, quote_asset="USDT")
    finally:
        client.close()

    assert trading == ["BTCUSDT"]
    assert top == ["BTCUSDT", "ETHUSDT"]
