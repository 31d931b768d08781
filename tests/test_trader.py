from __future__ import annotations

import hashlib
import hmac
from datetime import UTC, datetime
from typing import Any
from urllib.parse import parse_qsl

import httpx
import pytest

from binance_kline_monitor.core.config import TradingParams
from binance_kline_monitor.core.enums import PositionSide, Signal
from binance_kline_monitor.execution.trader import AutoTrader, BinanceFuturesTrader
from binance_kline_monitor.scoring.report import ERROR_ANALYSIS_FAILED, AnalysisReport, PriceSnapshot

TS = datetime(2025, 1, 1, tzinfo=UTC)


def _report(symbol: str, signal: Signal, price: float = 200.0) -> AnalysisReport:
    return AnalysisReport(
        symbol=symbol,
        timestamp=TS,
        price=PriceSnapshot(current=price, open=price, high=price, low=price),
        total_score=90.0,
        signal=signal,
    )


class RecordingExecution:
    """Keeps an exchange-side position book the way the futures API reports it."""

    def __init__(self, fail: bool = False, fail_close: bool = False) -> None:
        self.opened: list[tuple[str, PositionSide, float, dict[str, Any]]] = []
        self.closed: list[tuple[str, PositionSide, float]] = []
        self.live: dict[str, PositionSide] = {}
        self._fail = fail
        self._fail_close = fail_close

    def open_position(self, symbol: str, side: PositionSide, quantity: float, **kwargs: Any) -> dict[str, Any]:
        if self._fail:
            raise httpx.ConnectError("exchange unreachable")
        self.opened.append((symbol, side, quantity, kwargs))
        self.live[symbol] = side
        return {}

    def close_position(self, symbol: str, side: PositionSide, quantity: float) -> dict[str, Any]:
        if self._fail_close:
            raise httpx.ConnectError("exchange unreachable")
        self.closed.append((symbol, side, quantity))
        self.live.pop(symbol, None)
        return {}

    def open_positions(self) -> dict[str, PositionSide]:
        return dict(self.live)


def test_futures_trader_signs_bracket_orders() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code=200, request=request, json={"orderId": len(requests)})

    trader = BinanceFuturesTrader(
        base_url="https://fapi.binance.com",
        api_key="my-key",
        api_secret="my-secret",
        transport=httpx.MockTransport(handler),
    )
    try:
        order = trader.open_position(
            "btcusdt",
            PositionSide.SHORT,
            0.5,
            leverage=5,
            stop_loss=102.0,
            take_profit=96.0,
        )
    finally:
        trader.close()

    assert order == {"orderId": 2}
    assert [request.url.path for request in requests] == [
        "/fapi/v1/leverage",
        "/fapi/v1/order",
        "/fapi/v1/order",
        "/fapi/v1/order",
    ]
    params = [dict(parse_qsl(request.url.query.decode("utf-8"))) for request in requests]
    assert params[0]["leverage"] == "5"
    assert (params[1]["side"], params[1]["type"], params[1]["quantity"]) == ("SELL", "MARKET", "0.5")
    assert (params[2]["side"], params[2]["type"], params[2]["stopPrice"]) == ("BUY", "STOP_MARKET", "102.0")
    assert (params[3]["type"], params[3]["closePosition"]) == ("TAKE_PROFIT_MARKET", "true")

    for request in requests:
        assert request.method == "POST"
        assert request.headers["X-MBX-APIKEY"] == "my-key"
        query = request.url.query.decode("utf-8")
        unsigned, signature = query.rsplit("&signature=", 1)
        expected = hmac.new(b"my-secret", unsigned.encode("utf-8"), hashlib.sha256).hexdigest()
        assert signature == expected


def test_futures_trader_raises_on_rejected_order() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=400, request=request, json={"code": -2019, "msg": "Margin is insufficient"})

    trader = BinanceFuturesTrader(
        base_url="https://fapi.binance.com",
        api_key="k",
        api_secret="s",
        transport=httpx.MockTransport(handler),
    )
    try:
        with pytest.raises(httpx.HTTPStatusError):
            trader.close_position("BTCUSDT", PositionSide.LONG, 1.0)
    finally:
        trader.close()


def test_auto_trader_plans_long_and_short_brackets() -> None:
    trader = AutoTrader(RecordingExecution(), TradingParams())

    long_plan = trader.plan(_report("BTCUSDT", Signal.STRONG_BUY, price=200.0))
    short_plan = trader.plan(_report("ETHUSDT", Signal.STRONG_SELL, price=50.0))

    assert long_plan is not None and short_plan is not None
    assert long_plan.side == PositionSide.LONG
    assert long_plan.quantity == pytest.approx(0.5)
    assert long_plan.stop_loss == pytest.approx(196.0)
    assert long_plan.take_profit == pytest.approx(208.0)
    assert short_plan.side == PositionSide.SHORT
    assert short_plan.quantity == pytest.approx(2.0)
    assert short_plan.stop_loss == pytest.approx(51.0)
    assert short_plan.take_profit == pytest.approx(48.0)


def test_auto_trader_ignores_weak_and_degraded_reports() -> None:
    execution = RecordingExecution()
    trader = AutoTrader(execution, TradingParams())

    assert trader.execute(_report("BTCUSDT", Signal.BUY)) is None
    assert trader.execute(_report("BTCUSDT", Signal.NEUTRAL)) is None
    assert trader.execute(AnalysisReport.degraded("BTCUSDT", TS, ERROR_ANALYSIS_FAILED)) is None
    assert execution.opened == []


def test_auto_trader_limits_positions() -> None:
    execution = RecordingExecution()
    trader = AutoTrader(execution, TradingParams(max_positions=2))

    assert trader.execute(_report("BTCUSDT", Signal.STRONG_BUY)) is not None
    assert trader.execute(_report("BTCUSDT", Signal.STRONG_BUY)) is None
    assert trader.execute(_report("ETHUSDT", Signal.STRONG_SELL)) is not None
    assert trader.execute(_report("SOLUSDT", Signal.STRONG_BUY)) is None
    assert [symbol for symbol, *_ in execution.opened] == ["BTCUSDT", "ETHUSDT"]
    assert trader.open_symbols == frozenset({"BTCUSDT", "ETHUSDT"})


def test_opposite_signal_reverses_position_within_its_slot() -> None:
    execution = RecordingExecution()
    trader = AutoTrader(execution, TradingParams(max_positions=2))

    trader.execute(_report("BTCUSDT", Signal.STRONG_BUY, price=200.0))
    trader.execute(_report("ETHUSDT", Signal.STRONG_BUY, price=100.0))
    reversed_plan = trader.execute(_report("BTCUSDT", Signal.STRONG_SELL, price=250.0))

    assert reversed_plan is not None
    assert reversed_plan.side == PositionSide.SHORT
    assert execution.closed == [("BTCUSDT", PositionSide.LONG, pytest.approx(0.5))]
    assert [(symbol, side) for symbol, side, *_ in execution.opened] == [
        ("BTCUSDT", PositionSide.LONG),
        ("ETHUSDT", PositionSide.LONG),
        ("BTCUSDT", PositionSide.SHORT),
    ]
    assert execution.live == {"BTCUSDT": PositionSide.SHORT, "ETHUSDT": PositionSide.LONG}
    assert trader.position("btcusdt") == reversed_plan
    assert trader.execute(_report("SOLUSDT", Signal.STRONG_BUY)) is None


def test_position_closed_on_exchange_frees_its_slot() -> None:
    execution = RecordingExecution()
    trader = AutoTrader(execution, TradingParams(max_positions=2))

    trader.execute(_report("BTCUSDT", Signal.STRONG_BUY))
    trader.execute(_report("ETHUSDT", Signal.STRONG_BUY))
    assert trader.execute(_report("SOLUSDT", Signal.STRONG_BUY)) is None

    # BTC bracket stop fired on the exchange
    del execution.live["BTCUSDT"]

    assert trader.execute(_report("SOLUSDT", Signal.STRONG_BUY)) is not None
    assert trader.open_symbols == frozenset({"ETHUSDT", "SOLUSDT"})
    assert execution.closed == []


def test_failed_reversal_keeps_the_current_position() -> None:
    execution = RecordingExecution(fail_close=True)
    trader = AutoTrader(execution, TradingParams())

    original = trader.execute(_report("BTCUSDT", Signal.STRONG_BUY))

    assert trader.execute(_report("BTCUSDT", Signal.STRONG_SELL)) is None
    assert trader.position("BTCUSDT") == original
    assert len(execution.opened) == 1


def test_futures_trader_reads_open_positions() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            status_code=200,
            request=request,
            json=[
                {"symbol": "BTCUSDT", "positionAmt": "0.500"},
                {"symbol": "ETHUSDT", "positionAmt": "-2.000"},
                {"symbol": "SOLUSDT", "positionAmt": "0.000"},
            ],
        )

    trader = BinanceFuturesTrader(
        base_url="https://fapi.binance.com",
        api_key="k",
        api_secret="s",
        transport=httpx.MockTransport(handler),
    )
    try:
        positions = trader.open_positions()
    finally:
        trader.close()

    assert positions == {"BTCUSDT": PositionSide.LONG, "ETHUSDT": PositionSide.SHORT}
    assert requests[0].method == "GET"
    assert requests[0].url.path == "/fapi/v2/positionRisk"
    assert "&signature=" in requests[0].url.query.decode("utf-8")


def test_futures_trader_close_cancels_leftover_brackets() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code=200, request=request, json={"orderId": 7})

    trader = BinanceFuturesTrader(
        base_url="https://fapi.binance.com",
        api_key="k",
        api_secret="s",
        transport=httpx.MockTransport(handler),
    )
    try:
        order = trader.close_position("btcusdt", PositionSide.LONG, 0.5)
    finally:
        trader.close()

    assert order == {"orderId": 7}
    assert [(request.method, request.url.path) for request in requests] == [
        ("POST", "/fapi/v1/order"),
        ("DELETE", "/fapi/v1/allOpenOrders"),
    ]
    params = dict(parse_qsl(requests[0].url.query.decode("utf-8")))
    assert (params["side"], params["reduceOnly"]) == ("SELL", "true")


def test_auto_trader_failure_is_logged_not_raised() -> None:
    trader = AutoTrader(RecordingExecution(fail=True), TradingParams())

    assert trader.execute(_report("BTCUSDT", Signal.STRONG_BUY)) is None
    assert trader.open_symbols == frozenset()
