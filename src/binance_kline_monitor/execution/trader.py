from __future__ import annotations

import hashlib
import hmac
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx

from binance_kline_monitor.core.config import TradingParams
from binance_kline_monitor.core.enums import PositionSide, Signal
from binance_kline_monitor.scoring.report import AnalysisReport

logger = logging.getLogger(__name__)


class ExecutionService(Protocol):
    def open_position(
        self,
        symbol: str,
        side: PositionSide,
        quantity: float,
        *,
        leverage: int,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> dict[str, Any]: ...

    def close_position(self, symbol: str, side: PositionSide, quantity: float) -> dict[str, Any]: ...

    def open_positions(self) -> dict[str, PositionSide]: ...


def _entry_side(side: PositionSide) -> str:
    return "BUY" if side == PositionSide.LONG else "SELL"


def _exit_side(side: PositionSide) -> str:
    return "SELL" if side == PositionSide.LONG else "BUY"


class BinanceFuturesTrader:
    """Order placement against the USD-M futures REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        api_secret: str,
        timeout_seconds: int = 20,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
            headers={"X-MBX-APIKEY": api_key},
        )
        self._api_secret = api_secret.encode("utf-8")

    def close(self) -> None:
        self._client.close()

    def _signed_request(self, method: str, path: str, params: dict[str, Any] | None = None) -> Any:
        payload = {**(params or {}), "timestamp": int(time.time() * 1000)}
        query = urlencode(payload)
        signature = hmac.new(self._api_secret, query.encode("utf-8"), hashlib.sha256).hexdigest()
        response = self._client.request(method, f"{path}?{query}&signature={signature}")
        response.raise_for_status()
        return response.json()

    def _place_order(self, params: dict[str, Any]) -> dict[str, Any]:
        return self._signed_request("POST", "/fapi/v1/order", params)

    def open_position(
        self,
        symbol: str,
        side: PositionSide,
        quantity: float,
        *,
        leverage: int,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> dict[str, Any]:
        symbol_upper = symbol.upper()
        self._signed_request("POST", "/fapi/v1/leverage", {"symbol": symbol_upper, "leverage": leverage})
        order = self._place_order(
            {"symbol": symbol_upper, "side": _entry_side(side), "type": "MARKET", "quantity": f"{quantity}"}
        )
        if stop_loss is not None:
            self._place_order(
                {
                    "symbol": symbol_upper,
                    "side": _exit_side(side),
                    "type": "STOP_MARKET",
                    "stopPrice": f"{stop_loss}",
                    "closePosition": "true",
                }
            )
        if take_profit is not None:
            self._place_order(
                {
                    "symbol": symbol_upper,
                    "side": _exit_side(side),
                    "type": "TAKE_PROFIT_MARKET",
                    "stopPrice": f"{take_profit}",
                    "closePosition": "true",
                }
            )
        return order

    def close_position(self, symbol: str, side: PositionSide, quantity: float) -> dict[str, Any]:
        """Market-close the position and drop its leftover bracket orders."""
        symbol_upper = symbol.upper()
        order = self._place_order(
            {
                "symbol": symbol_upper,
                "side": _exit_side(side),
                "type": "MARKET",
                "quantity": f"{quantity}",
                "reduceOnly": "true",
            }
        )
        self._signed_request("DELETE", "/fapi/v1/allOpenOrders", {"symbol": symbol_upper})
        return order

    def open_positions(self) -> dict[str, PositionSide]:
        payload = self._signed_request("GET", "/fapi/v2/positionRisk")
        positions: dict[str, PositionSide] = {}
        for item in payload:
            amount = float(item.get("positionAmt", 0.0) or 0.0)
            if amount > 0:
                positions[item["symbol"]] = PositionSide.LONG
            elif amount < 0:
                positions[item["symbol"]] = PositionSide.SHORT
        return positions


@dataclass(frozen=True, slots=True)
class OrderPlan:
    symbol: str
    side: PositionSide
    price: float
    quantity: float
    stop_loss: float
    take_profit: float
    leverage: int


class AutoTrader:
    """Turns STRONG_BUY / STRONG_SELL reports into bracketed market entries.

    At most one position per symbol and ``max_positions`` overall. An opposite
    strong signal closes the current position and opens the reverse one in the
    same slot. Before every entry the local book is synced with the exchange so
    positions closed by their stop-loss or take-profit free their slot.
    """

    def __init__(self, service: ExecutionService, params: TradingParams) -> None:
        self._service = service
        self._params = params
        self._positions: dict[str, OrderPlan] = {}
        self._lock = threading.Lock()

    @property
    def open_symbols(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._positions)

    def position(self, symbol: str) -> OrderPlan | None:
        with self._lock:
            return self._positions.get(symbol.upper())

    def plan(self, report: AnalysisReport) -> OrderPlan | None:
        if report.is_degraded or report.price is None or report.price.current <= 0:
            return None
        if report.signal == Signal.STRONG_BUY:
            side = PositionSide.LONG
        elif report.signal == Signal.STRONG_SELL:
            side = PositionSide.SHORT
        else:
            return None

        price = report.price.current
        if side == PositionSide.LONG:
            stop_loss = price * (1 - self._params.stop_loss)
            take_profit = price * (1 + self._params.take_profit)
        else:
            stop_loss = price * (1 + self._params.stop_loss)
            take_profit = price * (1 - self._params.take_profit)

        return OrderPlan(
            symbol=report.symbol,
            side=side,
            price=price,
            quantity=self._params.position_size / price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            leverage=self._params.leverage,
        )

    def sync(self) -> None:
        """Forget local positions the exchange no longer holds."""
        try:
            live = self._service.open_positions()
        except Exception:
            logger.exception("Position sync failed; keeping local book")
            return

        with self._lock:
            for symbol, held in list(self._positions.items()):
                if live.get(symbol) != held.side:
                    del self._positions[symbol]
                    logger.info("Position closed on exchange", extra={"symbol": symbol, "side": held.side.value})

    def execute(self, report: AnalysisReport) -> OrderPlan | None:
        plan = self.plan(report)
        if plan is None:
            return None

        self.sync()
        with self._lock:
            current = self._positions.get(plan.symbol)
            if current is not None and current.side == plan.side:
                logger.info("Position already open; skipping", extra={"symbol": plan.symbol})
                return None
            if current is None and len(self._positions) >= self._params.max_positions:
                logger.info(
                    "Max open positions reached; skipping",
                    extra={"symbol": plan.symbol, "max_positions": self._params.max_positions},
                )
                return None
            self._positions[plan.symbol] = plan

        if current is not None:
            try:
                self._service.close_position(current.symbol, current.side, current.quantity)
            except Exception:
                with self._lock:
                    self._positions[plan.symbol] = current
                logger.exception(
                    "Closing position for reversal failed",
                    extra={"symbol": plan.symbol, "side": current.side.value},
                )
                return None
            logger.info("Closed position for reversal", extra={"symbol": plan.symbol, "side": current.side.value})

        try:
            self._service.open_position(
                plan.symbol,
                plan.side,
                plan.quantity,
                leverage=plan.leverage,
                stop_loss=plan.stop_loss,
                take_profit=plan.take_profit,
            )
        except Exception:
            with self._lock:
                self._positions.pop(plan.symbol, None)
            logger.exception("Opening position failed", extra={"symbol": plan.symbol, "side": plan.side.value})
            return None

        logger.info(
            "Opened position",
            extra={
                "symbol": plan.symbol,
                "side": plan.side.value,
                "price": plan.price,
                "quantity": plan.quantity,
                "stop_loss": plan.stop_loss,
                "take_profit": plan.take_profit,
            },
        )
        return plan
