from __future__ import annotations

import logging

import polars as pl

from binance_kline_monitor.core.config import ScoreWeights, SignalThresholds
from binance_kline_monitor.core.enums import RiskLevel, Signal
from binance_kline_monitor.core.schema import Candle
from binance_kline_monitor.core.time_utils import from_ms
from binance_kline_monitor.scoring.indicators import IndicatorEngine, IndicatorSnapshot
from binance_kline_monitor.scoring.report import (
    ERROR_ANALYSIS_FAILED,
    ERROR_INSUFFICIENT_HISTORY,
    AnalysisReport,
    CategoryScores,
    PriceSnapshot,
    Recommendation,
)

logger = logging.getLogger(__name__)

_RECOMMENDATIONS: dict[Signal, tuple[str, str]] = {
    Signal.STRONG_BUY: ("Go long", "high"),
    Signal.BUY: ("Consider a long position", "medium"),
    Signal.NEUTRAL: ("Stay on the sidelines", "low"),
    Signal.SELL: ("Consider a short position", "medium"),
    Signal.STRONG_SELL: ("Go short", "high"),
}


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def trend_score(ema_short: float, ema_medium: float, ema_long: float) -> float:
    if ema_short > ema_medium > ema_long:
        return 100.0
    if ema_short < ema_medium < ema_long:
        return 0.0
    if ema_short == ema_medium == ema_long:
        return 50.0
    if ema_short > ema_medium and ema_medium < ema_long:
        return 75.0
    return 25.0


def momentum_score(rsi: float) -> float:
    if rsi > 70:
        return 100.0
    if rsi < 30:
        return 0.0
    return 50.0 + (rsi - 50.0)


def volatility_score(upper: float, middle: float, lower: float) -> float:
    if middle == 0:
        return 0.0
    return min(100.0, (upper - lower) / middle * 100.0)


def volume_score(volume: float, volume_average: float) -> float:
    if volume > volume_average:
        return 100.0
    if volume_average <= 0:
        return 0.0
    return volume / volume_average * 100.0


def support_score(price: float, upper: float, lower: float) -> float:
    if price > upper:
        return 100.0
    if price < lower:
        return 0.0
    if upper == lower:
        return 50.0
    return (price - lower) / (upper - lower) * 100.0


def classify_signal(total_score: float, thresholds: SignalThresholds) -> Signal:
    if total_score >= thresholds.strong_buy:
        return Signal.STRONG_BUY
    if total_score >= thresholds.buy:
        return Signal.BUY
    if total_score >= thresholds.neutral:
        return Signal.NEUTRAL
    if total_score >= thresholds.sell:
        return Signal.SELL
    return Signal.STRONG_SELL


def classify_risk(volatility: float) -> RiskLevel:
    if volatility > 80:
        return RiskLevel.HIGH
    if volatility > 50:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def build_recommendation(signal: Signal, scores: CategoryScores) -> Recommendation:
    action, confidence = _RECOMMENDATIONS[signal]
    reasons: list[str] = []
    if scores.trend > 70:
        reasons.append("strong uptrend")
    if scores.trend < 30:
        reasons.append("strong downtrend")
    if scores.momentum > 70:
        reasons.append("strong momentum")
    if scores.momentum < 30:
        reasons.append("weak momentum")
    if scores.volume > 70:
        reasons.append("volume expanding")
    if scores.volatility > 70:
        reasons.append("high volatility, manage risk")
    return Recommendation(action=action, confidence=confidence, reasons=tuple(reasons))


class ScoringEngine:
    def __init__(
        self,
        *,
        weights: ScoreWeights | None = None,
        thresholds: SignalThresholds | None = None,
        min_history: int = 100,
        indicator_engine: IndicatorEngine | None = None,
    ) -> None:
        self._weights = weights or ScoreWeights()
        self._thresholds = thresholds or SignalThresholds()
        self._min_history = min_history
        self._indicators = indicator_engine or IndicatorEngine()

    def analyze(self, symbol: str, candle: Candle, series: pl.DataFrame) -> AnalysisReport:
        timestamp = from_ms(candle.close_time)
        if series.height < self._min_history:
            return AnalysisReport.degraded(symbol, timestamp, ERROR_INSUFFICIENT_HISTORY)

        try:
            snapshot = self._indicators.snapshot(series)
            scores = self.score(candle, snapshot)
        except Exception:
            logger.exception("Analysis failed", extra={"symbol": symbol, "rows": series.height})
            return AnalysisReport.degraded(symbol, timestamp, ERROR_ANALYSIS_FAILED)

        if scores is None:
            return AnalysisReport.degraded(symbol, timestamp, ERROR_INSUFFICIENT_HISTORY)

        total = _clamp(scores.weighted_total(self._weights))
        signal = classify_signal(total, self._thresholds)
        return AnalysisReport(
            symbol=symbol,
            timestamp=timestamp,
            price=PriceSnapshot(current=candle.close, open=candle.open, high=candle.high, low=candle.low),
            indicators=snapshot,
            scores=scores,
            total_score=total,
            signal=signal,
            risk_level=classify_risk(scores.volatility),
            recommendation=build_recommendation(signal, scores),
        )

    def score(self, candle: Candle, snapshot: IndicatorSnapshot) -> CategoryScores | None:
        bands = snapshot.bollinger
        if (
            snapshot.ema5 is None
            or snapshot.ema13 is None
            or snapshot.ema144 is None
            or snapshot.rsi is None
            or snapshot.volume_sma20 is None
            or bands is None
        ):
            return None

        return CategoryScores(
            trend=_clamp(trend_score(snapshot.ema5, snapshot.ema13, snapshot.ema144)),
            momentum=_clamp(momentum_score(snapshot.rsi)),
            volatility=_clamp(volatility_score(bands.upper, bands.middle, bands.lower)),
            volume=_clamp(volume_score(candle.volume, snapshot.volume_sma20)),
            support=_clamp(support_score(candle.close, bands.upper, bands.lower)),
        )

    def classify(self, total_score: float) -> Signal:
        return classify_signal(total_score, self._thresholds)
