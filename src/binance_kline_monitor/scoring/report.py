from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from binance_kline_monitor.core.config import ScoreWeights
from binance_kline_monitor.core.enums import RiskLevel, Signal
from binance_kline_monitor.scoring.indicators import IndicatorSnapshot

ERROR_INSUFFICIENT_HISTORY = "insufficient history"
ERROR_ANALYSIS_FAILED = "analysis failed"


@dataclass(frozen=True, slots=True)
class PriceSnapshot:
    current: float
    open: float
    high: float
    low: float


@dataclass(frozen=True, slots=True)
class CategoryScores:
    trend: float
    momentum: float
    volatility: float
    volume: float
    support: float

    def weighted_total(self, weights: ScoreWeights) -> float:
        return (
            self.trend * weights.trend
            + self.momentum * weights.momentum
            + self.volatility * weights.volatility
            + self.volume * weights.volume
            + self.support * weights.support
        )


@dataclass(frozen=True, slots=True)
class Recommendation:
    action: str
    confidence: str
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AnalysisReport:
    symbol: str
    timestamp: datetime
    price: PriceSnapshot | None = None
    indicators: IndicatorSnapshot | None = None
    scores: CategoryScores | None = None
    total_score: float | None = None
    signal: Signal | None = None
    risk_level: RiskLevel | None = None
    recommendation: Recommendation | None = None
    error: str | None = None

    @property
    def is_degraded(self) -> bool:
        return self.error is not None

    @classmethod
    def degraded(cls, symbol: str, timestamp: datetime, error: str) -> AnalysisReport:
        return cls(symbol=symbol, timestamp=timestamp, error=error)
