from __future__ import annotations

import math
from dataclasses import dataclass

import polars as pl


@dataclass(frozen=True, slots=True)
class MacdValue:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True, slots=True)
class BollingerValue:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True, slots=True)
class StochasticValue:
    k: float
    d: float | None


@dataclass(frozen=True, slots=True)
class IchimokuValue:
    conversion: float
    base: float
    span_a: float
    span_b: float | None


@dataclass(frozen=True, slots=True)
class IndicatorSnapshot:
    """Latest value of every indicator for one series; ``None`` where history is too short."""

    current_price: float
    ema5: float | None = None
    ema13: float | None = None
    ema144: float | None = None
    sma51: float | None = None
    sma99: float | None = None
    sma144: float | None = None
    sma200: float | None = None
    volume_sma20: float | None = None
    rsi: float | None = None
    macd: MacdValue | None = None
    bollinger: BollingerValue | None = None
    atr: float | None = None
    obv: float | None = None
    stochastic: StochasticValue | None = None
    mfi: float | None = None
    ichimoku: IchimokuValue | None = None


def _last(series: pl.Series) -> float | None:
    if series.len() == 0:
        return None
    value = series[-1]
    if value is None:
        return None
    value = float(value)
    if math.isnan(value) or math.isinf(value):
        return None
    return value


class IndicatorEngine:
    """Computes indicator series with polars and keeps only the latest values."""

    def __init__(
        self,
        *,
        rsi_period: int = 14,
        bollinger_period: int = 20,
        bollinger_std: float = 2.0,
        volume_period: int = 20,
    ) -> None:
        self._rsi_period = rsi_period
        self._bollinger_period = bollinger_period
        self._bollinger_std = bollinger_std
        self._volume_period = volume_period

    def snapshot(self, series: pl.DataFrame) -> IndicatorSnapshot:
        if series.height == 0:
            raise ValueError("cannot compute indicators on an empty series")

        close = series["close"].cast(pl.Float64)
        high = series["high"].cast(pl.Float64)
        low = series["low"].cast(pl.Float64)
        volume = series["volume"].cast(pl.Float64)

        return IndicatorSnapshot(
            current_price=float(close[-1]),
            ema5=_last(self.ema(close, 5)),
            ema13=_last(self.ema(close, 13)),
            ema144=_last(self.ema(close, 144)),
            sma51=_last(close.rolling_mean(window_size=51)),
            sma99=_last(close.rolling_mean(window_size=99)),
            sma144=_last(close.rolling_mean(window_size=144)),
            sma200=_last(close.rolling_mean(window_size=200)),
            volume_sma20=_last(volume.rolling_mean(window_size=self._volume_period)),
            rsi=_last(self.rsi(close, self._rsi_period)),
            macd=self._macd(close),
            bollinger=self._bollinger(close),
            atr=_last(self.atr(high, low, close, 14)),
            obv=_last(self.obv(close, volume)),
            stochastic=self._stochastic(high, low, close),
            mfi=_last(self.mfi(high, low, close, volume, 14)),
            ichimoku=self._ichimoku(high, low),
        )

    @staticmethod
    def ema(values: pl.Series, period: int) -> pl.Series:
        return values.ewm_mean(span=period, adjust=False)

    @staticmethod
    def rsi(close: pl.Series, period: int = 14) -> pl.Series:
        # Wilder smoothing: alpha = 1 / period
        delta = close.diff()
        gains = delta.clip(lower_bound=0.0).fill_null(0.0)
        losses = (-delta).clip(lower_bound=0.0).fill_null(0.0)
        avg_gain = gains.ewm_mean(alpha=1.0 / period, adjust=False)
        avg_loss = losses.ewm_mean(alpha=1.0 / period, adjust=False)
        frame = pl.DataFrame({"gain": avg_gain, "loss": avg_loss}).select(
            pl.when(pl.col("loss") == 0.0)
            .then(pl.when(pl.col("gain") == 0.0).then(50.0).otherwise(100.0))
            .otherwise(100.0 - 100.0 / (1.0 + pl.col("gain") / pl.col("loss")))
            .alias("rsi")
        )
        if close.len() <= period:
            return pl.Series("rsi", [None] * close.len(), dtype=pl.Float64)
        return frame["rsi"]

    @staticmethod
    def atr(high: pl.Series, low: pl.Series, close: pl.Series, period: int = 14) -> pl.Series:
        previous_close = close.shift(1)
        true_range = pl.DataFrame({"high": high, "low": low, "prev": previous_close}).select(
            pl.max_horizontal(
                pl.col("high") - pl.col("low"),
                (pl.col("high") - pl.col("prev")).abs(),
                (pl.col("low") - pl.col("prev")).abs(),
            ).alias("tr")
        )["tr"]
        return true_range.ewm_mean(alpha=1.0 / period, adjust=False)

    @staticmethod
    def obv(close: pl.Series, volume: pl.Series) -> pl.Series:
        direction = close.diff().sign().fill_null(0.0)
        return (direction * volume).cum_sum()

    @staticmethod
    def mfi(high: pl.Series, low: pl.Series, close: pl.Series, volume: pl.Series, period: int = 14) -> pl.Series:
        frame = pl.DataFrame({"high": high, "low": low, "close": close, "volume": volume})
        typical = (pl.col("high") + pl.col("low") + pl.col("close")) / 3.0
        flow = typical * pl.col("volume")
        change = typical.diff()
        result = frame.select(
            pl.when(change > 0).then(flow).otherwise(0.0).rolling_sum(window_size=period).alias("positive"),
            pl.when(change < 0).then(flow).otherwise(0.0).rolling_sum(window_size=period).alias("negative"),
        ).select(
            pl.when(pl.col("negative") == 0.0)
            .then(100.0)
            .otherwise(100.0 - 100.0 / (1.0 + pl.col("positive") / pl.col("negative")))
            .alias("mfi")
        )
        return result["mfi"]

    def _macd(self, close: pl.Series) -> MacdValue | None:
        if close.len() < 26:
            return None
        macd_line = self.ema(close, 12) - self.ema(close, 26)
        signal_line = self.ema(macd_line, 9)
        macd_value = _last(macd_line)
        signal_value = _last(signal_line)
        if macd_value is None or signal_value is None:
            return None
        return MacdValue(macd=macd_value, signal=signal_value, histogram=macd_value - signal_value)

    def _bollinger(self, close: pl.Series) -> BollingerValue | None:
        middle = _last(close.rolling_mean(window_size=self._bollinger_period))
        deviation = _last(close.rolling_std(window_size=self._bollinger_period, ddof=0))
        if middle is None or deviation is None:
            return None
        return BollingerValue(
            upper=middle + self._bollinger_std * deviation,
            middle=middle,
            lower=middle - self._bollinger_std * deviation,
        )

    @staticmethod
    def _stochastic(high: pl.Series, low: pl.Series, close: pl.Series) -> StochasticValue | None:
        highest = high.rolling_max(window_size=14)
        lowest = low.rolling_min(window_size=14)
        spread = highest - lowest
        k_line = pl.DataFrame({"close": close, "lowest": lowest, "spread": spread}).select(
            pl.when(pl.col("spread") == 0.0)
            .then(50.0)
            .otherwise((pl.col("close") - pl.col("lowest")) / pl.col("spread") * 100.0)
            .alias("k")
        )["k"]
        k_value = _last(k_line)
        if k_value is None:
            return None
        return StochasticValue(k=k_value, d=_last(k_line.rolling_mean(window_size=3)))

    @staticmethod
    def _ichimoku(high: pl.Series, low: pl.Series) -> IchimokuValue | None:
        def midpoint(period: int) -> float | None:
            return _last((high.rolling_max(window_size=period) + low.rolling_min(window_size=period)) / 2.0)

        conversion = midpoint(9)
        base = midpoint(26)
        if conversion is None or base is None:
            return None
        return IchimokuValue(
            conversion=conversion,
            base=base,
            span_a=(conversion + base) / 2.0,
            span_b=midpoint(52),
        )
