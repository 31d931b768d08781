from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import asdict, dataclass
from typing import Any, Final

import polars as pl


@dataclass(frozen=True, slots=True)
class ColumnSpec:
    name: str
    dtype: str
    source: str


_CANDLE_COLUMNS: Final[tuple[ColumnSpec, ...]] = (
    ColumnSpec("open_time", "BigInt", "klines"),
    ColumnSpec("open", "Float", "klines"),
    ColumnSpec("high", "Float", "klines"),
    ColumnSpec("low", "Float", "klines"),
    ColumnSpec("close", "Float", "klines"),
    ColumnSpec("volume", "Float", "klines"),
    ColumnSpec("close_time", "BigInt", "klines"),
    ColumnSpec("quote_volume", "Float", "klines"),
    ColumnSpec("trade_count", "Int", "klines"),
)

_POLARS_DTYPES: Final[dict[str, pl.DataType]] = {
    "BigInt": pl.Int64(),
    "Int": pl.Int64(),
    "Float": pl.Float64(),
}


def candle_columns() -> tuple[ColumnSpec, ...]:
    return _CANDLE_COLUMNS


def candle_column_names() -> list[str]:
    return [column.name for column in _CANDLE_COLUMNS]


def dtype_map() -> dict[str, pl.DataType]:
    return {column.name: _POLARS_DTYPES[column.dtype] for column in _CANDLE_COLUMNS}


@dataclass(frozen=True, slots=True)
class Candle:
    """One finalized OHLCV observation keyed by ``open_time`` (epoch ms)."""

    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int
    quote_volume: float
    trade_count: int

    @classmethod
    def from_rest_row(cls, row: Sequence[Any]) -> Candle:
        return cls(
            open_time=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
            close_time=int(row[6]),
            quote_volume=float(row[7]),
            trade_count=int(row[8]),
        )

    @classmethod
    def from_kline_payload(cls, kline: Mapping[str, Any]) -> Candle:
        return cls(
            open_time=int(kline["t"]),
            open=float(kline["o"]),
            high=float(kline["h"]),
            low=float(kline["l"]),
            close=float(kline["c"]),
            volume=float(kline["v"]),
            close_time=int(kline["T"]),
            quote_volume=float(kline.get("q", 0.0)),
            trade_count=int(kline.get("n", 0)),
        )

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Candle:
        return cls(**{name: record[name] for name in candle_column_names()})

    def as_record(self) -> dict[str, Any]:
        return asdict(self)


def empty_candle_frame() -> pl.DataFrame:
    return pl.DataFrame(schema=dtype_map())


def candles_to_frame(candles: Iterable[Candle]) -> pl.DataFrame:
    records = [candle.as_record() for candle in candles]
    if not records:
        return empty_candle_frame()
    return pl.DataFrame(records, schema=dtype_map())


def frame_to_candles(frame: pl.DataFrame) -> list[Candle]:
    return [Candle.from_record(row) for row in frame.select(candle_column_names()).iter_rows(named=True)]


def normalize_series(frame: pl.DataFrame) -> pl.DataFrame:
    """De-duplicate by ``open_time`` keeping the last occurrence, then sort ascending."""
    return (
        frame.select(candle_column_names())
        .cast(dtype_map())
        .unique(subset=["open_time"], keep="last", maintain_order=True)
        .sort("open_time")
    )
