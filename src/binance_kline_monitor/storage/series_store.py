from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

import polars as pl

from binance_kline_monitor.core.schema import (
    Candle,
    candles_to_frame,
    empty_candle_frame,
    normalize_series,
)

logger = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """Raised when a series cannot be read from or written to disk."""


class SeriesStore:
    """Candle history keyed by ``(symbol, interval)``, one parquet file per key.

    Every write goes through :meth:`merge`, which re-reads the persisted series,
    applies last-write-wins de-duplication on ``open_time`` and replaces the
    file atomically. Writers to the same key are serialized; different keys
    proceed independently.
    """

    def __init__(self, root_dir: Path) -> None:
        self._root_dir = root_dir
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def root_dir(self) -> Path:
        return self._root_dir

    def merge(self, symbol: str, interval: str, candles: Iterable[Candle]) -> int:
        return self.merge_frame(symbol, interval, candles).height

    def merge_frame(self, symbol: str, interval: str, candles: Iterable[Candle]) -> pl.DataFrame:
        """Merge candles into the stored series and return the series as written."""
        new_frame = candles_to_frame(candles)
        symbol_upper = symbol.upper()
        with self._key_lock(symbol_upper, interval):
            existing = self._read(symbol_upper, interval)
            if new_frame.height == 0:
                return existing

            merged = normalize_series(pl.concat([existing, new_frame], how="vertical_relaxed"))
            self._write(symbol_upper, interval, merged)

        logger.debug(
            "Merged candles",
            extra={
                "symbol": symbol_upper,
                "interval": interval,
                "new_rows": new_frame.height,
                "total_rows": merged.height,
            },
        )
        return merged

    def load(self, symbol: str, interval: str) -> pl.DataFrame:
        symbol_upper = symbol.upper()
        with self._key_lock(symbol_upper, interval):
            return self._read(symbol_upper, interval)

    def last_known_time(self, symbol: str, interval: str) -> int | None:
        frame = self.load(symbol, interval)
        if frame.height == 0:
            return None
        return int(frame["open_time"].max())

    def exists(self, symbol: str, interval: str) -> bool:
        return self._series_path(symbol.upper(), interval).exists()

    def symbols(self, interval: str) -> list[str]:
        interval_dir = self._interval_dir(interval)
        if not interval_dir.exists():
            return []
        return sorted(path.stem for path in interval_dir.glob("*.parquet"))

    @contextmanager
    def _key_lock(self, symbol: str, interval: str) -> Iterator[None]:
        key = (symbol, interval)
        with self._locks_guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield

    def _read(self, symbol: str, interval: str) -> pl.DataFrame:
        path = self._series_path(symbol, interval)
        if not path.exists():
            return empty_candle_frame()
        try:
            return normalize_series(pl.read_parquet(path))
        except (OSError, pl.exceptions.PolarsError) as exc:
            raise PersistenceError(f"Failed to read series {symbol} {interval} from {path}") from exc

    def _write(self, symbol: str, interval: str, frame: pl.DataFrame) -> None:
        final_path = self._series_path(symbol, interval)
        tmp_dir = self._root_dir / ".tmp"
        tmp_path = tmp_dir / f"{uuid.uuid4().hex}.parquet"
        try:
            final_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_dir.mkdir(parents=True, exist_ok=True)
            frame.write_parquet(tmp_path, compression="zstd", statistics=True)
            tmp_path.replace(final_path)
        except (OSError, pl.exceptions.PolarsError) as exc:
            tmp_path.unlink(missing_ok=True)
            raise PersistenceError(f"Failed to write series {symbol} {interval} to {final_path}") from exc

    def _interval_dir(self, interval: str) -> Path:
        return self._root_dir / "klines" / f"interval={interval}"

    def _series_path(self, symbol: str, interval: str) -> Path:
        return self._interval_dir(interval) / f"{symbol}.parquet"
