from __future__ import annotations

from datetime import UTC, datetime, timedelta

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_ONE_MS = timedelta(milliseconds=1)

_INTERVAL_UNITS_MS = {
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
    "w": 604_800_000,
}


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return (value - _EPOCH) // _ONE_MS


def from_ms(value_ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=value_ms)


def interval_to_ms(interval: str) -> int:
    """Convert a Binance interval tag such as ``1m``, ``4h`` or ``1d`` to milliseconds."""
    normalized = interval.strip()
    if len(normalized) < 2:
        raise ValueError(f"Unsupported interval: {interval!r}")
    unit = normalized[-1]
    if unit not in _INTERVAL_UNITS_MS:
        raise ValueError(f"Unsupported interval unit: {interval!r}")
    try:
        count = int(normalized[:-1])
    except ValueError as exc:
        raise ValueError(f"Unsupported interval: {interval!r}") from exc
    if count <= 0:
        raise ValueError(f"Interval must be positive: {interval!r}")
    return count * _INTERVAL_UNITS_MS[unit]
