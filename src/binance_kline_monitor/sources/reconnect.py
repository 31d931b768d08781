from __future__ import annotations

import logging
from dataclasses import dataclass

from binance_kline_monitor.sources.batch import BatchConnectionState

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReconnectPolicy:
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 30.0
    max_attempts: int = 5

    def delay_for(self, attempts: int) -> float:
        return min(self.base_delay_seconds * (2**attempts), self.max_delay_seconds)


class ReconnectController:
    """Per-batch exponential backoff with an attempt budget.

    Only ``state.attempts`` is touched here; everything else on the state
    belongs to the connection pool.
    """

    def __init__(self, policy: ReconnectPolicy | None = None) -> None:
        self._policy = policy or ReconnectPolicy()

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    def reset(self, state: BatchConnectionState) -> None:
        state.attempts = 0

    def next_delay(self, state: BatchConnectionState) -> float | None:
        """Delay before the next attempt, or ``None`` once the budget is spent."""
        if state.attempts >= self._policy.max_attempts:
            logger.error(
                "Reconnect budget exhausted; batch stays offline",
                extra={
                    "batch": state.index,
                    "attempts": state.attempts,
                    "symbols": len(state.batch.symbols),
                },
            )
            return None

        delay = self._policy.delay_for(state.attempts)
        state.attempts += 1
        logger.warning(
            "Scheduling reconnect",
            extra={
                "batch": state.index,
                "attempt": state.attempts,
                "max_attempts": self._policy.max_attempts,
                "sleep_seconds": delay,
            },
        )
        return delay
