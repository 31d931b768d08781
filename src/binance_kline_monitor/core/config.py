from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

MAX_STREAMS_PER_BATCH = 200


class ConfigurationError(RuntimeError):
    """Raised when a feature is enabled without the configuration it needs."""


class ScoreWeights(BaseModel):
    trend: float = Field(default=0.3, ge=0.0)
    momentum: float = Field(default=0.2, ge=0.0)
    volatility: float = Field(default=0.2, ge=0.0)
    volume: float = Field(default=0.15, ge=0.0)
    support: float = Field(default=0.15, ge=0.0)


class SignalThresholds(BaseModel):
    strong_buy: float = Field(default=80.0)
    buy: float = Field(default=60.0)
    neutral: float = Field(default=40.0)
    sell: float = Field(default=20.0)

    @model_validator(mode="after")
    def _check_descending(self) -> SignalThresholds:
        if not (self.strong_buy > self.buy > self.neutral > self.sell):
            raise ValueError(
                "signal thresholds must be strictly descending: "
                f"strong_buy={self.strong_buy}, buy={self.buy}, neutral={self.neutral}, sell={self.sell}"
            )
        return self


class TradingParams(BaseModel):
    leverage: int = Field(default=5, ge=1, le=125)
    position_size: float = Field(default=100.0, gt=0.0)
    stop_loss: float = Field(default=0.02, gt=0.0, lt=1.0)
    take_profit: float = Field(default=0.04, gt=0.0)
    max_positions: int = Field(default=5, ge=1)


class Settings(BaseSettings):
    symbols: Annotated[list[str], NoDecode] = Field(default_factory=list)
    top_symbols: int = Field(default=50, ge=1)
    quote_asset: str = Field(default="USDT")
    interval: str = Field(default="1h")

    root_dir: Path = Field(default=Path("./data"))

    rest_base_url: str = Field(default="https://fapi.binance.com")
    websocket_base_url: str = Field(default="wss://fstream.binance.com/ws")

    rest_timeout_seconds: int = Field(default=20, ge=1)
    rest_max_retries: int = Field(default=5, ge=1)

    retention_days: int = Field(default=200, ge=1)
    backfill_page_limit: int = Field(default=1000, ge=1, le=1500)
    backfill_page_delay_seconds: float = Field(default=0.1, ge=0.0)
    backfill_symbol_delay_seconds: float = Field(default=0.3, ge=0.0)

    batch_size: int = Field(default=MAX_STREAMS_PER_BATCH, ge=1, le=MAX_STREAMS_PER_BATCH)
    batch_open_stagger_seconds: float = Field(default=0.5, ge=0.0)
    heartbeat_interval_seconds: float = Field(default=120.0, gt=0.0)
    pong_jitter_seconds: float = Field(default=600.0, ge=0.0)
    reconnect_base_delay_seconds: float = Field(default=5.0, gt=0.0)
    reconnect_max_delay_seconds: float = Field(default=30.0, gt=0.0)
    reconnect_max_attempts: int = Field(default=5, ge=0)
    status_log_interval_seconds: float = Field(default=60.0, gt=0.0)

    min_history: int = Field(default=100, ge=1)
    score_weights: ScoreWeights = Field(default_factory=ScoreWeights)
    signal_thresholds: SignalThresholds = Field(default_factory=SignalThresholds)
    trading: TradingParams = Field(default_factory=TradingParams)

    enable_auto_trading: bool = Field(default=False)
    api_key: SecretStr | None = Field(default=None)
    api_secret: SecretStr | None = Field(default=None)

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="BKM_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @field_validator("symbols", mode="before")
    @classmethod
    def _split_symbols(cls, value: Any) -> Any:
        # BKM_SYMBOLS accepts a JSON list or "BTCUSDT,ETHUSDT"
        if not isinstance(value, str):
            return value
        text = value.strip()
        if text.startswith("["):
            return json.loads(text)
        return [item.strip() for item in text.split(",") if item.strip()]

    @model_validator(mode="after")
    def _check_reconnect_delays(self) -> Settings:
        if self.reconnect_max_delay_seconds < self.reconnect_base_delay_seconds:
            raise ValueError("reconnect_max_delay_seconds must be >= reconnect_base_delay_seconds")
        return self
