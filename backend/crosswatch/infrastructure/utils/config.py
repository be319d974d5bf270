"""Configuration management for the EMA cross watcher.

Rules:
- YAML provides defaults (instruments, periods, alert policy).
- .env / environment variables override a small set of runtime switches.
- We do NOT inject YAML into os.environ.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_INSTRUMENTS: Dict[str, str] = {
    "icpusdt.p": "ICPUSDT",
    "btcusdt.p": "BTCUSDT",
    "beatusdt.p": "BEAMXUSDT",
    "ethusdt.p": "ETHUSDT",
    "zecusdt.p": "ZECUSDT",
    "strkusdt.p": "STRKUSDT",
    "hypeusdt.p": "HYPEUSDT",
    "taousdt.p": "TAOUSDT",
    "aaveusdt.p": "AAVEUSDT",
    "solusdt.p": "SOLUSDT",
    "asterusdt.p": "ASTRUSDT",
}

_VALID_INTERVALS = {"1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d"}
_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _check_interval(v: str) -> str:
    if str(v) not in _VALID_INTERVALS:
        raise ValueError(f"interval must be one of: {sorted(_VALID_INTERVALS)}")
    return str(v)


def _check_log_level(v: str) -> str:
    if str(v).upper() not in _VALID_LOG_LEVELS:
        raise ValueError(f"Log level must be one of: {sorted(_VALID_LOG_LEVELS)}")
    return str(v).upper()


class BinanceConfig(BaseModel):
    """Binance USDⓈ-M futures endpoints."""

    rest_url: str = Field(default="https://fapi.binance.com/fapi/v1")
    websocket_url: str = Field(default="wss://fstream.binance.com/ws")
    interval: str = Field(default="5m", description="Kline timeframe")
    seed_limit: int = Field(default=150, ge=1, le=1500, description="Klines fetched per instrument at startup")
    request_timeout_sec: float = Field(default=10.0, gt=0)

    @field_validator("interval")
    @classmethod
    def validate_interval(cls, v: str) -> str:
        return _check_interval(v)


class IndicatorConfig(BaseModel):
    fast_period: int = Field(default=20, ge=2, le=500)
    slow_period: int = Field(default=100, ge=2, le=1000)
    touch_band: float = Field(default=0.00015, ge=0.0, le=0.05, description="Relative band around EMA slow")
    history_limit: int = Field(default=200, ge=1, le=5000)

    @field_validator("slow_period")
    @classmethod
    def validate_periods(cls, v: int, info) -> int:
        if "fast_period" in info.data and v <= info.data["fast_period"]:
            raise ValueError("slow_period must be greater than fast_period")
        return v


class AlertConfig(BaseModel):
    dedup_window_ms: int = Field(default=300_000, ge=0)
    log_capacity: int = Field(default=50, ge=1, le=10_000)


class NotificationConfig(BaseModel):
    desktop_enabled: bool = Field(default=False, description="Desktop popups (needs notify-send)")
    sound_enabled: bool = Field(default=True, description="Terminal bell on each alert")


class APIConfig(BaseModel):
    enabled: bool = Field(default=True)
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000, ge=1024, le=65535)
    cors_origins: List[str] = Field(default=["http://localhost:3000", "http://localhost:5173"])


class MonitoringConfig(BaseModel):
    status_log_interval_seconds: int = Field(default=60, ge=1, le=3600)


class CrossWatchConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)

    binance: BinanceConfig = Field(default_factory=BinanceConfig)
    instruments: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_INSTRUMENTS))
    indicators: IndicatorConfig = Field(default_factory=IndicatorConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        return _check_log_level(v)

    @field_validator("instruments")
    @classmethod
    def validate_instruments(cls, v: Dict[str, str]) -> Dict[str, str]:
        out = {str(k).strip(): str(t).strip().upper() for k, t in v.items() if str(k).strip() and str(t).strip()}
        if not out:
            raise ValueError("instruments must map at least one label to a ticker")
        return out

    @model_validator(mode="after")
    def validate_seed_limit(self) -> "CrossWatchConfig":
        needed = max(self.indicators.fast_period, self.indicators.slow_period)
        if self.binance.seed_limit < needed:
            raise ValueError(f"binance.seed_limit must be at least {needed} (the slow EMA period)")
        return self

    @classmethod
    def from_yaml(cls, yaml_path: Path) -> "CrossWatchConfig":
        """Parse YAML -> validate -> apply env overrides on top."""
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        try:
            with open(yaml_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}")

        try:
            base = cls.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Configuration validation error: {e}")

        return apply_env_overrides(base)


def _env_flag(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def apply_env_overrides(base: CrossWatchConfig) -> CrossWatchConfig:
    if os.getenv("LOG_LEVEL"):
        base.log_level = _check_log_level(os.getenv("LOG_LEVEL", base.log_level))

    interval = os.getenv("BINANCE__INTERVAL")
    if interval:
        base.binance.interval = _check_interval(interval)

    desktop = os.getenv("NOTIFICATIONS__DESKTOP_ENABLED")
    if desktop is not None:
        base.notifications.desktop_enabled = _env_flag(desktop)

    sound = os.getenv("NOTIFICATIONS__SOUND_ENABLED")
    if sound is not None:
        base.notifications.sound_enabled = _env_flag(sound)

    return base


def load_config(config_path: Optional[Path] = None) -> CrossWatchConfig:
    """Load configuration from YAML + .env (env wins). Built-in defaults when no file exists."""
    load_dotenv(dotenv_path=Path(".env"))

    if config_path is not None:
        return CrossWatchConfig.from_yaml(config_path)

    for path in (Path("config/default.yaml"), Path("config/config.yaml"), Path("config.yaml")):
        if path.exists():
            return CrossWatchConfig.from_yaml(path)

    return apply_env_overrides(CrossWatchConfig.model_validate({}))
