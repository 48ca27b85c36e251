"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal
from typing import Literal

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExchangeSettings(BaseSettings):
    """Market-data exchange connection settings.

    Per-portfolio trading credentials live in the store; these keys are only
    used by the shared client that serves prices and symbol rules.
    """

    model_config = SettingsConfigDict(env_prefix="EXCHANGE_")

    exchange_id: str = "binance"  # any ccxt exchange id
    api_key: SecretStr = SecretStr("")
    api_secret: SecretStr = SecretStr("")
    sandbox: bool = False


class TradingSettings(BaseSettings):
    """Order placement parameters and exchange call timeouts."""

    model_config = SettingsConfigDict(env_prefix="TRADING_")

    mode: Literal["paper", "live"] = "paper"
    order_timeout_seconds: float = 5.0
    price_timeout_seconds: float = 3.0
    rules_timeout_seconds: float = 10.0
    rules_cache_ttl_seconds: float = 3600.0  # symbol rules rarely change
    paper_slippage: Decimal = Decimal("0.0005")  # 5 bps
    paper_balances: dict[str, Decimal] = {"USDT": Decimal("10000")}  # per account
    balance_check: bool = True
    force_close_max_retries: int = 1
    record_close_attempts: int = 3  # store writes after an exit fill
    record_close_backoff_seconds: float = 0.5


class MonitorSettings(BaseSettings):
    """Take-profit / stop-loss monitor cadence and limits."""

    model_config = SettingsConfigDict(env_prefix="MONITOR_")

    enabled: bool = True
    interval_seconds: float = 30.0
    deadline_seconds: float = 25.0
    max_concurrency: int = 10
    close_failure_alert_threshold: int = 5  # consecutive failed closes before CRITICAL log

    @model_validator(mode="after")
    def _deadline_within_interval(self) -> "MonitorSettings":
        if self.deadline_seconds > self.interval_seconds:
            raise ValueError(
                f"deadline_seconds ({self.deadline_seconds}) must not exceed "
                f"interval_seconds ({self.interval_seconds})"
            )
        return self


class StoreSettings(BaseSettings):
    """Position store location."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    db_path: str = "data/trading.db"


class ApiSettings(BaseSettings):
    """HTTP trigger surface configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080
    cron_secret: SecretStr = SecretStr("")  # empty disables the bearer check


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    exchange: ExchangeSettings = ExchangeSettings()
    trading: TradingSettings = TradingSettings()
    monitor: MonitorSettings = MonitorSettings()
    store: StoreSettings = StoreSettings()
    api: ApiSettings = ApiSettings()
