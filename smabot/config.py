"""Configuration management for the SMA trading bot."""

import json
from typing import Dict, Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file="config.env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Strategy selection
    strategy: Literal["sma", "sma_klines", "rebalancing"] = Field(
        ..., description="Strategy to run"
    )
    dry_run: bool = Field(True, description="Route orders to the paper gateway")

    # Exchange Configuration
    exchange_id: str = Field("binanceusdm", description="ccxt exchange id")
    exchange_api_key: Optional[str] = Field(None)
    exchange_secret_key: Optional[str] = Field(None)
    exchange_testnet: bool = Field(True)

    # Trading Configuration
    market_id: str = Field("BTC/USDT:USDT")
    leverage: float = Field(10.0, gt=0)
    token_amount: float = Field(5.0, gt=0)
    moving_average_period: int = Field(5, ge=1)
    threshold_percentage: float = Field(0.1, gt=0)
    settle_delay_seconds: float = Field(10.0, ge=0)

    # Order confirmation
    confirmation_retries: int = Field(30, ge=1)
    confirmation_poll_interval: float = Field(1.0, ge=0)
    confirmation_timeout: float = Field(60.0, gt=0)

    # Price feed
    feed_symbol: str = Field("BTCUSDT")
    feed_testnet: bool = Field(False)
    poll_interval_seconds: float = Field(60.0, gt=0)
    status_interval_seconds: float = Field(5.0, ge=0)

    # Rebalancing
    markets: Dict[str, float] = Field(default_factory=dict)
    invested_percentage: float = Field(0.5, ge=0, le=1)
    quote_currency: str = Field("USDT")

    # Paper trading
    paper_balance: float = Field(1000.0, ge=0)

    # Logging
    log_level: str = Field("INFO")
    log_format: str = Field("console")

    # Monitoring
    prometheus_port: int = Field(8000, ge=0)

    @field_validator("markets", mode="before")
    @classmethod
    def parse_markets(cls, v):
        """Accept the weights as a JSON object string, e.g. {"BTC": 0.5, "ETH": 0.5}."""
        if isinstance(v, str):
            if not v.strip():
                return {}
            return json.loads(v)
        return v

    @model_validator(mode="after")
    def check_credentials(self) -> "Settings":
        """Live trading requires exchange credentials."""
        if not self.dry_run and not (self.exchange_api_key and self.exchange_secret_key):
            raise ValueError(
                "EXCHANGE_API_KEY and EXCHANGE_SECRET_KEY are required when DRY_RUN is false"
            )
        if self.strategy == "rebalancing" and not self.markets:
            raise ValueError("MARKETS is required for the rebalancing strategy")
        return self

    @property
    def binance_ws_base_url(self) -> str:
        """Get the Binance WebSocket URL for the price feed."""
        if self.feed_testnet:
            return "wss://testnet.binance.vision/ws"
        return "wss://stream.binance.com:9443/ws"

    @property
    def binance_api_base_url(self) -> str:
        """Get the Binance REST URL for the price feed."""
        if self.feed_testnet:
            return "https://testnet.binance.vision/api"
        return "https://api.binance.com/api"


def load_settings(**overrides) -> Settings:
    """Load settings, turning validation failures into a ConfigurationError."""
    try:
        return Settings(**overrides)
    except ValueError as e:
        # pydantic ValidationError, or a settings source that failed to decode a value
        raise ConfigurationError(str(e)) from e
