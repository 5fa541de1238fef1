"""Data models for price feed messages and bot health."""

from typing import Any, List, Optional
from datetime import datetime, timezone
from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TradeMessage(BaseModel):
    """A trade event from the push feed, e.g. ``{"p": "64123.10", "T": 1700000000000}``."""
    price: float = Field(alias="p")
    trade_time: Optional[int] = Field(None, alias="T")

    @field_validator('price', mode='before')
    @classmethod
    def convert_price(cls, v):
        """Binance sends prices as strings."""
        if isinstance(v, str):
            return float(v)
        return v

    @property
    def observed_at(self) -> datetime:
        """Trade time if the venue sent one, else the receive time."""
        if self.trade_time is None:
            return utcnow()
        return datetime.fromtimestamp(self.trade_time / 1000, tz=timezone.utc)


class Kline(BaseModel):
    """A single 1m candle."""
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: datetime

    @classmethod
    def from_binance(cls, row: List[Any]) -> 'Kline':
        """Create from the Binance array form; close price is index 4."""
        return cls(
            open_time=datetime.fromtimestamp(int(row[0]) / 1000, tz=timezone.utc),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
            close_time=datetime.fromtimestamp(int(row[6]) / 1000, tz=timezone.utc),
        )


class HealthStatus(BaseModel):
    """Health status of the application."""
    status: str = "healthy"
    timestamp: datetime = Field(default_factory=utcnow)
    feed_connected: bool = False
    last_message_time: Optional[datetime] = None
    last_price: Optional[float] = None
    message_count: int = 0
    error_count: int = 0
