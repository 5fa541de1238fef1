"""Binance trade stream: push price feed over a websocket."""

import asyncio
import json
from typing import Any, Dict, Optional
from datetime import datetime, timezone

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
import structlog
from pydantic import ValidationError

from common.metrics import StrategyMetrics
from smabot.models import TradeMessage
from .base import PriceFeed, PriceHandler

logger = structlog.get_logger(__name__)


class TradeStreamFeed(PriceFeed):
    """WebSocket client for a single ``<symbol>@trade`` stream."""

    name = "trade_stream"

    def __init__(
        self,
        symbol: str,
        base_url: str = "wss://stream.binance.com:9443/ws",
        max_reconnect_attempts: int = 10,
        metrics: Optional[StrategyMetrics] = None
    ):
        self.symbol = symbol.lower()
        self.base_url = base_url.rstrip("/")
        self.metrics = metrics
        self.websocket = None
        self.connected = False
        self.running = False
        self.reconnect_attempts = 0
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = 1  # Start with 1 second
        self.max_reconnect_delay = 60
        self.last_message_time: Optional[datetime] = None
        self.message_count = 0
        self.error_count = 0

        # Health monitoring

    def _build_stream_url(self) -> str:
        """Build the WebSocket stream URL for the trade stream."""
        return f"{self.base_url}/{self.symbol}@trade"

    def _set_connected(self, connected: bool) -> None:
        self.connected = connected
        if self.metrics:
            self.metrics.set_feed_connected(self.name, connected)

    def _record_error(self) -> None:
        self.error_count += 1
        if self.metrics:
            self.metrics.record_feed_error(self.name)

    async def connect(self) -> bool:
        """Connect to the trade stream."""
        try:
            url = self._build_stream_url()
            logger.info("Connecting to trade stream", url=url)

            self.websocket = await websockets.connect(
                url,
                ping_interval=20,
                ping_timeout=10,
                close_timeout=10,
                compression=None  # Disable compression for lower latency
            )

            self._set_connected(True)
            self.reconnect_attempts = 0
            self.reconnect_delay = 1
            self.last_message_time = datetime.now(timezone.utc)

            logger.info("Connected to trade stream", symbol=self.symbol)
            return True

        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.error("Failed to connect to trade stream", error=str(e))
            self._set_connected(False)
            return False

    async def stop(self) -> None:
        """Disconnect from the stream."""
        self.running = False
        self._set_connected(False)
        if self.websocket:
            try:
                await self.websocket.close()
                logger.info("Disconnected from trade stream")
            except (OSError, WebSocketException) as e:
                logger.error("Error disconnecting from trade stream", error=str(e))

    async def run(self, on_price: PriceHandler) -> None:
        """Listen for trades, reconnecting with exponential backoff."""
        self.running = True
        while self.running:
            if not self.connected:
                if not await self._reconnect():
                    logger.error("Trade stream unavailable, no further decisions will be made",
                                 attempts=self.reconnect_attempts)
                    self.running = False
                    return

            await self._listen_messages(on_price)

    async def _listen_messages(self, on_price: PriceHandler) -> None:
        """Dispatch incoming messages until the connection drops."""
        if not self.websocket:
            self._set_connected(False)
            return

        try:
            async for message in self.websocket:
                self.last_message_time = datetime.now(timezone.utc)
                self.message_count += 1

                trade = parse_trade_message(message)
                if trade is None:
                    self._record_error()
                    continue

                await on_price(trade.price, trade.observed_at)

        except ConnectionClosed:
            logger.warning("Trade stream connection closed")
        except WebSocketException as e:
            logger.error("Trade stream exception", error=str(e))
            self._record_error()
        self._set_connected(False)

    async def _reconnect(self) -> bool:
        """Attempt to reconnect with exponential backoff."""
        while self.running and self.reconnect_attempts < self.max_reconnect_attempts:
            if self.reconnect_attempts:
                logger.info("Attempting to reconnect",
                            attempt=self.reconnect_attempts,
                            delay=self.reconnect_delay)
                await asyncio.sleep(self.reconnect_delay)
            self.reconnect_attempts += 1

            if await self.connect():
                return True

            # Exponential backoff
            self.reconnect_delay = min(self.reconnect_delay * 2, self.max_reconnect_delay)

        return False

    def get_stats(self) -> Dict[str, Any]:
        """Get connection statistics."""
        return {
            "connected": self.connected,
            "message_count": self.message_count,
            "error_count": self.error_count,
            "reconnect_attempts": self.reconnect_attempts,
            "last_message_time": self.last_message_time.isoformat() if self.last_message_time else None,
            "symbol": self.symbol
        }


def parse_trade_message(message: Any) -> Optional[TradeMessage]:
    """Parse a raw trade message; None if it is malformed."""
    try:
        data = json.loads(message)
    except (TypeError, ValueError) as e:
        logger.error("Failed to parse trade message", error=str(e), message=message)
        return None

    if not isinstance(data, dict):
        logger.error("Unexpected trade message shape", message=message)
        return None

    try:
        return TradeMessage.model_validate(data)
    except ValidationError as e:
        logger.error("Invalid trade message", error=str(e), message=message)
        return None
