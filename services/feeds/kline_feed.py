"""Binance 1m klines: pull price feed over REST."""

import asyncio
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timezone

import aiohttp
import structlog

from common.metrics import StrategyMetrics
from smabot.models import Kline
from .base import PriceFeed, PriceHandler

logger = structlog.get_logger(__name__)


class KlineFeed(PriceFeed):
    """
    Polls the most recent closed 1m kline and delivers its close.

    The venue always returns the kline still in progress as the last row;
    rows whose close time lies in the future are dropped.
    """

    name = "klines"
    delivers_closes = True

    def __init__(
        self,
        symbol: str,
        period: int,
        base_url: str = "https://api.binance.com/api",
        poll_interval: float = 60.0,
        request_timeout: float = 10.0,
        metrics: Optional[StrategyMetrics] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        """
        Args:
            symbol: Venue symbol, e.g. BTCUSDT
            period: Number of closes fetched by bootstrap()
            base_url: REST API base URL
            poll_interval: Seconds between polls
            request_timeout: Total timeout of a single request
            metrics: Optional metrics sink
            clock: Source of the current UTC time
        """
        self.symbol = symbol.upper()
        self.period = period
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self.metrics = metrics
        self.clock = clock
        self.session: Optional[aiohttp.ClientSession] = None
        self.running = False
        self.connected = False
        self.message_count = 0
        self.error_count = 0
        self.last_message_time: Optional[datetime] = None
        self.last_minute: Optional[datetime] = None
        self._stop_event = asyncio.Event()

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
        return self.session

    def _set_connected(self, connected: bool) -> None:
        self.connected = connected
        if self.metrics:
            self.metrics.set_feed_connected(self.name, connected)

    async def _fetch_klines(self, limit: int) -> List[Kline]:
        """Fetch the last ``limit`` 1m klines, oldest first."""
        url = f"{self.base_url}/v3/klines"
        params = {
            'symbol': self.symbol,
            'interval': '1m',
            'limit': limit
        }

        session = self._get_session()
        async with session.get(url, params=params) as response:
            response.raise_for_status()
            rows = await response.json()

        return [Kline.from_binance(row) for row in rows]

    def _closed(self, klines: List[Kline]) -> List[Kline]:
        """Drop klines that have not closed yet."""
        now = self.clock()
        return [k for k in klines if k.close_time <= now]

    async def bootstrap(self) -> List[float]:
        """Closes of the last ``period`` minutes, used to seed the window."""
        try:
            # one extra row for the kline still in progress
            klines = await self._fetch_klines(self.period + 1)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, IndexError) as e:
            logger.error("Failed to fetch initial klines", symbol=self.symbol, error=str(e))
            self._record_error()
            return []

        self._set_connected(True)
        klines = self._closed(klines)[-self.period:]
        closes = [k.close for k in klines]
        if klines:
            self.last_minute = klines[-1].open_time
        logger.info("Fetched initial klines", symbol=self.symbol, count=len(closes))
        return closes

    async def run(self, on_price: PriceHandler) -> None:
        """Poll every ``poll_interval`` seconds until stopped."""
        self.running = True
        self._stop_event.clear()
        while self.running:
            if await self._wait_or_stop(self.poll_interval):
                break
            await self.poll_once(on_price)

    async def poll_once(self, on_price: PriceHandler) -> Optional[float]:
        """Fetch the latest closed kline and deliver its close. Errors are logged, not raised."""
        try:
            klines = await self._fetch_klines(2)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, IndexError) as e:
            logger.error("Failed to fetch kline", symbol=self.symbol, error=str(e))
            self._record_error()
            self._set_connected(False)
            return None

        self._set_connected(True)
        closed = self._closed(klines)
        if not closed:
            logger.warning("No closed kline in response", symbol=self.symbol, rows=len(klines))
            return None

        kline = closed[-1]
        self.message_count += 1
        self.last_message_time = datetime.now(timezone.utc)

        await on_price(kline.close, kline.open_time)
        return kline.close

    async def _wait_or_stop(self, timeout: float) -> bool:
        """Sleep up to ``timeout``; True if stop() was called meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _record_error(self) -> None:
        self.error_count += 1
        if self.metrics:
            self.metrics.record_feed_error(self.name)

    async def stop(self) -> None:
        """Stop polling and close the HTTP session."""
        self.running = False
        self._stop_event.set()
        self._set_connected(False)
        if self.session and not self.session.closed:
            await self.session.close()
        logger.info("Kline feed stopped", symbol=self.symbol)

    def get_stats(self) -> Dict[str, Any]:
        """Get polling statistics."""
        return {
            "connected": self.connected,
            "message_count": self.message_count,
            "error_count": self.error_count,
            "last_message_time": self.last_message_time.isoformat() if self.last_message_time else None,
            "symbol": self.symbol,
            "poll_interval": self.poll_interval
        }
