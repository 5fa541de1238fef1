"""Daily weighted re-allocation across several markets."""

import asyncio
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timedelta, timezone

import aiohttp
import structlog

from common.logger import get_trade_logger
from common.metrics import StrategyMetrics
from services.execution.errors import ExecutionError
from services.execution.gateway import ExecutionGateway
from .allocation import RebalanceAction, RebalanceOrder, plan_rebalance

logger = structlog.get_logger(__name__)

DAY = timedelta(days=1)


def start_of_day(ts: datetime) -> datetime:
    """Midnight of ``ts``'s UTC day."""
    return ts.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


class RebalancingStrategy:
    """
    Keeps ``invested_percentage`` of the account spread over the configured
    markets according to their weights.

    Increases open a long at leverage 1 for the missing value; decreases
    close the matching share of the existing position.
    """

    def __init__(
        self,
        gateway: ExecutionGateway,
        weights: Dict[str, float],
        invested_percentage: float,
        quote_currency: str = "USDT",
        api_base_url: str = "https://api.binance.com/api",
        trade_pause: float = 5.0,
        check_interval: float = 300.0,
        min_trade_value: float = 0.0,
        metrics: Optional[StrategyMetrics] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        """
        Args:
            gateway: Venue used to open and close positions
            weights: Target weight per asset, e.g. {"BTC": 0.6, "ETH": 0.4}
            invested_percentage: Share of the total value to keep invested (0-1)
            quote_currency: Quote currency of every market
            api_base_url: REST base URL used for index prices
            trade_pause: Seconds to wait between two trades
            check_interval: Seconds between checks whether a day has passed
            min_trade_value: Smallest value difference worth trading
            metrics: Optional metrics sink
            clock: Source of the current UTC time
        """
        self.gateway = gateway
        self.weights = dict(weights)
        self.invested_percentage = invested_percentage
        self.quote_currency = quote_currency.upper()
        self.api_base_url = api_base_url.rstrip("/")
        self.trade_pause = trade_pause
        self.check_interval = check_interval
        self.min_trade_value = min_trade_value
        self.metrics = metrics
        self.clock = clock
        self.trade_logger = get_trade_logger("rebalancing")

        self.prices: Dict[str, float] = {}
        self.last_rebalance: Optional[datetime] = None
        self.running = False
        self.session: Optional[aiohttp.ClientSession] = None
        self._stop_event = asyncio.Event()
        self.stats = {
            'rebalances': 0,
            'trades': 0,
            'errors': 0
        }

        weight_sum = sum(self.weights.values())
        if abs(weight_sum - 1.0) > 1e-6:
            logger.warning("Market weights do not sum to 1", weight_sum=weight_sum)

    def market_id(self, asset: str) -> str:
        """ccxt unified perpetual symbol for ``asset``."""
        return f"{asset.upper()}/{self.quote_currency}:{self.quote_currency}"

    def price_for_market(self, market_id: str) -> Optional[float]:
        """Last fetched index price of ``market_id``."""
        asset = market_id.split("/")[0]
        return self.prices.get(asset)

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))
        return self.session

    async def fetch_price(self, asset: str) -> float:
        """Index price of ``asset`` against the quote currency."""
        url = f"{self.api_base_url}/v3/ticker/price"
        params = {'symbol': f"{asset.upper()}{self.quote_currency}"}

        session = self._get_session()
        async with session.get(url, params=params) as response:
            response.raise_for_status()
            data = await response.json()
        return float(data['price'])

    async def fetch_prices(self) -> Dict[str, float]:
        """Index prices of every weighted asset; also refreshes ``prices``."""
        assets = list(self.weights)
        results = await asyncio.gather(*(self.fetch_price(a) for a in assets))
        self.prices = dict(zip(assets, results))
        return dict(self.prices)

    async def rebalance_once(self) -> List[RebalanceOrder]:
        """
        Run one rebalancing pass.

        Returns:
            The orders that were executed

        Raises:
            ExecutionError: Balance or position values could not be read
            aiohttp.ClientError: Index prices could not be fetched
        """
        balance = await self.gateway.get_balance()
        prices = await self.fetch_prices()

        position_values: Dict[str, float] = {}
        for asset, price in prices.items():
            position_values[asset] = await self.gateway.get_position_value(
                self.market_id(asset), price
            )

        orders = plan_rebalance(
            balance,
            position_values,
            self.weights,
            self.invested_percentage,
            self.min_trade_value
        )
        logger.info(
            "Rebalancing",
            balance=balance,
            position_values=position_values,
            planned_trades=len(orders)
        )

        executed: List[RebalanceOrder] = []
        for i, order in enumerate(orders):
            if i > 0 and self.trade_pause > 0:
                await asyncio.sleep(self.trade_pause)
            if await self._execute(order):
                executed.append(order)

        self.stats['rebalances'] += 1
        return executed

    async def _execute(self, order: RebalanceOrder) -> bool:
        market_id = self.market_id(order.market)
        try:
            if order.action is RebalanceAction.INCREASE:
                order_id = await self.gateway.open_position(market_id, order.amount, True, 1.0)
            else:
                order_id = await self.gateway.close_position(market_id, order.percentage)
        except ExecutionError as e:
            self.stats['errors'] += 1
            if self.metrics:
                self.metrics.record_order(market_id, order.action.value, success=False)
                self.metrics.record_error("execution_error")
            self.trade_logger.log_order_failed(
                market_id=market_id,
                action=order.action.value,
                error=str(e),
                amount=order.amount
            )
            return False

        self.stats['trades'] += 1
        if self.metrics:
            self.metrics.record_order(market_id, order.action.value, success=True)
        self.trade_logger.log_rebalance(
            market=market_id,
            action=order.action.value,
            amount=order.amount,
            percentage=order.percentage,
            order_id=order_id,
            current_value=order.current_value,
            target_value=order.target_value
        )
        return True

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """True when never rebalanced or a full day has passed since the last day boundary."""
        if self.last_rebalance is None:
            return True
        now = now or self.clock()
        return now - self.last_rebalance >= DAY

    async def run(self) -> None:
        """Rebalance once a day, checking every ``check_interval`` seconds."""
        self.running = True
        self._stop_event.clear()
        try:
            balance = await self.gateway.get_balance()
            logger.info("Starting rebalancing strategy", balance=balance, weights=self.weights)

            while self.running:
                now = self.clock()
                if self.is_due(now):
                    try:
                        await self.rebalance_once()
                        self.last_rebalance = start_of_day(now)
                    except (ExecutionError, aiohttp.ClientError, asyncio.TimeoutError,
                            KeyError, ValueError) as e:
                        # retried at the next check
                        self.stats['errors'] += 1
                        if self.metrics:
                            self.metrics.record_error("rebalance_error")
                        logger.error("Rebalancing failed", error=str(e))

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.check_interval)
                except asyncio.TimeoutError:
                    continue
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the loop and release connections."""
        if self.session and not self.session.closed:
            await self.session.close()
        if not self.running:
            return
        self.running = False
        self._stop_event.set()
        await self.gateway.close()
        logger.info("Rebalancing strategy stopped")

    def describe(self) -> Dict[str, Any]:
        """Snapshot for status output."""
        return {
            'weights': self.weights,
            'invested_percentage': self.invested_percentage,
            'prices': dict(self.prices),
            'last_rebalance': self.last_rebalance.isoformat() if self.last_rebalance else None,
            'stats': self.stats.copy()
        }
