"""Moving-average strategy runner: feed -> aggregator -> signal -> state machine."""

import asyncio
from typing import Any, Dict, Optional
from datetime import datetime, timezone

import structlog

from common.logger import get_trade_logger
from common.metrics import StrategyMetrics
from services.execution.errors import ExecutionError
from services.execution.gateway import ExecutionGateway
from services.feeds.base import PriceFeed
from smabot.models import HealthStatus
from .aggregator import PriceAggregator
from .signals import Signal, SignalEvaluator
from .state_machine import Action, PositionStateMachine

logger = structlog.get_logger(__name__)


class MovingAverageStrategy:
    """
    Mean-reversion strategy around a simple moving average of minute closes.

    Observations are handled one at a time. A decided transition runs as a
    single in-flight task; observations arriving meanwhile still extend the
    window but cannot start another transition.
    """

    def __init__(
        self,
        feed: PriceFeed,
        gateway: ExecutionGateway,
        market_id: str,
        period: int,
        threshold_percentage: float,
        token_amount: float,
        leverage: float,
        settle_delay: float = 10.0,
        status_interval: float = 5.0,
        metrics: Optional[StrategyMetrics] = None,
        service_name: str = "strategy"
    ):
        self.feed = feed
        self.gateway = gateway
        self.market_id = market_id
        self.status_interval = status_interval
        self.metrics = metrics
        self.trade_logger = get_trade_logger(service_name)

        self.aggregator = PriceAggregator(period)
        self.evaluator = SignalEvaluator(period, threshold_percentage)
        self.state_machine = PositionStateMachine(
            gateway=gateway,
            market_id=market_id,
            token_amount=token_amount,
            leverage=leverage,
            evaluator=self.evaluator,
            settle_delay=settle_delay,
            trade_logger=self.trade_logger
        )

        self.running = False
        self.last_signal: Signal = Signal.not_ready()
        self._inflight: Optional[asyncio.Task] = None
        self._status_task: Optional[asyncio.Task] = None
        self.stats = {
            'observations': 0,
            'minute_closes': 0,
            'orders_placed': 0,
            'errors': 0,
            'start_time': None
        }

    @property
    def busy(self) -> bool:
        """Whether a transition task is still running."""
        return self._inflight is not None and not self._inflight.done()

    async def start(self) -> None:
        """Seed the window, then process the feed until it ends or stop() is called."""
        logger.info("Starting moving-average strategy",
                    market_id=self.market_id,
                    feed=self.feed.name,
                    period=self.aggregator.period)

        balance = await self.gateway.get_balance()
        logger.info("Account balance", balance=balance)

        self.running = True
        self.stats['start_time'] = datetime.now(timezone.utc)

        closes = await self.feed.bootstrap()
        if closes:
            self.aggregator.seed(closes, now=self.feed.last_minute)
            self._evaluate(self.aggregator.last_price)

        if self.status_interval > 0:
            self._status_task = asyncio.create_task(self._status_loop())
        try:
            await self.feed.run(self.handle_price)
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Abort the in-flight transition and release the feed and the venue."""
        if not self.running:
            return
        self.running = False
        logger.info("Stopping moving-average strategy")

        tasks = [t for t in (self._status_task, self._inflight) if t and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.feed.stop()
        await self.gateway.close()
        self._update_state_metrics()

    async def handle_price(self, price: float, observed_at: datetime) -> None:
        """Process one price observation from the feed."""
        if self.feed.delivers_closes:
            closed: Optional[float] = self.aggregator.append_close(price, observed_at)
            closed_minute = self.aggregator.current_minute
        else:
            closed_minute = self.aggregator.current_minute
            closed = self.aggregator.observe(price, observed_at)

        self.stats['observations'] += 1
        if closed is not None:
            self.stats['minute_closes'] += 1
            self.trade_logger.log_minute_closed(
                market_id=self.market_id,
                minute=closed_minute,
                close=closed,
                window_size=len(self.aggregator.window)
            )
        if self.metrics:
            self.metrics.record_observation(self.market_id, price, minute_closed=closed is not None)

        self._evaluate(price)

    def _evaluate(self, price: Optional[float]) -> Optional[Action]:
        """Compute the signal and launch a transition if one is due."""
        self.last_signal = self.evaluator.evaluate(self.aggregator.window)
        if price is None or self.busy:
            return None

        action = self.state_machine.decide(price, self.last_signal)
        if action is None:
            return None

        logger.info("Transition decided",
                    action=action.value,
                    price=price,
                    moving_average=self.last_signal.moving_average)
        self._inflight = asyncio.create_task(self._run_transition(action, price, self.last_signal))
        self._inflight.add_done_callback(self._on_transition_done)
        return action

    async def _run_transition(self, action: Action, price: float, signal: Signal) -> Optional[str]:
        try:
            order_id = await self.state_machine.on_price(price, signal)
        except ExecutionError as e:
            # The state machine already logged the order failure; the position is unchanged
            self.stats['errors'] += 1
            if self.metrics:
                self.metrics.record_order(self.market_id, action.value, success=False)
                self.metrics.record_error("execution_error")
            logger.error("Transition failed",
                         action=action.value,
                         error=str(e),
                         state=self.state_machine.state)
            return None
        finally:
            self._update_state_metrics()

        if order_id is not None:
            self.stats['orders_placed'] += 1
            if self.metrics:
                self.metrics.record_order(self.market_id, action.value, success=True)
        return order_id

    def _on_transition_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("Transition cancelled", state=self.state_machine.state)
            return
        exc = task.exception()
        if exc is not None:
            self.stats['errors'] += 1
            logger.error("Unexpected transition error", error=str(exc), exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait for the in-flight transition, if any, to finish."""
        if self._inflight is not None:
            await asyncio.gather(self._inflight, return_exceptions=True)

    async def _status_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.status_interval)
            await self.log_status()

    async def log_status(self) -> None:
        """Log what the strategy is currently doing."""
        self._update_state_metrics()
        price = self.aggregator.last_price
        window = self.aggregator.window
        position = self.state_machine.position

        if len(window) < self.aggregator.period:
            logger.info("Collecting data",
                        collected=len(window),
                        required=self.aggregator.period,
                        price=price)
            return

        if self.state_machine.executing:
            logger.info("Closing position..." if position else "Opening position...",
                        state=self.state_machine.state)
            return

        if position is not None and price is not None:
            try:
                value = await self.gateway.get_position_value(self.market_id, price)
            except ExecutionError as e:
                logger.warning("Could not read position value", error=str(e))
                value = None
            logger.info("Position open",
                        side=position.side.value,
                        value=value,
                        price=price,
                        stop_loss=position.stop_loss,
                        take_profit=position.take_profit)
            return

        signal = self.last_signal
        logger.info("Watching",
                    price=price,
                    moving_average=signal.moving_average,
                    lower_threshold=signal.lower_threshold,
                    upper_threshold=signal.upper_threshold)

    def _update_state_metrics(self) -> None:
        if self.metrics:
            self.metrics.update_state(
                self.market_id,
                side=self.state_machine.position_side_value(),
                executing=self.state_machine.executing,
                moving_average=self.last_signal.moving_average
            )

    def get_health_status(self) -> HealthStatus:
        """Feed and price health of the strategy."""
        feed_stats = self.feed.get_stats()
        connected = bool(feed_stats.get('connected'))
        if not self.running:
            status = 'stopped'
        elif not connected:
            status = 'degraded'
        else:
            status = 'healthy'

        last_message_time = feed_stats.get('last_message_time')
        return HealthStatus(
            status=status,
            feed_connected=connected,
            last_message_time=last_message_time,
            last_price=self.aggregator.last_price,
            message_count=feed_stats.get('message_count', 0),
            error_count=feed_stats.get('error_count', 0) + self.stats['errors']
        )

    def describe(self) -> Dict[str, Any]:
        """Full snapshot for status output."""
        return {
            'market_id': self.market_id,
            'running': self.running,
            'window': self.aggregator.window,
            'signal': {
                'ready': self.last_signal.ready,
                'moving_average': self.last_signal.moving_average,
                'lower_threshold': self.last_signal.lower_threshold,
                'upper_threshold': self.last_signal.upper_threshold
            },
            'state_machine': self.state_machine.describe(),
            'feed': self.feed.get_stats(),
            'stats': {
                **self.stats,
                'start_time': self.stats['start_time'].isoformat() if self.stats['start_time'] else None
            }
        }
