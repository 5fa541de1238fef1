"""Main entry point for the SMA trading bot."""

import asyncio
import signal
import sys
import time
from typing import Optional, Union

import structlog
from prometheus_client import CollectorRegistry, start_http_server

from common.logger import configure_logging, get_performance_logger
from common.metrics import StrategyMetrics
from services.execution import CcxtExecutionGateway, ExecutionError, ExecutionGateway, PaperExecutionGateway
from services.feeds import KlineFeed, PriceFeed, TradeStreamFeed
from services.rebalancing import RebalancingStrategy
from services.strategy import MovingAverageStrategy
from .config import ConfigurationError, Settings, load_settings

logger = structlog.get_logger(__name__)

Strategy = Union[MovingAverageStrategy, RebalancingStrategy]


class TradingBot:
    """Builds the configured strategy and runs it until shutdown."""

    def __init__(self, settings: Settings, registry: Optional[CollectorRegistry] = None):
        self.settings = settings
        self.metrics = StrategyMetrics("smabot", registry=registry)
        self.performance_logger = get_performance_logger("smabot")
        self.strategy: Optional[Strategy] = None
        self.gateway: Optional[ExecutionGateway] = None
        self.running = False
        self.start_time: Optional[float] = None

    def _latest_price(self, market_id: str) -> Optional[float]:
        """Price source of the paper gateway."""
        if isinstance(self.strategy, MovingAverageStrategy):
            return self.strategy.aggregator.last_price
        if isinstance(self.strategy, RebalancingStrategy):
            return self.strategy.price_for_market(market_id)
        return None

    def build_gateway(self) -> ExecutionGateway:
        """Paper gateway for dry runs, ccxt gateway otherwise."""
        s = self.settings
        if s.dry_run:
            logger.info("Dry run: orders go to the paper gateway", balance=s.paper_balance)
            return PaperExecutionGateway(self._latest_price, initial_balance=s.paper_balance)

        logger.info("Live trading", exchange=s.exchange_id, testnet=s.exchange_testnet)
        return CcxtExecutionGateway(
            api_key=s.exchange_api_key,
            secret_key=s.exchange_secret_key,
            exchange_id=s.exchange_id,
            testnet=s.exchange_testnet,
            quote_currency=s.quote_currency,
            confirmation_retries=s.confirmation_retries,
            confirmation_poll_interval=s.confirmation_poll_interval,
            confirmation_timeout=s.confirmation_timeout
        )

    def build_feed(self) -> PriceFeed:
        """Push trade stream for ``sma``, kline polling for ``sma_klines``."""
        s = self.settings
        if s.strategy == "sma_klines":
            return KlineFeed(
                symbol=s.feed_symbol,
                period=s.moving_average_period,
                base_url=s.binance_api_base_url,
                poll_interval=s.poll_interval_seconds,
                metrics=self.metrics
            )
        return TradeStreamFeed(
            symbol=s.feed_symbol,
            base_url=s.binance_ws_base_url,
            metrics=self.metrics
        )

    def build_strategy(self) -> Strategy:
        """Create the gateway and the strategy selected by STRATEGY."""
        s = self.settings
        self.gateway = self.build_gateway()

        if s.strategy == "rebalancing":
            self.strategy = RebalancingStrategy(
                gateway=self.gateway,
                weights=s.markets,
                invested_percentage=s.invested_percentage,
                quote_currency=s.quote_currency,
                api_base_url=s.binance_api_base_url,
                metrics=self.metrics
            )
        else:
            self.strategy = MovingAverageStrategy(
                feed=self.build_feed(),
                gateway=self.gateway,
                market_id=s.market_id,
                period=s.moving_average_period,
                threshold_percentage=s.threshold_percentage,
                token_amount=s.token_amount,
                leverage=s.leverage,
                settle_delay=s.settle_delay_seconds,
                status_interval=s.status_interval_seconds,
                metrics=self.metrics
            )
        return self.strategy

    async def start(self) -> None:
        """Start the bot and run the strategy until it ends or stop() is called."""
        s = self.settings
        logger.info("Starting SMA trading bot",
                    strategy=s.strategy,
                    market_id=s.market_id,
                    dry_run=s.dry_run)
        self.start_time = time.time()

        if s.prometheus_port > 0:
            start_http_server(s.prometheus_port, registry=self.metrics.registry)
            logger.info("Prometheus metrics server started", port=s.prometheus_port)

        strategy = self.build_strategy()
        self.running = True
        self.metrics.set_health_status(True)
        self.performance_logger.log_service_startup(
            startup_time_seconds=time.time() - self.start_time,
            strategy=s.strategy
        )

        try:
            if isinstance(strategy, RebalancingStrategy):
                await strategy.run()
            else:
                await strategy.start()
        finally:
            self.running = False
            self.metrics.set_health_status(False)
            self.performance_logger.log_service_shutdown(
                uptime_seconds=time.time() - self.start_time
            )

    async def stop(self) -> None:
        """Stop the strategy."""
        logger.info("Stopping SMA trading bot")
        self.running = False
        if self.strategy is not None:
            await self.strategy.stop()
        logger.info("SMA trading bot stopped")


async def main(settings: Optional[Settings] = None) -> int:
    """Main function; returns the process exit code."""
    if settings is None:
        try:
            settings = load_settings()
        except ConfigurationError as e:
            configure_logging("smabot")
            logger.error("Invalid configuration", error=str(e))
            return 2

    configure_logging("smabot", log_level=settings.log_level, log_format=settings.log_format)
    bot = TradingBot(settings)

    def signal_handler(signum: signal.Signals) -> None:
        logger.info("Received shutdown signal", signal=signum.name)
        asyncio.ensure_future(bot.stop())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)

    try:
        await bot.start()
    except ExecutionError as e:
        logger.error("Fatal venue error", error=str(e))
        return 1
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
    return 0


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Application interrupted by user")


if __name__ == "__main__":
    run()
