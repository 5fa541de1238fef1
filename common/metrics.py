"""Prometheus instrumentation shared by the trading strategies."""

import time
from typing import Optional

from prometheus_client import (
    Counter, Gauge, Info,
    CollectorRegistry
)
from prometheus_client.core import REGISTRY

from .logger import get_logger

logger = get_logger(__name__)


class ServiceMetrics:
    """
    Base metrics class with the health and error metrics every strategy exposes.
    """

    def __init__(
        self,
        service_name: str,
        service_version: str = "1.0.0",
        registry: Optional[CollectorRegistry] = None
    ):
        """
        Initialize service metrics.

        Args:
            service_name: Name of the service
            service_version: Version of the service
            registry: Prometheus registry (uses default if None)
        """
        self.service_name = service_name
        self.service_version = service_version
        self.registry = registry if registry is not None else REGISTRY

        self.common_labels = {
            'service': service_name,
            'version': service_version
        }

        self._init_common_metrics()

        logger.info("Service metrics initialized",
                    service=service_name,
                    version=service_version)

    def _init_common_metrics(self) -> None:
        """Initialize common metrics used by all services."""
        service_name_clean = self.service_name.replace('-', '_').replace('.', '_')
        self.service_info = Info(
            f'{service_name_clean}_service_info',
            'Service information',
            registry=self.registry
        )
        self.service_info.info(self.common_labels)

        self.errors_total = Counter(
            'smabot_errors_total',
            'Total number of errors',
            ['error_type', 'service'],
            registry=self.registry
        )

        self.service_up = Gauge(
            'smabot_service_up',
            'Service health status (1 = up, 0 = down)',
            ['service'],
            registry=self.registry
        )
        self.service_up.labels(service=self.service_name).set(1)

        self.last_activity = Gauge(
            'smabot_last_activity_timestamp',
            'Timestamp of last activity',
            ['service'],
            registry=self.registry
        )
        self.last_activity.labels(service=self.service_name).set(time.time())

    def record_error(self, error_type: str) -> None:
        """Record an error occurrence."""
        self.errors_total.labels(
            error_type=error_type,
            service=self.service_name
        ).inc()

        logger.debug("Error recorded", error_type=error_type, service=self.service_name)

    def update_activity(self) -> None:
        """Update last activity timestamp."""
        self.last_activity.labels(service=self.service_name).set(time.time())

    def set_health_status(self, healthy: bool) -> None:
        """Set service health status."""
        self.service_up.labels(service=self.service_name).set(1 if healthy else 0)

        if healthy:
            self.update_activity()


class StrategyMetrics(ServiceMetrics):
    """Metrics for the moving-average and rebalancing strategies."""

    def __init__(self, service_name: str, **kwargs):
        """Initialize strategy metrics."""
        super().__init__(service_name, **kwargs)
        self._init_strategy_metrics()

    def _init_strategy_metrics(self) -> None:
        """Initialize strategy-specific metrics."""
        self.observations_total = Counter(
            'smabot_price_observations_total',
            'Total price observations received',
            ['service', 'market'],
            registry=self.registry
        )

        self.minute_closes_total = Counter(
            'smabot_minute_closes_total',
            'Total closed minute buckets appended to the window',
            ['service', 'market'],
            registry=self.registry
        )

        self.orders_total = Counter(
            'smabot_orders_total',
            'Total orders submitted',
            ['service', 'market', 'action', 'result'],
            registry=self.registry
        )

        self.feed_errors_total = Counter(
            'smabot_feed_errors_total',
            'Total price feed errors',
            ['service', 'feed'],
            registry=self.registry
        )

        self.feed_connected = Gauge(
            'smabot_feed_connected',
            'Price feed connection status (1 = connected)',
            ['service', 'feed'],
            registry=self.registry
        )

        self.position_side = Gauge(
            'smabot_position_side',
            'Current position (1 = long, -1 = short, 0 = none)',
            ['service', 'market'],
            registry=self.registry
        )

        self.executing = Gauge(
            'smabot_executing',
            'Whether an order is in flight (1 = busy)',
            ['service', 'market'],
            registry=self.registry
        )

        self.moving_average = Gauge(
            'smabot_moving_average',
            'Current moving average (0 while collecting)',
            ['service', 'market'],
            registry=self.registry
        )

        self.last_price = Gauge(
            'smabot_last_price',
            'Last observed price',
            ['service', 'market'],
            registry=self.registry
        )

    def record_observation(self, market: str, price: float, minute_closed: bool = False) -> None:
        """Record a price observation."""
        self.observations_total.labels(service=self.service_name, market=market).inc()
        self.last_price.labels(service=self.service_name, market=market).set(price)
        if minute_closed:
            self.minute_closes_total.labels(service=self.service_name, market=market).inc()
        self.update_activity()

    def record_order(self, market: str, action: str, success: bool) -> None:
        """Record an order submission outcome."""
        self.orders_total.labels(
            service=self.service_name,
            market=market,
            action=action,
            result="confirmed" if success else "failed"
        ).inc()
        self.update_activity()

    def record_feed_error(self, feed: str) -> None:
        """Record a price feed error."""
        self.feed_errors_total.labels(service=self.service_name, feed=feed).inc()
        self.record_error("feed_error")

    def set_feed_connected(self, feed: str, connected: bool) -> None:
        """Set price feed connection status."""
        self.feed_connected.labels(service=self.service_name, feed=feed).set(1 if connected else 0)

    def update_state(
        self,
        market: str,
        side: int,
        executing: bool,
        moving_average: float
    ) -> None:
        """Update state machine gauges."""
        self.position_side.labels(service=self.service_name, market=market).set(side)
        self.executing.labels(service=self.service_name, market=market).set(1 if executing else 0)
        self.moving_average.labels(service=self.service_name, market=market).set(moving_average)
