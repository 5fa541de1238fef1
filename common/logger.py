"""Unified structured logging configuration for the trading bot."""

import structlog
import logging
import sys
import os
from typing import Optional
from datetime import datetime, timezone


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    log_format: str = "console",
    log_file: Optional[str] = None,
    include_stdlib: bool = True
) -> None:
    """
    Configure structured logging for a service.

    Args:
        service_name: Name of the service for log identification
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ('json' or 'console')
        log_file: Optional file path for log output
        include_stdlib: Whether to configure stdlib logging as well
    """
    log_level_obj = getattr(logging, log_level.upper(), logging.INFO)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        add_service_name(service_name),
        add_timestamp,
    ]
    if log_format.lower() == "json":
        processors += [
            add_process_info,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ]
    else:
        # Console format for development
        processors += [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
        ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if include_stdlib:
        if log_file:
            os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
            handler = logging.FileHandler(log_file)
        else:
            handler = logging.StreamHandler(sys.stdout)

        # structlog renders the final line itself
        handler.setFormatter(logging.Formatter('%(message)s'))

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level_obj)
        root_logger.handlers.clear()
        root_logger.addHandler(handler)

        # Suppress noisy third-party loggers
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("ccxt").setLevel(logging.WARNING)
        logging.getLogger("websockets").setLevel(logging.WARNING)
        logging.getLogger("transitions").setLevel(logging.WARNING)
        logging.getLogger("aiohttp").setLevel(logging.WARNING)


def add_service_name(service_name: str):
    """Processor to add service name to all log entries."""
    def processor(logger, method_name, event_dict):
        event_dict["service"] = service_name
        return event_dict
    return processor


def add_timestamp(logger, method_name, event_dict):
    """Processor to add ISO timestamp to all log entries."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def add_process_info(logger, method_name, event_dict):
    """Processor to add process information to log entries."""
    event_dict["process_id"] = os.getpid()
    return event_dict


class TradeLogger:
    """Specialized logger for trading events."""

    def __init__(self, service_name: str):
        """Initialize trade logger."""
        self.logger = structlog.get_logger(f"{service_name}.trades")

    def log_order_placed(
        self,
        order_id: str,
        market_id: str,
        action: str,
        price: Optional[float] = None,
        **kwargs
    ) -> None:
        """Log a confirmed order."""
        self.logger.info(
            "Order placed",
            event_type="order_placed",
            order_id=order_id,
            market_id=market_id,
            action=action,
            price=price,
            **kwargs
        )

    def log_order_failed(
        self,
        market_id: str,
        action: str,
        error: str,
        **kwargs
    ) -> None:
        """Log an order that was not confirmed."""
        self.logger.error(
            "Order failed",
            event_type="order_failed",
            market_id=market_id,
            action=action,
            error=error,
            **kwargs
        )

    def log_minute_closed(
        self,
        market_id: str,
        minute: datetime,
        close: float,
        window_size: int,
        **kwargs
    ) -> None:
        """Log a closed minute bucket."""
        self.logger.info(
            "Minute closed",
            event_type="minute_closed",
            market_id=market_id,
            minute=minute.isoformat(),
            close=close,
            window_size=window_size,
            **kwargs
        )

    def log_state_transition(
        self,
        market_id: str,
        from_state: str,
        to_state: str,
        trigger: str,
        **kwargs
    ) -> None:
        """Log state machine transition."""
        self.logger.info(
            "State transition",
            event_type="state_transition",
            market_id=market_id,
            from_state=from_state,
            to_state=to_state,
            trigger=trigger,
            **kwargs
        )

    def log_rebalance(
        self,
        market: str,
        action: str,
        amount: float,
        **kwargs
    ) -> None:
        """Log a rebalancing trade."""
        self.logger.info(
            "Rebalance trade",
            event_type="rebalance",
            market=market,
            action=action,
            amount=amount,
            **kwargs
        )


class PerformanceLogger:
    """Logger for service lifecycle events."""

    def __init__(self, service_name: str):
        """Initialize performance logger."""
        self.logger = structlog.get_logger(f"{service_name}.performance")

    def log_service_startup(
        self,
        startup_time_seconds: float,
        **kwargs
    ) -> None:
        """Log service startup."""
        self.logger.info(
            "Service started",
            event_type="service_startup",
            startup_time_seconds=startup_time_seconds,
            **kwargs
        )

    def log_service_shutdown(
        self,
        uptime_seconds: float,
        **kwargs
    ) -> None:
        """Log service shutdown."""
        self.logger.info(
            "Service shutdown",
            event_type="service_shutdown",
            uptime_seconds=uptime_seconds,
            **kwargs
        )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def get_trade_logger(service_name: str) -> TradeLogger:
    """Get a trade logger instance."""
    return TradeLogger(service_name)


def get_performance_logger(service_name: str) -> PerformanceLogger:
    """Get a performance logger instance."""
    return PerformanceLogger(service_name)
