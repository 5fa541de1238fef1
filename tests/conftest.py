"""Pytest configuration and fixtures."""

import pytest
import os
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from prometheus_client import CollectorRegistry

from common.metrics import StrategyMetrics
from services.execution.gateway import ExecutionGateway

# Set test environment variables
os.environ.update({
    'STRATEGY': 'sma',
    'DRY_RUN': 'true',
    'LOG_LEVEL': 'DEBUG'
})


@pytest.fixture
def mock_env_vars():
    """Fixture to provide clean environment variables for testing."""
    test_env = {
        'STRATEGY': 'sma',
        'DRY_RUN': 'true',
        'MARKET_ID': 'BTC/USDT:USDT',
        'LEVERAGE': '10',
        'TOKEN_AMOUNT': '5',
        'MOVING_AVERAGE_PERIOD': '5',
        'THRESHOLD_PERCENTAGE': '0.1',
        'LOG_LEVEL': 'DEBUG',
        'LOG_FORMAT': 'json',
        'PROMETHEUS_PORT': '0'
    }

    with patch.dict(os.environ, test_env):
        yield test_env


@pytest.fixture
def mock_gateway():
    """Execution gateway whose orders confirm immediately."""
    gateway = AsyncMock(spec=ExecutionGateway)
    gateway.open_position.return_value = "order-open"
    gateway.close_position.return_value = "order-close"
    gateway.get_position_value.return_value = 50.0
    gateway.get_balance.return_value = 1000.0
    gateway.close.return_value = None
    return gateway


@pytest.fixture
def metrics():
    """Strategy metrics on an isolated registry."""
    return StrategyMetrics("test-strategy", registry=CollectorRegistry())


@pytest.fixture
def minute():
    """Factory for UTC timestamps within a fixed hour."""
    def _minute(m: int, s: int = 0) -> datetime:
        return datetime(2024, 1, 1, 12, m, s, tzinfo=timezone.utc)
    return _minute


@pytest.fixture
def sample_trade_message():
    """Sample Binance trade message."""
    return {
        "e": "trade",
        "E": 1704110400000,
        "s": "BTCUSDT",
        "t": 12345,
        "p": "42000.50",
        "q": "0.010",
        "T": 1704110400000,
        "m": True
    }


@pytest.fixture
def sample_kline_rows():
    """Five Binance 1m kline rows, oldest first."""
    base = 1704110400000
    closes = ["100.0", "101.0", "102.0", "103.0", "104.0"]
    return [
        [base + i * 60000, "99.0", "105.0", "98.0", close, "12.5",
         base + i * 60000 + 59999, "1250.0", 42, "6.0", "600.0", "0"]
        for i, close in enumerate(closes)
    ]


# Markers for different test types
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
