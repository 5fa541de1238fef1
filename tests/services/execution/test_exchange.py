"""Tests for the ccxt execution gateway."""

import pytest
import asyncio
from unittest.mock import Mock

import ccxt

from services.execution.errors import (
    ExecutionError,
    MixedPositionError,
    NoPositionError,
    OrderConfirmationTimeout
)
from services.execution.exchange import CcxtExecutionGateway, VenuePosition

MARKET = "BTC/USDT:USDT"


def position_entry(side: str, contracts: float, entry_price: float = 100.0, margin: float = 5.0):
    return {
        "symbol": MARKET,
        "side": side,
        "contracts": contracts,
        "entryPrice": entry_price,
        "initialMargin": margin,
        "contractSize": 1,
    }


@pytest.fixture
def exchange():
    """Mock blocking ccxt client."""
    client = Mock()
    client.load_markets.return_value = {}
    client.fetch_ticker.return_value = {"last": 100.0}
    client.set_leverage.return_value = {}
    client.amount_to_precision.side_effect = lambda symbol, amount: f"{amount:.3f}"
    client.create_order.return_value = {"id": 123, "status": "open"}
    client.fetch_order.return_value = {"id": 123, "status": "closed"}
    client.fetch_positions.return_value = []
    client.fetch_balance.return_value = {"free": {"USDT": 1000.0}}
    client.cancel_order.return_value = {}
    return client


@pytest.fixture
def gateway(exchange):
    return CcxtExecutionGateway(
        api_key="test_api_key",
        secret_key="test_secret_key",
        confirmation_retries=3,
        confirmation_poll_interval=0,
        confirmation_timeout=5.0,
        exchange=exchange
    )


class TestVenuePosition:
    """Test aggregated venue positions."""

    def test_flat(self):
        position = VenuePosition(MARKET, 0, 0, 0, 0)
        assert position.is_flat is True
        assert position.is_mixed is False

    def test_mixed(self):
        position = VenuePosition(MARKET, 1, 1, 100, 10)
        assert position.is_flat is False
        assert position.is_mixed is True


class TestCcxtExecutionGateway:
    """Test cases for CcxtExecutionGateway."""

    @pytest.mark.asyncio
    async def test_open_long(self, gateway, exchange):
        """Size is token amount times leverage over the last price."""
        order_id = await gateway.open_position(MARKET, 5.0, True, 10.0)

        assert order_id == "123"
        exchange.set_leverage.assert_called_once_with(10, MARKET)
        exchange.create_order.assert_called_once_with(MARKET, "market", "buy", 0.5, None, {})
        exchange.fetch_order.assert_called_with("123", MARKET)

    @pytest.mark.asyncio
    async def test_open_short(self, gateway, exchange):
        await gateway.open_position(MARKET, 5.0, False, 10.0)

        assert exchange.create_order.call_args.args[2] == "sell"

    @pytest.mark.asyncio
    async def test_markets_loaded_once(self, gateway, exchange):
        await gateway.open_position(MARKET, 5.0, True, 10.0)
        await gateway.open_position(MARKET, 5.0, True, 10.0)

        exchange.load_markets.assert_called_once()

    @pytest.mark.asyncio
    async def test_open_without_price(self, gateway, exchange):
        exchange.fetch_ticker.return_value = {"last": None}

        with pytest.raises(ExecutionError):
            await gateway.open_position(MARKET, 5.0, True, 10.0)
        exchange.create_order.assert_not_called()

    @pytest.mark.asyncio
    async def test_open_size_rounds_to_zero(self, gateway, exchange):
        exchange.amount_to_precision.side_effect = lambda symbol, amount: "0"

        with pytest.raises(ExecutionError):
            await gateway.open_position(MARKET, 5.0, True, 10.0)

    @pytest.mark.asyncio
    async def test_ccxt_errors_are_mapped(self, gateway, exchange):
        """Venue errors surface as ExecutionError."""
        exchange.create_order.side_effect = ccxt.InsufficientFunds("margin is insufficient")

        with pytest.raises(ExecutionError) as exc_info:
            await gateway.open_position(MARKET, 5.0, True, 10.0)

        assert isinstance(exc_info.value.__cause__, ccxt.InsufficientFunds)

    @pytest.mark.asyncio
    async def test_unconfirmed_order(self, gateway, exchange):
        exchange.fetch_order.return_value = {"id": 123, "status": "open"}

        with pytest.raises(OrderConfirmationTimeout):
            await gateway.open_position(MARKET, 5.0, True, 10.0)

    @pytest.mark.asyncio
    async def test_close_long(self, gateway, exchange):
        """Closing a long sells its contracts reduce-only."""
        exchange.fetch_positions.return_value = [position_entry("long", 0.5)]

        order_id = await gateway.close_position(MARKET, 1.0)

        assert order_id == "123"
        exchange.create_order.assert_called_once_with(
            MARKET, "market", "sell", 0.5, None, {"reduceOnly": True}
        )

    @pytest.mark.asyncio
    async def test_close_partial_short(self, gateway, exchange):
        exchange.fetch_positions.return_value = [position_entry("short", 2.0)]

        await gateway.close_position(MARKET, 0.25)

        args = exchange.create_order.call_args.args
        assert args[2] == "buy"
        assert args[3] == 0.5

    @pytest.mark.asyncio
    async def test_close_without_position(self, gateway, exchange):
        exchange.fetch_positions.return_value = [position_entry("long", 0)]

        with pytest.raises(NoPositionError):
            await gateway.close_position(MARKET)

    @pytest.mark.asyncio
    async def test_close_mixed_position(self, gateway, exchange):
        exchange.fetch_positions.return_value = [
            position_entry("long", 0.5),
            position_entry("short", 0.5)
        ]

        with pytest.raises(MixedPositionError):
            await gateway.close_position(MARKET)
        exchange.create_order.assert_not_called()

    @pytest.mark.asyncio
    async def test_position_value(self, gateway, exchange):
        """Value is margin plus unrealized PnL at the given price."""
        exchange.fetch_positions.return_value = [position_entry("long", 0.5, 100.0, 5.0)]

        assert await gateway.get_position_value(MARKET, 102.0) == pytest.approx(6.0)

    @pytest.mark.asyncio
    async def test_position_value_short(self, gateway, exchange):
        exchange.fetch_positions.return_value = [position_entry("short", 0.5, 100.0, 5.0)]

        assert await gateway.get_position_value(MARKET, 102.0) == pytest.approx(4.0)

    @pytest.mark.asyncio
    async def test_position_value_flat(self, gateway):
        assert await gateway.get_position_value(MARKET, 100.0) == 0.0

    @pytest.mark.asyncio
    async def test_position_value_mixed(self, gateway, exchange):
        exchange.fetch_positions.return_value = [
            position_entry("long", 0.5),
            position_entry("short", 0.5)
        ]

        with pytest.raises(MixedPositionError):
            await gateway.get_position_value(MARKET, 100.0)

    @pytest.mark.asyncio
    async def test_other_markets_ignored(self, gateway, exchange):
        other = position_entry("long", 3.0)
        other["symbol"] = "ETH/USDT:USDT"
        exchange.fetch_positions.return_value = [other]

        assert await gateway.get_position_value(MARKET, 100.0) == 0.0

    @pytest.mark.asyncio
    async def test_get_balance(self, gateway):
        assert await gateway.get_balance() == 1000.0

    @pytest.mark.asyncio
    async def test_cancel_order(self, gateway, exchange):
        assert await gateway.cancel_order("123", MARKET) is True
        exchange.cancel_order.assert_called_once_with("123", MARKET)

    @pytest.mark.asyncio
    async def test_cancel_filled_order(self, gateway, exchange):
        exchange.cancel_order.side_effect = ccxt.OrderNotFound("unknown order")

        assert await gateway.cancel_order("123", MARKET) is False

    @pytest.mark.asyncio
    async def test_cancelled_confirmation_cancels_order(self, exchange):
        """Aborting the confirmation wait cancels the venue order."""
        exchange.fetch_order.return_value = {"id": 123, "status": "open"}
        gateway = CcxtExecutionGateway(
            api_key="test_api_key",
            secret_key="test_secret_key",
            confirmation_retries=1000,
            confirmation_poll_interval=0.01,
            confirmation_timeout=30.0,
            exchange=exchange
        )

        task = asyncio.create_task(gateway.open_position(MARKET, 5.0, True, 10.0))
        for _ in range(50):
            await asyncio.sleep(0.01)
            if exchange.fetch_order.called:
                break
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        exchange.cancel_order.assert_called_once_with("123", MARKET)
