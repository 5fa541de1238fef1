"""Tests for the trade stream feed."""

import pytest
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from services.feeds.websocket_feed import TradeStreamFeed, parse_trade_message


class FakeWebSocket:
    """Async-iterable stand-in for a websocket connection."""

    def __init__(self, messages):
        self.messages = list(messages)
        self.close = AsyncMock()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            yield message


class TestParseTradeMessage:
    """Test trade message parsing."""

    def test_parse_valid(self, sample_trade_message):
        trade = parse_trade_message(json.dumps(sample_trade_message))

        assert trade is not None
        assert trade.price == 42000.50
        assert trade.observed_at == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_parse_price_only(self):
        trade = parse_trade_message('{"p": "100.5"}')

        assert trade.price == 100.5
        assert trade.trade_time is None

    def test_parse_invalid_json(self):
        assert parse_trade_message("not json") is None

    def test_parse_missing_price(self):
        assert parse_trade_message('{"e": "trade"}') is None

    def test_parse_non_numeric_price(self):
        assert parse_trade_message('{"p": "abc"}') is None

    def test_parse_non_object(self):
        assert parse_trade_message('[1, 2, 3]') is None


class TestTradeStreamFeed:
    """Test cases for TradeStreamFeed."""

    def test_build_stream_url(self):
        feed = TradeStreamFeed("BTCUSDT", base_url="wss://stream.binance.com:9443/ws/")

        assert feed._build_stream_url() == "wss://stream.binance.com:9443/ws/btcusdt@trade"

    @pytest.mark.asyncio
    async def test_connect_success(self, metrics):
        feed = TradeStreamFeed("BTCUSDT", metrics=metrics)
        mock_websocket = FakeWebSocket([])

        with patch('websockets.connect', new=AsyncMock(return_value=mock_websocket)):
            result = await feed.connect()

        assert result is True
        assert feed.connected is True
        assert feed.websocket is mock_websocket
        assert metrics.registry.get_sample_value(
            'smabot_feed_connected', {'service': 'test-strategy', 'feed': 'trade_stream'}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        feed = TradeStreamFeed("BTCUSDT")

        with patch('websockets.connect', new=AsyncMock(side_effect=OSError("Connection refused"))):
            result = await feed.connect()

        assert result is False
        assert feed.connected is False

    @pytest.mark.asyncio
    async def test_messages_delivered_and_malformed_skipped(self, metrics):
        """Malformed messages are counted and skipped."""
        feed = TradeStreamFeed("BTCUSDT", max_reconnect_attempts=1, metrics=metrics)
        websocket = FakeWebSocket([
            '{"p": "100.0", "T": 1704110400000}',
            'garbage',
            '{"q": "1.0"}',
            '{"p": "101.0", "T": 1704110460000}',
        ])
        handler = AsyncMock()

        connect = AsyncMock(side_effect=[websocket, OSError("down")])
        with patch('websockets.connect', new=connect), \
                patch('services.feeds.websocket_feed.asyncio.sleep', new=AsyncMock()):
            await feed.run(handler)

        assert handler.await_count == 2
        first, second = handler.await_args_list
        assert first.args == (100.0, datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))
        assert second.args[0] == 101.0
        assert feed.message_count == 4
        assert feed.error_count == 2
        assert feed.running is False
        assert metrics.registry.get_sample_value(
            'smabot_feed_errors_total', {'service': 'test-strategy', 'feed': 'trade_stream'}
        ) == 2.0

    @pytest.mark.asyncio
    async def test_reconnect_backoff(self):
        """Failed connects back off exponentially up to the attempt limit."""
        feed = TradeStreamFeed("BTCUSDT", max_reconnect_attempts=4)
        feed.running = True
        sleep = AsyncMock()

        with patch('websockets.connect', new=AsyncMock(side_effect=OSError("down"))), \
                patch('services.feeds.websocket_feed.asyncio.sleep', new=sleep):
            result = await feed._reconnect()

        assert result is False
        assert feed.reconnect_attempts == 4
        assert [c.args[0] for c in sleep.await_args_list] == [2, 4, 8]

    @pytest.mark.asyncio
    async def test_stop(self):
        feed = TradeStreamFeed("BTCUSDT")
        feed.websocket = FakeWebSocket([])
        feed.connected = True
        feed.running = True

        await feed.stop()

        assert feed.running is False
        assert feed.connected is False
        feed.websocket.close.assert_awaited_once()

    def test_get_stats(self):
        feed = TradeStreamFeed("BTCUSDT")

        stats = feed.get_stats()

        assert stats["connected"] is False
        assert stats["message_count"] == 0
        assert stats["error_count"] == 0
        assert stats["symbol"] == "btcusdt"
        assert stats["last_message_time"] is None
