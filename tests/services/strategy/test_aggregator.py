"""Unit tests for minute-close aggregation."""

import pytest
from datetime import datetime, timezone

from services.strategy.aggregator import PriceAggregator, truncate_to_minute


class TestTruncateToMinute:
    """Test minute truncation."""

    def test_drops_seconds(self):
        ts = datetime(2024, 1, 1, 12, 3, 45, 123456, tzinfo=timezone.utc)
        assert truncate_to_minute(ts) == datetime(2024, 1, 1, 12, 3, tzinfo=timezone.utc)


class TestPriceAggregator:
    """Test cases for PriceAggregator."""

    def test_initialization(self):
        """Test aggregator starts empty."""
        agg = PriceAggregator(5)

        assert agg.window == []
        assert agg.current_minute is None
        assert agg.last_price is None
        assert agg.is_full is False

    def test_invalid_period(self):
        with pytest.raises(ValueError):
            PriceAggregator(0)

    def test_first_observation_sets_bucket(self, minute):
        """First observation only starts the bucket."""
        agg = PriceAggregator(5)

        closed = agg.observe(100.0, minute(0, 5))

        assert closed is None
        assert agg.window == []
        assert agg.current_minute == minute(0)
        assert agg.last_price == 100.0

    def test_same_minute_keeps_latest(self, minute):
        """Observations within a minute never reach the window."""
        agg = PriceAggregator(5)

        agg.observe(100.0, minute(0, 1))
        agg.observe(101.0, minute(0, 30))
        agg.observe(102.0, minute(0, 59))

        assert agg.window == []
        assert agg.last_price == 102.0

    def test_minute_change_closes_bucket(self, minute):
        """The last price of a minute becomes its close."""
        agg = PriceAggregator(5)

        agg.observe(100.0, minute(0, 1))
        agg.observe(101.0, minute(0, 50))
        closed = agg.observe(105.0, minute(1, 2))

        assert closed == 101.0
        assert agg.window == [101.0]
        assert agg.current_minute == minute(1)
        assert agg.last_price == 105.0

    def test_skipped_minutes_close_once(self, minute):
        """A gap closes only the last tracked minute."""
        agg = PriceAggregator(5)

        agg.observe(100.0, minute(0))
        agg.observe(110.0, minute(7))

        assert agg.window == [100.0]
        assert agg.current_minute == minute(7)

    def test_window_bounded_by_period(self, minute):
        """Oldest closes are dropped once the window is full."""
        agg = PriceAggregator(3)

        for m in range(6):
            agg.observe(100.0 + m, minute(m))

        assert agg.window == [102.0, 103.0, 104.0]
        assert agg.is_full is True

    def test_window_is_a_copy(self, minute):
        agg = PriceAggregator(3)
        agg.observe(100.0, minute(0))
        agg.observe(101.0, minute(1))

        window = agg.window
        window.append(999.0)

        assert agg.window == [100.0]

    def test_observation_without_timestamp(self):
        """Observations default to the current time."""
        agg = PriceAggregator(3)

        assert agg.observe(100.0) is None
        assert agg.current_minute is not None

    def test_seed(self, minute):
        """Seeding keeps the last ``period`` closes and resets the bucket."""
        agg = PriceAggregator(3)

        agg.seed([1.0, 2.0, 3.0, 4.0], now=minute(10, 30))

        assert agg.window == [2.0, 3.0, 4.0]
        assert agg.current_minute == minute(10)
        assert agg.last_price == 4.0

    def test_seed_empty(self, minute):
        agg = PriceAggregator(3)

        agg.seed([], now=minute(10))

        assert agg.window == []
        assert agg.last_price is None

    def test_append_close_new_minute(self, minute):
        """Venue-reported closes for new minutes are appended."""
        agg = PriceAggregator(3)
        agg.seed([1.0, 2.0], now=minute(1))

        assert agg.append_close(3.0, minute(2)) == 3.0

        assert agg.window == [1.0, 2.0, 3.0]
        assert agg.current_minute == minute(2)
        assert agg.last_price == 3.0

    def test_append_close_same_minute_replaces(self, minute):
        """A repeated report for the same minute replaces the previous close."""
        agg = PriceAggregator(3)
        agg.seed([1.0, 2.0], now=minute(1))

        assert agg.append_close(2.5, minute(1, 40)) is None

        assert agg.window == [1.0, 2.5]
