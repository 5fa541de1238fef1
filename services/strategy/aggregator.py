"""Minute-close aggregation of raw price ticks."""

from collections import deque
from datetime import datetime, timezone
from typing import Deque, Iterable, List, Optional

import structlog

logger = structlog.get_logger(__name__)


def truncate_to_minute(ts: datetime) -> datetime:
    """Drop seconds and sub-second parts."""
    return ts.replace(second=0, microsecond=0)


class PriceAggregator:
    """
    Turns a stream of price observations into a rolling window of closed
    one-minute prices.

    The minute in progress is never part of the window: a minute's close is
    appended only when the first observation of a later minute arrives.
    """

    def __init__(self, period: int):
        """
        Args:
            period: Maximum window length (the moving-average period in minutes)
        """
        if period < 1:
            raise ValueError("period must be at least 1")
        self.period = period
        self._window: Deque[float] = deque(maxlen=period)
        self.current_minute: Optional[datetime] = None
        self.last_price: Optional[float] = None

    @property
    def window(self) -> List[float]:
        """Closed minute prices, oldest first."""
        return list(self._window)

    @property
    def is_full(self) -> bool:
        return len(self._window) == self.period

    def observe(self, price: float, observed_at: Optional[datetime] = None) -> Optional[float]:
        """
        Record an observation.

        Returns:
            The close appended to the window if this observation closed a minute
        """
        minute = truncate_to_minute(observed_at or datetime.now(timezone.utc))
        closed = None

        if self.current_minute is None:
            self.current_minute = minute

        if minute != self.current_minute:
            if self.last_price is not None:
                self._window.append(self.last_price)
                closed = self.last_price
                logger.debug(
                    "Minute closed",
                    minute=self.current_minute.isoformat(),
                    close=closed,
                    window_size=len(self._window)
                )
            self.current_minute = minute

        self.last_price = price
        return closed

    def append_close(self, price: float, minute: datetime) -> Optional[float]:
        """
        Record a close reported by the venue for ``minute``.

        A later report for the same minute replaces the earlier one.

        Returns:
            The close if it was appended for a new minute, None on replacement
        """
        minute = truncate_to_minute(minute)
        self.last_price = price
        if self._window and minute == self.current_minute:
            self._window[-1] = price
            return None

        self._window.append(price)
        self.current_minute = minute
        return price

    def seed(self, closes: Iterable[float], now: Optional[datetime] = None) -> None:
        """
        Initialize the window from already-closed minutes, most recent last.

        Only the last ``period`` closes are kept.
        """
        self._window.clear()
        self._window.extend(float(c) for c in closes)
        self.current_minute = truncate_to_minute(now or datetime.now(timezone.utc))
        self.last_price = self._window[-1] if self._window else None

        logger.info(
            "Window seeded from history",
            window_size=len(self._window),
            period=self.period
        )
