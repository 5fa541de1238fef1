"""Moving-average signal computation."""

from dataclasses import dataclass
from typing import Sequence, Tuple

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Signal:
    """Moving average and entry bands for one observation."""
    ready: bool
    moving_average: float = 0.0
    lower_threshold: float = 0.0
    upper_threshold: float = 0.0

    @classmethod
    def not_ready(cls) -> 'Signal':
        """Signal for a window that is still filling; all values are zero."""
        return cls(ready=False)


def moving_average(window: Sequence[float]) -> float:
    """Arithmetic mean of the window. The window must not be empty."""
    return sum(window) / len(window)


def thresholds(ma: float, threshold_percentage: float) -> Tuple[float, float]:
    """Lower and upper bands ``threshold_percentage`` percent around ``ma``."""
    lower = ma * (1 - threshold_percentage / 100)
    upper = ma * (1 + threshold_percentage / 100)
    return lower, upper


def stop_loss_level(ma: float, threshold_percentage: float, is_long: bool) -> float:
    """Stop-loss at twice the band width on the losing side of ``ma``."""
    if is_long:
        return ma * (1 - 2 * threshold_percentage / 100)
    return ma * (1 + 2 * threshold_percentage / 100)


class SignalEvaluator:
    """Computes the trading signal from a rolling window of minute closes."""

    def __init__(self, period: int, threshold_percentage: float):
        """
        Args:
            period: Window length required before the signal is ready
            threshold_percentage: Band width in percent (0.1 means 0.1%)
        """
        self.period = period
        self.threshold_percentage = threshold_percentage

    def evaluate(self, window: Sequence[float]) -> Signal:
        """Signal for ``window``; not ready unless the window holds exactly ``period`` closes."""
        if len(window) != self.period:
            return Signal.not_ready()

        ma = moving_average(window)
        lower, upper = thresholds(ma, self.threshold_percentage)
        return Signal(
            ready=True,
            moving_average=ma,
            lower_threshold=lower,
            upper_threshold=upper
        )

    def stop_loss(self, ma: float, is_long: bool) -> float:
        """Stop-loss level for a position opened around ``ma``."""
        return stop_loss_level(ma, self.threshold_percentage, is_long)
