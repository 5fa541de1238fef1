"""Moving-average trading strategy."""

from .aggregator import PriceAggregator, truncate_to_minute
from .signals import Signal, SignalEvaluator, moving_average, thresholds, stop_loss_level
from .state_machine import (
    Action,
    Position,
    PositionSide,
    PositionState,
    PositionStateMachine,
    StateTransitionEvent
)
from .main import MovingAverageStrategy

__all__ = [
    'PriceAggregator',
    'truncate_to_minute',
    'Signal',
    'SignalEvaluator',
    'moving_average',
    'thresholds',
    'stop_loss_level',
    'Action',
    'Position',
    'PositionSide',
    'PositionState',
    'PositionStateMachine',
    'StateTransitionEvent',
    'MovingAverageStrategy'
]

__version__ = '1.0.0'
