"""Order execution against the trading venue."""

from .errors import (
    ExecutionError,
    OrderRejectedError,
    OrderConfirmationTimeout,
    MixedPositionError,
    NoPositionError
)
from .gateway import ExecutionGateway, confirm_order
from .exchange import CcxtExecutionGateway, VenuePosition
from .paper import PaperExecutionGateway, PaperPosition

__all__ = [
    'ExecutionError',
    'OrderRejectedError',
    'OrderConfirmationTimeout',
    'MixedPositionError',
    'NoPositionError',
    'ExecutionGateway',
    'confirm_order',
    'CcxtExecutionGateway',
    'VenuePosition',
    'PaperExecutionGateway',
    'PaperPosition'
]

__version__ = '1.0.0'
