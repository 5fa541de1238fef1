"""Portfolio rebalancing strategy."""

from .allocation import (
    RebalanceAction,
    RebalanceOrder,
    calculate_target_allocation,
    plan_rebalance,
    total_portfolio_value
)
from .strategy import RebalancingStrategy, start_of_day

__all__ = [
    'RebalanceAction',
    'RebalanceOrder',
    'calculate_target_allocation',
    'plan_rebalance',
    'total_portfolio_value',
    'RebalancingStrategy',
    'start_of_day'
]

__version__ = '1.0.0'
