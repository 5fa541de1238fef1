"""Target allocation arithmetic for the rebalancing strategy."""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List

import structlog

logger = structlog.get_logger(__name__)


class RebalanceAction(Enum):
    """Direction of a rebalancing trade."""
    INCREASE = "increase"
    DECREASE = "decrease"


@dataclass
class RebalanceOrder:
    """
    One trade needed to bring a market to its target value.

    ``amount`` is the token value to add (increase) or remove (decrease).
    ``percentage`` is the share of the current position to close, only
    meaningful for decreases.
    """
    market: str
    action: RebalanceAction
    amount: float
    percentage: float = 0.0
    current_value: float = 0.0
    target_value: float = 0.0


def calculate_target_allocation(
    total_value: float,
    weights: Dict[str, float],
    invested_percentage: float
) -> Dict[str, float]:
    """Target value per market: ``total_value * invested_percentage * weight``."""
    return {
        market: total_value * invested_percentage * weight
        for market, weight in weights.items()
    }


def total_portfolio_value(balance: float, position_values: Dict[str, float]) -> float:
    """Free balance plus the value of every open position."""
    return balance + sum(position_values.values())


def plan_rebalance(
    balance: float,
    position_values: Dict[str, float],
    weights: Dict[str, float],
    invested_percentage: float,
    min_trade_value: float = 0.0
) -> List[RebalanceOrder]:
    """
    Trades that move every weighted market to its target value.

    Args:
        balance: Free token balance
        position_values: Current value per market; missing markets count as 0
        weights: Target weight per market
        invested_percentage: Share of the total value to keep invested (0-1)
        min_trade_value: Differences at or below this value are left alone

    Returns:
        Orders in the iteration order of ``weights``
    """
    total_value = total_portfolio_value(balance, position_values)
    targets = calculate_target_allocation(total_value, weights, invested_percentage)

    orders: List[RebalanceOrder] = []
    for market, target in targets.items():
        current = position_values.get(market, 0.0)
        diff = target - current

        if abs(diff) <= min_trade_value:
            continue

        if diff > 0:
            orders.append(RebalanceOrder(
                market=market,
                action=RebalanceAction.INCREASE,
                amount=diff,
                current_value=current,
                target_value=target
            ))
        elif current > 0:
            orders.append(RebalanceOrder(
                market=market,
                action=RebalanceAction.DECREASE,
                amount=-diff,
                percentage=min(-diff / current, 1.0),
                current_value=current,
                target_value=target
            ))

    logger.debug(
        "Rebalance planned",
        total_value=total_value,
        targets=targets,
        orders=len(orders)
    )
    return orders
