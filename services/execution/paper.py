"""Paper execution gateway: local bookkeeping, no venue access."""

import itertools
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import structlog

from .errors import ExecutionError, MixedPositionError, NoPositionError
from .gateway import ExecutionGateway

logger = structlog.get_logger(__name__)

PriceProvider = Callable[[str], Optional[float]]


@dataclass
class PaperPosition:
    """Simulated exposure in one market."""
    long_shares: float = 0.0
    short_shares: float = 0.0
    average_price: float = 0.0
    leverage: float = 1.0

    @property
    def shares(self) -> float:
        return self.long_shares or self.short_shares

    @property
    def margin(self) -> float:
        return self.shares * self.average_price / self.leverage


class PaperExecutionGateway(ExecutionGateway):
    """
    Fills every order immediately at the provider's latest price.

    Token amounts move between the free balance and position margin; the
    same error kinds as the live gateway are raised for mixed or missing
    positions.
    """

    def __init__(self, price_provider: PriceProvider, initial_balance: float = 1000.0):
        self.price_provider = price_provider
        self.balance = initial_balance
        self.positions: Dict[str, PaperPosition] = {}
        self._order_ids = itertools.count(1)

        logger.info("Paper gateway initialized", initial_balance=initial_balance)

    def _price(self, market_id: str) -> float:
        price = self.price_provider(market_id)
        if not price or price <= 0:
            raise ExecutionError(f"No price available for {market_id}")
        return price

    def _next_order_id(self) -> str:
        return f"paper-{next(self._order_ids)}"

    async def open_position(
        self,
        market_id: str,
        token_amount: float,
        is_long: bool,
        leverage: float
    ) -> str:
        if token_amount > self.balance:
            raise ExecutionError(
                f"Insufficient balance: {self.balance:.2f} < {token_amount:.2f}"
            )
        price = self._price(market_id)
        position = self.positions.setdefault(market_id, PaperPosition(leverage=leverage))

        shares = token_amount * leverage / price
        held = position.long_shares if is_long else position.short_shares
        position.average_price = (held * position.average_price + shares * price) / (held + shares)
        position.leverage = leverage
        if is_long:
            position.long_shares += shares
        else:
            position.short_shares += shares
        self.balance -= token_amount

        order_id = self._next_order_id()
        logger.info(
            "Paper position opened",
            order_id=order_id,
            market_id=market_id,
            side="long" if is_long else "short",
            shares=shares,
            price=price
        )
        return order_id

    async def close_position(self, market_id: str, percentage: float = 1.0) -> str:
        position = self.positions.get(market_id)
        if position is None or (position.long_shares == 0 and position.short_shares == 0):
            raise NoPositionError(market_id)
        if position.long_shares > 0 and position.short_shares > 0:
            raise MixedPositionError(market_id)

        price = self._price(market_id)
        value = await self.get_position_value(market_id, price)
        closed_value = value * percentage

        if position.long_shares > 0:
            position.long_shares *= (1 - percentage)
        else:
            position.short_shares *= (1 - percentage)
        self.balance += closed_value
        if position.shares == 0:
            del self.positions[market_id]

        order_id = self._next_order_id()
        logger.info(
            "Paper position closed",
            order_id=order_id,
            market_id=market_id,
            percentage=percentage,
            proceeds=closed_value,
            price=price
        )
        return order_id

    async def get_position_value(self, market_id: str, current_price: float) -> float:
        position = self.positions.get(market_id)
        if position is None:
            return 0.0
        if position.long_shares > 0 and position.short_shares > 0:
            raise MixedPositionError(market_id)

        if position.long_shares > 0:
            pnl = (current_price - position.average_price) * position.long_shares
        else:
            pnl = (position.average_price - current_price) * position.short_shares
        return max(position.margin + pnl, 0.0)

    async def get_balance(self) -> float:
        return self.balance
