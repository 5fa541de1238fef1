"""Execution gateway interface and order confirmation protocol."""

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

import structlog

from .errors import ExecutionError, OrderConfirmationTimeout, OrderRejectedError

logger = structlog.get_logger(__name__)

FILLED_STATUSES = frozenset({"closed", "filled"})
REJECTED_STATUSES = frozenset({"canceled", "cancelled", "rejected", "expired"})


class ExecutionGateway(ABC):
    """
    Venue capability consumed by the strategies.

    Every call may take several seconds; open/close return only once the
    order is confirmed and raise ExecutionError subclasses otherwise.
    """

    @abstractmethod
    async def open_position(
        self,
        market_id: str,
        token_amount: float,
        is_long: bool,
        leverage: float
    ) -> str:
        """Open (or add to) a leveraged position and return the confirmed order id."""

    @abstractmethod
    async def close_position(self, market_id: str, percentage: float = 1.0) -> str:
        """Close ``percentage`` (0..1] of the open position and return the order id."""

    @abstractmethod
    async def get_position_value(self, market_id: str, current_price: float) -> float:
        """Value of the open position at ``current_price``, 0 when flat."""

    @abstractmethod
    async def get_balance(self) -> float:
        """Free token balance of the account."""

    async def close(self) -> None:
        """Release any client resources."""


async def confirm_order(
    fetch_status: Callable[[str], Awaitable[Optional[str]]],
    order_id: str,
    max_retries: int = 30,
    poll_interval: float = 1.0,
    timeout: float = 60.0
) -> str:
    """
    Poll an order until the venue reports it filled.

    Args:
        fetch_status: Coroutine returning the venue status string for an order id
        order_id: Order to confirm
        max_retries: Maximum number of status polls
        poll_interval: Delay between polls in seconds
        timeout: Hard limit on the whole wait in seconds

    Returns:
        The confirmed order id

    Raises:
        OrderRejectedError: The venue reports the order cancelled or rejected
        OrderConfirmationTimeout: Retries or time budget exhausted
    """
    async def _poll() -> str:
        for attempt in range(1, max_retries + 1):
            try:
                status = await fetch_status(order_id)
            except ExecutionError as e:
                # order may not be visible yet
                logger.debug("Order status unavailable", order_id=order_id,
                             attempt=attempt, error=str(e))
                status = None

            if status is not None:
                status = status.lower()
                if status in FILLED_STATUSES:
                    logger.debug("Order confirmed", order_id=order_id, attempt=attempt)
                    return order_id
                if status in REJECTED_STATUSES:
                    raise OrderRejectedError(f"Order {order_id} ended with status {status}")

            if attempt < max_retries:
                await asyncio.sleep(poll_interval)

        raise OrderConfirmationTimeout(
            order_id, f"Order {order_id} not confirmed after {max_retries} attempts"
        )

    try:
        return await asyncio.wait_for(_poll(), timeout=timeout)
    except asyncio.TimeoutError:
        raise OrderConfirmationTimeout(
            order_id, f"Order {order_id} not confirmed within {timeout}s"
        ) from None
