"""Price feed contract shared by the push and pull adapters."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

PriceHandler = Callable[[float, datetime], Awaitable[None]]


class PriceFeed(ABC):
    """Delivers price observations to a handler, one at a time."""

    name: str = "feed"
    # True when each delivered price is already a closed minute
    delivers_closes: bool = False
    # Minute of the last close returned by bootstrap(), when the feed knows it
    last_minute: Optional[datetime] = None

    async def bootstrap(self) -> List[float]:
        """Historical minute closes to seed the window with, oldest first."""
        return []

    @abstractmethod
    async def run(self, on_price: PriceHandler) -> None:
        """Deliver observations until stopped."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop delivering observations and release the connection."""

    @abstractmethod
    def get_stats(self) -> Dict[str, Any]:
        """Connection statistics."""
