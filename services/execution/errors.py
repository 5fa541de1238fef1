"""Errors raised by execution gateways."""


class ExecutionError(Exception):
    """An open/close/read against the venue failed."""


class OrderRejectedError(ExecutionError):
    """The venue rejected or cancelled the order."""


class OrderConfirmationTimeout(ExecutionError):
    """The order was submitted but never confirmed within the retry budget."""

    def __init__(self, order_id: str, message: str = ""):
        self.order_id = order_id
        super().__init__(message or f"Order {order_id} not confirmed")


class MixedPositionError(ExecutionError):
    """The venue reports both long and short exposure for one market."""

    def __init__(self, market_id: str):
        self.market_id = market_id
        super().__init__(f"Found mixed position (long and short) for {market_id}")


class NoPositionError(ExecutionError):
    """A close was requested but the venue holds no position for the market."""

    def __init__(self, market_id: str):
        self.market_id = market_id
        super().__init__(f"No position found for {market_id}")
