"""CCXT execution gateway for leveraged futures markets."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, List, Optional

import ccxt
import structlog

from .errors import ExecutionError, MixedPositionError, NoPositionError
from .gateway import ExecutionGateway, confirm_order

logger = structlog.get_logger(__name__)


@dataclass
class VenuePosition:
    """Aggregated venue exposure for a single market."""
    market_id: str
    long_contracts: float
    short_contracts: float
    entry_price: float
    margin: float
    contract_size: float = 1.0

    @property
    def is_flat(self) -> bool:
        return self.long_contracts == 0 and self.short_contracts == 0

    @property
    def is_mixed(self) -> bool:
        return self.long_contracts > 0 and self.short_contracts > 0


class CcxtExecutionGateway(ExecutionGateway):
    """
    ExecutionGateway backed by a ccxt futures exchange.

    The blocking ccxt client runs in the default executor. Market ids are
    ccxt unified symbols (e.g. ``BTC/USDT:USDT``); token amounts are in the
    settlement currency.
    """

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        exchange_id: str = "binanceusdm",
        testnet: bool = True,
        quote_currency: str = "USDT",
        confirmation_retries: int = 30,
        confirmation_poll_interval: float = 1.0,
        confirmation_timeout: float = 60.0,
        exchange: Optional[Any] = None
    ):
        """
        Initialize the gateway.

        Args:
            api_key: Exchange API key
            secret_key: Exchange secret key
            exchange_id: ccxt exchange class name
            testnet: Whether to use the exchange sandbox
            quote_currency: Currency the balance is reported in
            confirmation_retries: Maximum order status polls
            confirmation_poll_interval: Seconds between order status polls
            confirmation_timeout: Hard limit on the confirmation wait
            exchange: Pre-built ccxt client (used by tests)
        """
        self.exchange_id = exchange_id
        self.testnet = testnet
        self.quote_currency = quote_currency
        self.confirmation_retries = confirmation_retries
        self.confirmation_poll_interval = confirmation_poll_interval
        self.confirmation_timeout = confirmation_timeout

        if exchange is None:
            exchange_class = getattr(ccxt, exchange_id)
            exchange = exchange_class({
                'apiKey': api_key,
                'secret': secret_key,
                'enableRateLimit': True,
                'options': {
                    'defaultType': 'future',
                }
            })
            if testnet:
                exchange.set_sandbox_mode(True)
        self.exchange = exchange

        self._markets_loaded = False

        logger.info(
            "Exchange gateway initialized",
            exchange_id=exchange_id,
            testnet=testnet
        )

    async def _call(self, method: str, *args, **kwargs) -> Any:
        """Run a blocking ccxt method off the event loop, mapping ccxt errors."""
        func = getattr(self.exchange, method)
        try:
            return await asyncio.get_running_loop().run_in_executor(
                None, partial(func, *args, **kwargs)
            )
        except ccxt.BaseError as e:
            raise ExecutionError(f"{method} failed: {e}") from e

    async def _ensure_markets(self) -> None:
        if not self._markets_loaded:
            await self._call("load_markets")
            self._markets_loaded = True

    async def _fetch_order_status(self, market_id: str, order_id: str) -> Optional[str]:
        order = await self._call("fetch_order", order_id, market_id)
        return order.get("status")

    async def _submit_and_confirm(
        self,
        market_id: str,
        side: str,
        amount: float,
        params: Optional[Dict[str, Any]] = None
    ) -> str:
        """Place a market order and wait for the fill."""
        order = await self._call(
            "create_order", market_id, "market", side, amount, None, params or {}
        )
        order_id = str(order["id"])

        logger.info(
            "Market order submitted",
            order_id=order_id,
            market_id=market_id,
            side=side,
            amount=amount
        )

        try:
            return await confirm_order(
                partial(self._fetch_order_status, market_id),
                order_id,
                max_retries=self.confirmation_retries,
                poll_interval=self.confirmation_poll_interval,
                timeout=self.confirmation_timeout
            )
        except asyncio.CancelledError:
            logger.warning("Confirmation aborted, cancelling order", order_id=order_id)
            try:
                await self.cancel_order(order_id, market_id)
            except ExecutionError as e:
                logger.error("Failed to cancel order", order_id=order_id, error=str(e))
            raise

    def _amount_to_precision(self, market_id: str, amount: float) -> float:
        return float(self.exchange.amount_to_precision(market_id, amount))

    async def open_position(
        self,
        market_id: str,
        token_amount: float,
        is_long: bool,
        leverage: float
    ) -> str:
        """Open a leveraged position worth ``token_amount`` of margin."""
        await self._ensure_markets()

        ticker = await self._call("fetch_ticker", market_id)
        price = ticker.get("last")
        if not price:
            raise ExecutionError(f"No last price for {market_id}")

        await self._call("set_leverage", int(round(leverage)), market_id)

        amount = self._amount_to_precision(market_id, token_amount * leverage / price)
        if amount <= 0:
            raise ExecutionError(
                f"Order size rounds to zero for {market_id} (tokens={token_amount}, leverage={leverage})"
            )

        return await self._submit_and_confirm(market_id, "buy" if is_long else "sell", amount)

    async def close_position(self, market_id: str, percentage: float = 1.0) -> str:
        """Close a share of the open position with a reduce-only order."""
        await self._ensure_markets()

        position = await self.get_position(market_id)
        if position.is_mixed:
            raise MixedPositionError(market_id)
        if position.is_flat:
            raise NoPositionError(market_id)

        is_long = position.long_contracts > 0
        contracts = position.long_contracts if is_long else position.short_contracts
        amount = self._amount_to_precision(market_id, contracts * percentage)

        return await self._submit_and_confirm(
            market_id,
            "sell" if is_long else "buy",
            amount,
            params={'reduceOnly': True}
        )

    async def get_position(self, market_id: str) -> VenuePosition:
        """Aggregate the venue's position entries for a market."""
        entries: List[Dict[str, Any]] = await self._call("fetch_positions", [market_id])

        long_contracts = short_contracts = 0.0
        entry_price = margin = 0.0
        contract_size = 1.0
        for entry in entries:
            if entry.get("symbol") != market_id:
                continue
            contracts = float(entry.get("contracts") or 0)
            if contracts == 0:
                continue
            if entry.get("side") == "long":
                long_contracts += contracts
            else:
                short_contracts += contracts
            entry_price = float(entry.get("entryPrice") or 0)
            margin += float(entry.get("initialMargin") or entry.get("collateral") or 0)
            contract_size = float(entry.get("contractSize") or 1)

        return VenuePosition(
            market_id=market_id,
            long_contracts=long_contracts,
            short_contracts=short_contracts,
            entry_price=entry_price,
            margin=margin,
            contract_size=contract_size
        )

    async def get_position_value(self, market_id: str, current_price: float) -> float:
        """Margin plus unrealized PnL at ``current_price``."""
        position = await self.get_position(market_id)
        if position.is_mixed:
            raise MixedPositionError(market_id)
        if position.is_flat:
            return 0.0

        if position.long_contracts > 0:
            pnl = (current_price - position.entry_price) * position.long_contracts
        else:
            pnl = (position.entry_price - current_price) * position.short_contracts
        return position.margin + pnl * position.contract_size

    async def get_balance(self) -> float:
        """Free balance in the quote currency."""
        balance = await self._call("fetch_balance")
        return float(balance.get("free", {}).get(self.quote_currency) or 0)

    async def cancel_order(self, order_id: str, market_id: str) -> bool:
        """
        Cancel a pending order.

        Returns:
            True if the order was cancelled, False if it had already been filled
        """
        try:
            await self._call("cancel_order", order_id, market_id)
        except ExecutionError as e:
            if isinstance(e.__cause__, ccxt.OrderNotFound):
                return False
            raise

        logger.info(
            "Order cancelled",
            order_id=order_id,
            market_id=market_id,
            cancelled_at=datetime.now(timezone.utc).isoformat()
        )
        return True

    async def close(self) -> None:
        """Close the exchange connection."""
        if hasattr(self.exchange, 'close'):
            await self._call("close")
        logger.info("Exchange connection closed")
