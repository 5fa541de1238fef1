"""Position state machine for the moving-average strategy."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from transitions import Machine

from common.logger import TradeLogger
from services.execution.errors import ExecutionError
from services.execution.gateway import ExecutionGateway
from .signals import Signal, SignalEvaluator

logger = structlog.get_logger(__name__)


class PositionState(Enum):
    """Position states of the strategy."""
    NO_POSITION = "no_position"
    LONG = "long"
    SHORT = "short"


class PositionSide(Enum):
    """Position sides."""
    LONG = "long"
    SHORT = "short"


class Action(Enum):
    """Order the state machine decided to place."""
    OPEN_LONG = "open_long"
    OPEN_SHORT = "open_short"
    CLOSE = "close"


@dataclass
class Position:
    """The single open position tracked by the state machine."""
    side: PositionSide
    stop_loss: float
    take_profit: float
    order_id: Optional[str] = None
    entry_price: Optional[float] = None
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_long(self) -> bool:
        return self.side is PositionSide.LONG

    def exit_triggered(self, price: float) -> bool:
        """Whether ``price`` has crossed the stop-loss or the take-profit."""
        if self.is_long:
            return price < self.stop_loss or price > self.take_profit
        return price > self.stop_loss or price < self.take_profit


@dataclass
class StateTransitionEvent:
    """A committed transition."""
    trigger: str
    from_state: str
    to_state: str
    price: float
    order_id: Optional[str]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PositionStateMachine:
    """
    Owns the position for one (account, market) pair and serializes every
    order that changes it.

    States:
    - no_position: looking for an entry
    - long / short: holding a position with stop-loss and take-profit levels

    The ``executing`` flag is held from the moment an order is issued until
    its confirmation has been applied and the settle delay has elapsed.
    While it is set no further decisions are made. A failed or cancelled
    order releases the flag and leaves the position untouched.
    """

    def __init__(
        self,
        gateway: ExecutionGateway,
        market_id: str,
        token_amount: float,
        leverage: float,
        evaluator: SignalEvaluator,
        settle_delay: float = 10.0,
        trade_logger: Optional[TradeLogger] = None,
        max_history: int = 1000
    ):
        """
        Initialize the state machine.

        Args:
            gateway: Venue used to open and close positions
            market_id: Market traded by this instance
            token_amount: Tokens committed per opened position
            leverage: Leverage applied to opened positions
            evaluator: Signal evaluator whose band width sets the stop-loss
            settle_delay: Seconds to hold the lock after a confirmed order
            trade_logger: Logger for order and transition events
            max_history: Number of transitions to retain
        """
        self.gateway = gateway
        self.market_id = market_id
        self.token_amount = token_amount
        self.leverage = leverage
        self.evaluator = evaluator
        self.settle_delay = settle_delay
        self.trade_logger = trade_logger or TradeLogger("strategy")
        self.max_history = max_history

        self.position: Optional[Position] = None
        self.executing: bool = False
        self.last_error: Optional[BaseException] = None
        self.transition_history: List[StateTransitionEvent] = []

        transitions = [
            {
                'trigger': 'enter_long',
                'source': PositionState.NO_POSITION.value,
                'dest': PositionState.LONG.value,
                'before': '_store_position'
            },
            {
                'trigger': 'enter_short',
                'source': PositionState.NO_POSITION.value,
                'dest': PositionState.SHORT.value,
                'before': '_store_position'
            },
            {
                'trigger': 'exit_position',
                'source': [PositionState.LONG.value, PositionState.SHORT.value],
                'dest': PositionState.NO_POSITION.value,
                'before': '_clear_position'
            },
        ]

        self.machine = Machine(
            model=self,
            states=[state.value for state in PositionState],
            transitions=transitions,
            initial=PositionState.NO_POSITION.value,
            auto_transitions=False,
            send_event=True,
            after_state_change='_on_state_changed'
        )

        logger.info(
            "Position state machine initialized",
            market_id=market_id,
            token_amount=token_amount,
            leverage=leverage,
            threshold_percentage=evaluator.threshold_percentage
        )

    def get_current_state(self) -> PositionState:
        return PositionState(self.state)

    def decide(self, price: float, signal: Signal) -> Optional[Action]:
        """
        Decide the next order for ``price`` without side effects.

        Nothing is decided while the window is not ready or an order is in
        flight. Entries are only considered without a position and exits
        only with one, so at most one action applies per observation.
        """
        if not signal.ready or self.executing:
            return None

        if self.position is None:
            if price < signal.lower_threshold:
                return Action.OPEN_LONG
            if price > signal.upper_threshold:
                return Action.OPEN_SHORT
            return None

        if self.position.exit_triggered(price):
            return Action.CLOSE
        return None

    async def on_price(self, price: float, signal: Signal) -> Optional[str]:
        """
        Evaluate an observation and execute the resulting order, if any.

        Returns:
            The confirmed order id, or None when no order was placed

        Raises:
            ExecutionError: The order failed; the position is unchanged
        """
        action = self.decide(price, signal)
        if action is None:
            return None
        return await self._execute(action, price, signal)

    async def _execute(self, action: Action, price: float, signal: Signal) -> str:
        # no await between the busy check in decide() and taking the lock
        self.executing = True
        try:
            if action is Action.CLOSE:
                order_id = await self.gateway.close_position(self.market_id, 1.0)
                self.exit_position(price=price, order_id=order_id)
            else:
                is_long = action is Action.OPEN_LONG
                order_id = await self.gateway.open_position(
                    self.market_id, self.token_amount, is_long, self.leverage
                )
                position = Position(
                    side=PositionSide.LONG if is_long else PositionSide.SHORT,
                    stop_loss=self.evaluator.stop_loss(signal.moving_average, is_long),
                    take_profit=signal.upper_threshold if is_long else signal.lower_threshold,
                    order_id=order_id,
                    entry_price=price
                )
                if is_long:
                    self.enter_long(position=position, price=price, order_id=order_id)
                else:
                    self.enter_short(position=position, price=price, order_id=order_id)

            self.last_error = None
            self.trade_logger.log_order_placed(
                order_id=order_id,
                market_id=self.market_id,
                action=action.value,
                price=price,
                moving_average=signal.moving_average
            )

            # let venue-side balance and position settle before the next decision
            if self.settle_delay > 0:
                await asyncio.sleep(self.settle_delay)
            return order_id

        except ExecutionError as e:
            self.last_error = e
            self.trade_logger.log_order_failed(
                market_id=self.market_id,
                action=action.value,
                error=str(e),
                error_type=type(e).__name__,
                price=price,
                state=self.state
            )
            raise
        except asyncio.CancelledError:
            logger.warning(
                "Order aborted",
                market_id=self.market_id,
                action=action.value,
                state=self.state
            )
            raise
        finally:
            self.executing = False

    # State transition callbacks
    def _store_position(self, event) -> None:
        self.position = event.kwargs['position']

    def _clear_position(self, event) -> None:
        self.position = None

    def _on_state_changed(self, event) -> None:
        record = StateTransitionEvent(
            trigger=event.event.name,
            from_state=event.transition.source,
            to_state=event.transition.dest,
            price=event.kwargs.get('price', 0.0),
            order_id=event.kwargs.get('order_id')
        )
        self.transition_history.append(record)

        # Maintain history size
        if len(self.transition_history) > self.max_history:
            self.transition_history = self.transition_history[-(self.max_history // 2):]

        extra: Dict[str, Any] = {}
        if self.position is not None:
            extra = {
                'stop_loss': self.position.stop_loss,
                'take_profit': self.position.take_profit
            }
        self.trade_logger.log_state_transition(
            market_id=self.market_id,
            from_state=record.from_state,
            to_state=record.to_state,
            trigger=record.trigger,
            price=record.price,
            order_id=record.order_id,
            **extra
        )

    def position_side_value(self) -> int:
        """1 for long, -1 for short, 0 without a position."""
        if self.position is None:
            return 0
        return 1 if self.position.is_long else -1

    def describe(self) -> Dict[str, Any]:
        """Snapshot of the state machine for status output."""
        info: Dict[str, Any] = {
            'market_id': self.market_id,
            'state': self.state,
            'executing': self.executing,
            'transition_count': len(self.transition_history),
            'last_error': str(self.last_error) if self.last_error else None,
        }
        if self.position is not None:
            info['position'] = {
                'side': self.position.side.value,
                'stop_loss': self.position.stop_loss,
                'take_profit': self.position.take_profit,
                'order_id': self.position.order_id,
                'entry_price': self.position.entry_price,
                'opened_at': self.position.opened_at.isoformat()
            }
        return info
