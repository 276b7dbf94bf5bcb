"""Audit records produced by a backtest run.

- `Trade`: one round trip per symbol, from the first opening fill until the
  position is flat again. Extra entries and partial exits accumulate into
  the same record; once closed its fields are frozen.
- `ExecutionEvent`: immutable log line for every order outcome.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from holodeck.backtest.errors import TradeClosedError
from holodeck.backtest.events import Fill, Order
from holodeck.core.models import OrderSide, OrderType, PositionSide
from holodeck.core.money import ZERO


@dataclass
class Trade:
    id: str
    symbol: str
    side: PositionSide
    entry_time: datetime
    entry_price: Decimal
    quantity: Decimal
    exit_time: Optional[datetime] = None
    exit_price: Optional[Decimal] = None
    exit_quantity: Decimal = ZERO
    pnl: Decimal = ZERO
    commission: Decimal = ZERO
    slippage: Decimal = ZERO
    max_adverse_excursion: Decimal = ZERO  # worst unrealized PnL seen (<= 0)
    max_favorable_excursion: Decimal = ZERO  # best unrealized PnL seen (>= 0)
    fill_count: int = 0
    exit_reason: str = ""

    def __post_init__(self):
        if self.exit_time is not None:
            object.__setattr__(self, "_closed", True)

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("_closed"):
            raise TradeClosedError(f"Trade {self.id} is closed; {name} is frozen")
        super().__setattr__(name, value)

    @classmethod
    def open(cls, trade_id: str, fill: Fill, side: PositionSide = PositionSide.LONG) -> "Trade":
        return cls(
            id=trade_id,
            symbol=fill.symbol,
            side=side,
            entry_time=fill.timestamp,
            entry_price=fill.price,
            quantity=fill.quantity,
            commission=fill.commission,
            slippage=fill.slippage,
            fill_count=1,
        )

    @property
    def is_closed(self) -> bool:
        return self.exit_time is not None

    @property
    def open_quantity(self) -> Decimal:
        return self.quantity - self.exit_quantity

    @property
    def is_winner(self) -> bool:
        return self.pnl > ZERO

    @property
    def duration(self) -> Optional[timedelta]:
        if self.exit_time is None:
            return None
        return self.exit_time - self.entry_time

    def add_entry(self, fill: Fill) -> None:
        """Scale in: entry price stays the volume-weighted average."""
        cost = self.entry_price * self.quantity + fill.price * fill.quantity
        self.quantity += fill.quantity
        self.entry_price = cost / self.quantity
        self.commission += fill.commission
        self.slippage += fill.slippage
        self.fill_count += 1

    def add_exit(self, fill: Fill, realized_pnl: Decimal) -> None:
        """Scale out: exit price is the volume-weighted average of exit fills."""
        proceeds = (self.exit_price or ZERO) * self.exit_quantity + fill.price * fill.quantity
        self.exit_quantity += fill.quantity
        self.exit_price = proceeds / self.exit_quantity
        self.pnl += realized_pnl
        self.commission += fill.commission
        self.slippage += fill.slippage
        self.fill_count += 1

    def update_excursion(self, unrealized_pnl: Decimal) -> None:
        if unrealized_pnl > self.max_favorable_excursion:
            self.max_favorable_excursion = unrealized_pnl
        if unrealized_pnl < self.max_adverse_excursion:
            self.max_adverse_excursion = unrealized_pnl

    def close(self, timestamp: datetime, reason: str = "") -> None:
        if timestamp < self.entry_time:
            raise ValueError(f"Trade {self.id} cannot exit before it was entered")
        self.exit_reason = reason
        self.exit_time = timestamp
        object.__setattr__(self, "_closed", True)


class ExecutionKind(str, Enum):
    FILLED = "FILLED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class ExecutionEvent:
    kind: ExecutionKind
    order_id: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    timestamp: datetime
    price: Optional[Decimal] = None
    execution_price: Optional[Decimal] = None
    commission: Decimal = ZERO
    slippage: Decimal = ZERO
    reason: Optional[str] = None

    @classmethod
    def filled(cls, order: Order, fill: Fill) -> "ExecutionEvent":
        return cls(
            kind=ExecutionKind.FILLED,
            order_id=order.id,
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type,
            quantity=fill.quantity,
            timestamp=fill.timestamp,
            price=fill.price,
            execution_price=fill.execution_price,
            commission=fill.commission,
            slippage=fill.slippage,
        )

    @classmethod
    def rejected(cls, order: Order, reason: str, timestamp: datetime) -> "ExecutionEvent":
        return cls(
            kind=ExecutionKind.REJECTED,
            order_id=order.id,
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type,
            quantity=order.remaining_quantity,
            timestamp=timestamp,
            reason=reason,
        )

    @classmethod
    def cancelled(cls, order: Order, reason: str, timestamp: datetime) -> "ExecutionEvent":
        return cls(
            kind=ExecutionKind.CANCELLED,
            order_id=order.id,
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type,
            quantity=order.remaining_quantity,
            timestamp=timestamp,
            reason=reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "order_id": self.order_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "order_type": self.order_type.value,
            "quantity": self.quantity,
            "timestamp": self.timestamp,
            "price": self.price,
            "execution_price": self.execution_price,
            "commission": self.commission,
            "slippage": self.slippage,
            "reason": self.reason,
        }
