"""Market events, orders and fills flowing through the backtest engine.

Market data is a closed set of three immutable variants:

- `Candle`: OHLCV bar (the only kind historical sources supply)
- `MarketTrade`: a single print on the tape
- `OrderBookSnapshot`: top-of-book ladders

Every consumer dispatches over all three and raises `TypeError` on anything
else, so adding a variant means touching each dispatch site.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import ClassVar, Optional, Tuple, Union

from holodeck.core.models import OrderSide, OrderStatus, OrderType
from holodeck.core.money import ZERO, to_decimal

BookLevel = Tuple[Decimal, Decimal]  # (price, size)


def _coerce(obj, *names: str) -> None:
    for name in names:
        object.__setattr__(obj, name, to_decimal(getattr(obj, name)))


@dataclass(frozen=True)
class Candle:
    symbol: str
    timestamp: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = ZERO
    interval: str = ""

    type: ClassVar[str] = "CANDLE"

    def __post_init__(self):
        _coerce(self, "open", "high", "low", "close", "volume")

    def mark_price(self) -> Optional[Decimal]:
        return self.close

    def liquidity(self, side: OrderSide) -> Decimal:
        return self.volume


@dataclass(frozen=True)
class MarketTrade:
    symbol: str
    timestamp: datetime
    price: Decimal
    quantity: Decimal
    aggressor: Optional[OrderSide] = None

    type: ClassVar[str] = "TRADE"

    def __post_init__(self):
        _coerce(self, "price", "quantity")

    def mark_price(self) -> Optional[Decimal]:
        return self.price

    def liquidity(self, side: OrderSide) -> Decimal:
        return self.quantity


@dataclass(frozen=True)
class OrderBookSnapshot:
    symbol: str
    timestamp: datetime
    bids: Tuple[BookLevel, ...] = ()  # best first
    asks: Tuple[BookLevel, ...] = ()  # best first

    type: ClassVar[str] = "ORDER_BOOK"

    def __post_init__(self):
        object.__setattr__(
            self, "bids", tuple((to_decimal(p), to_decimal(q)) for p, q in self.bids)
        )
        object.__setattr__(
            self, "asks", tuple((to_decimal(p), to_decimal(q)) for p, q in self.asks)
        )

    @property
    def best_bid(self) -> Optional[Decimal]:
        return self.bids[0][0] if self.bids else None

    @property
    def best_ask(self) -> Optional[Decimal]:
        return self.asks[0][0] if self.asks else None

    def mark_price(self) -> Optional[Decimal]:
        """Mid price; None while either side of the book is empty."""
        if self.best_bid is None or self.best_ask is None:
            return None
        return (self.best_bid + self.best_ask) / Decimal("2")

    def liquidity(self, side: OrderSide) -> Decimal:
        # A buy consumes asks, a sell consumes bids
        levels = self.asks if side == OrderSide.BUY else self.bids
        return sum((size for _, size in levels), ZERO)


MarketEvent = Union[Candle, MarketTrade, OrderBookSnapshot]
MARKET_EVENT_TYPES = (Candle, MarketTrade, OrderBookSnapshot)


def ensure_market_event(event) -> MarketEvent:
    if not isinstance(event, MARKET_EVENT_TYPES):
        raise TypeError(f"Unsupported market event: {type(event).__name__}")
    return event


@dataclass
class Order:
    """
    Transient order owned by the engine until it is filled, rejected or
    cancelled. Limit orders may collect several partial fills.
    """

    id: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    created_at: datetime
    limit_price: Optional[Decimal] = None
    status: OrderStatus = OrderStatus.CREATED
    filled_quantity: Decimal = ZERO
    avg_fill_price: Optional[Decimal] = None
    reject_reason: Optional[str] = None

    def __post_init__(self):
        self.quantity = to_decimal(self.quantity)
        if self.quantity <= ZERO:
            raise ValueError(f"Order quantity must be positive, got {self.quantity}")
        if self.limit_price is not None:
            self.limit_price = to_decimal(self.limit_price)
        if self.order_type.is_resting and self.limit_price is None:
            raise ValueError(f"{self.order_type.value} order requires a limit price")

    @property
    def remaining_quantity(self) -> Decimal:
        return self.quantity - self.filled_quantity

    @property
    def is_active(self) -> bool:
        return self.status in (OrderStatus.CREATED, OrderStatus.SUBMITTED, OrderStatus.PARTIAL)

    def submit(self) -> None:
        self.status = OrderStatus.SUBMITTED

    def record_fill(self, quantity: Decimal, price: Decimal) -> None:
        if quantity > self.remaining_quantity:
            raise ValueError(
                f"Fill of {quantity} exceeds remaining {self.remaining_quantity} on {self.id}"
            )
        notional = (self.avg_fill_price or ZERO) * self.filled_quantity + price * quantity
        self.filled_quantity += quantity
        self.avg_fill_price = notional / self.filled_quantity
        self.status = OrderStatus.FILLED if self.remaining_quantity == ZERO else OrderStatus.PARTIAL

    def reject(self, reason: str) -> None:
        self.status = OrderStatus.REJECTED
        self.reject_reason = reason

    def cancel(self, reason: str) -> None:
        self.status = OrderStatus.CANCELLED
        self.reject_reason = reason


@dataclass(frozen=True)
class Fill:
    """
    One execution against an order.

    `price` is the quoted price the fill is booked at; `slippage` is the total
    money cost of slippage for this fill and `commission` the venue fee.
    `execution_price` is the effective per-unit price after slippage
    (derived when not given).
    """

    order_id: str
    symbol: str
    side: OrderSide
    price: Decimal
    quantity: Decimal
    timestamp: datetime
    commission: Decimal = ZERO
    slippage: Decimal = ZERO
    execution_price: Optional[Decimal] = field(default=None)

    def __post_init__(self):
        _coerce(self, "price", "quantity", "commission", "slippage")
        if self.execution_price is None:
            per_unit = self.slippage / self.quantity if self.quantity else ZERO
            effective = self.price + per_unit if self.side == OrderSide.BUY else self.price - per_unit
            object.__setattr__(self, "execution_price", effective)
        else:
            object.__setattr__(self, "execution_price", to_decimal(self.execution_price))

    @property
    def notional(self) -> Decimal:
        return self.price * self.quantity
