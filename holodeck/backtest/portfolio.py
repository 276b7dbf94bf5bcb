from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Tuple
import logging

from holodeck.backtest.errors import (
    InsufficientFundsError,
    InsufficientPositionError,
    InvalidFillError,
    NoPositionError,
)
from holodeck.backtest.events import Fill, Order
from holodeck.core.models import OrderSide, PositionSide
from holodeck.core.money import ZERO, to_decimal

logger = logging.getLogger(__name__)

EquityPoint = Tuple[datetime, Decimal]


@dataclass
class Position:
    """Open holding in one symbol. Quantity is signed: long >= 0, short <= 0."""

    symbol: str
    side: PositionSide
    quantity: Decimal
    avg_entry_price: Decimal
    current_price: Decimal
    opened_at: Optional[datetime] = None
    unrealized_pnl: Decimal = ZERO

    def __post_init__(self):
        self.quantity = to_decimal(self.quantity)
        self.avg_entry_price = to_decimal(self.avg_entry_price)
        self.current_price = to_decimal(self.current_price)
        if self.side == PositionSide.LONG and self.quantity < ZERO:
            raise ValueError(f"Long position in {self.symbol} cannot hold {self.quantity}")
        if self.side == PositionSide.SHORT and self.quantity > ZERO:
            raise ValueError(f"Short position in {self.symbol} cannot hold {self.quantity}")
        self.unrealized_pnl = self.calculate_unrealized_pnl()

    def update_price(self, current_price: Decimal) -> None:
        self.current_price = current_price
        self.unrealized_pnl = self.calculate_unrealized_pnl()

    def calculate_unrealized_pnl(self) -> Decimal:
        size = abs(self.quantity)
        if self.side == PositionSide.LONG:
            return (self.current_price - self.avg_entry_price) * size
        return (self.avg_entry_price - self.current_price) * size

    @property
    def position_value(self) -> Decimal:
        return self.quantity * self.current_price

    @property
    def entry_value(self) -> Decimal:
        return abs(self.quantity) * self.avg_entry_price


class Portfolio:
    """Simulated Portfolio Ledger for Backtesting.

    Owns cash, open positions, realized PnL, cost totals and the equity
    curve for exactly one run. Fills either apply completely or raise an
    `ExecutionError` leaving every field untouched.

    Attributes:
        initial_capital (Decimal): Starting cash.
        cash (Decimal): Available cash balance. Only an end-of-run liquidation
            may take it below zero.
        positions (Dict[str, Position]): Open positions keyed by symbol.
        realized_pnl (Decimal): Net PnL booked by sell fills.
        total_commission (Decimal): Fees paid across all fills.
        total_slippage (Decimal): Slippage cost across all fills.
        equity_curve (List[Tuple[datetime, Decimal]]): Append-only equity history.
    """

    def __init__(self, initial_capital: Decimal):
        initial_capital = to_decimal(initial_capital)
        if initial_capital <= ZERO:
            raise ValueError(f"Initial capital must be positive, got {initial_capital}")

        self.initial_capital = initial_capital
        self.cash = initial_capital
        self.positions: Dict[str, Position] = {}
        self.realized_pnl = ZERO
        self.total_commission = ZERO
        self.total_slippage = ZERO
        self.equity_curve: List[EquityPoint] = []
        self.current_prices: Dict[str, Decimal] = {}

    def apply_fill(self, order: Order, fill: Fill, liquidation: bool = False) -> Decimal:
        """Books a fill against cash and positions.

        Buy: debits price * qty + commission + slippage and folds the fill into
        the position's volume-weighted entry price.
        Sell: credits proceeds net of costs and realizes
        proceeds - entry cost - commission - slippage.

        Args:
            order (Order): The order being filled (side and symbol).
            fill (Fill): Execution details.
            liquidation (bool): Forced end-of-run close. The sell is booked even
                when its costs exceed cash plus proceeds, leaving cash negative.

        Returns:
            Decimal: PnL realized by this fill (zero for buys).

        Raises:
            InsufficientFundsError, NoPositionError, InsufficientPositionError,
            InvalidFillError: The fill is refused and state is unchanged.
        """
        self._validate_fill(order, fill)

        if order.side == OrderSide.BUY:
            realized = self._apply_buy(fill)
        else:
            realized = self._apply_sell(fill, liquidation)

        self.total_commission += fill.commission
        self.total_slippage += fill.slippage

        self._record_equity(fill.timestamp)
        return realized

    def _validate_fill(self, order: Order, fill: Fill) -> None:
        if fill.quantity <= ZERO:
            raise InvalidFillError(f"Fill quantity must be positive, got {fill.quantity}")
        if fill.price <= ZERO:
            raise InvalidFillError(f"Fill price must be positive, got {fill.price}")
        if fill.commission < ZERO or fill.slippage < ZERO:
            raise InvalidFillError("Commission and slippage cannot be negative")
        if fill.symbol != order.symbol or fill.side != order.side:
            raise InvalidFillError(
                f"Fill {fill.side.value} {fill.symbol} does not match order "
                f"{order.side.value} {order.symbol}"
            )
        if self.equity_curve and fill.timestamp < self.equity_curve[-1][0]:
            raise InvalidFillError(
                f"Fill at {fill.timestamp} precedes last equity point {self.equity_curve[-1][0]}"
            )

    def _apply_buy(self, fill: Fill) -> Decimal:
        cost = fill.price * fill.quantity
        total_cost = cost + fill.commission + fill.slippage
        if self.cash < total_cost:
            raise InsufficientFundsError(required=total_cost, available=self.cash)

        self.cash -= total_cost

        position = self.positions.get(fill.symbol)
        if position is None:
            self.positions[fill.symbol] = Position(
                symbol=fill.symbol,
                side=PositionSide.LONG,
                quantity=fill.quantity,
                avg_entry_price=fill.price,
                current_price=self.current_prices.get(fill.symbol, fill.price),
                opened_at=fill.timestamp,
            )
        else:
            old_cost = position.quantity * position.avg_entry_price
            position.quantity += fill.quantity
            position.avg_entry_price = (old_cost + cost) / position.quantity
            position.update_price(position.current_price)

        return ZERO

    def _apply_sell(self, fill: Fill, liquidation: bool = False) -> Decimal:
        position = self.positions.get(fill.symbol)
        if position is None:
            raise NoPositionError(fill.symbol)
        if position.quantity < fill.quantity:
            raise InsufficientPositionError(fill.symbol, fill.quantity, position.quantity)

        entry_cost = fill.quantity * position.avg_entry_price
        proceeds = fill.quantity * fill.price
        net_pnl = proceeds - entry_cost - fill.commission - fill.slippage

        cash_delta = proceeds - fill.commission - fill.slippage
        if self.cash + cash_delta < ZERO:
            if not liquidation:
                # Costs exceeding proceeds must still be payable
                raise InsufficientFundsError(required=-cash_delta, available=self.cash)
            logger.warning(
                f"⚠️  Liquidating {fill.symbol} costs {-cash_delta} against cash {self.cash}; "
                f"cash goes negative"
            )

        self.realized_pnl += net_pnl
        self.cash += cash_delta

        remaining = position.quantity - fill.quantity
        if remaining == ZERO:
            del self.positions[fill.symbol]
        else:
            position.quantity = remaining
            position.update_price(position.current_price)

        return net_pnl

    def update_prices(self, prices: Mapping[str, Decimal]) -> None:
        """Marks positions to the latest prices and refreshes unrealized PnL."""
        for symbol, price in prices.items():
            price = to_decimal(price)
            self.current_prices[symbol] = price
            position = self.positions.get(symbol)
            if position is not None:
                position.update_price(price)

    def mark_to_market(self, timestamp: datetime) -> None:
        """Appends an equity point without a fill (run start, per-event marking)."""
        if self.equity_curve and timestamp < self.equity_curve[-1][0]:
            raise ValueError(
                f"Equity point at {timestamp} precedes {self.equity_curve[-1][0]}"
            )
        self._record_equity(timestamp)

    def _record_equity(self, timestamp: datetime) -> None:
        self.equity_curve.append((timestamp, self.total_equity()))

    def get_position(self, symbol: str) -> Optional[Position]:
        return self.positions.get(symbol)

    def position_count(self) -> int:
        return len(self.positions)

    def total_equity(self) -> Decimal:
        return self.cash + sum((p.position_value for p in self.positions.values()), ZERO)

    def unrealized_pnl(self) -> Decimal:
        return sum((p.unrealized_pnl for p in self.positions.values()), ZERO)

    def total_pnl(self) -> Decimal:
        return self.realized_pnl + self.unrealized_pnl()

    def return_pct(self) -> Decimal:
        return (self.total_equity() - self.initial_capital) / self.initial_capital
