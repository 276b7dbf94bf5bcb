"""
Backtest results: the immutable `BacktestResult` and the
`PerformanceReporter` that derives it from a finished run.

Conventions:
- Money values are Decimals; ratios that pass through numpy are converted
  back with `decimal_from_float`.
- Returns and drawdowns are fractions (0.25 == 25%).
- Profit factor with no losing trades is `PROFIT_FACTOR_INFINITE`.
"""

from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import logging

import numpy as np
import pandas as pd

from holodeck.backtest.errors import ResultSerializationError
from holodeck.backtest.portfolio import EquityPoint, Portfolio
from holodeck.backtest.records import Trade
from holodeck.core import serialization
from holodeck.core.constants import (
    CALMAR_MIN_DRAWDOWN,
    PROFIT_FACTOR_INFINITE,
    SECONDS_PER_HOUR,
    SORTINO_NO_DOWNSIDE,
    SQRT_TRADING_DAYS,
    TRADING_DAYS,
)
from holodeck.core.money import ZERO, decimal_from_float, to_decimal

logger = logging.getLogger(__name__)

Curve = Tuple[EquityPoint, ...]


@dataclass(frozen=True)
class BacktestResult:
    # Period
    start_time: datetime
    end_time: datetime

    # Capital
    initial_capital: Decimal
    final_equity: Decimal
    total_pnl: Decimal
    total_return_pct: Decimal
    realized_pnl: Decimal

    # Trades
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: Decimal

    # PnL
    gross_profit: Decimal
    gross_loss: Decimal
    profit_factor: Decimal
    average_win: Decimal
    average_loss: Decimal
    largest_win: Decimal
    largest_loss: Decimal

    # Risk
    max_drawdown: Decimal
    max_drawdown_pct: Decimal
    sharpe_ratio: Decimal
    sortino_ratio: Decimal
    calmar_ratio: Decimal

    # Costs
    total_commission: Decimal
    total_slippage: Decimal
    total_costs: Decimal

    # Durations (hours)
    avg_trade_duration_hours: Decimal
    max_trade_duration_hours: Decimal
    min_trade_duration_hours: Decimal

    # Orders
    total_orders: int
    rejected_orders: int

    # Curves
    equity_curve: Curve
    drawdown_curve: Curve

    _DATETIME_FIELDS = ("start_time", "end_time")
    _INT_FIELDS = ("total_trades", "winning_trades", "losing_trades", "total_orders", "rejected_orders")
    _CURVE_FIELDS = ("equity_curve", "drawdown_curve")

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict; Decimals and datetimes are left for the encoder."""
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in self._CURVE_FIELDS:
                value = [[ts, v] for ts, v in value]
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BacktestResult":
        if not isinstance(data, dict):
            raise ResultSerializationError(f"Expected an object, got {type(data).__name__}")

        names = [f.name for f in fields(cls)]
        missing = [n for n in names if n not in data]
        if missing:
            raise ResultSerializationError(f"Missing result fields: {missing}")

        kwargs: Dict[str, Any] = {}
        try:
            for name in names:
                value = data[name]
                if name in cls._DATETIME_FIELDS:
                    kwargs[name] = _as_datetime(value)
                elif name in cls._INT_FIELDS:
                    if isinstance(value, bool) or not isinstance(value, int):
                        raise ValueError(f"{name} must be an integer, got {value!r}")
                    kwargs[name] = value
                elif name in cls._CURVE_FIELDS:
                    kwargs[name] = tuple(
                        (_as_datetime(ts), _as_decimal(v)) for ts, v in value
                    )
                else:
                    kwargs[name] = _as_decimal(value)
        except (TypeError, ValueError) as e:
            raise ResultSerializationError(f"Invalid result payload: {e}") from e

        return cls(**kwargs)

    def to_json(self) -> bytes:
        try:
            return serialization.dumps(self.to_dict())
        except TypeError as e:
            raise ResultSerializationError(f"Cannot encode result: {e}") from e

    @classmethod
    def from_json(cls, data: Union[bytes, str]) -> "BacktestResult":
        try:
            payload = serialization.loads(data)
        except ValueError as e:
            raise ResultSerializationError(f"Malformed result JSON: {e}") from e
        return cls.from_dict(payload)

    def equity_frame(self) -> pd.DataFrame:
        """Equity and drawdown fraction per equity point, indexed by timestamp."""
        index = pd.DatetimeIndex([ts for ts, _ in self.equity_curve], name="timestamp")
        return pd.DataFrame(
            {
                "equity": [float(v) for _, v in self.equity_curve],
                "drawdown": [float(v) for _, v in self.drawdown_curve],
            },
            index=index,
        )

    def summary(self) -> str:
        days = (self.end_time - self.start_time).days
        lines = [
            "=== Backtest Results ===",
            "",
            f"Period: {self.start_time:%Y-%m-%d} to {self.end_time:%Y-%m-%d}",
            f"Duration: {days} days",
            "",
            "Capital:",
            f"  Initial: ${self.initial_capital:.2f}",
            f"  Final: ${self.final_equity:.2f}",
            f"  Total P&L: ${self.total_pnl:.2f}",
            f"  Realized P&L: ${self.realized_pnl:.2f}",
            f"  Return: {self.total_return_pct * 100:.2f}%",
            "",
            "Trades:",
            f"  Total: {self.total_trades}",
            f"  Winners: {self.winning_trades}",
            f"  Losers: {self.losing_trades}",
            f"  Win Rate: {self.win_rate * 100:.2f}%",
            f"  Orders: {self.total_orders} ({self.rejected_orders} rejected)",
            "",
            "P&L Analysis:",
            f"  Gross Profit: ${self.gross_profit:.2f}",
            f"  Gross Loss: ${self.gross_loss:.2f}",
            f"  Profit Factor: {self.profit_factor:.2f}",
            f"  Average Win: ${self.average_win:.2f}",
            f"  Average Loss: ${self.average_loss:.2f}",
            f"  Largest Win: ${self.largest_win:.2f}",
            f"  Largest Loss: ${self.largest_loss:.2f}",
            "",
            "Risk Metrics:",
            f"  Max Drawdown: ${self.max_drawdown:.2f} ({self.max_drawdown_pct * 100:.2f}%)",
            f"  Sharpe Ratio: {self.sharpe_ratio:.2f}",
            f"  Sortino Ratio: {self.sortino_ratio:.2f}",
            f"  Calmar Ratio: {self.calmar_ratio:.2f}",
            "",
            "Costs:",
            f"  Commission: ${self.total_commission:.2f}",
            f"  Slippage: ${self.total_slippage:.2f}",
            f"  Total Costs: ${self.total_costs:.2f}",
            "",
            "Trade Duration:",
            f"  Average: {self.avg_trade_duration_hours:.2f} hours",
            f"  Max: {self.max_trade_duration_hours:.2f} hours",
            f"  Min: {self.min_trade_duration_hours:.2f} hours",
        ]
        return "\n".join(lines)


def _as_decimal(value: Any) -> Decimal:
    return serialization.decode_decimal(value)


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return serialization.decode_datetime(value)


class PerformanceReporter:
    """
    Calculates backtest metrics from a finished portfolio and its trades.

    Only closed trades count towards trade statistics.
    """

    def __init__(
        self,
        portfolio: Portfolio,
        trades: Sequence[Trade],
        start_time: datetime,
        end_time: datetime,
        total_orders: int = 0,
        rejected_orders: int = 0,
    ):
        self.portfolio = portfolio
        self.trades = [t for t in trades if t.is_closed]
        self.start_time = start_time
        self.end_time = end_time
        self.total_orders = total_orders
        self.rejected_orders = rejected_orders

        open_count = len(trades) - len(self.trades)
        if open_count:
            logger.warning(f"⚠️  {open_count} trade(s) still open; excluded from trade stats")

    def build(self) -> BacktestResult:
        portfolio = self.portfolio
        initial_capital = portfolio.initial_capital
        final_equity = portfolio.total_equity()
        total_pnl = final_equity - initial_capital
        total_return = total_pnl / initial_capital

        pnls = [t.pnl for t in self.trades]
        wins = [p for p in pnls if p > ZERO]
        losses = [p for p in pnls if p < ZERO]

        gross_profit = sum(wins, ZERO)
        gross_loss = abs(sum(losses, ZERO))

        equity_curve: Curve = tuple(portfolio.equity_curve)
        max_dd, max_dd_pct, drawdown_curve = self.calculate_drawdown(equity_curve)
        returns = self.calculate_returns(equity_curve)

        durations = [self._hours(t.duration) for t in self.trades]

        return BacktestResult(
            start_time=self.start_time,
            end_time=self.end_time,
            initial_capital=initial_capital,
            final_equity=final_equity,
            total_pnl=total_pnl,
            total_return_pct=total_return,
            realized_pnl=portfolio.realized_pnl,
            total_trades=len(pnls),
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate=Decimal(len(wins)) / Decimal(len(pnls)) if pnls else ZERO,
            gross_profit=gross_profit,
            gross_loss=gross_loss,
            profit_factor=self.profit_factor(gross_profit, gross_loss),
            average_win=gross_profit / len(wins) if wins else ZERO,
            average_loss=gross_loss / len(losses) if losses else ZERO,
            largest_win=max(wins, default=ZERO),
            largest_loss=min(losses, default=ZERO),
            max_drawdown=max_dd,
            max_drawdown_pct=max_dd_pct,
            sharpe_ratio=self.sharpe_ratio(returns),
            sortino_ratio=self.sortino_ratio(returns),
            calmar_ratio=self.calmar_ratio(total_return, max_dd_pct),
            total_commission=portfolio.total_commission,
            total_slippage=portfolio.total_slippage,
            total_costs=portfolio.total_commission + portfolio.total_slippage,
            avg_trade_duration_hours=sum(durations, ZERO) / len(durations) if durations else ZERO,
            max_trade_duration_hours=max(durations, default=ZERO),
            min_trade_duration_hours=min(durations, default=ZERO),
            total_orders=self.total_orders,
            rejected_orders=self.rejected_orders,
            equity_curve=equity_curve,
            drawdown_curve=drawdown_curve,
        )

    @staticmethod
    def _hours(duration: Optional[timedelta]) -> Decimal:
        if duration is None:
            return ZERO
        return to_decimal(duration.total_seconds()) / SECONDS_PER_HOUR

    @staticmethod
    def profit_factor(gross_profit: Decimal, gross_loss: Decimal) -> Decimal:
        if gross_loss > ZERO:
            return gross_profit / gross_loss
        if gross_profit > ZERO:
            return PROFIT_FACTOR_INFINITE
        return ZERO

    @staticmethod
    def calculate_drawdown(
        equity_curve: Sequence[EquityPoint],
    ) -> Tuple[Decimal, Decimal, Curve]:
        """
        Running peak-to-trough drawdown.

        Returns:
            (max_drawdown, max_drawdown_pct, curve): the largest absolute
            drawdown, its fraction of the peak it fell from, and the
            drawdown fraction at every equity point.
        """
        peak = ZERO
        max_dd = ZERO
        max_dd_pct = ZERO
        curve: List[EquityPoint] = []

        for timestamp, equity in equity_curve:
            if equity > peak:
                peak = equity

            dd = peak - equity
            dd_pct = dd / peak if peak > ZERO else ZERO

            if dd > max_dd:
                max_dd = dd
                max_dd_pct = dd_pct

            curve.append((timestamp, dd_pct))

        return max_dd, max_dd_pct, tuple(curve)

    @staticmethod
    def calculate_returns(equity_curve: Sequence[EquityPoint]) -> np.ndarray:
        """Simple step returns between consecutive equity points."""
        equity = np.array([float(v) for _, v in equity_curve], dtype=float)
        if len(equity) < 2:
            return np.array([], dtype=float)
        prev, curr = equity[:-1], equity[1:]
        valid = prev > 0
        return (curr[valid] - prev[valid]) / prev[valid]

    @staticmethod
    def sharpe_ratio(returns: np.ndarray) -> Decimal:
        """Annualized mean / annualized sample std, no risk-free rate."""
        if len(returns) < 2:
            return ZERO
        std = np.std(returns, ddof=1)
        if std == 0:
            return ZERO
        annualized_return = np.mean(returns) * TRADING_DAYS
        annualized_std = std * SQRT_TRADING_DAYS
        return decimal_from_float(annualized_return / annualized_std)

    @staticmethod
    def sortino_ratio(returns: np.ndarray) -> Decimal:
        """
        Sortino Ratio: annualized mean / annualized downside deviation.
        Only penalizes harmful volatility.
        """
        if len(returns) == 0:
            return ZERO

        mean = np.mean(returns)
        downside = returns[returns < 0]
        if len(downside) == 0:
            return SORTINO_NO_DOWNSIDE if mean > 0 else ZERO

        downside_dev = np.sqrt(np.mean(downside**2))
        if downside_dev == 0:
            return ZERO
        return decimal_from_float((mean * TRADING_DAYS) / (downside_dev * SQRT_TRADING_DAYS))

    @staticmethod
    def calmar_ratio(total_return: Decimal, max_drawdown_pct: Decimal) -> Decimal:
        if abs(max_drawdown_pct) <= CALMAR_MIN_DRAWDOWN:
            return ZERO
        return total_return / abs(max_drawdown_pct)
