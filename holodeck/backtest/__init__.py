"""Backtest Engine and Event-Driven Simulator.

Provides the core event loop, portfolio ledger, cost simulation and
performance metrics for validating strategies against historical data.
"""

from holodeck.backtest.cost_model import (
    COST_MODEL_PRESETS,
    CommissionModel,
    CostModel,
    SlippageModel,
)
from holodeck.backtest.engine import BacktestConfig, BacktestEngine
from holodeck.backtest.errors import (
    BacktestError,
    EmptyDatasetError,
    ExecutionError,
    InsufficientFundsError,
    InsufficientPositionError,
    InvalidDatasetError,
    InvalidFillError,
    MissingPriceError,
    NoPositionError,
    PreconditionError,
    ResultSerializationError,
    StrategyError,
    TradeClosedError,
)
from holodeck.backtest.events import (
    Candle,
    Fill,
    MarketEvent,
    MarketTrade,
    Order,
    OrderBookSnapshot,
)
from holodeck.backtest.feed import (
    DataFrameDataSource,
    HistoricalDataSource,
    InMemoryDataSource,
    load_event_stream,
)
from holodeck.backtest.portfolio import Portfolio, Position
from holodeck.backtest.records import ExecutionEvent, ExecutionKind, Trade
from holodeck.backtest.reporting import BacktestResult, PerformanceReporter
from holodeck.backtest.sizing import FixedSizing, KellySizing, PercentOfEquitySizing
from holodeck.backtest.strategy import MovingAverageCrossStrategy, Strategy, StrategyMetrics

__all__ = [
    "BacktestConfig",
    "BacktestEngine",
    "BacktestError",
    "BacktestResult",
    "COST_MODEL_PRESETS",
    "Candle",
    "CommissionModel",
    "CostModel",
    "DataFrameDataSource",
    "EmptyDatasetError",
    "ExecutionError",
    "ExecutionEvent",
    "ExecutionKind",
    "Fill",
    "FixedSizing",
    "HistoricalDataSource",
    "InMemoryDataSource",
    "InsufficientFundsError",
    "InsufficientPositionError",
    "InvalidDatasetError",
    "InvalidFillError",
    "KellySizing",
    "MarketEvent",
    "MarketTrade",
    "MissingPriceError",
    "MovingAverageCrossStrategy",
    "NoPositionError",
    "Order",
    "OrderBookSnapshot",
    "PercentOfEquitySizing",
    "PerformanceReporter",
    "Portfolio",
    "Position",
    "PreconditionError",
    "ResultSerializationError",
    "SlippageModel",
    "Strategy",
    "StrategyError",
    "StrategyMetrics",
    "Trade",
    "TradeClosedError",
    "load_event_stream",
]
