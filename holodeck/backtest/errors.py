"""Backtest exception hierarchy.

Two families matter to callers:
- PreconditionError: bad structural input (data). Raised before the event
  loop starts; the run is aborted.
- ExecutionError: a single order could not be executed. The engine rejects
  that order, notifies the strategy and keeps going.
"""


class BacktestError(Exception):
    """Base exception for the backtester."""
    pass


# ============================================================
# PRECONDITIONS (fatal)
# ============================================================

class PreconditionError(BacktestError):
    """Structural input is unusable; the run never starts."""
    pass


class EmptyDatasetError(PreconditionError):
    """No historical data for a requested symbol/window."""

    def __init__(self, symbol: str, message: str = ""):
        super().__init__(message or f"No data found for {symbol} in the specified time range")
        self.symbol = symbol


class InvalidDatasetError(PreconditionError):
    """Historical data violates basic candle invariants."""

    def __init__(self, symbol: str, message: str):
        super().__init__(f"{symbol}: {message}")
        self.symbol = symbol


# ============================================================
# PER-ORDER EXECUTION (recoverable)
# ============================================================

class ExecutionError(BacktestError):
    """A fill attempt failed; the order is rejected."""
    pass


class InsufficientFundsError(ExecutionError):
    """Cash cannot cover what a fill debits (buy notional or costs above proceeds)."""

    def __init__(self, required, available):
        super().__init__(
            f"Insufficient cash: required {required}, available {available}"
        )
        self.required = required
        self.available = available


class NoPositionError(ExecutionError):
    """Sell against a symbol with no open position."""

    def __init__(self, symbol: str):
        super().__init__(f"No position to sell for {symbol}")
        self.symbol = symbol


class InsufficientPositionError(ExecutionError):
    """Sell quantity exceeds the open position."""

    def __init__(self, symbol: str, requested, held):
        super().__init__(
            f"Insufficient position for sell order on {symbol}: requested {requested}, held {held}"
        )
        self.symbol = symbol
        self.requested = requested
        self.held = held


class MissingPriceError(ExecutionError):
    """No market price has been observed for the symbol yet."""

    def __init__(self, symbol: str):
        super().__init__(f"No price available for {symbol}")
        self.symbol = symbol


class InvalidFillError(ExecutionError):
    """Fill is malformed or out of chronological order."""
    pass


# ============================================================
# OTHER
# ============================================================

class StrategyError(BacktestError):
    """A strategy callback raised; propagated to the run's caller."""

    def __init__(self, callback: str, cause: BaseException):
        super().__init__(f"Strategy {callback} failed: {cause}")
        self.callback = callback


class TradeClosedError(BacktestError):
    """Attempt to modify a trade record after it was closed."""
    pass


class ResultSerializationError(BacktestError):
    """A BacktestResult could not be encoded or decoded."""
    pass
