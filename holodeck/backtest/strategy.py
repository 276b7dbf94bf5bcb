from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

import pandas as pd
from opentelemetry import trace

from holodeck.backtest.events import Candle, Fill, MarketEvent, MarketTrade, Order, OrderBookSnapshot
from holodeck.core.models import OrderSide, Signal, StrategyConfig
from holodeck.core.money import ZERO

logger = logging.getLogger(__name__)


@dataclass
class StrategyMetrics:
    """Bookkeeping a strategy keeps about its own activity during a run."""

    events_seen: int = 0
    orders_filled: int = 0
    orders_rejected: int = 0
    filled_volume: Decimal = ZERO
    custom: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Strategy(ABC):
    """Abstract base class for strategies driven by the backtest engine.

    The engine calls, in order and synchronously:

    1. `initialize(config)` once before the first event
    2. per event: `on_market_data(event)` then `generate_signal()`
    3. `on_order_fill` / `on_order_reject` for every order outcome
    4. `shutdown()` once after the last event

    A strategy sees only events that have already been replayed. Exceptions
    raised from any callback abort the run as a `StrategyError`.

    **Required Methods**:
    - `name`: Unique strategy identifier (property)
    - `on_market_data`: Fold a market event into internal state
    - `generate_signal`: Decide what to do now

    Attributes:
        tracer: OpenTelemetry tracer for this strategy
        config: The `StrategyConfig` handed to `initialize`
        metrics: Activity counters returned by `get_metrics`
    """

    def __init__(self):
        self.tracer = trace.get_tracer(f"strategy.{self.name}")
        self.config: Optional[StrategyConfig] = None
        self.metrics = StrategyMetrics()

    @property
    @abstractmethod
    def name(self) -> str:
        """
        Unique identifier for the strategy.
        """
        pass

    def initialize(self, config: StrategyConfig) -> None:
        self.config = config

    @abstractmethod
    def on_market_data(self, event: MarketEvent) -> None:
        pass

    @abstractmethod
    def generate_signal(self) -> Optional[Signal]:
        """
        Returns:
            Signal: What to do after the latest event. None is treated as HOLD.
        """
        pass

    def on_order_fill(self, order: Order, fill: Fill) -> None:
        self.metrics.orders_filled += 1
        self.metrics.filled_volume += fill.quantity

    def on_order_reject(self, order: Order, reason: str) -> None:
        self.metrics.orders_rejected += 1

    def get_metrics(self) -> StrategyMetrics:
        return self.metrics

    def serialize_state(self) -> Dict[str, Any]:
        return {}

    def deserialize_state(self, state: Dict[str, Any]) -> None:
        pass

    def shutdown(self) -> None:
        pass


class MovingAverageCrossStrategy(Strategy):
    """
    Moving Average Crossover Strategy.
    Long when SMA_Fast > SMA_Slow. Exit when Crosses back.

    Tracks a single symbol (the first configured one unless given) and only
    looks at candle closes. Trades and book snapshots are ignored.
    """

    def __init__(self, fast_window: int = 10, slow_window: int = 30, symbol: Optional[str] = None):
        if fast_window < 1 or slow_window <= fast_window:
            raise ValueError("Require 1 <= fast_window < slow_window")
        self.fast_window = fast_window
        self.slow_window = slow_window
        self.symbol = symbol
        self.prices: List[float] = []
        self.invested = False
        self._pending: Optional[Signal] = None
        super().__init__()

    @property
    def name(self) -> str:
        return "ma_cross"

    def initialize(self, config: StrategyConfig) -> None:
        super().initialize(config)
        params = config.parameters
        self.fast_window = int(params.get("fast_window", self.fast_window))
        self.slow_window = int(params.get("slow_window", self.slow_window))
        if self.symbol is None and config.symbols:
            self.symbol = config.symbols[0]
        logger.info(
            f"{self.name}: tracking {self.symbol} (fast={self.fast_window}, slow={self.slow_window})"
        )

    def on_market_data(self, event: MarketEvent) -> None:
        self.metrics.events_seen += 1
        self._pending = None

        if isinstance(event, Candle):
            if event.symbol != self.symbol:
                return
            self.prices.append(float(event.close))
        elif isinstance(event, (MarketTrade, OrderBookSnapshot)):
            return
        else:
            raise TypeError(f"Unsupported market event: {type(event).__name__}")

        if len(self.prices) < self.slow_window:
            return

        prices_series = pd.Series(self.prices[-self.slow_window:])
        sma_fast = prices_series.rolling(window=self.fast_window).mean().iloc[-1]
        sma_slow = prices_series.rolling(window=self.slow_window).mean().iloc[-1]

        if sma_fast > sma_slow and not self.invested:
            self._pending = Signal.buy(
                symbol=self.symbol,
                metadata={"sma_fast": float(sma_fast), "sma_slow": float(sma_slow)},
            )
        elif sma_fast < sma_slow and self.invested:
            self._pending = Signal.close_long(
                symbol=self.symbol,
                metadata={"sma_fast": float(sma_fast), "sma_slow": float(sma_slow)},
            )

    def generate_signal(self) -> Optional[Signal]:
        return self._pending

    def on_order_fill(self, order: Order, fill: Fill) -> None:
        super().on_order_fill(order, fill)
        if order.symbol == self.symbol:
            self.invested = order.side == OrderSide.BUY

    def serialize_state(self) -> Dict[str, Any]:
        return {
            "prices": list(self.prices[-self.slow_window:]),
            "invested": self.invested,
        }

    def deserialize_state(self, state: Dict[str, Any]) -> None:
        self.prices = [float(p) for p in state.get("prices", [])]
        self.invested = bool(state.get("invested", False))
