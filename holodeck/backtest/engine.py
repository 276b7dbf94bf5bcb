import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Deque, Dict, Iterable, List, Optional

from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from holodeck.backtest.cost_model import CostModel
from holodeck.backtest.errors import ExecutionError, MissingPriceError, StrategyError
from holodeck.backtest.events import (
    Candle,
    Fill,
    MarketEvent,
    MarketTrade,
    Order,
    OrderBookSnapshot,
)
from holodeck.backtest.feed import HistoricalDataSource, load_event_stream
from holodeck.backtest.portfolio import Portfolio
from holodeck.backtest.records import ExecutionEvent, Trade
from holodeck.backtest.reporting import BacktestResult, PerformanceReporter
from holodeck.backtest.sizing import PercentOfEquitySizing, PositionSizing
from holodeck.backtest.strategy import Strategy
from holodeck.core.config import settings
from holodeck.core.constants import DEFAULT_VOLUME_WINDOW
from holodeck.core.models import (
    OrderSide,
    OrderType,
    RiskLimits,
    Signal,
    SignalType,
    StrategyConfig,
)
from holodeck.core.money import ZERO


logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class ExitReason:
    SIGNAL = "signal"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    END_OF_BACKTEST = "end_of_backtest"
    CANCELLED = "cancelled"


class BacktestConfig(BaseModel):
    """
    Everything that defines one backtest run.

    Invalid values fail at construction with a pydantic `ValidationError`.
    """

    model_config = ConfigDict(frozen=True)

    initial_capital: Decimal = Field(
        default_factory=lambda: settings.DEFAULT_INITIAL_CAPITAL, gt=0
    )
    start_time: datetime
    end_time: datetime
    symbols: List[str] = Field(..., min_length=1)
    interval: str = "1H"
    cost_model: CostModel = Field(default_factory=CostModel)
    verbose: bool = False
    max_positions: int = Field(default=5, ge=1)
    position_sizing: PositionSizing = Field(
        default_factory=lambda: PercentOfEquitySizing(fraction=Decimal("0.1"))
    )

    # Strategy wiring
    strategy_name: str = "Backtest Strategy"
    strategy_parameters: Dict[str, Any] = Field(default_factory=dict)
    risk_limits: RiskLimits = Field(
        default_factory=RiskLimits,
        description=(
            "Handed to the strategy through StrategyConfig; the engine does not enforce "
            "them. Engine-side exits come from Signal.stop_loss / Signal.take_profit."
        ),
    )

    # Simulation knobs
    volume_window: int = Field(default=DEFAULT_VOLUME_WINDOW, ge=1)
    limit_fill_participation: Optional[Decimal] = Field(default=None, gt=0, le=1)
    record_equity_on_events: bool = False
    max_events: Optional[int] = Field(default=None, ge=1)
    load_workers: int = Field(default_factory=lambda: settings.DATA_LOAD_WORKERS, ge=1)

    @field_validator("symbols")
    @classmethod
    def symbols_unique(cls, v: List[str]) -> List[str]:
        if len(set(v)) != len(v):
            raise ValueError("symbols must be unique")
        if any(not s for s in v):
            raise ValueError("symbols must be non-empty strings")
        return v

    @model_validator(mode="after")
    def window_ordered(self) -> "BacktestConfig":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


@dataclass(frozen=True)
class ProtectiveExit:
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None


class BacktestEngine:
    """
    Event-driven backtesting engine.

    Replays every configured symbol's candles (plus any supplementary trade
    or book events) in timestamp order through one strategy. Per event:

    1. Update the clock, current price and rolling volume
    2. Mark the portfolio and open trades to market
    3. Fill pending limit orders the price has crossed
    4. Trigger protective stop-loss / take-profit exits
    5. Feed the strategy and execute its signal

    At the end (or on `cancel()`) pending orders are cancelled and every open
    position is closed at its last price.

    Example:
        engine = BacktestEngine(config, strategy, data_source)
        result = engine.run()
        print(result.summary())
    """

    def __init__(
        self,
        config: BacktestConfig,
        strategy: Strategy,
        data_source: HistoricalDataSource,
        supplementary_events: Iterable[MarketEvent] = (),
    ):
        self.config = config
        self.strategy = strategy
        self.data_source = data_source
        self.supplementary_events = tuple(supplementary_events)

        self.portfolio = Portfolio(config.initial_capital)
        self.trades: List[Trade] = []
        self.executions: List[ExecutionEvent] = []
        self.pending_orders: Dict[str, Order] = {}

        # Clock Management
        self.current_time: Optional[datetime] = None
        self.current_prices: Dict[str, Decimal] = {}

        self._volumes: Dict[str, Deque[Decimal]] = {}
        self._open_trades: Dict[str, Trade] = {}
        self._order_exits: Dict[str, ProtectiveExit] = {}
        self._protective_exits: Dict[str, ProtectiveExit] = {}
        self._cancel_event = threading.Event()
        self._started = False
        self._order_seq = 0
        self._trade_seq = 0

        # Telemetry Metrics
        self.total_market_events = 0
        self.total_signals = 0
        self.total_orders = 0
        self.total_fills = 0
        self.rejected_orders = 0
        self.cancelled_orders = 0

    def cancel(self) -> None:
        """Stops the run before the next event; positions are still closed out."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @tracer.start_as_current_span("backtest_run")
    def run(self) -> BacktestResult:
        """
        Main Event Loop.

        Raises:
            EmptyDatasetError, InvalidDatasetError: Data unusable; nothing ran.
            StrategyError: A strategy callback raised.
        """
        if self._started:
            raise RuntimeError("BacktestEngine runs exactly once; create a new engine")
        self._started = True

        span = trace.get_current_span()
        cfg = self.config
        span.set_attribute("backtest.symbols", ",".join(cfg.symbols))
        span.set_attribute("backtest.interval", cfg.interval)

        logger.info(
            f"🚀 Starting Backtest: {cfg.symbols} from {cfg.start_time} to {cfg.end_time}"
        )

        events = load_event_stream(
            self.data_source,
            cfg.symbols,
            cfg.interval,
            cfg.start_time,
            cfg.end_time,
            max_workers=cfg.load_workers,
            extra_events=self.supplementary_events,
        )
        total_events = len(events)
        logger.info(f"Total events loaded: {total_events}")

        self._call_strategy("initialize", self._strategy_config())
        self.portfolio.mark_to_market(events[0].timestamp)

        for event in events:
            if self._cancel_event.is_set():
                logger.warning(
                    f"⚠️  Backtest cancelled after {self.total_market_events}/{total_events} events"
                )
                break
            if cfg.max_events is not None and self.total_market_events >= cfg.max_events:
                logger.info(f"Event limit {cfg.max_events} reached; stopping replay")
                break

            self._process_event(event)

            if cfg.verbose and self.total_market_events % settings.PROGRESS_LOG_INTERVAL == 0:
                logger.info(f"Processing event {self.total_market_events}/{total_events}")

        reason = ExitReason.CANCELLED if self.cancelled else ExitReason.END_OF_BACKTEST
        self._close_out(reason)
        self._call_strategy("shutdown")

        result = PerformanceReporter(
            self.portfolio,
            self.trades,
            start_time=cfg.start_time,
            end_time=cfg.end_time,
            total_orders=self.total_orders,
            rejected_orders=self.rejected_orders,
        ).build()

        self._log_telemetry_summary(span)
        logger.info(
            f"✅ Backtest completed. Final equity: {result.final_equity}, "
            f"trades: {result.total_trades}, win rate: {result.win_rate:.2%}"
        )
        return result

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    @tracer.start_as_current_span("handle_market_event")
    def _process_event(self, event: MarketEvent) -> None:
        span = trace.get_current_span()
        span.set_attribute("event.type", event.type)
        span.set_attribute("event.symbol", event.symbol)

        # Update clock
        self.current_time = event.timestamp

        if isinstance(event, Candle):
            self._record_volume(event.symbol, event.volume)
        elif isinstance(event, (MarketTrade, OrderBookSnapshot)):
            pass
        else:
            raise TypeError(f"Unsupported market event: {type(event).__name__}")

        price = event.mark_price()
        if price is not None:
            self.current_prices[event.symbol] = price
            self.portfolio.update_prices({event.symbol: price})
            self._update_excursion(event.symbol)
            self._check_pending_orders(event, price)
            self._check_protective_exits(event.symbol, price)

        self._call_strategy("on_market_data", event)
        signal = self._call_strategy("generate_signal")
        if signal is not None and signal.signal_type != SignalType.HOLD:
            self.total_signals += 1
            self._execute_signal(signal, event)

        if self.config.record_equity_on_events:
            self.portfolio.mark_to_market(event.timestamp)

        self.total_market_events += 1

    def _record_volume(self, symbol: str, volume: Decimal) -> None:
        window = self._volumes.get(symbol)
        if window is None:
            window = self._volumes[symbol] = deque(maxlen=self.config.volume_window)
        window.append(volume)

    def avg_volume(self, symbol: str) -> Decimal:
        """Rolling mean candle volume; zero (no impact) before any candle."""
        window = self._volumes.get(symbol)
        if not window:
            return ZERO
        return sum(window, ZERO) / len(window)

    def _update_excursion(self, symbol: str) -> None:
        trade = self._open_trades.get(symbol)
        position = self.portfolio.get_position(symbol)
        if trade is not None and position is not None:
            trade.update_excursion(position.unrealized_pnl)

    def _check_pending_orders(self, event: MarketEvent, price: Decimal) -> None:
        """Fills resting orders whose limit the price has crossed, at the limit price."""
        for order in list(self.pending_orders.values()):
            if order.symbol != event.symbol:
                continue

            if order.side == OrderSide.BUY:
                crossed = price <= order.limit_price
            else:
                crossed = price >= order.limit_price
            if not crossed:
                continue

            if order.side == OrderSide.BUY and self._position_limit_reached(order.symbol):
                self._reject(order, self._position_limit_message(), event.timestamp)
                continue

            quantity = order.remaining_quantity
            participation = self.config.limit_fill_participation
            if participation is not None:
                quantity = min(quantity, participation * event.liquidity(order.side))
                if quantity <= ZERO:
                    continue

            fill = self._fill(order, order.limit_price, quantity, event.timestamp, ExitReason.SIGNAL)
            if fill is None or not order.is_active:
                self.pending_orders.pop(order.id, None)

    def _check_protective_exits(self, symbol: str, price: Decimal) -> None:
        exits = self._protective_exits.get(symbol)
        if exits is None or self.portfolio.get_position(symbol) is None:
            return

        if exits.stop_loss is not None and price <= exits.stop_loss:
            logger.info(f"🛑 Stop loss hit on {symbol} @ {price} (stop {exits.stop_loss})")
            self._close_position(symbol, OrderType.STOP_LOSS, ExitReason.STOP_LOSS)
        elif exits.take_profit is not None and price >= exits.take_profit:
            logger.info(f"🎯 Take profit hit on {symbol} @ {price} (target {exits.take_profit})")
            self._close_position(symbol, OrderType.TAKE_PROFIT, ExitReason.TAKE_PROFIT)

    # ------------------------------------------------------------------
    # Signal execution
    # ------------------------------------------------------------------

    @tracer.start_as_current_span("execute_signal")
    def _execute_signal(self, signal: Signal, event: MarketEvent) -> None:
        symbol = signal.symbol or event.symbol
        span = trace.get_current_span()
        span.set_attribute("signal.symbol", symbol)
        span.set_attribute("signal.type", signal.signal_type.value)
        logger.debug(f"Executing signal: {signal.signal_type.value} {symbol}")

        if signal.signal_type == SignalType.BUY:
            self._execute_buy(signal, symbol)
        elif signal.signal_type == SignalType.SELL:
            self._execute_sell(signal, symbol)
        elif signal.signal_type == SignalType.CLOSE_LONG:
            if self.portfolio.get_position(symbol) is not None:
                self._close_position(symbol, OrderType.MARKET, ExitReason.SIGNAL)
        elif signal.signal_type == SignalType.CLOSE_SHORT:
            # Long-only ledger: there is never a short to cover
            logger.debug(f"CLOSE_SHORT on {symbol} ignored; no short positions")
        else:
            raise TypeError(f"Unsupported signal type: {signal.signal_type}")

    def _execute_buy(self, signal: Signal, symbol: str) -> None:
        price = self.current_prices.get(symbol)
        sizing_price = signal.target_price or price

        if signal.suggested_quantity is not None:
            quantity = signal.suggested_quantity
        elif sizing_price is None:
            logger.warning(f"⚠️  Cannot size BUY for {symbol}: no price observed yet")
            return
        else:
            quantity = self.config.position_sizing.size(
                self.portfolio.total_equity(), sizing_price
            )

        if quantity <= ZERO:
            logger.debug(f"Position size for {symbol} is zero, skipping signal")
            return

        order_type = OrderType.LIMIT if signal.target_price is not None else OrderType.MARKET
        order = self._new_order(symbol, OrderSide.BUY, order_type, quantity, signal.target_price)

        if signal.stop_loss is not None or signal.take_profit is not None:
            self._order_exits[order.id] = ProtectiveExit(signal.stop_loss, signal.take_profit)

        if self._position_limit_reached(symbol):
            self._reject(order, self._position_limit_message(), self.current_time)
            return

        if order_type.is_resting:
            self.pending_orders[order.id] = order
            logger.debug(f"Resting {order.id}: BUY {quantity} {symbol} @ {order.limit_price}")
            return

        self._execute_market_order(order, ExitReason.SIGNAL)

    def _execute_sell(self, signal: Signal, symbol: str) -> None:
        position = self.portfolio.get_position(symbol)
        if signal.suggested_quantity is not None:
            quantity = signal.suggested_quantity
        elif position is not None:
            quantity = position.quantity
        else:
            logger.debug(f"No position in {symbol}, nothing to sell")
            return

        if signal.target_price is not None:
            order = self._new_order(symbol, OrderSide.SELL, OrderType.LIMIT, quantity, signal.target_price)
            self.pending_orders[order.id] = order
            logger.debug(f"Resting {order.id}: SELL {quantity} {symbol} @ {order.limit_price}")
            return

        order = self._new_order(symbol, OrderSide.SELL, OrderType.MARKET, quantity)
        self._execute_market_order(order, ExitReason.SIGNAL)

    def _position_limit_reached(self, symbol: str) -> bool:
        """True when a buy in `symbol` would open one position too many."""
        if self.portfolio.get_position(symbol) is not None:
            return False
        return self.portfolio.position_count() >= self.config.max_positions

    def _position_limit_message(self) -> str:
        return f"Max positions reached ({self.config.max_positions})"

    def _close_position(
        self, symbol: str, order_type: OrderType, reason: str, liquidation: bool = False
    ) -> None:
        position = self.portfolio.get_position(symbol)
        if position is None:
            return
        order = self._new_order(symbol, OrderSide.SELL, order_type, abs(position.quantity))
        self._execute_market_order(order, reason, liquidation)

    def _new_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: Decimal,
        limit_price: Optional[Decimal] = None,
    ) -> Order:
        self._order_seq += 1
        self.total_orders += 1
        order = Order(
            id=f"order-{self._order_seq:06d}",
            symbol=symbol,
            side=side,
            order_type=order_type,
            quantity=quantity,
            created_at=self.current_time,
            limit_price=limit_price,
        )
        order.submit()
        return order

    def _execute_market_order(
        self, order: Order, reason: str, liquidation: bool = False
    ) -> Optional[Fill]:
        price = self.current_prices.get(order.symbol)
        if price is None:
            self._reject(order, str(MissingPriceError(order.symbol)), self.current_time)
            return None
        return self._fill(
            order, price, order.remaining_quantity, self.current_time, reason, liquidation
        )

    @tracer.start_as_current_span("fill_order")
    def _fill(
        self,
        order: Order,
        price: Decimal,
        quantity: Decimal,
        timestamp: datetime,
        reason: str,
        liquidation: bool = False,
    ) -> Optional[Fill]:
        """
        Simulates one fill through the cost model and books it.

        Returns None (and rejects the order) if the portfolio refuses it.
        Liquidation fills are never refused for cash.
        """
        span = trace.get_current_span()
        span.set_attribute("order.id", order.id)
        span.set_attribute("order.symbol", order.symbol)

        _, commission, slippage_per_unit = self.config.cost_model.calculate_total_cost(
            order.order_type, order.side, price, quantity, self.avg_volume(order.symbol)
        )
        fill = Fill(
            order_id=order.id,
            symbol=order.symbol,
            side=order.side,
            price=price,
            quantity=quantity,
            timestamp=timestamp,
            commission=commission,
            slippage=slippage_per_unit * quantity,
        )

        try:
            realized = self.portfolio.apply_fill(order, fill, liquidation=liquidation)
        except ExecutionError as e:
            self._reject(order, str(e), timestamp)
            return None

        order.record_fill(quantity, price)
        self.total_fills += 1
        self.executions.append(ExecutionEvent.filled(order, fill))
        self._record_trade(order, fill, realized, reason)

        logger.debug(
            f"Order filled: {order.side.value} {quantity} {order.symbol} @ {price} "
            f"(exec {fill.execution_price}, comm: {commission}, slip: {fill.slippage})"
        )

        self._call_strategy("on_order_fill", order, fill)
        return fill

    def _record_trade(self, order: Order, fill: Fill, realized: Decimal, reason: str) -> None:
        symbol = order.symbol
        trade = self._open_trades.get(symbol)

        if order.side == OrderSide.BUY:
            if trade is None:
                self._trade_seq += 1
                trade = Trade.open(f"trade-{self._trade_seq:06d}", fill)
                self._open_trades[symbol] = trade
                self.trades.append(trade)
            else:
                trade.add_entry(fill)
            exits = self._order_exits.get(order.id)
            if exits is not None:
                self._protective_exits[symbol] = exits
            if not order.is_active:
                self._order_exits.pop(order.id, None)
            return

        trade.add_exit(fill, realized)
        if self.portfolio.get_position(symbol) is None:
            trade.close(fill.timestamp, reason)
            del self._open_trades[symbol]
            self._protective_exits.pop(symbol, None)

    def _reject(self, order: Order, reason: str, timestamp: datetime) -> None:
        order.reject(reason)
        self.pending_orders.pop(order.id, None)
        self._order_exits.pop(order.id, None)
        self.rejected_orders += 1
        self.executions.append(ExecutionEvent.rejected(order, reason, timestamp))
        logger.warning(f"⚠️  Order {order.id} rejected: {reason}")
        self._call_strategy("on_order_reject", order, reason)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _close_out(self, reason: str) -> None:
        """Cancels unfilled remainders, then flattens every position at its last price."""
        timestamp = self.current_time

        for order in list(self.pending_orders.values()):
            message = f"Backtest ended with {order.remaining_quantity} unfilled"
            order.cancel(message)
            self._order_exits.pop(order.id, None)
            self.cancelled_orders += 1
            self.executions.append(ExecutionEvent.cancelled(order, message, timestamp))
            self._call_strategy("on_order_reject", order, message)
        self.pending_orders.clear()

        for symbol in list(self.portfolio.positions):
            self._close_position(symbol, OrderType.MARKET, reason, liquidation=True)

        if self.portfolio.positions:
            raise RuntimeError(
                f"Close-out left positions open: {sorted(self.portfolio.positions)}"
            )

    def _strategy_config(self) -> StrategyConfig:
        cfg = self.config
        return StrategyConfig(
            strategy_id=f"{self.strategy.name}:{cfg.start_time.isoformat()}",
            name=cfg.strategy_name,
            symbols=list(cfg.symbols),
            interval=cfg.interval,
            parameters=dict(cfg.strategy_parameters),
            risk_limits=cfg.risk_limits,
        )

    def _call_strategy(self, callback: str, *args):
        try:
            return getattr(self.strategy, callback)(*args)
        except StrategyError:
            raise
        except Exception as e:
            raise StrategyError(callback, e) from e

    def _log_telemetry_summary(self, span):
        """Log comprehensive telemetry metrics."""
        span.set_attribute("backtest.total_market_events", self.total_market_events)
        span.set_attribute("backtest.total_signals", self.total_signals)
        span.set_attribute("backtest.total_orders", self.total_orders)
        span.set_attribute("backtest.total_fills", self.total_fills)
        span.set_attribute("backtest.rejected_orders", self.rejected_orders)
        span.set_attribute("backtest.cancelled_orders", self.cancelled_orders)

        logger.info("=" * 60)
        logger.info("📊 BACKTEST TELEMETRY SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Market Events:     {self.total_market_events}")
        logger.info(f"Signals Generated: {self.total_signals}")
        logger.info(f"Orders Created:    {self.total_orders}")
        logger.info(f"Fills Processed:   {self.total_fills}")
        logger.info(f"Orders Rejected:   {self.rejected_orders}")
        logger.info(f"Orders Cancelled:  {self.cancelled_orders}")
        logger.info("=" * 60)
