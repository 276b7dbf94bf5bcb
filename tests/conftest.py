from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from holodeck.backtest.cost_model import CostModel
from holodeck.backtest.engine import BacktestConfig
from holodeck.backtest.events import Candle
from holodeck.backtest.feed import InMemoryDataSource
from holodeck.backtest.strategy import Strategy

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class ScriptedStrategy(Strategy):
    """
    Emits pre-baked signals keyed by the index of the event just seen and
    records every callback the engine makes.
    """

    def __init__(self, script=None, fail_in=None):
        self.script = dict(script or {})
        self.fail_in = fail_in
        self.events = []
        self.fills = []
        self.rejects = []
        self.initialized_with = None
        self.shut_down = False
        super().__init__()

    @property
    def name(self) -> str:
        return "scripted"

    def initialize(self, config):
        super().initialize(config)
        self.initialized_with = config

    def on_market_data(self, event):
        if self.fail_in == "on_market_data":
            raise RuntimeError("boom")
        self.events.append(event)

    def generate_signal(self):
        return self.script.get(len(self.events) - 1)

    def on_order_fill(self, order, fill):
        super().on_order_fill(order, fill)
        self.fills.append((order, fill))

    def on_order_reject(self, order, reason):
        super().on_order_reject(order, reason)
        self.rejects.append((order, reason))

    def shutdown(self):
        self.shut_down = True


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def at():
    """Hour offset -> UTC timestamp."""

    def _at(hours) -> datetime:
        return T0 + timedelta(hours=hours)

    return _at


@pytest.fixture
def make_candle():
    def _make(symbol, hour, close, volume=1000, high=None, low=None, open_=None):
        close = Decimal(str(close))
        return Candle(
            symbol=symbol,
            timestamp=T0 + timedelta(hours=hour),
            open=Decimal(str(open_)) if open_ is not None else close,
            high=Decimal(str(high)) if high is not None else close,
            low=Decimal(str(low)) if low is not None else close,
            close=close,
            volume=Decimal(str(volume)),
            interval="1H",
        )

    return _make


@pytest.fixture
def make_source(make_candle):
    """{symbol: [close, ...]} -> InMemoryDataSource of hourly candles."""

    def _make(closes_by_symbol, volume=1000):
        source = InMemoryDataSource()
        for symbol, closes in closes_by_symbol.items():
            source.add_candles(
                make_candle(symbol, i, close, volume=volume) for i, close in enumerate(closes)
            )
        return source

    return _make


@pytest.fixture
def make_config():
    def _make(symbols=("BTC-USDT",), **overrides):
        params = dict(
            initial_capital=Decimal("100000"),
            start_time=T0 - timedelta(hours=1),
            end_time=T0 + timedelta(days=30),
            symbols=list(symbols),
            cost_model=CostModel.zero_cost(),
            load_workers=2,
        )
        params.update(overrides)
        return BacktestConfig(**params)

    return _make


@pytest.fixture
def scripted():
    return ScriptedStrategy
