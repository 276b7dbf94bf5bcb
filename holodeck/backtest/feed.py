from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence
import logging

import pandas as pd

from holodeck.backtest.errors import EmptyDatasetError, InvalidDatasetError
from holodeck.backtest.events import Candle, MarketEvent, ensure_market_event
from holodeck.core.money import ZERO, to_decimal

logger = logging.getLogger(__name__)


class HistoricalDataSource(ABC):
    """
    Abstract Base Class for historical candle storage.

    Implementations must be safe to query from several threads at once:
    the loader fetches every symbol in parallel.
    """

    @abstractmethod
    def query_candles(
        self, symbol: str, interval: str, start: datetime, end: datetime
    ) -> List[Candle]:
        """Candles for `symbol` with start <= timestamp <= end."""
        pass

    @abstractmethod
    def get_latest_candle(self, symbol: str, interval: str) -> Optional[Candle]:
        pass


class InMemoryDataSource(HistoricalDataSource):
    """
    Holds candles in plain lists. Used by tests and small scripted runs.
    """

    def __init__(self, candles: Iterable[Candle] = ()):
        self._candles: Dict[str, List[Candle]] = {}
        self.add_candles(candles)

    def add_candles(self, candles: Iterable[Candle]) -> None:
        for candle in candles:
            self._candles.setdefault(candle.symbol, []).append(candle)
        for series in self._candles.values():
            series.sort(key=lambda c: c.timestamp)

    def _matches(self, candle: Candle, interval: str) -> bool:
        return not candle.interval or not interval or candle.interval == interval

    def query_candles(
        self, symbol: str, interval: str, start: datetime, end: datetime
    ) -> List[Candle]:
        return [
            c
            for c in self._candles.get(symbol, [])
            if start <= c.timestamp <= end and self._matches(c, interval)
        ]

    def get_latest_candle(self, symbol: str, interval: str) -> Optional[Candle]:
        series = [c for c in self._candles.get(symbol, []) if self._matches(c, interval)]
        return series[-1] if series else None


class DataFrameDataSource(HistoricalDataSource):
    """
    Serves candles out of pandas DataFrames.

    frames: { 'BTC-USDT': pd.DataFrame(index=DatetimeIndex, columns=['open','high','low','close','volume']) }
    """

    REQUIRED_COLUMNS = ("open", "high", "low", "close")

    def __init__(self, frames: Dict[str, pd.DataFrame], interval: str = ""):
        for symbol, df in frames.items():
            missing = [c for c in self.REQUIRED_COLUMNS if c not in df.columns]
            if missing:
                raise ValueError(f"DataFrame for {symbol} is missing columns {missing}")
            if not isinstance(df.index, pd.DatetimeIndex):
                raise ValueError(f"DataFrame for {symbol} must have a DatetimeIndex")
        self.frames = {symbol: df.sort_index(kind="stable") for symbol, df in frames.items()}
        self.interval = interval

    def _to_candles(self, symbol: str, df: pd.DataFrame) -> List[Candle]:
        has_volume = "volume" in df.columns
        candles = []
        for index, row in df.iterrows():
            candles.append(
                Candle(
                    symbol=symbol,
                    timestamp=index.to_pydatetime(),
                    open=to_decimal(row["open"]),
                    high=to_decimal(row["high"]),
                    low=to_decimal(row["low"]),
                    close=to_decimal(row["close"]),
                    volume=to_decimal(row["volume"]) if has_volume else ZERO,
                    interval=self.interval,
                )
            )
        return candles

    def _window(self, df: pd.DataFrame, start: datetime, end: datetime) -> pd.DataFrame:
        index = df.index
        # Naive frames are read as UTC when queried with aware bounds
        if index.tz is None and start.tzinfo is not None:
            index = index.tz_localize("UTC")
            df = df.set_axis(index)
        mask = (index >= pd.Timestamp(start)) & (index <= pd.Timestamp(end))
        return df.loc[mask]

    def query_candles(
        self, symbol: str, interval: str, start: datetime, end: datetime
    ) -> List[Candle]:
        if self.interval and interval and interval != self.interval:
            return []
        df = self.frames.get(symbol)
        if df is None:
            return []
        return self._to_candles(symbol, self._window(df, start, end))

    def get_latest_candle(self, symbol: str, interval: str) -> Optional[Candle]:
        df = self.frames.get(symbol)
        if df is None or df.empty:
            return None
        return self._to_candles(symbol, df.iloc[-1:])[0]


def validate_candles(
    symbol: str, candles: Sequence[Candle], start: datetime, end: datetime
) -> None:
    """Raises a PreconditionError if the batch cannot drive a backtest."""
    if not candles:
        raise EmptyDatasetError(symbol)

    for candle in candles:
        if not isinstance(candle, Candle):
            raise InvalidDatasetError(symbol, f"expected Candle, got {type(candle).__name__}")
        if candle.symbol != symbol:
            raise InvalidDatasetError(symbol, f"candle for {candle.symbol} in {symbol} batch")
        if not start <= candle.timestamp <= end:
            raise InvalidDatasetError(
                symbol, f"candle at {candle.timestamp} outside [{start}, {end}]"
            )
        if min(candle.open, candle.high, candle.low, candle.close) <= ZERO:
            raise InvalidDatasetError(symbol, f"non-positive price at {candle.timestamp}")
        if candle.volume < ZERO:
            raise InvalidDatasetError(symbol, f"negative volume at {candle.timestamp}")
        if candle.low > candle.high:
            raise InvalidDatasetError(symbol, f"low above high at {candle.timestamp}")


def validate_supplementary_event(
    event: MarketEvent, symbols: Sequence[str], start: datetime, end: datetime
) -> None:
    """Trade prints and book snapshots obey the same symbol and window rules as candles."""
    if event.symbol not in symbols:
        raise InvalidDatasetError(
            event.symbol, f"{event.type} event for a symbol outside the backtest"
        )
    if not start <= event.timestamp <= end:
        raise InvalidDatasetError(
            event.symbol, f"{event.type} event at {event.timestamp} outside [{start}, {end}]"
        )


def load_event_stream(
    source: HistoricalDataSource,
    symbols: Sequence[str],
    interval: str,
    start: datetime,
    end: datetime,
    max_workers: int = 4,
    extra_events: Iterable[MarketEvent] = (),
) -> List[MarketEvent]:
    """
    Fetches every symbol in parallel and merges the result into one
    chronologically ordered stream.

    The merge is a stable sort on timestamp over the batches in `symbols`
    order followed by `extra_events`, so ties keep a reproducible order.
    """

    def fetch(symbol: str) -> List[Candle]:
        return source.query_candles(symbol, interval, start, end)

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(symbols)))) as pool:
        batches = list(pool.map(fetch, symbols))

    events: List[MarketEvent] = []
    for symbol, candles in zip(symbols, batches):
        validate_candles(symbol, candles, start, end)
        logger.info(f"Loaded {len(candles)} candles for {symbol}")
        events.extend(candles)

    for event in extra_events:
        validate_supplementary_event(ensure_market_event(event), symbols, start, end)
        events.append(event)

    events.sort(key=lambda e: e.timestamp)
    return events
