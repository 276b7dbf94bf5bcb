from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    POST_ONLY = "POST_ONLY"
    IOC = "IOC"  # Immediate or Cancel
    FOK = "FOK"  # Fill or Kill
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    TRAILING_STOP = "TRAILING_STOP"
    ICEBERG = "ICEBERG"

    @property
    def is_resting(self) -> bool:
        """Resting orders add liquidity: maker fee, no slippage."""
        return self in (OrderType.LIMIT, OrderType.POST_ONLY)


class OrderStatus(str, Enum):
    CREATED = "CREATED"
    SUBMITTED = "SUBMITTED"
    PARTIAL = "PARTIAL"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class SignalType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"
    CLOSE_LONG = "CLOSE_LONG"
    CLOSE_SHORT = "CLOSE_SHORT"


class Signal(BaseModel):
    """
    Strategy Output.

    Consumed by the engine once per market event. Prices and quantities are
    Decimals so they flow into the ledger without float conversion.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    signal_type: SignalType = Field(..., description="BUY, SELL, HOLD, CLOSE_LONG, CLOSE_SHORT")
    confidence: float = Field(
        default=1.0, ge=0.0, le=1.0, description="Conviction (0.0 - 1.0)"
    )
    symbol: Optional[str] = Field(
        default=None, description="Target symbol (defaults to the triggering event's)"
    )
    target_price: Optional[Decimal] = Field(
        default=None, gt=0, description="Limit price; makes BUY/SELL a resting order"
    )
    stop_loss: Optional[Decimal] = Field(default=None, gt=0, description="Protective stop")
    take_profit: Optional[Decimal] = Field(default=None, gt=0, description="Profit target")
    suggested_quantity: Optional[Decimal] = Field(
        default=None, gt=0, description="Overrides the configured sizing policy"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Reasoning Logs")

    @classmethod
    def buy(cls, confidence: float = 1.0, **kwargs) -> "Signal":
        return cls(signal_type=SignalType.BUY, confidence=confidence, **kwargs)

    @classmethod
    def sell(cls, confidence: float = 1.0, **kwargs) -> "Signal":
        return cls(signal_type=SignalType.SELL, confidence=confidence, **kwargs)

    @classmethod
    def hold(cls) -> "Signal":
        return cls(signal_type=SignalType.HOLD)

    @classmethod
    def close_long(cls, **kwargs) -> "Signal":
        return cls(signal_type=SignalType.CLOSE_LONG, **kwargs)


class RiskLimits(BaseModel):
    """Limits a strategy applies to its own signals; the engine only passes them on."""

    model_config = ConfigDict(frozen=True)

    max_position_size: Decimal = Field(default=Decimal("10000"), gt=0)
    max_leverage: Decimal = Field(default=Decimal("3"), gt=0)
    stop_loss_pct: Decimal = Field(default=Decimal("0.02"), ge=0)
    take_profit_pct: Optional[Decimal] = Field(default=Decimal("0.05"), ge=0)


class StrategyConfig(BaseModel):
    """
    Handed to `Strategy.initialize` once, before the first event.
    """

    model_config = ConfigDict(frozen=True)

    strategy_id: str = Field(..., description="Stable identifier for this run's strategy")
    name: str
    version: str = "1.0.0"
    symbols: List[str]
    interval: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    risk_limits: RiskLimits = Field(default_factory=RiskLimits)
