"""
Backtest Cost Model: commission and slippage for simulated fills.

Features:
- Maker/taker commission with a per-fill minimum
- Fixed basis-point slippage plus linear volume impact
- Resting (limit/post-only) orders fill at their price: no slippage
- Named presets per venue / instrument class
- OpenTelemetry span per cost calculation
"""

import logging
from decimal import Decimal
from typing import Callable, Dict, Tuple

from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field

from holodeck.core.constants import BPS_DIVISOR
from holodeck.core.models import OrderSide, OrderType
from holodeck.core.money import ZERO


logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class CommissionModel(BaseModel):
    """
    Venue fee per fill.

    Parameters:
        maker_rate: Fee rate for resting orders (default: 0.1%)
        taker_rate: Fee rate for aggressive orders (default: 0.15%)
        min_commission: Floor per fill (default: 0)
    """

    model_config = ConfigDict(frozen=True)

    maker_rate: Decimal = Field(default=Decimal("0.001"), ge=0)
    taker_rate: Decimal = Field(default=Decimal("0.0015"), ge=0)
    min_commission: Decimal = Field(default=Decimal("0"), ge=0)

    @classmethod
    def spot(cls) -> "CommissionModel":
        return cls(maker_rate=Decimal("0.001"), taker_rate=Decimal("0.0015"))

    @classmethod
    def futures(cls) -> "CommissionModel":
        return cls(maker_rate=Decimal("0.0002"), taker_rate=Decimal("0.0005"))

    @classmethod
    def zero(cls) -> "CommissionModel":
        return cls(maker_rate=ZERO, taker_rate=ZERO, min_commission=ZERO)

    def calculate(self, order_type: OrderType, price: Decimal, quantity: Decimal) -> Decimal:
        notional = price * quantity
        rate = self.maker_rate if order_type.is_resting else self.taker_rate
        return max(notional * rate, self.min_commission)


class SlippageModel(BaseModel):
    """
    Unfavourable per-unit price adjustment for aggressive orders.

    Parameters:
        fixed_bps: Fixed component in basis points (default: 5bps)
        impact_coefficient: Linear impact per unit of quantity/avg_volume
        min_slippage: Floor on the per-unit slippage (default: 0)
    """

    model_config = ConfigDict(frozen=True)

    fixed_bps: Decimal = Field(default=Decimal("5"), ge=0)
    impact_coefficient: Decimal = Field(default=Decimal("0.0001"), ge=0)
    min_slippage: Decimal = Field(default=Decimal("0"), ge=0)

    @classmethod
    def conservative(cls) -> "SlippageModel":
        return cls(fixed_bps=Decimal("10"), impact_coefficient=Decimal("0.0002"))

    @classmethod
    def aggressive(cls) -> "SlippageModel":
        return cls(fixed_bps=Decimal("3"), impact_coefficient=Decimal("0.00005"))

    @classmethod
    def zero(cls) -> "SlippageModel":
        return cls(fixed_bps=ZERO, impact_coefficient=ZERO, min_slippage=ZERO)

    def calculate_market(
        self, side: OrderSide, price: Decimal, quantity: Decimal, avg_volume: Decimal
    ) -> Decimal:
        fixed = price * self.fixed_bps / BPS_DIVISOR

        # Impact scales with order size relative to typical volume
        volume_ratio = quantity / avg_volume if avg_volume > ZERO else ZERO
        impact = price * self.impact_coefficient * volume_ratio

        return max(fixed + impact, self.min_slippage)

    def calculate_limit(self, side: OrderSide, price: Decimal, quantity: Decimal) -> Decimal:
        # Filled limits execute at their price or better
        return ZERO

    def apply_slippage(self, side: OrderSide, price: Decimal, slippage: Decimal) -> Decimal:
        if side == OrderSide.BUY:
            return price + slippage
        return price - slippage


class CostModel(BaseModel):
    """Commission + slippage, applied together to every simulated fill."""

    model_config = ConfigDict(frozen=True)

    commission: CommissionModel = Field(default_factory=CommissionModel)
    slippage: SlippageModel = Field(default_factory=SlippageModel)

    @classmethod
    def spot_conservative(cls) -> "CostModel":
        return cls(commission=CommissionModel.spot(), slippage=SlippageModel.conservative())

    @classmethod
    def futures_aggressive(cls) -> "CostModel":
        return cls(commission=CommissionModel.futures(), slippage=SlippageModel.aggressive())

    @classmethod
    def zero_cost(cls) -> "CostModel":
        return cls(commission=CommissionModel.zero(), slippage=SlippageModel.zero())

    @classmethod
    def preset(cls, name: str) -> "CostModel":
        try:
            factory = COST_MODEL_PRESETS[name]
        except KeyError:
            raise ValueError(
                f"Unknown cost model preset {name!r}; choose from {sorted(COST_MODEL_PRESETS)}"
            ) from None
        return factory()

    @tracer.start_as_current_span("calculate_total_cost")
    def calculate_total_cost(
        self,
        order_type: OrderType,
        side: OrderSide,
        price: Decimal,
        quantity: Decimal,
        avg_volume: Decimal,
    ) -> Tuple[Decimal, Decimal, Decimal]:
        """
        Simulate the cost of filling `quantity` at `price`.

        Returns:
            (execution_price, commission, slippage): slippage is per unit and
            already applied to execution_price.
        """
        span = trace.get_current_span()
        span.set_attribute("order.type", order_type.value)
        span.set_attribute("order.side", side.value)

        commission = self.commission.calculate(order_type, price, quantity)

        if order_type.is_resting:
            slippage = self.slippage.calculate_limit(side, price, quantity)
        else:
            slippage = self.slippage.calculate_market(side, price, quantity, avg_volume)

        execution_price = self.slippage.apply_slippage(side, price, slippage)

        logger.debug(
            f"Cost: {side.value} {quantity} @ {price} ({order_type.value}) -> "
            f"exec {execution_price}, comm {commission}, slip {slippage}/unit"
        )

        return execution_price, commission, slippage


COST_MODEL_PRESETS: Dict[str, Callable[[], CostModel]] = {
    "default": CostModel,
    "spot_conservative": CostModel.spot_conservative,
    "futures_aggressive": CostModel.futures_aggressive,
    "zero": CostModel.zero_cost,
}
