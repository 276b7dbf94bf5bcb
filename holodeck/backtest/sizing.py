"""Position sizing policies.

A policy turns (equity, price) into an order quantity for BUY signals that
do not carry their own suggested quantity:

- FixedSizing: spend a fixed cash amount
- PercentOfEquitySizing: spend a fraction of current equity
- KellySizing: Kelly fraction from win rate and win/loss ratio, capped at 25%
"""

from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from holodeck.core.constants import KELLY_CAP
from holodeck.core.money import ONE, ZERO


class FixedSizing(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["fixed"] = "fixed"
    amount: Decimal = Field(..., gt=0, description="Cash per trade")

    def size(self, equity: Decimal, price: Decimal) -> Decimal:
        return self.amount / price


class PercentOfEquitySizing(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["percent_of_equity"] = "percent_of_equity"
    fraction: Decimal = Field(..., gt=0, le=1, description="Fraction of equity per trade")

    def size(self, equity: Decimal, price: Decimal) -> Decimal:
        return (equity * self.fraction) / price


class KellySizing(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["kelly"] = "kelly"
    win_rate: Decimal = Field(..., ge=0, le=1)
    win_loss_ratio: Decimal = Field(..., gt=0)

    @property
    def raw_fraction(self) -> Decimal:
        return (self.win_rate * (self.win_loss_ratio + ONE) - ONE) / self.win_loss_ratio

    @property
    def kelly_fraction(self) -> Decimal:
        """Raw Kelly clamped to [0, KELLY_CAP]."""
        return min(max(self.raw_fraction, ZERO), KELLY_CAP)

    def size(self, equity: Decimal, price: Decimal) -> Decimal:
        return (equity * self.kelly_fraction) / price


PositionSizing = Annotated[
    Union[FixedSizing, PercentOfEquitySizing, KellySizing],
    Field(discriminator="kind"),
]
