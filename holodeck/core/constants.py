"""Simulation-wide constants for costs, sizing and performance statistics.

Defines the fixed numbers the backtester relies on:
- **Time Constants**: TRADING_DAYS (252 periods per year for annualization)
- **Sizing**: KELLY_CAP (25% of equity)
- **Costs**: BPS_DIVISOR (basis points -> fraction)
- **Reporting Sentinels**: PROFIT_FACTOR_INFINITE, CALMAR_MIN_DRAWDOWN

Defaults that operators may want to tune live in `holodeck.core.config`.
"""

from decimal import Decimal

# ============================================================================
# TIME CONSTANTS
# ============================================================================

TRADING_DAYS = 252
SQRT_TRADING_DAYS = TRADING_DAYS**0.5
SECONDS_PER_HOUR = Decimal("3600")

# ============================================================================
# POSITION SIZING
# ============================================================================

KELLY_CAP = Decimal("0.25")  # Never stake more than a quarter of equity

# ============================================================================
# EXECUTION COSTS
# ============================================================================

BPS_DIVISOR = Decimal("10000")

# ============================================================================
# REPORTING
# ============================================================================

# Profit factor when there are winners but no losers.
PROFIT_FACTOR_INFINITE = Decimal("Infinity")

# Sortino when the equity path never had a losing step.
SORTINO_NO_DOWNSIDE = Decimal("Infinity")

# Calmar is reported as 0 below this drawdown (fraction of peak).
CALMAR_MIN_DRAWDOWN = Decimal("0.0001")

# Default rolling window (in candles) for the average volume used by slippage.
DEFAULT_VOLUME_WINDOW = 20
