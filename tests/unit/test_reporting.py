from datetime import timedelta
from decimal import Decimal

import numpy as np
import pytest

from holodeck.backtest.errors import ResultSerializationError
from holodeck.backtest.portfolio import Portfolio
from holodeck.backtest.records import Trade
from holodeck.backtest.reporting import BacktestResult, PerformanceReporter
from holodeck.core.constants import PROFIT_FACTOR_INFINITE
from holodeck.core.models import PositionSide


def _curve(t0, values):
    return [(t0 + timedelta(hours=i), Decimal(str(v))) for i, v in enumerate(values)]


def _trade(t0, n, pnl, hours=2):
    return Trade(
        id=f"trade-{n}",
        symbol="BTC-USDT",
        side=PositionSide.LONG,
        entry_time=t0,
        entry_price=Decimal("100"),
        quantity=Decimal("1"),
        exit_time=t0 + timedelta(hours=hours),
        exit_price=Decimal("100") + Decimal(str(pnl)),
        exit_quantity=Decimal("1"),
        pnl=Decimal(str(pnl)),
    )


def _result(t0, equity, trades=()):
    portfolio = Portfolio(Decimal(str(equity[0])))
    portfolio.cash = Decimal(str(equity[-1]))
    portfolio.equity_curve = _curve(t0, equity)
    return PerformanceReporter(
        portfolio, list(trades), start_time=t0, end_time=t0 + timedelta(days=2)
    ).build()


class TestDrawdown:
    def test_peak_to_trough(self, t0):
        max_dd, max_dd_pct, curve = PerformanceReporter.calculate_drawdown(
            _curve(t0, [100, 120, 90, 130])
        )
        assert max_dd == Decimal("30")
        assert max_dd_pct == Decimal("0.25")
        assert [v for _, v in curve] == [Decimal("0"), Decimal("0"), Decimal("0.25"), Decimal("0")]

    def test_monotonic_equity_has_no_drawdown(self, t0):
        max_dd, max_dd_pct, _ = PerformanceReporter.calculate_drawdown(_curve(t0, [100, 101, 102]))
        assert max_dd == Decimal("0")
        assert max_dd_pct == Decimal("0")

    def test_pct_is_taken_at_largest_absolute_drawdown(self, t0):
        # 10 -> 5 is 50% but only 5 absolute; 100 -> 80 is 20 absolute
        _, max_dd_pct, _ = PerformanceReporter.calculate_drawdown(_curve(t0, [10, 5, 100, 80]))
        assert max_dd_pct == Decimal("0.2")


class TestRatios:
    def test_returns_skip_non_positive_base(self, t0):
        returns = PerformanceReporter.calculate_returns(_curve(t0, [100, 110, 99]))
        assert returns == pytest.approx([0.1, -0.1])

    def test_sharpe_uses_sample_std_and_252_periods(self):
        returns = np.array([0.01, -0.005, 0.02, 0.0])
        expected = (returns.mean() * 252) / (returns.std(ddof=1) * np.sqrt(252))
        assert float(PerformanceReporter.sharpe_ratio(returns)) == pytest.approx(expected)

    def test_sharpe_flat_or_short_series_is_zero(self):
        assert PerformanceReporter.sharpe_ratio(np.array([0.01])) == Decimal("0")
        assert PerformanceReporter.sharpe_ratio(np.array([0.01, 0.01])) == Decimal("0")

    def test_sortino_uses_downside_deviation(self):
        returns = np.array([0.02, -0.01, 0.03, -0.02])
        downside = np.sqrt(np.mean(np.array([-0.01, -0.02]) ** 2))
        expected = (returns.mean() * 252) / (downside * np.sqrt(252))
        assert float(PerformanceReporter.sortino_ratio(returns)) == pytest.approx(expected)

    def test_sortino_without_downside(self):
        assert PerformanceReporter.sortino_ratio(np.array([0.01, 0.02])) == Decimal("Infinity")
        assert PerformanceReporter.sortino_ratio(np.array([0.0, 0.0])) == Decimal("0")

    def test_calmar(self):
        assert PerformanceReporter.calmar_ratio(Decimal("0.3"), Decimal("0.25")) == Decimal("1.2")
        assert PerformanceReporter.calmar_ratio(Decimal("0.3"), Decimal("0.00005")) == Decimal("0")


class TestTradeStatistics:
    def test_mixed_trades(self, t0):
        trades = [_trade(t0, 1, 30, hours=1), _trade(t0, 2, -10, hours=3), _trade(t0, 3, 20, hours=2)]
        result = _result(t0, [1000, 1030, 1020, 1040], trades)

        assert result.total_trades == 3
        assert result.winning_trades == 2
        assert result.losing_trades == 1
        assert result.win_rate == Decimal("2") / Decimal("3")
        assert result.gross_profit == Decimal("50")
        assert result.gross_loss == Decimal("10")
        assert result.profit_factor == Decimal("5")
        assert result.average_win == Decimal("25")
        assert result.average_loss == Decimal("10")
        assert result.largest_win == Decimal("30")
        assert result.largest_loss == Decimal("-10")
        assert result.avg_trade_duration_hours == Decimal("2")
        assert result.max_trade_duration_hours == Decimal("3")
        assert result.min_trade_duration_hours == Decimal("1")

    def test_profit_factor_without_losses_is_infinite(self, t0):
        result = _result(t0, [1000, 1010], [_trade(t0, 1, 10)])
        assert result.profit_factor == PROFIT_FACTOR_INFINITE
        assert result.profit_factor.is_infinite()

    def test_profit_factor_without_trades_is_zero(self, t0):
        result = _result(t0, [1000, 1000])
        assert result.profit_factor == Decimal("0")
        assert result.win_rate == Decimal("0")

    def test_open_trades_are_excluded(self, t0):
        open_trade = Trade(
            id="trade-9",
            symbol="BTC-USDT",
            side=PositionSide.LONG,
            entry_time=t0,
            entry_price=Decimal("100"),
            quantity=Decimal("1"),
        )
        result = _result(t0, [1000, 1000], [open_trade])
        assert result.total_trades == 0

    def test_capital_figures(self, t0):
        result = _result(t0, [1000, 900, 1100])
        assert result.final_equity == Decimal("1100")
        assert result.total_pnl == Decimal("100")
        assert result.total_return_pct == Decimal("0.1")
        assert result.max_drawdown == Decimal("100")
        assert result.max_drawdown_pct == Decimal("0.1")
        assert result.calmar_ratio == Decimal("1")


class TestBacktestResultSerialization:
    def test_json_round_trip_is_exact(self, t0):
        result = _result(t0, [100, 120, 90, 130], [_trade(t0, 1, 30)])
        restored = BacktestResult.from_json(result.to_json())
        assert restored == result
        assert restored.profit_factor.is_infinite()
        assert restored.equity_curve[2] == (t0 + timedelta(hours=2), Decimal("90"))

    def test_decimals_are_encoded_as_strings(self, t0):
        result = _result(t0, [100, 110])
        payload = result.to_json()
        assert b'"final_equity":"110"' in payload
        assert b'"start_time":"2024-01-01T00:00:00+00:00"' in payload

    def test_malformed_json(self):
        with pytest.raises(ResultSerializationError):
            BacktestResult.from_json(b"{not json")

    def test_missing_field(self, t0):
        data = _result(t0, [100, 110]).to_dict()
        del data["sharpe_ratio"]
        with pytest.raises(ResultSerializationError, match="sharpe_ratio"):
            BacktestResult.from_dict(data)

    def test_float_money_is_refused(self, t0):
        data = _result(t0, [100, 110]).to_dict()
        data["final_equity"] = 110.0
        with pytest.raises(ResultSerializationError):
            BacktestResult.from_dict(data)

    def test_result_is_immutable(self, t0):
        result = _result(t0, [100, 110])
        with pytest.raises(AttributeError):
            result.final_equity = Decimal("0")


class TestPresentation:
    def test_summary(self, t0):
        summary = _result(t0, [100, 120, 90, 130], [_trade(t0, 1, 30)]).summary()
        assert "=== Backtest Results ===" in summary
        assert "Max Drawdown: $30.00 (25.00%)" in summary
        assert "Profit Factor: Infinity" in summary

    def test_equity_frame(self, t0):
        frame = _result(t0, [100, 120, 90, 130]).equity_frame()
        assert list(frame.columns) == ["equity", "drawdown"]
        assert len(frame) == 4
        assert frame["drawdown"].max() == pytest.approx(0.25)
        assert frame.index.name == "timestamp"
