from datetime import timedelta
from decimal import Decimal

import pytest

from holodeck.backtest.errors import (
    InsufficientFundsError,
    InsufficientPositionError,
    InvalidFillError,
    NoPositionError,
)
from holodeck.backtest.events import Fill, Order
from holodeck.backtest.portfolio import Portfolio, Position
from holodeck.core.models import OrderSide, OrderType, PositionSide


def _order(side, qty, symbol="BTC-USDT", ts=None):
    return Order(
        id="order-1",
        symbol=symbol,
        side=side,
        order_type=OrderType.MARKET,
        quantity=Decimal(str(qty)),
        created_at=ts,
    )


def _fill(side, price, qty, ts, commission="0", slippage="0", symbol="BTC-USDT"):
    return Fill(
        order_id="order-1",
        symbol=symbol,
        side=side,
        price=Decimal(str(price)),
        quantity=Decimal(str(qty)),
        timestamp=ts,
        commission=Decimal(commission),
        slippage=Decimal(slippage),
    )


def _buy(portfolio, price, qty, ts, **costs):
    return portfolio.apply_fill(_order(OrderSide.BUY, qty, ts=ts), _fill(OrderSide.BUY, price, qty, ts, **costs))


def _sell(portfolio, price, qty, ts, **costs):
    return portfolio.apply_fill(_order(OrderSide.SELL, qty, ts=ts), _fill(OrderSide.SELL, price, qty, ts, **costs))


class TestPosition:
    def test_long_unrealized_pnl(self):
        pos = Position("BTC-USDT", PositionSide.LONG, Decimal("2"), Decimal("100"), Decimal("110"))
        assert pos.unrealized_pnl == Decimal("20")
        pos.update_price(Decimal("90"))
        assert pos.unrealized_pnl == Decimal("-20")

    def test_short_unrealized_pnl(self):
        pos = Position("BTC-USDT", PositionSide.SHORT, Decimal("-2"), Decimal("100"), Decimal("90"))
        assert pos.unrealized_pnl == Decimal("20")

    def test_sign_must_match_side(self):
        with pytest.raises(ValueError):
            Position("BTC-USDT", PositionSide.LONG, Decimal("-1"), Decimal("100"), Decimal("100"))
        with pytest.raises(ValueError):
            Position("BTC-USDT", PositionSide.SHORT, Decimal("1"), Decimal("100"), Decimal("100"))


class TestPortfolioBuys:
    def test_buy_debits_notional_and_costs(self, t0):
        portfolio = Portfolio(Decimal("10000"))
        _buy(portfolio, 100, 10, t0, commission="1.5", slippage="0.5")

        assert portfolio.cash == Decimal("10000") - (Decimal("1000") + Decimal("1.5") + Decimal("0.5"))
        assert portfolio.total_commission == Decimal("1.5")
        assert portfolio.total_slippage == Decimal("0.5")
        position = portfolio.get_position("BTC-USDT")
        assert position.quantity == Decimal("10")
        assert position.avg_entry_price == Decimal("100")

    def test_scaling_in_keeps_vwap_entry(self, t0):
        portfolio = Portfolio(Decimal("10000"))
        _buy(portfolio, 100, 1, t0)
        _buy(portfolio, 130, 2, t0 + timedelta(hours=1))

        position = portfolio.get_position("BTC-USDT")
        assert position.quantity == Decimal("3")
        assert position.avg_entry_price == Decimal("120")

    def test_insufficient_funds_leaves_state_unchanged(self, t0):
        portfolio = Portfolio(Decimal("1000"))
        portfolio.mark_to_market(t0)
        with pytest.raises(InsufficientFundsError):
            _buy(portfolio, 100, 11, t0)

        assert portfolio.cash == Decimal("1000")
        assert portfolio.positions == {}
        assert portfolio.total_commission == Decimal("0")
        assert len(portfolio.equity_curve) == 1

    def test_costs_count_towards_affordability(self, t0):
        portfolio = Portfolio(Decimal("1000"))
        with pytest.raises(InsufficientFundsError):
            _buy(portfolio, 100, 10, t0, commission="0.01")

    def test_every_fill_appends_equity_point(self, t0):
        portfolio = Portfolio(Decimal("10000"))
        _buy(portfolio, 100, 1, t0)
        _sell(portfolio, 100, 1, t0 + timedelta(hours=1))
        assert [ts for ts, _ in portfolio.equity_curve] == [t0, t0 + timedelta(hours=1)]


class TestPortfolioSells:
    def test_round_trip_realizes_net_pnl(self, t0):
        portfolio = Portfolio(Decimal("10000"))
        _buy(portfolio, 100, 2, t0, commission="1")
        realized = _sell(portfolio, 110, 2, t0 + timedelta(hours=1), commission="1", slippage="0.5")

        # proceeds 220 - entry 200 - exit costs 1.5
        assert realized == Decimal("18.5")
        assert portfolio.realized_pnl == Decimal("18.5")
        assert portfolio.cash == Decimal("10000") - Decimal("201") + Decimal("220") - Decimal("1.5")
        assert portfolio.get_position("BTC-USDT") is None

    def test_partial_sell_shrinks_position(self, t0):
        portfolio = Portfolio(Decimal("10000"))
        _buy(portfolio, 100, 4, t0)
        _sell(portfolio, 105, 1, t0)
        position = portfolio.get_position("BTC-USDT")
        assert position.quantity == Decimal("3")
        assert position.avg_entry_price == Decimal("100")
        assert portfolio.realized_pnl == Decimal("5")

    def test_sell_without_position(self, t0):
        portfolio = Portfolio(Decimal("10000"))
        with pytest.raises(NoPositionError):
            _sell(portfolio, 100, 1, t0)

    def test_costs_above_proceeds_refuse_the_sell(self, t0):
        portfolio = Portfolio(Decimal("100"))
        _buy(portfolio, 100, 1, t0)
        with pytest.raises(InsufficientFundsError) as exc:
            _sell(portfolio, 1, 1, t0, commission="50")

        assert "for buy" not in str(exc.value)
        assert exc.value.required == Decimal("49")
        assert portfolio.get_position("BTC-USDT").quantity == Decimal("1")
        assert portfolio.cash == Decimal("0")

    def test_liquidation_books_costs_above_proceeds(self, t0):
        portfolio = Portfolio(Decimal("100"))
        _buy(portfolio, 100, 1, t0)
        realized = portfolio.apply_fill(
            _order(OrderSide.SELL, 1, ts=t0),
            _fill(OrderSide.SELL, 1, 1, t0, commission="50"),
            liquidation=True,
        )

        assert realized == Decimal("-149")
        assert portfolio.cash == Decimal("-49")
        assert portfolio.positions == {}

    def test_sell_more_than_held(self, t0):
        portfolio = Portfolio(Decimal("10000"))
        _buy(portfolio, 100, 1, t0)
        with pytest.raises(InsufficientPositionError):
            _sell(portfolio, 100, 2, t0)
        assert portfolio.get_position("BTC-USDT").quantity == Decimal("1")


class TestPortfolioValidation:
    def test_fill_before_last_equity_point_is_refused(self, t0):
        portfolio = Portfolio(Decimal("10000"))
        portfolio.mark_to_market(t0)
        with pytest.raises(InvalidFillError):
            _buy(portfolio, 100, 1, t0 - timedelta(seconds=1))
        assert portfolio.cash == Decimal("10000")

    def test_fill_must_match_order(self, t0):
        portfolio = Portfolio(Decimal("10000"))
        order = _order(OrderSide.BUY, 1, symbol="ETH-USDT")
        with pytest.raises(InvalidFillError):
            portfolio.apply_fill(order, _fill(OrderSide.BUY, 100, 1, t0))

    def test_equity_timestamps_non_decreasing(self, t0):
        portfolio = Portfolio(Decimal("10000"))
        portfolio.mark_to_market(t0 + timedelta(hours=1))
        with pytest.raises(ValueError):
            portfolio.mark_to_market(t0)

    def test_non_positive_capital(self):
        with pytest.raises(ValueError):
            Portfolio(Decimal("0"))


class TestPortfolioValuation:
    def test_mark_to_market_and_totals(self, t0):
        portfolio = Portfolio(Decimal("10000"))
        _buy(portfolio, 100, 10, t0)
        portfolio.update_prices({"BTC-USDT": Decimal("120")})

        assert portfolio.unrealized_pnl() == Decimal("200")
        assert portfolio.total_equity() == Decimal("10200")
        assert portfolio.total_pnl() == Decimal("200")
        assert portfolio.return_pct() == Decimal("0.02")
        assert portfolio.position_count() == 1

    def test_new_position_uses_latest_market_price(self, t0):
        portfolio = Portfolio(Decimal("10000"))
        portfolio.update_prices({"BTC-USDT": Decimal("101")})
        _buy(portfolio, 100, 1, t0)
        assert portfolio.get_position("BTC-USDT").current_price == Decimal("101")
