"""
Tests for impermanent loss, fee and PnL metrics
"""

from decimal import Decimal

import pytest

from clmm_lp.errors import InvalidRange, ValidationError
from clmm_lp.strategy import metrics


@pytest.fixture
def position_bounds():
    """Range of roughly +/-10% around a price of 100."""
    return Decimal(90), Decimal(110)


def test_il_is_zero_at_entry_price(position_bounds):
    lower, upper = position_bounds
    assert metrics.impermanent_loss(100, 100, lower, upper, 1000) == 0
    assert metrics.impermanent_loss_pct(100, 100, lower, upper) == 0
    # Out of range at entry: nothing moves either
    assert metrics.impermanent_loss(80, 70, lower, upper, 1000) == 0


def test_il_is_never_positive(position_bounds):
    lower, upper = position_bounds
    for price in ('50', '89', '90', '95', '99.9', '100.1', '105', '110', '130'):
        assert metrics.impermanent_loss(100, Decimal(price), lower, upper, 1000) <= 0


def test_il_freezes_out_of_range(position_bounds):
    lower, upper = position_bounds
    at_upper = metrics.impermanent_loss(100, 110, lower, upper, 1000)
    assert at_upper < 0
    assert metrics.impermanent_loss(100, 150, lower, upper, 1000) == at_upper
    assert metrics.impermanent_loss(100, 400, lower, upper, 1000) == at_upper

    at_lower = metrics.impermanent_loss(100, 90, lower, upper, 1000)
    assert metrics.impermanent_loss(100, 20, lower, upper, 1000) == at_lower


def test_concentration_amplifies_il():
    narrow = metrics.impermanent_loss_pct(100, 104, 95, 105)
    wide = metrics.impermanent_loss_pct(100, 104, 50, 200)
    assert narrow < wide < 0


def test_wide_range_matches_full_range_formula():
    """A very wide range behaves like a constant-product position."""
    il_pct = metrics.impermanent_loss_pct(100, 200, Decimal('1e-8'), Decimal('1e12'))
    k = Decimal(2)
    expected = (2 * k.sqrt() / (1 + k) - 1) * 100
    assert abs(il_pct - expected) < Decimal('0.05')


def test_il_scales_with_capital(position_bounds):
    lower, upper = position_bounds
    small = metrics.impermanent_loss(100, 105, lower, upper, 1000)
    large = metrics.impermanent_loss(100, 105, lower, upper, 2000)
    assert abs(large - 2 * small) < Decimal('1e-20')
    with pytest.raises(ValidationError):
        metrics.impermanent_loss(100, 105, lower, upper, -1)


def test_il_with_entry_below_range():
    """Capital deposited below the range is held entirely as token A bought at the entry price."""
    il = metrics.impermanent_loss(90, 100, 95, 105, 1000)
    assert abs(il - Decimal('-14.5946')) < Decimal('0.01')
    # Both prices below the range: the position and the holding are the same tokens
    assert metrics.impermanent_loss(90, 80, 95, 105, 1000) == 0


def test_il_invalid_bounds():
    with pytest.raises(InvalidRange):
        metrics.impermanent_loss(100, 100, 110, 110, 1000)
    with pytest.raises(InvalidRange):
        metrics.impermanent_loss(100, 100, 0, 110, 1000)
    with pytest.raises(ValidationError):
        metrics.impermanent_loss(100, -1, 90, 110, 1000)


def test_amounts_per_liquidity_single_sided(position_bounds):
    lower, upper = position_bounds
    amount_a, amount_b = metrics.amounts_per_liquidity(Decimal(80), lower, upper)
    assert amount_a > 0 and amount_b == 0
    amount_a, amount_b = metrics.amounts_per_liquidity(Decimal(120), lower, upper)
    assert amount_a == 0 and amount_b > 0


def test_fee_value():
    assert metrics.fee_value(1, 1000, 3000) == 3
    assert metrics.fee_value(Decimal('0.5'), 1000, 500) == Decimal('0.25')
    assert metrics.fee_value(0, 1000, 3000) == 0
    with pytest.raises(ValidationError):
        metrics.fee_value(2, 1000, 3000)
    with pytest.raises(ValidationError):
        metrics.fee_value(1, -1, 3000)


def test_liquidity_share():
    assert metrics.liquidity_share(50, 100) == Decimal('0.5')
    assert metrics.liquidity_share(200, 100) == 1
    assert metrics.liquidity_share(5, None) == 1
    assert metrics.liquidity_share(0, None) == 0
    assert metrics.liquidity_share(5, 0) == 0


def test_net_pnl():
    assert metrics.net_pnl(10, -3, 2) == 5
    assert metrics.net_pnl(Decimal('1.5'), Decimal('0.5'), 0) == 2


def test_drawdown_and_returns():
    equity = [Decimal(100), Decimal(120), Decimal(90), Decimal(130)]
    assert metrics.max_drawdown(equity) == Decimal('0.25')
    assert metrics.max_drawdown([Decimal(1), Decimal(2)]) == 0
    assert metrics.step_returns([Decimal(100), Decimal(110), Decimal(99)]) == [
        Decimal('0.1'), Decimal('-0.1')
    ]


def test_annualized_return():
    assert metrics.annualized_return(10, 1000, 365) == Decimal('0.01')
    with pytest.raises(ValidationError):
        metrics.annualized_return(10, 1000, 0)
    with pytest.raises(ValidationError):
        metrics.annualized_return(10, 0, 30)
