"""
Impermanent loss, fee and PnL metrics for concentrated-liquidity positions
"""

import logging
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from ..errors import InvalidRange, ValidationError
from .tick_math import Number, decimal_precision, to_decimal

logger = logging.getLogger(__name__)

ZERO = Decimal(0)
ONE = Decimal(1)
HUNDRED = Decimal(100)
FEE_TIER_DENOMINATOR = Decimal(1_000_000)


def _clamp(price: Decimal, lower: Decimal, upper: Decimal) -> Decimal:
    return max(lower, min(price, upper))


def _check_bounds(lower_price: Decimal, upper_price: Decimal) -> None:
    if lower_price <= 0:
        raise InvalidRange(f"Lower price must be positive, got {lower_price}")
    if lower_price >= upper_price:
        raise InvalidRange(
            f"Lower price {lower_price} must be below upper price {upper_price}"
        )


def amounts_per_liquidity(price: Decimal, lower_price: Decimal,
                          upper_price: Decimal) -> Tuple[Decimal, Decimal]:
    """Token amounts (A, B) held by one unit of liquidity at ``price``.

    Continuous counterpart of ``tick_math.amounts_from_liquidity`` working on
    human prices.
    """
    sqrt_lower = lower_price.sqrt()
    sqrt_upper = upper_price.sqrt()
    if price <= lower_price:
        return ONE / sqrt_lower - ONE / sqrt_upper, ZERO
    if price >= upper_price:
        return ZERO, sqrt_upper - sqrt_lower
    sqrt_price = price.sqrt()
    return ONE / sqrt_price - ONE / sqrt_upper, sqrt_price - sqrt_lower


def value_per_liquidity(price: Decimal, lower_price: Decimal, upper_price: Decimal) -> Decimal:
    """Value in token B of one unit of liquidity at ``price``."""
    amount_a, amount_b = amounts_per_liquidity(price, lower_price, upper_price)
    return amount_a * price + amount_b


@decimal_precision
def position_value(amount_a: Number, amount_b: Number, price: Number) -> Decimal:
    """Value of a token pair in units of token B."""
    return to_decimal(amount_a) * to_decimal(price) + to_decimal(amount_b)


def _il_values(entry_price: Decimal, current_price: Decimal, lower_price: Decimal,
               upper_price: Decimal) -> Tuple[Decimal, Decimal]:
    """(lp_value, hold_value) per unit of capital deposited at ``entry_price``.

    The deposit holds the amounts the range requires at the clamped entry
    price, valued at the actual entry price.
    """
    _check_bounds(lower_price, upper_price)
    if entry_price <= 0 or current_price <= 0:
        raise ValidationError("Prices must be positive")

    entry = _clamp(entry_price, lower_price, upper_price)
    current = _clamp(current_price, lower_price, upper_price)
    held_a, held_b = amounts_per_liquidity(entry, lower_price, upper_price)
    liquidity = ONE / (held_a * entry_price + held_b)
    hold_value = liquidity * (held_a * current + held_b)
    if entry == current:
        return hold_value, hold_value
    lp_value = liquidity * value_per_liquidity(current, lower_price, upper_price)
    return lp_value, hold_value


@decimal_precision
def impermanent_loss(
    entry_price: Number,
    current_price: Number,
    lower_price: Number,
    upper_price: Number,
    capital: Number
) -> Decimal:
    """Compute the impermanent loss of a concentrated position.

    IL is the value of the liquidity position minus the value of simply holding
    the tokens deposited at ``entry_price``. It is never positive. Prices are
    clamped into ``[lower_price, upper_price]``, so once the position is fully
    out of range the loss stays frozen at its boundary value.

    Args:
        entry_price: Price when the position was opened
        current_price: Price to evaluate at
        lower_price: Lower bound of the range
        upper_price: Upper bound of the range
        capital: Value of the position at entry, in token B

    Returns:
        Decimal: Impermanent loss in token B (zero or negative)
    """
    capital = to_decimal(capital)
    if capital < 0:
        raise ValidationError(f"Capital must be non-negative, got {capital}")
    lp_value, hold_value = _il_values(
        to_decimal(entry_price), to_decimal(current_price),
        to_decimal(lower_price), to_decimal(upper_price)
    )
    return min(lp_value - hold_value, ZERO) * capital


@decimal_precision
def impermanent_loss_pct(
    entry_price: Number,
    current_price: Number,
    lower_price: Number,
    upper_price: Number
) -> Decimal:
    """Impermanent loss as a percentage of the holding value (zero or negative)."""
    lp_value, hold_value = _il_values(
        to_decimal(entry_price), to_decimal(current_price),
        to_decimal(lower_price), to_decimal(upper_price)
    )
    return min(lp_value - hold_value, ZERO) / hold_value * HUNDRED


def fee_rate(fee_tier: int) -> Decimal:
    """Convert a fee tier in hundredths of a bip (3000 = 0.30%) to a fraction."""
    if fee_tier < 0:
        raise ValidationError(f"Fee tier must be non-negative, got {fee_tier}")
    return Decimal(fee_tier) / FEE_TIER_DENOMINATOR


@decimal_precision
def fee_value(liquidity_share: Number, volume: Number, fee_tier: int) -> Decimal:
    """Fees earned by a liquidity share on one step of pool volume.

    Args:
        liquidity_share: Fraction of the active pool liquidity owned (0..1)
        volume: Pool volume for the step, in token B
        fee_tier: Pool fee tier in hundredths of a bip

    Returns:
        Decimal: Fee earnings in token B
    """
    share = to_decimal(liquidity_share)
    volume = to_decimal(volume)
    if share < 0 or share > 1:
        raise ValidationError(f"Liquidity share must be within [0, 1], got {share}")
    if volume < 0:
        raise ValidationError(f"Volume must be non-negative, got {volume}")
    return volume * fee_rate(fee_tier) * share


@decimal_precision
def liquidity_share(position_liquidity: int, pool_liquidity: Optional[int]) -> Decimal:
    """Share of the active pool liquidity owned by a position, capped at 1.

    ``pool_liquidity=None`` means the position is the only liquidity in range.
    """
    if position_liquidity < 0:
        raise ValidationError("Position liquidity must be non-negative")
    if pool_liquidity is None:
        return ONE if position_liquidity > 0 else ZERO
    if pool_liquidity <= 0:
        return ZERO
    return min(Decimal(position_liquidity) / Decimal(pool_liquidity), ONE)


def net_pnl(fees_earned: Number, value_change: Number, cost_of_rebalances: Number) -> Decimal:
    """net_pnl = fees_earned + value_change - cost_of_rebalances"""
    return to_decimal(fees_earned) + to_decimal(value_change) - to_decimal(cost_of_rebalances)


@decimal_precision
def step_returns(equity: Sequence[Decimal]) -> List[Decimal]:
    """Simple returns between consecutive equity values."""
    returns = []
    for previous, current in zip(equity, equity[1:]):
        if previous == 0:
            returns.append(ZERO)
        else:
            returns.append((current - previous) / previous)
    return returns


@decimal_precision
def max_drawdown(equity: Sequence[Decimal]) -> Decimal:
    """Largest peak-to-trough decline as a fraction of the peak."""
    peak = None
    worst = ZERO
    for value in equity:
        if peak is None or value > peak:
            peak = value
        if peak and peak > 0:
            worst = max(worst, (peak - value) / peak)
    return worst


@decimal_precision
def annualized_return(fees_earned: Number, principal: Number, days: Number) -> Decimal:
    """Simple APY of fee earnings over a period.

    Raises:
        ValidationError: If principal or days is zero
    """
    principal = to_decimal(principal)
    days = to_decimal(days)
    if principal == 0:
        raise ValidationError("Principal cannot be zero")
    if days <= 0:
        raise ValidationError("Days must be positive")
    return to_decimal(fees_earned) / principal * (Decimal(365) / days)
