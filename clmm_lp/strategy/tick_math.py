"""
Utility functions for concentrated-liquidity tick and price calculations.
Based on the Uniswap v3 whitepaper and core contracts (TickMath, SqrtPriceMath,
LiquidityAmounts).

Sqrt prices are integers in Q64.96 fixed point, token amounts and liquidity are
raw integers, and human-readable prices are ``Decimal``. Binary floats are never
used so that long simulations replay bit-for-bit.
"""

import functools
from decimal import (
    Context,
    Decimal,
    DivisionByZero,
    InvalidOperation,
    Overflow,
    ROUND_FLOOR,
    ROUND_HALF_EVEN,
    localcontext,
)
from typing import Tuple, Union

from ..errors import InvalidRange, NumericOverflow, OutOfRange, ValidationError

# Constants from Uniswap v3 core
MIN_TICK = -887272
MAX_TICK = 887272
MIN_SQRT_RATIO = 4295128739
MAX_SQRT_RATIO = 1461446703485210103287273052203988822378723970342
Q96 = 2 ** 96
MAX_UINT128 = 2 ** 128 - 1
MAX_UINT256 = 2 ** 256 - 1

# 60 significant digits comfortably covers a 160-bit sqrt price squared.
DECIMAL_CONTEXT = Context(
    prec=60,
    rounding=ROUND_HALF_EVEN,
    traps=[InvalidOperation, DivisionByZero, Overflow],
)

_Q96_DEC = Decimal(Q96)
_LN_TICK_BASE = DECIMAL_CONTEXT.ln(Decimal('1.0001'))

# Standard Uniswap v3 tick spacings keyed by fee tier (hundredths of a bip)
TICK_SPACINGS = {
    100: 1,     # 0.01%
    500: 10,    # 0.05%
    3000: 60,   # 0.3%
    10000: 200  # 1%
}

# TickMath.getSqrtRatioAtTick magic numbers: 2**128 / sqrt(1.0001) ** (2**i)
_RATIO_FACTORS = (
    (0x2, 0xfff97272373d413259a46990580e213a),
    (0x4, 0xfff2e50f5f656932ef12357cf3c7fdcc),
    (0x8, 0xffe5caca7e10e4e61c3624eaa0941cd0),
    (0x10, 0xffcb9843d60f6159c9db58835c926644),
    (0x20, 0xff973b41fa98c081472e6896dfb254c0),
    (0x40, 0xff2ea16466c96a3843ec78b326b52861),
    (0x80, 0xfe5dee046a99a2a811c461f1969c3053),
    (0x100, 0xfcbe86c7900a88aedcffc83b479aa3a4),
    (0x200, 0xf987a7253ac413176f2b074cf7815e54),
    (0x400, 0xf3392b0822b70005940c7a398e4b70f3),
    (0x800, 0xe7159475a2c29b7443b29c7fa6e889d9),
    (0x1000, 0xd097f3bdfd2022b8845ad8f792aa5825),
    (0x2000, 0xa9f746462d870fdf8a65dc1f90e061e5),
    (0x4000, 0x70d869a156d2a1b890bb3df62baf32f7),
    (0x8000, 0x31be135f97d08fd981231505542fcfa6),
    (0x10000, 0x9aa508b5b7a84e1c677de54f3e99bc9),
    (0x20000, 0x5d6af8dedb81196699c329225ee604),
    (0x40000, 0x2216e584f5fa1ea926041bedfe98),
    (0x80000, 0x48a170391f7dc42444e8fa2),
)

Number = Union[int, Decimal]


def decimal_precision(func):
    """Run ``func`` under the fixed-point Decimal context."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        with localcontext(DECIMAL_CONTEXT):
            return func(*args, **kwargs)
    return wrapper


def to_decimal(value: Union[str, int, float, Decimal]) -> Decimal:
    """Convert user input to Decimal without inheriting binary float noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValidationError(f"Cannot interpret {value!r} as a decimal number") from e


def _check_tick(tick: int) -> None:
    if not isinstance(tick, int) or isinstance(tick, bool):
        raise ValidationError(f"Tick must be an integer, got {tick!r}")
    if tick < MIN_TICK or tick > MAX_TICK:
        raise OutOfRange(f"Tick {tick} out of bounds [{MIN_TICK}, {MAX_TICK}]")


def _check_sqrt_price(sqrt_price: int) -> None:
    if sqrt_price < MIN_SQRT_RATIO or sqrt_price > MAX_SQRT_RATIO:
        raise OutOfRange(
            f"sqrt price {sqrt_price} out of bounds [{MIN_SQRT_RATIO}, {MAX_SQRT_RATIO}]"
        )


def _decimal_scale(decimals_a: int, decimals_b: int) -> Decimal:
    """Factor converting a raw price (raw B per raw A) to a human price."""
    return Decimal(10) ** (decimals_a - decimals_b)


def mul_div(a: int, b: int, denominator: int) -> int:
    """floor(a * b / denominator) with full precision."""
    if denominator == 0:
        raise ValidationError("Division by zero")
    return (a * b) // denominator


def mul_div_rounding_up(a: int, b: int, denominator: int) -> int:
    """ceil(a * b / denominator) with full precision."""
    if denominator == 0:
        raise ValidationError("Division by zero")
    return -((-(a * b)) // denominator)


def tick_to_sqrt_price(tick: int) -> int:
    """Convert a tick to its Q64.96 sqrt price.

    Follows TickMath.getSqrtRatioAtTick exactly, so the result matches the value
    the protocol stores on chain. Rounds up to the next Q64.96 unit.
    """
    _check_tick(tick)
    abs_tick = abs(tick)

    ratio = 0xfffcb933bd6fad37aa2d162d1a594001 if abs_tick & 0x1 else 1 << 128
    for bit, factor in _RATIO_FACTORS:
        if abs_tick & bit:
            ratio = (ratio * factor) >> 128

    if tick > 0:
        ratio = MAX_UINT256 // ratio

    # Q128.128 -> Q64.96, rounding up
    return (ratio >> 32) + (0 if ratio % (1 << 32) == 0 else 1)


@decimal_precision
def sqrt_price_to_tick(sqrt_price: int) -> int:
    """Convert a Q64.96 sqrt price to the greatest tick at or below it (floor)."""
    _check_sqrt_price(sqrt_price)

    # Estimate from the logarithm, then settle on the exact tick
    ratio = Decimal(sqrt_price) / _Q96_DEC
    estimate = (2 * ratio.ln() / _LN_TICK_BASE).to_integral_value(rounding=ROUND_FLOOR)
    tick = max(MIN_TICK, min(int(estimate), MAX_TICK))

    while tick > MIN_TICK and tick_to_sqrt_price(tick) > sqrt_price:
        tick -= 1
    while tick < MAX_TICK and tick_to_sqrt_price(tick + 1) <= sqrt_price:
        tick += 1
    return tick


@decimal_precision
def sqrt_price_to_price(sqrt_price: int, decimals_a: int = 0, decimals_b: int = 0) -> Decimal:
    """Convert a Q64.96 sqrt price to a human price (token B per token A)."""
    _check_sqrt_price(sqrt_price)
    ratio = Decimal(sqrt_price) / _Q96_DEC
    return ratio * ratio * _decimal_scale(decimals_a, decimals_b)


def tick_to_price(tick: int, decimals_a: int = 0, decimals_b: int = 0) -> Decimal:
    """Convert a tick value to a price.

    Args:
        tick: The tick value to convert
        decimals_a: Decimals of token A (the base token)
        decimals_b: Decimals of token B (the quote token)

    Returns:
        Decimal: Price of token A in units of token B
    """
    return sqrt_price_to_price(tick_to_sqrt_price(tick), decimals_a, decimals_b)


@decimal_precision
def price_to_tick(price: Number, decimals_a: int = 0, decimals_b: int = 0) -> int:
    """Convert a price to the greatest tick whose price does not exceed it (floor).

    Args:
        price: Human price, token B per token A
        decimals_a: Decimals of token A
        decimals_b: Decimals of token B

    Returns:
        int: The tick value

    Raises:
        OutOfRange: If the price is not positive or beyond the tick bounds
    """
    price = to_decimal(price)
    if price <= 0:
        raise OutOfRange(f"Price must be positive, got {price}")
    if price < tick_to_price(MIN_TICK, decimals_a, decimals_b) or \
            price > tick_to_price(MAX_TICK, decimals_a, decimals_b):
        raise OutOfRange(f"Price {price} outside the representable tick range")

    raw_price = price / _decimal_scale(decimals_a, decimals_b)
    estimate = (raw_price.ln() / _LN_TICK_BASE).to_integral_value(rounding=ROUND_FLOOR)
    tick = max(MIN_TICK, min(int(estimate), MAX_TICK))

    while tick > MIN_TICK and tick_to_price(tick, decimals_a, decimals_b) > price:
        tick -= 1
    while tick < MAX_TICK and tick_to_price(tick + 1, decimals_a, decimals_b) <= price:
        tick += 1
    return tick


@decimal_precision
def price_to_sqrt_price(price: Number, decimals_a: int = 0, decimals_b: int = 0) -> int:
    """Convert a human price to a Q64.96 sqrt price, rounding down."""
    price = to_decimal(price)
    if price <= 0:
        raise OutOfRange(f"Price must be positive, got {price}")
    raw_price = price / _decimal_scale(decimals_a, decimals_b)
    sqrt_price = int((raw_price.sqrt() * _Q96_DEC).to_integral_value(rounding=ROUND_FLOOR))
    _check_sqrt_price(sqrt_price)
    return sqrt_price


def get_tick_spacing(fee_tier: int) -> int:
    """Get the tick spacing for a given fee tier.

    Args:
        fee_tier (int): The fee tier (e.g., 500, 3000, 10000)

    Returns:
        int: The tick spacing
    """
    return TICK_SPACINGS.get(fee_tier, 60)  # Default to 0.3% tier spacing


def align_tick_down(tick: int, tick_spacing: int) -> int:
    """Largest usable tick (multiple of ``tick_spacing``) at or below ``tick``."""
    if tick_spacing <= 0:
        raise ValidationError(f"Tick spacing must be positive, got {tick_spacing}")
    aligned = (tick // tick_spacing) * tick_spacing
    if aligned < MIN_TICK:
        aligned += tick_spacing
    return aligned


def align_tick_up(tick: int, tick_spacing: int) -> int:
    """Smallest usable tick (multiple of ``tick_spacing``) at or above ``tick``."""
    if tick_spacing <= 0:
        raise ValidationError(f"Tick spacing must be positive, got {tick_spacing}")
    aligned = -((-tick) // tick_spacing) * tick_spacing
    if aligned > MAX_TICK:
        aligned -= tick_spacing
    return aligned


def _ordered(sqrt_price_a: int, sqrt_price_b: int) -> Tuple[int, int]:
    if sqrt_price_a > sqrt_price_b:
        return sqrt_price_b, sqrt_price_a
    return sqrt_price_a, sqrt_price_b


def _check_liquidity(liquidity: int, **inputs) -> int:
    if liquidity > MAX_UINT128:
        raise NumericOverflow("Liquidity does not fit in uint128", inputs)
    return liquidity


def liquidity_for_amount_a(sqrt_price_a: int, sqrt_price_b: int, amount_a: int) -> int:
    """Liquidity provided by ``amount_a`` of token A between two sqrt prices (rounds down)."""
    sqrt_price_a, sqrt_price_b = _ordered(sqrt_price_a, sqrt_price_b)
    if sqrt_price_a == sqrt_price_b:
        raise InvalidRange("Sqrt price bounds must differ")
    intermediate = mul_div(sqrt_price_a, sqrt_price_b, Q96)
    return mul_div(amount_a, intermediate, sqrt_price_b - sqrt_price_a)


def liquidity_for_amount_b(sqrt_price_a: int, sqrt_price_b: int, amount_b: int) -> int:
    """Liquidity provided by ``amount_b`` of token B between two sqrt prices (rounds down)."""
    sqrt_price_a, sqrt_price_b = _ordered(sqrt_price_a, sqrt_price_b)
    if sqrt_price_a == sqrt_price_b:
        raise InvalidRange("Sqrt price bounds must differ")
    return mul_div(amount_b, Q96, sqrt_price_b - sqrt_price_a)


def liquidity_from_amounts(
    amount_a: int,
    amount_b: int,
    sqrt_price: int,
    sqrt_price_lower: int,
    sqrt_price_upper: int
) -> int:
    """Calculate the maximum liquidity the given raw token amounts can mint in a range.

    Mirrors LiquidityAmounts.getLiquidityForAmounts. Every division rounds down,
    so the resulting liquidity never requires more tokens than supplied.

    Raises:
        InvalidRange: If the bounds are equal or inverted
        ValidationError: If an amount is negative
        NumericOverflow: If the liquidity exceeds uint128
    """
    if sqrt_price_lower >= sqrt_price_upper:
        raise InvalidRange(
            f"Lower sqrt price {sqrt_price_lower} must be below upper {sqrt_price_upper}"
        )
    if amount_a < 0 or amount_b < 0:
        raise ValidationError("Token amounts must be non-negative")
    for value in (sqrt_price, sqrt_price_lower, sqrt_price_upper):
        _check_sqrt_price(value)

    if sqrt_price <= sqrt_price_lower:
        # Only token A is used
        liquidity = liquidity_for_amount_a(sqrt_price_lower, sqrt_price_upper, amount_a)
    elif sqrt_price < sqrt_price_upper:
        # Both tokens are used
        liquidity_a = liquidity_for_amount_a(sqrt_price, sqrt_price_upper, amount_a)
        liquidity_b = liquidity_for_amount_b(sqrt_price_lower, sqrt_price, amount_b)
        liquidity = min(liquidity_a, liquidity_b)
    else:
        # Only token B is used
        liquidity = liquidity_for_amount_b(sqrt_price_lower, sqrt_price_upper, amount_b)

    return _check_liquidity(
        liquidity,
        amount_a=amount_a,
        amount_b=amount_b,
        sqrt_price=sqrt_price,
        sqrt_price_lower=sqrt_price_lower,
        sqrt_price_upper=sqrt_price_upper,
    )


def amount_a_for_liquidity(sqrt_price_a: int, sqrt_price_b: int, liquidity: int) -> int:
    """Token A owed by ``liquidity`` between two sqrt prices (rounds down)."""
    sqrt_price_a, sqrt_price_b = _ordered(sqrt_price_a, sqrt_price_b)
    return mul_div(liquidity << 96, sqrt_price_b - sqrt_price_a, sqrt_price_b) // sqrt_price_a


def amount_b_for_liquidity(sqrt_price_a: int, sqrt_price_b: int, liquidity: int) -> int:
    """Token B owed by ``liquidity`` between two sqrt prices (rounds down)."""
    sqrt_price_a, sqrt_price_b = _ordered(sqrt_price_a, sqrt_price_b)
    return mul_div(liquidity, sqrt_price_b - sqrt_price_a, Q96)


def amounts_from_liquidity(
    liquidity: int,
    sqrt_price: int,
    sqrt_price_lower: int,
    sqrt_price_upper: int
) -> Tuple[int, int]:
    """Calculate the raw token amounts held by ``liquidity`` at ``sqrt_price``.

    Mirrors LiquidityAmounts.getAmountsForLiquidity, rounding down.
    """
    if sqrt_price_lower >= sqrt_price_upper:
        raise InvalidRange(
            f"Lower sqrt price {sqrt_price_lower} must be below upper {sqrt_price_upper}"
        )
    if liquidity < 0:
        raise ValidationError("Liquidity must be non-negative")
    _check_liquidity(liquidity, position_liquidity=liquidity)

    if sqrt_price <= sqrt_price_lower:
        # Only token A
        return amount_a_for_liquidity(sqrt_price_lower, sqrt_price_upper, liquidity), 0
    if sqrt_price < sqrt_price_upper:
        # Both tokens
        return (
            amount_a_for_liquidity(sqrt_price, sqrt_price_upper, liquidity),
            amount_b_for_liquidity(sqrt_price_lower, sqrt_price, liquidity),
        )
    # Only token B
    return 0, amount_b_for_liquidity(sqrt_price_lower, sqrt_price_upper, liquidity)


def fee_growth_inside(
    tick_lower: int,
    tick_upper: int,
    tick_current: int,
    fee_growth_global: Number,
    fee_growth_outside_lower: Number,
    fee_growth_outside_upper: Number
) -> Number:
    """Calculate the fee growth accumulated inside ``[tick_lower, tick_upper)``.

    Fee growth "outside" a tick is stored relative to the side of the tick the
    price is currently on, as in Tick.getFeeGrowthInside.
    """
    if tick_lower >= tick_upper:
        raise InvalidRange("Lower tick must be less than upper tick")

    if tick_current >= tick_lower:
        fee_growth_below = fee_growth_outside_lower
    else:
        fee_growth_below = fee_growth_global - fee_growth_outside_lower

    if tick_current < tick_upper:
        fee_growth_above = fee_growth_outside_upper
    else:
        fee_growth_above = fee_growth_global - fee_growth_outside_upper

    return fee_growth_global - fee_growth_below - fee_growth_above
