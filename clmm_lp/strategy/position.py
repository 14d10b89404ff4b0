"""
Ranges, positions and simulation snapshots
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, Tuple

from ..config import PoolConfig
from ..errors import InvalidRange, ValidationError
from . import metrics
from .tick_math import (
    MAX_TICK,
    MIN_TICK,
    align_tick_down,
    align_tick_up,
    amounts_from_liquidity,
    decimal_precision,
    liquidity_from_amounts,
    price_to_sqrt_price,
    price_to_tick,
    tick_to_price,
    tick_to_sqrt_price,
    to_decimal,
)

logger = logging.getLogger(__name__)


def _ceil_tick(price: Decimal, pool: PoolConfig) -> int:
    """Smallest tick whose price is at or above ``price``."""
    tick = price_to_tick(price, pool.decimals_a, pool.decimals_b)
    if tick < MAX_TICK and tick_to_price(tick, pool.decimals_a, pool.decimals_b) < price:
        tick += 1
    return tick


@dataclass(frozen=True)
class Range:
    """A tick range ``[lower_tick, upper_tick)`` owned by a position."""
    lower_tick: int
    upper_tick: int

    def __post_init__(self):
        for tick in (self.lower_tick, self.upper_tick):
            if tick < MIN_TICK or tick > MAX_TICK:
                raise InvalidRange(f"Tick {tick} out of bounds [{MIN_TICK}, {MAX_TICK}]")
        if self.lower_tick >= self.upper_tick:
            raise InvalidRange(
                f"Lower tick {self.lower_tick} must be less than upper tick {self.upper_tick}"
            )

    @property
    def width(self) -> int:
        return self.upper_tick - self.lower_tick

    def lower_price(self, pool: PoolConfig) -> Decimal:
        return tick_to_price(self.lower_tick, pool.decimals_a, pool.decimals_b)

    def upper_price(self, pool: PoolConfig) -> Decimal:
        return tick_to_price(self.upper_tick, pool.decimals_a, pool.decimals_b)

    def contains_price(self, price: Decimal, pool: PoolConfig) -> bool:
        """Active-range rule: inclusive lower bound, exclusive upper bound."""
        return self.lower_price(pool) <= price < self.upper_price(pool)

    def strictly_contains(self, price: Decimal, pool: PoolConfig) -> bool:
        return self.lower_price(pool) < price < self.upper_price(pool)

    @classmethod
    @decimal_precision
    def from_prices(cls, lower_price: Any, upper_price: Any, pool: PoolConfig) -> 'Range':
        """Snap price bounds outward to the pool's tick grid."""
        lower_price, upper_price = to_decimal(lower_price), to_decimal(upper_price)
        if lower_price <= 0 or lower_price >= upper_price:
            raise InvalidRange(
                f"Price bounds must satisfy 0 < lower < upper, got [{lower_price}, {upper_price}]"
            )
        lower_tick = align_tick_down(
            price_to_tick(lower_price, pool.decimals_a, pool.decimals_b), pool.tick_spacing
        )
        upper_tick = align_tick_up(_ceil_tick(upper_price, pool), pool.tick_spacing)
        if upper_tick <= lower_tick:
            upper_tick = lower_tick + pool.tick_spacing
        return cls(lower_tick, upper_tick)

    @classmethod
    @decimal_precision
    def around_price(cls, price: Any, width_pct: Any, offset_pct: Any,
                     pool: PoolConfig) -> 'Range':
        """Build a range of ``width_pct`` percent centred ``offset_pct`` percent from ``price``."""
        price, width_pct, offset_pct = to_decimal(price), to_decimal(width_pct), to_decimal(offset_pct)
        if width_pct <= 0:
            raise InvalidRange(f"Range width must be positive, got {width_pct}%")
        center = price * (1 + offset_pct / 100)
        half_width = center * width_pct / 200
        if center - half_width <= 0:
            raise InvalidRange(f"Range width {width_pct}% leaves a non-positive lower bound")
        return cls.from_prices(center - half_width, center + half_width, pool)

    def to_dict(self) -> Dict[str, int]:
        return {'lower_tick': self.lower_tick, 'upper_tick': self.upper_tick}


@dataclass(frozen=True)
class Position:
    """A liquidity position in a concentrated-liquidity pool.

    Liquidity is fixed at open. Rebalancing closes the position and opens a new
    one; a position is never mutated.
    """
    capital: Decimal
    range: Range
    liquidity: int
    entry_price: Decimal
    opened_at: datetime
    amount_a: int
    amount_b: int
    pool: PoolConfig
    opened_step: int = 0

    @classmethod
    @decimal_precision
    def open(cls,
             capital: Decimal,
             range_: Range,
             price: Decimal,
             opened_at: datetime,
             pool: PoolConfig,
             step: int = 0) -> 'Position':
        """Deploy ``capital`` (in token B) into ``range_`` at ``price``.

        The capital is split between the two tokens in the ratio the range
        requires at ``price``, converted to raw token units (rounding down) and
        minted as the largest liquidity those amounts allow.
        """
        capital = to_decimal(capital)
        if capital < 0:
            raise ValidationError(f"Capital must be non-negative, got {capital}")

        lower_price = range_.lower_price(pool)
        upper_price = range_.upper_price(pool)
        per_liquidity = metrics.value_per_liquidity(price, lower_price, upper_price)
        human_liquidity = capital / per_liquidity
        share_a, share_b = metrics.amounts_per_liquidity(price, lower_price, upper_price)

        amount_a = int((human_liquidity * share_a * Decimal(10) ** pool.decimals_a)
                       .to_integral_value(rounding=ROUND_FLOOR))
        amount_b = int((human_liquidity * share_b * Decimal(10) ** pool.decimals_b)
                       .to_integral_value(rounding=ROUND_FLOOR))

        liquidity = liquidity_from_amounts(
            amount_a,
            amount_b,
            price_to_sqrt_price(price, pool.decimals_a, pool.decimals_b),
            tick_to_sqrt_price(range_.lower_tick),
            tick_to_sqrt_price(range_.upper_tick)
        )

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                f"Opened position [{range_.lower_tick}, {range_.upper_tick}) at {price} "
                f"with capital {capital}: liquidity={liquidity}"
            )

        return cls(
            capital=capital,
            range=range_,
            liquidity=liquidity,
            entry_price=price,
            opened_at=opened_at,
            amount_a=amount_a,
            amount_b=amount_b,
            pool=pool,
            opened_step=step
        )

    @property
    def lower_price(self) -> Decimal:
        return self.range.lower_price(self.pool)

    @property
    def upper_price(self) -> Decimal:
        return self.range.upper_price(self.pool)

    def in_range(self, price: Decimal) -> bool:
        return self.range.contains_price(price, self.pool)

    def amounts_at(self, price: Decimal) -> Tuple[int, int]:
        """Raw token amounts the position holds at ``price``."""
        return amounts_from_liquidity(
            self.liquidity,
            price_to_sqrt_price(price, self.pool.decimals_a, self.pool.decimals_b),
            tick_to_sqrt_price(self.range.lower_tick),
            tick_to_sqrt_price(self.range.upper_tick)
        )

    @decimal_precision
    def value_at(self, price: Decimal) -> Decimal:
        """Position value in token B at ``price``."""
        amount_a, amount_b = self.amounts_at(price)
        return metrics.position_value(
            Decimal(amount_a).scaleb(-self.pool.decimals_a),
            Decimal(amount_b).scaleb(-self.pool.decimals_b),
            price
        )

    def impermanent_loss(self, price: Decimal) -> Decimal:
        return metrics.impermanent_loss(
            self.entry_price, price, self.lower_price, self.upper_price, self.capital
        )

    def impermanent_loss_pct(self, price: Decimal) -> Decimal:
        return metrics.impermanent_loss_pct(
            self.entry_price, price, self.lower_price, self.upper_price
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert position to dictionary representation."""
        return {
            'capital': str(self.capital),
            'lower_tick': self.range.lower_tick,
            'upper_tick': self.range.upper_tick,
            'liquidity': self.liquidity,
            'entry_price': str(self.entry_price),
            'opened_at': self.opened_at.isoformat(),
            'amount_a': self.amount_a,
            'amount_b': self.amount_b,
            'opened_step': self.opened_step
        }


@dataclass(frozen=True)
class SimulationSnapshot:
    """State of a simulated position at one point of the price path.

    ``event`` is ``open`` or ``step`` for snapshots taken at a path sample,
    ``rebalance`` right after a rebalance and ``close`` for the terminal snapshot.
    """
    timestamp: datetime
    price: Decimal
    position_value: Decimal
    fees_earned_cumulative: Decimal
    impermanent_loss: Decimal
    net_pnl: Decimal
    in_range: bool
    event: str = 'step'
    step: int = 0

    @property
    def is_sample(self) -> bool:
        return self.event in ('open', 'step')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'price': str(self.price),
            'position_value': str(self.position_value),
            'fees_earned_cumulative': str(self.fees_earned_cumulative),
            'impermanent_loss': str(self.impermanent_loss),
            'net_pnl': str(self.net_pnl),
            'in_range': self.in_range,
            'event': self.event,
            'step': self.step
        }
