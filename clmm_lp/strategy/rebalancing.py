"""
Rebalancing strategies

The set of strategies is closed: each ``StrategyType`` has one decision handler
registered in ``_HANDLERS`` and ``decide`` is the only entry point.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..config import PoolConfig, as_decimal
from ..errors import InvalidRange, ValidationError
from .position import Position, Range, SimulationSnapshot
from .tick_math import MAX_TICK, MIN_TICK, decimal_precision

logger = logging.getLogger(__name__)


class StrategyType(Enum):
    STATIC = 'static'
    PERIODIC = 'periodic'
    THRESHOLD = 'threshold'
    IL_LIMIT = 'il_limit'

    @classmethod
    def parse(cls, value: Any) -> 'StrategyType':
        """Accept enum members, values and names such as ``ILLimit`` or ``il-limit``."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace('_', '').replace('-', '')
        for member in cls:
            if member.value.replace('_', '') == key:
                return member
        raise ValidationError(f"Unknown strategy type: {value!r}")


DEFAULT_PARAMS: Dict[StrategyType, Dict[str, Any]] = {
    StrategyType.STATIC: {},
    StrategyType.PERIODIC: {'interval': 24, 'only_when_out_of_range': False},
    StrategyType.THRESHOLD: {'threshold_pct': Decimal(5)},
    StrategyType.IL_LIMIT: {'max_il_pct': Decimal(5), 'grace_period': 0},
}


def _positive_int(params: Dict[str, Any], name: str, minimum: int) -> int:
    value = params[name]
    try:
        number = Decimal(str(value))
    except ArithmeticError as e:
        raise ValidationError(f"{name} must be an integer, got {value!r}") from e
    if number != number.to_integral_value() or number < minimum:
        raise ValidationError(f"{name} must be an integer >= {minimum}, got {value!r}")
    return int(number)


def _positive_pct(params: Dict[str, Any], name: str) -> Decimal:
    value = as_decimal(params[name], name)
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")
    return value


def _validate_params(strategy_type: StrategyType, params: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(DEFAULT_PARAMS[strategy_type])
    unknown = set(params) - set(merged)
    if unknown:
        raise ValidationError(
            f"Unknown parameters for {strategy_type.value} strategy: {', '.join(sorted(unknown))}"
        )
    merged.update(params)

    if strategy_type is StrategyType.PERIODIC:
        merged['interval'] = _positive_int(merged, 'interval', 1)
        merged['only_when_out_of_range'] = bool(merged['only_when_out_of_range'])
    elif strategy_type is StrategyType.THRESHOLD:
        merged['threshold_pct'] = _positive_pct(merged, 'threshold_pct')
    elif strategy_type is StrategyType.IL_LIMIT:
        merged['max_il_pct'] = _positive_pct(merged, 'max_il_pct')
        if merged['max_il_pct'] > 100:
            raise ValidationError(f"max_il_pct cannot exceed 100, got {merged['max_il_pct']}")
        merged['grace_period'] = _positive_int(merged, 'grace_period', 0)
    return merged


@dataclass(frozen=True)
class Strategy:
    """A rebalancing strategy and its parameters.

    Attributes:
        strategy_type: Which decision rule to apply
        params: Rule parameters, completed with defaults and validated
    """
    strategy_type: StrategyType
    params: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        strategy_type = StrategyType.parse(self.strategy_type)
        object.__setattr__(self, 'strategy_type', strategy_type)
        object.__setattr__(self, 'params', _validate_params(strategy_type, dict(self.params or {})))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Strategy':
        """Create a strategy from ``{type, params}`` or ``{strategy_type, strategy_params}``."""
        strategy_type = data.get('strategy_type', data.get('type', 'static'))
        params = data.get('strategy_params', data.get('params')) or {}
        return cls(StrategyType.parse(strategy_type), dict(params))

    @classmethod
    def static(cls) -> 'Strategy':
        return cls(StrategyType.STATIC)

    @classmethod
    def periodic(cls, interval: int, only_when_out_of_range: bool = False) -> 'Strategy':
        return cls(StrategyType.PERIODIC,
                   {'interval': interval, 'only_when_out_of_range': only_when_out_of_range})

    @classmethod
    def threshold(cls, threshold_pct: Any) -> 'Strategy':
        return cls(StrategyType.THRESHOLD, {'threshold_pct': threshold_pct})

    @classmethod
    def il_limit(cls, max_il_pct: Any, grace_period: int = 0) -> 'Strategy':
        return cls(StrategyType.IL_LIMIT, {'max_il_pct': max_il_pct, 'grace_period': grace_period})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'strategy_type': self.strategy_type.value,
            'strategy_params': {
                name: str(value) if isinstance(value, Decimal) else value
                for name, value in self.params.items()
            }
        }


class Action(Enum):
    HOLD = 'hold'
    REBALANCE = 'rebalance'


@dataclass(frozen=True)
class Decision:
    action: Action
    new_range: Optional[Range] = None
    reason: Optional[str] = None

    @property
    def is_rebalance(self) -> bool:
        return self.action is Action.REBALANCE


HOLD = Decision(Action.HOLD)


@dataclass
class StrategyState:
    """Mutable per-simulation strategy state. Never shared between simulations."""
    range_width_pct: Decimal
    range_offset_pct: Decimal = Decimal(0)
    last_rebalance_step: int = 0
    last_rebalance_at: Optional[datetime] = None
    rebalance_count: int = 0

    def record_rebalance(self, step: int, timestamp: datetime) -> None:
        self.last_rebalance_step = step
        self.last_rebalance_at = timestamp
        self.rebalance_count += 1


@decimal_precision
def range_containing(price: Decimal, width_pct: Decimal, offset_pct: Decimal,
                     pool: PoolConfig) -> Range:
    """Range recentred on ``price`` that strictly contains it.

    Tick alignment can put ``price`` exactly on a bound; the offending side is
    then pushed out by one tick spacing.
    """
    new_range = Range.around_price(price, width_pct, offset_pct, pool)
    while not new_range.strictly_contains(price, pool):
        lower_tick, upper_tick = new_range.lower_tick, new_range.upper_tick
        if price <= new_range.lower_price(pool):
            lower_tick -= pool.tick_spacing
        if price >= new_range.upper_price(pool):
            upper_tick += pool.tick_spacing
        if lower_tick < MIN_TICK or upper_tick > MAX_TICK:
            raise InvalidRange(f"Cannot build a range around price {price} within tick bounds")
        new_range = Range(lower_tick, upper_tick)
    return new_range


def _rebalance(reason: str, snapshot: SimulationSnapshot, state: StrategyState,
               position: Position) -> Decision:
    new_range = range_containing(
        snapshot.price, state.range_width_pct, state.range_offset_pct, position.pool
    )
    return Decision(Action.REBALANCE, new_range, reason)


def _decide_static(strategy, snapshot, state, position, range_) -> Decision:
    return HOLD


def _decide_periodic(strategy, snapshot, state, position, range_) -> Decision:
    elapsed = snapshot.step - state.last_rebalance_step
    if elapsed < strategy.params['interval']:
        return HOLD
    if strategy.params['only_when_out_of_range'] and snapshot.in_range:
        return HOLD
    return _rebalance('interval', snapshot, state, position)


def _decide_threshold(strategy, snapshot, state, position, range_) -> Decision:
    move = abs(snapshot.price / position.entry_price - 1)
    if move * 100 >= strategy.params['threshold_pct']:
        return _rebalance('price_threshold', snapshot, state, position)
    return HOLD


def _decide_il_limit(strategy, snapshot, state, position, range_) -> Decision:
    if snapshot.step - state.last_rebalance_step < strategy.params['grace_period']:
        return HOLD
    if abs(position.impermanent_loss_pct(snapshot.price)) >= strategy.params['max_il_pct']:
        return _rebalance('il_limit', snapshot, state, position)
    return HOLD


_HANDLERS: Dict[StrategyType, Callable[..., Decision]] = {
    StrategyType.STATIC: _decide_static,
    StrategyType.PERIODIC: _decide_periodic,
    StrategyType.THRESHOLD: _decide_threshold,
    StrategyType.IL_LIMIT: _decide_il_limit,
}


@decimal_precision
def decide(strategy: Strategy,
           snapshot: SimulationSnapshot,
           state: StrategyState,
           position: Position,
           range_: Range) -> Decision:
    """Ask a strategy whether to hold or rebalance after a snapshot.

    Args:
        strategy: Strategy to consult
        snapshot: Snapshot just appended by the simulator
        state: Strategy state of the running simulation
        position: Currently open position
        range_: Range of the open position

    Returns:
        Decision: ``HOLD``, or ``REBALANCE`` with a range strictly containing
        ``snapshot.price``
    """
    decision = _HANDLERS[strategy.strategy_type](strategy, snapshot, state, position, range_)
    if decision.is_rebalance and logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            f"{strategy.strategy_type.value} strategy rebalancing at step {snapshot.step} "
            f"(price {snapshot.price}, reason {decision.reason}): "
            f"[{range_.lower_tick}, {range_.upper_tick}) -> "
            f"[{decision.new_range.lower_tick}, {decision.new_range.upper_tick})"
        )
    return decision
