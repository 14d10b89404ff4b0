"""
Search-space constraints for the grid search

Every bound is optional; ``None`` leaves that dimension unconstrained. Point
checks run before a grid point is simulated, result checks on its summary.
"""

import logging
from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import Any, Dict, Optional

from ..config import as_decimal
from ..errors import ValidationError
from ..strategy.rebalancing import StrategyType

logger = logging.getLogger(__name__)


def _optional_decimal(value: Any, name: str) -> Optional[Decimal]:
    return None if value is None else as_decimal(value, name)


def _check_bounds(low: Optional[Decimal], high: Optional[Decimal], name: str) -> None:
    if low is not None and high is not None and low > high:
        raise ValidationError(f"Minimum {name} {low} exceeds maximum {high}")


def _outside(value: Decimal, low: Optional[Decimal], high: Optional[Decimal]) -> bool:
    return (low is not None and value < low) or (high is not None and value > high)


def _from_dict(cls, data: Optional[Dict[str, Any]]):
    data = dict(data or {})
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValidationError(f"Unknown {cls.__name__} fields: {', '.join(sorted(unknown))}")
    return cls(**data)


@dataclass(frozen=True)
class PositionConstraints:
    """Bounds on the position itself.

    Attributes:
        min_range_width_pct: Narrowest allowed range width, in percent
        max_range_width_pct: Widest allowed range width, in percent
        min_capital: Smallest capital the search may run with
        max_capital: Largest capital the search may run with
        max_il_pct: Largest acceptable ``max_il`` as a percentage of capital
        min_time_in_range: Smallest acceptable time in range fraction (0 to 1)
        max_tx_cost_ratio: Largest acceptable rebalance costs over capital
    """
    min_range_width_pct: Optional[Decimal] = None
    max_range_width_pct: Optional[Decimal] = None
    min_capital: Optional[Decimal] = None
    max_capital: Optional[Decimal] = None
    max_il_pct: Optional[Decimal] = None
    min_time_in_range: Optional[Decimal] = None
    max_tx_cost_ratio: Optional[Decimal] = None

    def __post_init__(self):
        for f in fields(self):
            object.__setattr__(self, f.name, _optional_decimal(getattr(self, f.name), f.name))
        _check_bounds(self.min_range_width_pct, self.max_range_width_pct, 'range width')
        _check_bounds(self.min_capital, self.max_capital, 'capital')
        if self.min_time_in_range is not None and not 0 <= self.min_time_in_range <= 1:
            raise ValidationError(
                f"min_time_in_range must be within [0, 1], got {self.min_time_in_range}"
            )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'PositionConstraints':
        return _from_dict(cls, data)


@dataclass(frozen=True)
class RebalanceConstraints:
    """Bounds on strategy parameters and on how often a strategy may rebalance.

    Interval bounds apply to ``periodic`` points, threshold bounds to
    ``threshold`` points and IL bounds to the ``max_il_pct`` of ``il_limit``
    points.
    """
    min_interval: Optional[int] = None
    max_interval: Optional[int] = None
    min_threshold_pct: Optional[Decimal] = None
    max_threshold_pct: Optional[Decimal] = None
    min_il_pct: Optional[Decimal] = None
    max_il_pct: Optional[Decimal] = None
    max_rebalances: Optional[int] = None

    def __post_init__(self):
        for name in ('min_interval', 'max_interval', 'max_rebalances'):
            value = getattr(self, name)
            if value is not None:
                if int(value) != value or value < 0:
                    raise ValidationError(f"{name} must be a non-negative integer, got {value!r}")
                object.__setattr__(self, name, int(value))
        for name in ('min_threshold_pct', 'max_threshold_pct', 'min_il_pct', 'max_il_pct'):
            object.__setattr__(self, name, _optional_decimal(getattr(self, name), name))
        _check_bounds(self.min_interval, self.max_interval, 'interval')
        _check_bounds(self.min_threshold_pct, self.max_threshold_pct, 'threshold')
        _check_bounds(self.min_il_pct, self.max_il_pct, 'IL limit')

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'RebalanceConstraints':
        return _from_dict(cls, data)


@dataclass(frozen=True)
class OptimizationConstraints:
    position: PositionConstraints = field(default_factory=PositionConstraints)
    rebalance: RebalanceConstraints = field(default_factory=RebalanceConstraints)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'OptimizationConstraints':
        """Create constraints from ``{position: {...}, rebalance: {...}}``."""
        data = dict(data or {})
        unknown = set(data) - {'position', 'rebalance'}
        if unknown:
            raise ValidationError(f"Unknown constraint sections: {', '.join(sorted(unknown))}")
        return cls(
            position=PositionConstraints.from_dict(data.get('position')),
            rebalance=RebalanceConstraints.from_dict(data.get('rebalance'))
        )

    def check_capital(self, capital: Decimal) -> None:
        """Raise ``ValidationError`` when the search capital is out of bounds."""
        position = self.position
        if _outside(capital, position.min_capital, position.max_capital):
            raise ValidationError(
                f"Capital {capital} outside [{position.min_capital}, {position.max_capital}]"
            )

    def point_violation(self, parameters: Dict[str, Any]) -> Optional[str]:
        """Reason a grid point is excluded before simulation, or ``None``."""
        position, rebalance = self.position, self.rebalance
        width = parameters.get('range_width_pct')
        if width is not None and _outside(Decimal(str(width)), position.min_range_width_pct,
                                          position.max_range_width_pct):
            return f"range width {width}% outside allowed bounds"

        strategy_type = parameters.get('strategy_type')
        if strategy_type is None:
            return None
        strategy_type = StrategyType.parse(strategy_type)
        if strategy_type is StrategyType.PERIODIC and 'interval' in parameters:
            if _outside(Decimal(str(parameters['interval'])),
                        rebalance.min_interval, rebalance.max_interval):
                return f"interval {parameters['interval']} outside allowed bounds"
        elif strategy_type is StrategyType.THRESHOLD and 'threshold_pct' in parameters:
            if _outside(Decimal(str(parameters['threshold_pct'])),
                        rebalance.min_threshold_pct, rebalance.max_threshold_pct):
                return f"threshold {parameters['threshold_pct']}% outside allowed bounds"
        elif strategy_type is StrategyType.IL_LIMIT and 'max_il_pct' in parameters:
            if _outside(Decimal(str(parameters['max_il_pct'])),
                        rebalance.min_il_pct, rebalance.max_il_pct):
                return f"IL limit {parameters['max_il_pct']}% outside allowed bounds"
        return None

    def result_violation(self, summary) -> Optional[str]:
        """Reason a simulated point is excluded from the ranking, or ``None``.

        Args:
            summary: ``SummaryMetrics`` of the point's simulation
        """
        position, rebalance = self.position, self.rebalance
        capital = summary.initial_capital
        if position.max_il_pct is not None and summary.max_il / capital * 100 > position.max_il_pct:
            return f"max IL {summary.max_il} exceeds {position.max_il_pct}% of capital"
        if position.min_time_in_range is not None and summary.time_in_range < position.min_time_in_range:
            return f"time in range {summary.time_in_range} below {position.min_time_in_range}"
        if (position.max_tx_cost_ratio is not None
                and summary.rebalance_costs / capital > position.max_tx_cost_ratio):
            return f"rebalance costs {summary.rebalance_costs} exceed {position.max_tx_cost_ratio} of capital"
        if rebalance.max_rebalances is not None and summary.rebalance_count > rebalance.max_rebalances:
            return f"{summary.rebalance_count} rebalances exceed {rebalance.max_rebalances}"
        return None
