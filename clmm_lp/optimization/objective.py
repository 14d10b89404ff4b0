"""
Objective functions scoring a simulation report
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Sequence

from ..config import as_decimal
from ..errors import ValidationError
from ..strategy import metrics
from ..strategy.tick_math import decimal_precision

logger = logging.getLogger(__name__)

NEGATIVE_INFINITY = Decimal('-Infinity')


class Objective(Enum):
    NET_PNL = 'net_pnl'
    FEE_EARNINGS = 'fee_earnings'
    SHARPE = 'sharpe'
    MIN_IL = 'min_il'
    TIME_IN_RANGE = 'time_in_range'
    RISK_ADJUSTED = 'risk_adjusted'
    COMPOSITE = 'composite'

    @classmethod
    def parse(cls, value: Any) -> 'Objective':
        """Accept enum members, values and names such as ``NetPnL`` or ``min-il``."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace('_', '').replace('-', '')
        for member in cls:
            if member.value.replace('_', '') == key:
                return member
        raise ValidationError(f"Unknown objective: {value!r}")


@dataclass(frozen=True)
class ObjectiveParams:
    """Tuning of the parameterized objectives.

    Attributes:
        min_fees: ``min_il`` scores ``-Infinity`` when total fees fall below this
        risk_weight: Drawdown penalty of ``risk_adjusted``
        pnl_weight: ``composite`` weight of net PnL
        fees_weight: ``composite`` weight of total fees
        il_weight: ``composite`` weight of the final IL magnitude
        time_in_range_weight: ``composite`` weight of the time in range fraction
        drawdown_weight: ``composite`` weight of the max drawdown

    Drawdowns are converted to token B by multiplying with the initial capital.
    """
    min_fees: Decimal = Decimal(0)
    risk_weight: Decimal = Decimal(1)
    pnl_weight: Decimal = Decimal(1)
    fees_weight: Decimal = Decimal(0)
    il_weight: Decimal = Decimal('-0.5')
    time_in_range_weight: Decimal = Decimal(0)
    drawdown_weight: Decimal = Decimal('-0.3')

    def __post_init__(self):
        for name in self.__dataclass_fields__:
            object.__setattr__(self, name, as_decimal(getattr(self, name), name))
        if self.min_fees < 0:
            raise ValidationError(f"min_fees must be non-negative, got {self.min_fees}")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ObjectiveParams':
        data = dict(data or {})
        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            raise ValidationError(f"Unknown objective parameters: {', '.join(sorted(unknown))}")
        return cls(**data)


DEFAULT_PARAMS = ObjectiveParams()


@decimal_precision
def sharpe_ratio(returns: Sequence[Decimal]) -> Decimal:
    """Mean step return over its population standard deviation.

    Returns ``-Infinity`` when there are no returns or they have zero variance.
    """
    if not returns:
        return NEGATIVE_INFINITY
    n = Decimal(len(returns))
    mean = sum(returns, Decimal(0)) / n
    variance = sum(((r - mean) ** 2 for r in returns), Decimal(0)) / n
    if variance == 0:
        return NEGATIVE_INFINITY
    return mean / variance.sqrt()


@decimal_precision
def score(objective: Objective, report, params: Optional[ObjectiveParams] = None) -> Decimal:
    """Reduce a simulation report to one number; higher is better.

    Args:
        objective: Objective to evaluate
        report: Finished ``SimulationReport``
        params: Weights and guards of the parameterized objectives

    Returns:
        Decimal: Objective score
    """
    params = params or DEFAULT_PARAMS
    summary = report.summary
    drawdown = summary.max_drawdown * summary.initial_capital
    if objective is Objective.NET_PNL:
        return summary.net_pnl
    if objective is Objective.FEE_EARNINGS:
        return summary.total_fees
    if objective is Objective.SHARPE:
        return sharpe_ratio(metrics.step_returns(report.equity_curve()))
    if objective is Objective.MIN_IL:
        if summary.total_fees < params.min_fees:
            return NEGATIVE_INFINITY
        return Decimal(0) - summary.max_il
    if objective is Objective.TIME_IN_RANGE:
        return summary.time_in_range
    if objective is Objective.RISK_ADJUSTED:
        return summary.net_pnl - params.risk_weight * drawdown
    if objective is Objective.COMPOSITE:
        return (params.pnl_weight * summary.net_pnl
                + params.fees_weight * summary.total_fees
                + params.il_weight * abs(summary.impermanent_loss)
                + params.time_in_range_weight * summary.time_in_range
                + params.drawdown_weight * drawdown)
    raise ValidationError(f"Unsupported objective: {objective}")
