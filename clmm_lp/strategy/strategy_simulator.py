"""
Position simulator for concentrated-liquidity strategies
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, AsyncIterable, Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

from ..config import PoolConfig, as_decimal, pairs
from ..data.price_path import PricePathSample, SampleValidator
from ..errors import InsufficientData, InvalidRange, InvalidRebalance, ValidationError
from ..utils.logging_utils import log_simulation_step
from . import metrics
from .position import Position, Range, SimulationSnapshot
from .rebalancing import Decision, Strategy, StrategyState, StrategyType, decide
from .tick_math import decimal_precision

logger = logging.getLogger(__name__)

ZERO = Decimal(0)

RANGE_PARAMETERS = ('range_width_pct', 'range_offset_pct')


class SimulatorState(Enum):
    NOT_STARTED = 'not_started'
    OPEN = 'open'
    REBALANCING = 'rebalancing'
    CLOSED = 'closed'


@dataclass(frozen=True)
class SimulationConfig:
    """Inputs of one simulation run.

    Attributes:
        strategy: Rebalancing strategy
        capital: Initial capital in token B
        range_width_pct: Width of the range as a percentage of its centre price
        range_offset_pct: Shift of the range centre from the current price, in percent
        initial_price_bounds: Explicit ``(lower, upper)`` prices for the first range;
            later ranges always use width and offset
        rebalance_cost: Fixed cost charged per rebalance, in token B
        pool: Pool parameters
    """
    strategy: Strategy = field(default_factory=Strategy.static)
    capital: Decimal = Decimal(10000)
    range_width_pct: Decimal = Decimal(10)
    range_offset_pct: Decimal = Decimal(0)
    initial_price_bounds: Optional[Tuple[Decimal, Decimal]] = None
    rebalance_cost: Decimal = Decimal(0)
    pool: PoolConfig = field(default_factory=PoolConfig)

    def __post_init__(self):
        for name in ('capital', 'range_width_pct', 'range_offset_pct', 'rebalance_cost'):
            object.__setattr__(self, name, as_decimal(getattr(self, name), name))
        object.__setattr__(self, 'initial_price_bounds', pairs(self.initial_price_bounds))

        if self.capital <= 0:
            raise ValidationError(f"Capital must be positive, got {self.capital}")
        if self.range_width_pct <= 0:
            raise InvalidRange(f"Range width must be positive, got {self.range_width_pct}%")
        # A re-centred range must still strictly contain the trigger price
        rebalances = self.strategy.strategy_type is not StrategyType.STATIC
        if rebalances and abs(self.range_offset_pct) * 2 >= self.range_width_pct:
            raise ValidationError(
                f"Range offset {self.range_offset_pct}% must be smaller than half the "
                f"range width {self.range_width_pct}% for a rebalancing strategy"
            )
        if self.rebalance_cost < 0:
            raise ValidationError(f"Rebalance cost must be non-negative, got {self.rebalance_cost}")
        if self.initial_price_bounds is not None:
            lower, upper = self.initial_price_bounds
            if lower <= 0 or lower >= upper:
                raise InvalidRange(f"Initial price bounds must satisfy 0 < lower < upper, got {lower}, {upper}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any], pool: Optional[PoolConfig] = None) -> 'SimulationConfig':
        """Create a simulation config from the ``simulation`` config section."""
        data = dict(data or {})
        return cls(
            strategy=Strategy.from_dict(data),
            capital=data.get('capital', 10000),
            range_width_pct=data.get('range_width_pct', 10),
            range_offset_pct=data.get('range_offset_pct', 0),
            initial_price_bounds=data.get('initial_price_bounds'),
            rebalance_cost=data.get('rebalance_cost', 0),
            pool=pool or PoolConfig.from_dict(data.get('pool'))
        )

    def with_parameters(self, parameters: Dict[str, Any]) -> 'SimulationConfig':
        """Copy of this config with grid-point parameters applied.

        ``parameters`` may hold ``strategy_type``, strategy parameters and the
        range parameters. Strategy parameters replace the current ones entirely
        when ``strategy_type`` is given.
        """
        parameters = dict(parameters)
        changes = {name: parameters.pop(name) for name in RANGE_PARAMETERS if name in parameters}
        if 'strategy_type' in parameters:
            strategy_type = parameters.pop('strategy_type')
            changes['strategy'] = Strategy(strategy_type, parameters)
        elif parameters:
            params = dict(self.strategy.params)
            params.update(parameters)
            changes['strategy'] = Strategy(self.strategy.strategy_type, params)
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = self.strategy.to_dict()
        data.update({
            'capital': str(self.capital),
            'range_width_pct': str(self.range_width_pct),
            'range_offset_pct': str(self.range_offset_pct),
            'initial_price_bounds': (
                [str(bound) for bound in self.initial_price_bounds]
                if self.initial_price_bounds else None
            ),
            'rebalance_cost': str(self.rebalance_cost),
            'pool': self.pool.to_dict()
        })
        return data


@dataclass(frozen=True)
class RebalanceEvent:
    step: int
    timestamp: datetime
    price: Decimal
    old_range: Range
    new_range: Range
    reason: Optional[str]
    closed_value: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'step': self.step,
            'timestamp': self.timestamp.isoformat(),
            'price': str(self.price),
            'old_lower_tick': self.old_range.lower_tick,
            'old_upper_tick': self.old_range.upper_tick,
            'new_lower_tick': self.new_range.lower_tick,
            'new_upper_tick': self.new_range.upper_tick,
            'reason': self.reason,
            'closed_value': str(self.closed_value)
        }


@dataclass(frozen=True)
class SummaryMetrics:
    """Totals of a finished simulation.

    ``max_il`` is the largest IL magnitude seen (non-negative), ``time_in_range``
    the fraction of path samples at which the position was in range and
    ``max_drawdown`` a fraction of peak equity.
    """
    initial_capital: Decimal
    final_value: Decimal
    total_fees: Decimal
    impermanent_loss: Decimal
    max_il: Decimal
    net_pnl: Decimal
    rebalance_count: int
    rebalance_costs: Decimal
    time_in_range: Decimal
    max_drawdown: Decimal
    return_pct: Decimal
    fee_apy: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            name: str(value) if isinstance(value, Decimal) else value
            for name, value in dataclasses.asdict(self).items()
        }


def _segment(start: datetime, end: datetime, range_: Range, pool: PoolConfig) -> Dict[str, Any]:
    return {
        'start': start,
        'end': end,
        'lower_price': range_.lower_price(pool),
        'upper_price': range_.upper_price(pool)
    }


@dataclass(frozen=True)
class SimulationReport:
    snapshots: Tuple[SimulationSnapshot, ...]
    summary: SummaryMetrics
    rebalances: Tuple[RebalanceEvent, ...] = ()
    initial_range: Optional[Range] = None

    def sample_snapshots(self) -> List[SimulationSnapshot]:
        """Snapshots taken at path samples, without rebalance and close entries."""
        return [snapshot for snapshot in self.snapshots if snapshot.is_sample]

    def equity_curve(self) -> List[Decimal]:
        """Capital plus net PnL at every path sample."""
        capital = self.summary.initial_capital
        return [capital + snapshot.net_pnl for snapshot in self.sample_snapshots()]

    def range_segments(self, pool: PoolConfig) -> List[Dict[str, Any]]:
        """Price bounds of every position held, with the period it was held."""
        if self.initial_range is None or not self.snapshots:
            return []
        segments = []
        start, range_ = self.snapshots[0].timestamp, self.initial_range
        for event in self.rebalances:
            segments.append(_segment(start, event.timestamp, range_, pool))
            start, range_ = event.timestamp, event.new_range
        segments.append(_segment(start, self.snapshots[-1].timestamp, range_, pool))
        return segments

    def to_dataframe(self) -> pd.DataFrame:
        """Snapshots as a DataFrame with float columns, for export and plotting."""
        df = pd.DataFrame([snapshot.to_dict() for snapshot in self.snapshots])
        if df.empty:
            return df
        df['timestamp'] = pd.to_datetime(df['timestamp'])
        for column in ('price', 'position_value', 'fees_earned_cumulative',
                       'impermanent_loss', 'net_pnl'):
            df[column] = df[column].astype(float)
        return df

    def to_dict(self) -> Dict[str, Any]:
        return {
            'summary': self.summary.to_dict(),
            'rebalances': [event.to_dict() for event in self.rebalances],
            'snapshots': [snapshot.to_dict() for snapshot in self.snapshots]
        }


class PositionSimulator:
    """
    Replays a price path against one position and its rebalancing strategy.

    The simulator moves through ``NOT_STARTED -> OPEN -> (REBALANCING -> OPEN)*
    -> CLOSED``. All state is private to the instance; a new run resets it, so
    the same simulator replays the same path to the same snapshots.
    """

    def __init__(self, config: SimulationConfig, step_log_dir: Optional[str] = None):
        """
        Initialize simulator with configuration.

        Args:
            config: Simulation configuration
            step_log_dir: If set, every snapshot is appended to
                ``simulation_steps.jsonl`` in this directory
        """
        self.config = config
        self.step_log_dir = step_log_dir
        self._reset()

    def _reset(self) -> None:
        self.state = SimulatorState.NOT_STARTED
        self.position: Optional[Position] = None
        self.strategy_state = StrategyState(self.config.range_width_pct, self.config.range_offset_pct)
        self.snapshots: List[SimulationSnapshot] = []
        self.rebalances: List[RebalanceEvent] = []
        self.fees_earned = ZERO
        self.realized_il = ZERO
        self.rebalance_costs = ZERO
        self.sample_count = 0
        self._validator = SampleValidator()
        self._last_sample: Optional[PricePathSample] = None
        self.initial_range: Optional[Range] = None

    @property
    def pool(self) -> PoolConfig:
        return self.config.pool

    def _initial_range(self, price: Decimal) -> Range:
        if self.config.initial_price_bounds is not None:
            return Range.from_prices(*self.config.initial_price_bounds, self.pool)
        return Range.around_price(
            price, self.config.range_width_pct, self.config.range_offset_pct, self.pool
        )

    def _snapshot(self, sample: PricePathSample, event: str, in_range: bool) -> SimulationSnapshot:
        value = self.position.value_at(sample.price)
        il = self.realized_il + self.position.impermanent_loss(sample.price)
        pnl = metrics.net_pnl(self.fees_earned, value - self.config.capital, self.rebalance_costs)
        return SimulationSnapshot(
            timestamp=sample.timestamp,
            price=sample.price,
            position_value=value,
            fees_earned_cumulative=self.fees_earned,
            impermanent_loss=il,
            net_pnl=pnl,
            in_range=in_range,
            event=event,
            step=self.sample_count - 1
        )

    def _append(self, snapshot: SimulationSnapshot) -> SimulationSnapshot:
        self.snapshots.append(snapshot)
        if self.step_log_dir:
            log_simulation_step(snapshot.to_dict(), self.step_log_dir)
        return snapshot

    @decimal_precision
    def start(self, sample: PricePathSample) -> SimulationSnapshot:
        """Open the initial position at the first path sample."""
        self._reset()
        self._validator.check(sample)
        self.sample_count = 1
        self._last_sample = sample

        range_ = self._initial_range(sample.price)
        self.initial_range = range_
        self.position = Position.open(
            self.config.capital, range_, sample.price, sample.timestamp, self.pool, step=0
        )
        self.state = SimulatorState.OPEN
        logger.info(
            f"Opened position [{range_.lower_tick}, {range_.upper_tick}) at price {sample.price} "
            f"with {self.config.strategy.strategy_type.value} strategy"
        )
        return self._append(self._snapshot(sample, 'open', self.position.in_range(sample.price)))

    @decimal_precision
    def step(self, sample: PricePathSample) -> SimulationSnapshot:
        """Advance the simulation by one path sample.

        Fees for the step are accrued before the snapshot is taken; the
        strategy is consulted after it.

        Returns:
            SimulationSnapshot: The ``step`` snapshot for this sample
        """
        if self.state is SimulatorState.NOT_STARTED:
            return self.start(sample)
        if self.state is SimulatorState.CLOSED:
            raise ValidationError("Simulation is closed; start a new run")

        self._validator.check(sample)
        self.sample_count += 1
        self._last_sample = sample
        position = self.position

        in_range = position.in_range(sample.price)
        if in_range:
            share = metrics.liquidity_share(position.liquidity, self.pool.pool_liquidity)
            self.fees_earned += metrics.fee_value(share, sample.volume, self.pool.fee_tier)

        snapshot = self._append(self._snapshot(sample, 'step', in_range))

        decision = decide(self.config.strategy, snapshot, self.strategy_state, position, position.range)
        if decision.is_rebalance:
            self._rebalance(sample, snapshot.step, decision)
        return snapshot

    def _rebalance(self, sample: PricePathSample, step: int, decision: Decision) -> None:
        new_range = decision.new_range
        if new_range is None or not new_range.strictly_contains(sample.price, self.pool):
            raise InvalidRebalance(
                f"New range does not strictly contain trigger price at step {step}",
                price=sample.price,
                new_range=new_range
            )

        self.state = SimulatorState.REBALANCING
        old_position = self.position
        closed_value = old_position.value_at(sample.price)
        self.realized_il += old_position.impermanent_loss(sample.price)
        self.rebalance_costs += self.config.rebalance_cost

        self.position = Position.open(
            closed_value, new_range, sample.price, sample.timestamp, self.pool, step=step
        )
        self.strategy_state.record_rebalance(step, sample.timestamp)
        self.rebalances.append(RebalanceEvent(
            step=step,
            timestamp=sample.timestamp,
            price=sample.price,
            old_range=old_position.range,
            new_range=new_range,
            reason=decision.reason,
            closed_value=closed_value
        ))
        self.state = SimulatorState.OPEN
        logger.info(
            f"Rebalanced at step {step} (price {sample.price}, {decision.reason}): "
            f"[{old_position.range.lower_tick}, {old_position.range.upper_tick}) -> "
            f"[{new_range.lower_tick}, {new_range.upper_tick})"
        )
        self._append(self._snapshot(sample, 'rebalance', True))

    @decimal_precision
    def finish(self) -> SimulationReport:
        """Close the position after the last sample and build the report."""
        if self.state is SimulatorState.CLOSED:
            raise ValidationError("Simulation already closed")
        if self.sample_count < 2:
            raise InsufficientData(
                f"Price path needs at least 2 samples, got {self.sample_count}"
            )
        last = self._last_sample
        self._append(self._snapshot(last, 'close', self.position.in_range(last.price)))
        self.state = SimulatorState.CLOSED
        report = SimulationReport(
            snapshots=tuple(self.snapshots),
            summary=self._summarize(),
            rebalances=tuple(self.rebalances),
            initial_range=self.initial_range
        )
        logger.info(
            f"Simulation finished: {self.sample_count} samples, "
            f"{len(self.rebalances)} rebalances, net PnL {report.summary.net_pnl}"
        )
        return report

    def _summarize(self) -> SummaryMetrics:
        capital = self.config.capital
        final = self.snapshots[-1]
        samples = [snapshot for snapshot in self.snapshots if snapshot.is_sample]
        in_range = sum(1 for snapshot in samples if snapshot.in_range)
        equity = [capital + snapshot.net_pnl for snapshot in samples]

        days = Decimal((samples[-1].timestamp - samples[0].timestamp).total_seconds()) / 86400
        fee_apy = metrics.annualized_return(self.fees_earned, capital, days) if days > 0 else None

        return SummaryMetrics(
            initial_capital=capital,
            final_value=final.position_value,
            total_fees=self.fees_earned,
            impermanent_loss=final.impermanent_loss,
            max_il=max(abs(snapshot.impermanent_loss) for snapshot in self.snapshots),
            net_pnl=final.net_pnl,
            rebalance_count=len(self.rebalances),
            rebalance_costs=self.rebalance_costs,
            time_in_range=Decimal(in_range) / Decimal(len(samples)),
            max_drawdown=metrics.max_drawdown(equity),
            return_pct=final.net_pnl / capital * 100,
            fee_apy=fee_apy
        )

    def run(self, path: Iterable[PricePathSample]) -> SimulationReport:
        """
        Simulate a full price path.

        Args:
            path: Price path samples in timestamp order

        Returns:
            SimulationReport: Snapshots, rebalances and summary totals

        Raises:
            InsufficientData: If the path has fewer than two samples
            ValidationError: If a sample is malformed or out of order
        """
        self._reset()
        for sample in path:
            self.step(sample)
        return self.finish()

    async def run_async(self, path: Union[AsyncIterable[PricePathSample],
                                          Iterable[PricePathSample]]) -> SimulationReport:
        """Simulate a path produced lazily by an async source.

        The simulator only suspends while waiting for the next sample.
        """
        self._reset()
        if hasattr(path, '__aiter__'):
            async for sample in path:
                self.step(sample)
        else:
            for sample in path:
                self.step(sample)
        return self.finish()
