"""
Grid search over strategy and range parameters
"""

import itertools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd
from tqdm import tqdm

from ..config import expand_values
from ..data.price_path import PricePathSample
from ..errors import InsufficientData, InvalidRebalance, NumericOverflow, ValidationError
from ..strategy.rebalancing import StrategyType
from ..strategy.strategy_simulator import PositionSimulator, SimulationConfig, SummaryMetrics
from .constraints import OptimizationConstraints
from .objective import Objective, ObjectiveParams, score

logger = logging.getLogger(__name__)

FAILED = 'failed'
SKIPPED = 'skipped'
REJECTED = 'rejected'


@dataclass(frozen=True)
class GridPoint:
    index: int
    parameters: Dict[str, Any]


@dataclass(frozen=True)
class OptimizationResult:
    index: int
    parameters: Dict[str, Any]
    objective_score: Decimal
    summary_metrics: SummaryMetrics


@dataclass(frozen=True)
class GridPointFailure:
    """A grid point that produced no score.

    ``kind`` is ``skipped`` when the path was too short to simulate,
    ``failed`` for validation, overflow and rebalance errors and ``rejected``
    when the point or its result violates the search constraints.
    """
    index: int
    parameters: Dict[str, Any]
    kind: str
    reason: str


class _Cancelled:
    pass


_CANCELLED = _Cancelled()

SlotValue = Union[OptimizationResult, GridPointFailure, _Cancelled]


def _value_key(value: Any) -> Tuple[int, Any]:
    if isinstance(value, bool):
        return 0, Decimal(int(value))
    if isinstance(value, (int, float, Decimal)):
        return 0, Decimal(str(value))
    if isinstance(value, StrategyType):
        return 1, value.value
    return 1, str(value)


def parameter_sort_key(parameters: Dict[str, Any]) -> Tuple:
    """Natural ordering of a parameter set: by name, numbers compared as numbers."""
    return tuple((name, _value_key(parameters[name])) for name in sorted(parameters))


def rank_results(results: Iterable[OptimizationResult]) -> List[OptimizationResult]:
    """Sort by score descending, ties broken by the natural parameter ordering."""
    ranked = sorted(results, key=lambda result: parameter_sort_key(result.parameters))
    ranked.sort(key=lambda result: result.objective_score, reverse=True)
    return ranked


@dataclass(frozen=True)
class ParameterSpace:
    """Candidate values to search.

    Attributes:
        strategies: Parameter candidates per strategy type, e.g.
            ``{StrategyType.THRESHOLD: {'threshold_pct': [2, 5]}}``
        range_width_pct: Range width candidates
        range_offset_pct: Range offset candidates
    """
    strategies: Dict[StrategyType, Dict[str, List[Any]]]
    range_width_pct: List[Any]
    range_offset_pct: List[Any] = field(default_factory=lambda: [Decimal(0)])

    def __post_init__(self):
        if not self.strategies:
            raise ValidationError("Parameter space needs at least one strategy")
        if not self.range_width_pct or not self.range_offset_pct:
            raise ValidationError("Parameter space needs range width and offset candidates")
        strategies = {StrategyType.parse(key): dict(params or {})
                      for key, params in self.strategies.items()}
        for strategy_type, params in strategies.items():
            for name, values in params.items():
                if not values:
                    raise ValidationError(
                        f"No candidate values for {strategy_type.value}.{name}"
                    )
        object.__setattr__(self, 'strategies', strategies)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], grid_resolution: int = 5) -> 'ParameterSpace':
        """Create a parameter space from the optimizer's ``space`` section.

        Every value may be a list, a scalar or a ``{min, max}`` range expanded into
        ``grid_resolution`` points.
        """
        data = dict(data or {})
        strategies = {
            StrategyType.parse(name): {
                param: expand_values(values, grid_resolution)
                for param, values in (params or {}).items()
            }
            for name, params in (data.get('strategies') or {'static': {}}).items()
        }
        return cls(
            strategies=strategies,
            range_width_pct=expand_values(data.get('range_width_pct', [10]), grid_resolution),
            range_offset_pct=expand_values(data.get('range_offset_pct', [0]), grid_resolution)
        )

    def grid(self) -> List[GridPoint]:
        """Cartesian product of all candidates, one indexed point per combination."""
        points = []
        for strategy_type, params in self.strategies.items():
            names = sorted(params)
            for values in itertools.product(*(params[name] for name in names)):
                for width in self.range_width_pct:
                    for offset in self.range_offset_pct:
                        parameters = {'strategy_type': strategy_type.value}
                        parameters.update(zip(names, values))
                        parameters['range_width_pct'] = width
                        parameters['range_offset_pct'] = offset
                        points.append(GridPoint(len(points), parameters))
        return points

    def __len__(self) -> int:
        size = 0
        for params in self.strategies.values():
            combinations = 1
            for values in params.values():
                combinations *= len(values)
            size += combinations
        return size * len(self.range_width_pct) * len(self.range_offset_pct)


@dataclass(frozen=True)
class OptimizationReport:
    """Ranked results of a grid search.

    ``results`` is sorted by score descending, ties broken by the natural
    ordering of the parameters. ``len(results) + len(failures) + cancelled``
    always equals ``grid_size``.
    """
    objective: Objective
    results: Tuple[OptimizationResult, ...]
    failures: Tuple[GridPointFailure, ...]
    cancelled: int
    grid_size: int

    @property
    def best(self) -> Optional[OptimizationResult]:
        return self.results[0] if self.results else None

    @property
    def skipped(self) -> List[GridPointFailure]:
        return [failure for failure in self.failures if failure.kind == SKIPPED]

    @property
    def rejected(self) -> List[GridPointFailure]:
        return [failure for failure in self.failures if failure.kind == REJECTED]

    def to_dataframe(self) -> pd.DataFrame:
        """One row per successful point in rank order, parameters and summary flattened."""
        rows = []
        for rank, result in enumerate(self.results, start=1):
            row = {'rank': rank, 'index': result.index, 'score': float(result.objective_score)}
            for name, value in result.parameters.items():
                row[name] = float(value) if isinstance(value, Decimal) else value
            for name, value in result.summary_metrics.to_dict().items():
                row[f"summary_{name}"] = value
            rows.append(row)
        return pd.DataFrame(rows)

    def failures_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([
            {'index': failure.index, 'kind': failure.kind, 'reason': failure.reason,
             **{name: str(value) for name, value in failure.parameters.items()}}
            for failure in self.failures
        ])


@dataclass(frozen=True)
class OptimizerConfig:
    objective: Objective = Objective.NET_PNL
    grid_resolution: int = 5
    max_workers: int = 4
    show_progress: bool = True
    objective_params: ObjectiveParams = field(default_factory=ObjectiveParams)
    constraints: OptimizationConstraints = field(default_factory=OptimizationConstraints)

    def __post_init__(self):
        object.__setattr__(self, 'objective', Objective.parse(self.objective))
        if self.grid_resolution < 1:
            raise ValidationError(f"grid_resolution must be at least 1, got {self.grid_resolution}")
        if self.max_workers < 1:
            raise ValidationError(f"max_workers must be at least 1, got {self.max_workers}")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'OptimizerConfig':
        data = dict(data or {})
        return cls(
            objective=data.get('objective', 'net_pnl'),
            grid_resolution=int(data.get('grid_resolution', 5)),
            max_workers=int(data.get('max_workers', 4)),
            show_progress=bool(data.get('show_progress', True)),
            objective_params=ObjectiveParams.from_dict(data.get('objective_params')),
            constraints=OptimizationConstraints.from_dict(data.get('constraints'))
        )


class GridSearchOptimizer:
    """
    Scores every point of a parameter grid by simulating it over one price path.

    Points run on a thread pool bounded by ``max_workers``. Each point gets its
    own simulator; the only shared data are the read-only path and the result
    slots, one per grid index, each written once.
    """

    def __init__(self,
                 config: SimulationConfig,
                 objective: Union[Objective, str] = Objective.NET_PNL,
                 max_workers: int = 4,
                 show_progress: bool = False,
                 objective_params: Optional[ObjectiveParams] = None,
                 constraints: Optional[OptimizationConstraints] = None):
        """
        Args:
            config: Base simulation config; grid parameters are applied on top
            objective: Objective to maximize
            max_workers: Maximum number of points simulated concurrently
            show_progress: Display a tqdm progress bar
            objective_params: Weights and guards of the parameterized objectives
            constraints: Bounds a point and its result must meet to be ranked
        """
        if max_workers < 1:
            raise ValidationError(f"max_workers must be at least 1, got {max_workers}")
        self.config = config
        self.objective = Objective.parse(objective)
        self.max_workers = max_workers
        self.show_progress = show_progress
        self.objective_params = objective_params or ObjectiveParams()
        self.constraints = constraints or OptimizationConstraints()
        self.constraints.check_capital(config.capital)

    def _rejected(self, point: GridPoint, reason: str) -> GridPointFailure:
        logger.info(f"Grid point {point.index} rejected: {reason}")
        return GridPointFailure(point.index, point.parameters, REJECTED, reason)

    def evaluate_point(self,
                       point: GridPoint,
                       path: Tuple[PricePathSample, ...],
                       cancel_event: Optional[threading.Event] = None) -> SlotValue:
        """Simulate and score one grid point, turning core errors into failures."""
        if cancel_event is not None and cancel_event.is_set():
            return _CANCELLED
        violation = self.constraints.point_violation(point.parameters)
        if violation is not None:
            return self._rejected(point, violation)
        try:
            config = self.config.with_parameters(point.parameters)
            report = PositionSimulator(config).run(path)
        except InsufficientData as e:
            logger.warning(f"Grid point {point.index} skipped: {e}")
            return GridPointFailure(point.index, point.parameters, SKIPPED, str(e))
        except (ValidationError, NumericOverflow, InvalidRebalance) as e:
            logger.warning(f"Grid point {point.index} failed: {type(e).__name__}: {e}")
            return GridPointFailure(
                point.index, point.parameters, FAILED, f"{type(e).__name__}: {e}"
            )

        violation = self.constraints.result_violation(report.summary)
        if violation is not None:
            return self._rejected(point, violation)
        return OptimizationResult(
            index=point.index,
            parameters=point.parameters,
            objective_score=score(self.objective, report, self.objective_params),
            summary_metrics=report.summary
        )

    def optimize(self,
                 path: Iterable[PricePathSample],
                 space: ParameterSpace,
                 cancel_event: Optional[threading.Event] = None) -> OptimizationReport:
        """
        Run the grid search.

        Args:
            path: Price path, materialized once and shared by every point
            space: Parameter space to search
            cancel_event: When set, points that have not started yet are skipped
                and counted as cancelled

        Returns:
            OptimizationReport: Ranked results, failures and cancellation count
        """
        samples = tuple(path)
        points = space.grid()
        slots: List[Optional[SlotValue]] = [None] * len(points)
        logger.info(
            f"Grid search over {len(points)} points ({self.objective.value}, "
            f"{self.max_workers} workers, {len(samples)} samples)"
        )

        progress = tqdm(total=len(points), desc="Grid search", unit="point",
                        disable=not self.show_progress)
        try:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = {
                    executor.submit(self.evaluate_point, point, samples, cancel_event): point.index
                    for point in points
                }
                for future in as_completed(futures):
                    index = futures[future]
                    if slots[index] is not None:
                        raise RuntimeError(f"Result slot {index} written twice")
                    slots[index] = future.result()
                    progress.update(1)
        finally:
            progress.close()

        results = [slot for slot in slots if isinstance(slot, OptimizationResult)]
        failures = tuple(slot for slot in slots if isinstance(slot, GridPointFailure))
        cancelled = sum(1 for slot in slots if slot is _CANCELLED)
        results = rank_results(results)

        report = OptimizationReport(
            objective=self.objective,
            results=tuple(results),
            failures=failures,
            cancelled=cancelled,
            grid_size=len(points)
        )
        if report.best is not None:
            logger.info(
                f"Best score {report.best.objective_score} with {report.best.parameters} "
                f"({len(results)} scored, {len(failures)} failed, skipped or rejected, {cancelled} cancelled)"
            )
        else:
            logger.warning(
                f"Grid search produced no scores ({len(failures)} failed, skipped or rejected, "
                f"{cancelled} cancelled)"
            )
        return report
