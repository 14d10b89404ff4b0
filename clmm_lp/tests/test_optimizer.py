"""
Tests for the grid search optimizer and objectives
"""

import threading
from decimal import Decimal

import pytest

from clmm_lp.config import PoolConfig
from clmm_lp.errors import NumericOverflow, ValidationError
from clmm_lp.optimization.constraints import (
    OptimizationConstraints,
    PositionConstraints,
    RebalanceConstraints,
)
from clmm_lp.optimization.objective import Objective, ObjectiveParams, score, sharpe_ratio
from clmm_lp.optimization.optimizer import (
    FAILED,
    SKIPPED,
    GridSearchOptimizer,
    OptimizationResult,
    OptimizerConfig,
    ParameterSpace,
    parameter_sort_key,
    rank_results,
)
from clmm_lp.strategy import strategy_simulator
from clmm_lp.strategy.position import Range
from clmm_lp.strategy.rebalancing import Action, Decision, StrategyType
from clmm_lp.strategy.strategy_simulator import PositionSimulator, SimulationConfig


@pytest.fixture
def base_config(pool):
    return SimulationConfig(capital=Decimal(10000), pool=pool)


@pytest.fixture
def width_space():
    return ParameterSpace(
        strategies={StrategyType.STATIC: {}},
        range_width_pct=[Decimal(20), Decimal(5), Decimal(10)]
    )


def test_grid_covers_every_combination():
    space = ParameterSpace(
        strategies={
            'static': {},
            'threshold': {'threshold_pct': [2, 5]},
            'periodic': {'interval': [6, 12, 24]},
        },
        range_width_pct=[5, 10],
        range_offset_pct=[0, 1]
    )
    points = space.grid()
    assert len(points) == len(space) == (1 + 2 + 3) * 2 * 2
    assert [point.index for point in points] == list(range(len(points)))
    assert points[0].parameters == {
        'strategy_type': 'static', 'range_width_pct': 5, 'range_offset_pct': 0
    }
    assert {'strategy_type': 'periodic', 'interval': 12, 'range_width_pct': 10,
            'range_offset_pct': 1} in [point.parameters for point in points]


def test_parameter_space_from_dict():
    space = ParameterSpace.from_dict({
        'strategies': {'Threshold': {'threshold_pct': {'min': 1, 'max': 5}}},
        'range_width_pct': {'min': 5, 'max': 20},
        'range_offset_pct': 0,
    }, grid_resolution=4)
    thresholds = space.strategies[StrategyType.THRESHOLD]['threshold_pct']
    assert len(thresholds) == 4
    assert thresholds[0] == 1 and thresholds[-1] == 5
    assert thresholds == sorted(thresholds)
    assert space.range_width_pct == [5, 10, 15, 20]
    assert space.range_offset_pct == [0]
    assert len(space) == 16

    with pytest.raises(ValidationError):
        ParameterSpace(strategies={}, range_width_pct=[10])
    with pytest.raises(ValidationError):
        ParameterSpace(strategies={'threshold': {'threshold_pct': []}}, range_width_pct=[10])


def test_results_are_complete(base_config, make_path):
    """Every grid point is either scored or reported as a failure."""
    space = ParameterSpace(
        strategies={'static': {}, 'threshold': {'threshold_pct': [1, 3]}},
        range_width_pct=[4, 10],
        range_offset_pct=[0, 3]
    )
    path = make_path([100, 101, 103, 99, 97, 100], volume=1000)
    report = GridSearchOptimizer(base_config, Objective.NET_PNL, max_workers=3).optimize(path, space)

    assert report.grid_size == len(space) == 12
    assert len(report.results) + len(report.failures) + report.cancelled == report.grid_size
    assert report.cancelled == 0
    # Offset 3% is not smaller than half of a 4% width, which only matters when re-centring
    assert len(report.failures) == 2
    assert all(failure.parameters['strategy_type'] == 'threshold' for failure in report.failures)
    assert all(failure.kind == FAILED for failure in report.failures)
    assert all(failure.parameters['range_width_pct'] == 4 for failure in report.failures)
    assert all('ValidationError' in failure.reason for failure in report.failures)

    indices = sorted([result.index for result in report.results]
                     + [failure.index for failure in report.failures])
    assert indices == list(range(12))

    scores = [result.objective_score for result in report.results]
    assert scores == sorted(scores, reverse=True)


def test_short_path_is_skipped(base_config, make_path, width_space):
    report = GridSearchOptimizer(base_config).optimize(make_path([100]), width_space)
    assert report.best is None
    assert len(report.skipped) == 3
    assert all(failure.kind == SKIPPED for failure in report.failures)


def test_min_il_tie_breaks_by_parameters(base_config, make_path, width_space):
    """Flat prices give every width zero IL; the smallest width ranks first."""
    path = make_path([100] * 10, volume=1000)
    report = GridSearchOptimizer(base_config, 'MinIL', max_workers=2).optimize(path, width_space)

    assert [result.objective_score for result in report.results] == [0, 0, 0]
    assert report.best.parameters['range_width_pct'] == 5
    assert [result.parameters['range_width_pct'] for result in report.results] == [5, 10, 20]


def test_fee_earnings_prefers_narrow_range(make_path, width_space):
    config = SimulationConfig(pool=PoolConfig(tick_spacing=60, fee_tier=3000, pool_liquidity=10 ** 30))
    path = make_path([100, '101.5', 99, '98.2', 100, '101.9', '100.4'], volume=100000)
    report = GridSearchOptimizer(config, Objective.FEE_EARNINGS).optimize(path, width_space)

    assert report.best.parameters['range_width_pct'] == 5
    fees = [result.summary_metrics.total_fees for result in report.results]
    assert fees[0] > fees[1] > fees[2] > 0


def test_scores_match_direct_simulation(base_config, make_path, width_space):
    path = make_path([100, 102, 104, 101], volume=500)
    report = GridSearchOptimizer(base_config, Objective.NET_PNL).optimize(path, width_space)
    for result in report.results:
        direct = PositionSimulator(base_config.with_parameters(result.parameters)).run(path)
        assert result.objective_score == direct.summary.net_pnl


def test_preset_cancel_event(base_config, make_path, width_space):
    event = threading.Event()
    event.set()
    report = GridSearchOptimizer(base_config).optimize(make_path([100, 101]), width_space, event)
    assert report.cancelled == 3
    assert report.results == ()
    assert report.best is None


def test_cancel_during_search(base_config, make_path, width_space):
    """Points not yet started when the event is set are counted as cancelled."""
    event = threading.Event()

    class CancellingOptimizer(GridSearchOptimizer):
        def evaluate_point(self, point, path, cancel_event=None):
            result = super().evaluate_point(point, path, cancel_event)
            event.set()
            return result

    optimizer = CancellingOptimizer(base_config, max_workers=1)
    report = optimizer.optimize(make_path([100, 101, 102]), width_space, event)
    assert len(report.results) == 1
    assert report.cancelled == 2
    assert len(report.results) + len(report.failures) + report.cancelled == report.grid_size


def test_report_dataframes(base_config, make_path):
    space = ParameterSpace(strategies={'threshold': {'threshold_pct': [50]}},
                           range_width_pct=[10], range_offset_pct=[0, 5])
    report = GridSearchOptimizer(base_config).optimize(make_path([100, 101, 102]), space)
    df = report.to_dataframe()
    assert list(df['rank']) == [1]
    assert df['range_width_pct'][0] == 10.0
    assert 'summary_net_pnl' in df.columns
    failures = report.failures_dataframe()
    assert list(failures['kind']) == [FAILED]


def test_parameter_sort_key_compares_numbers():
    small = parameter_sort_key({'range_width_pct': Decimal('9')})
    large = parameter_sort_key({'range_width_pct': Decimal('10')})
    assert small < large


def test_optimizer_config():
    config = OptimizerConfig.from_dict({'objective': 'fee-earnings', 'max_workers': 2})
    assert config.objective is Objective.FEE_EARNINGS
    with pytest.raises(ValidationError):
        OptimizerConfig(max_workers=0)
    with pytest.raises(ValidationError):
        GridSearchOptimizer(SimulationConfig(), max_workers=0)


def test_objective_parse():
    assert Objective.parse('NetPnL') is Objective.NET_PNL
    assert Objective.parse('TimeInRange') is Objective.TIME_IN_RANGE
    assert Objective.parse('sharpe') is Objective.SHARPE
    with pytest.raises(ValidationError):
        Objective.parse('max_fun')


def test_sharpe_ratio():
    assert sharpe_ratio([]) == Decimal('-Infinity')
    assert sharpe_ratio([Decimal('0.01')] * 5) == Decimal('-Infinity')
    assert sharpe_ratio([Decimal('0.01'), Decimal('-0.01')]) == 0
    assert sharpe_ratio([Decimal('0.02'), Decimal('0.04')]) == 3


def test_objective_scores(base_config, make_path):
    report = PositionSimulator(base_config).run(make_path([100, 100, 100]))
    # Flat equity has zero variance
    assert score(Objective.SHARPE, report) == Decimal('-Infinity')
    assert score(Objective.MIN_IL, report) == 0
    assert score(Objective.TIME_IN_RANGE, report) == 1
    assert score(Objective.FEE_EARNINGS, report) == report.summary.total_fees

    moving = PositionSimulator(base_config).run(make_path([100, 104, 120], volume=100))
    min_il = score(Objective.MIN_IL, moving)
    assert min_il < 0
    assert min_il + moving.summary.max_il == 0
    assert abs(score(Objective.TIME_IN_RANGE, moving) - Decimal(2) / 3) < Decimal('1e-20')


def test_ranking_keeps_full_precision():
    """Scores that differ beyond 28 digits still rank in order."""
    low = Decimal('1.' + '0' * 50 + '1')
    high = Decimal('1.' + '0' * 50 + '2')
    results = [
        OptimizationResult(0, {'range_width_pct': Decimal(5)}, low, None),
        OptimizationResult(1, {'range_width_pct': Decimal(20)}, high, None),
        OptimizationResult(2, {'range_width_pct': Decimal(10)}, high, None),
    ]
    assert [result.index for result in rank_results(results)] == [2, 1, 0]


def test_min_il_prefers_wide_range_on_moving_path(base_config, make_path, width_space):
    """Concentration amplifies IL, so once prices move the widest range ranks first."""
    path = make_path([100, 101, 102, 100, 98, 99, 100], volume=1000)
    report = GridSearchOptimizer(base_config, Objective.MIN_IL).optimize(path, width_space)

    assert [result.parameters['range_width_pct'] for result in report.results] == [20, 10, 5]
    scores = [result.objective_score for result in report.results]
    assert scores[0] > scores[1] > scores[2]
    assert all(score_ < 0 for score_ in scores)


def test_failing_points_do_not_stop_the_search(base_config, make_path, width_space, monkeypatch):
    """A point that breaks mid-simulation is recorded while its siblings still score."""
    real_decide = strategy_simulator.decide

    def flaky_decide(strategy, snapshot, state, position, range_):
        if state.range_width_pct == 5:
            return Decision(Action.REBALANCE, Range(-120, -60), 'broken')
        if state.range_width_pct == 10:
            raise NumericOverflow("Liquidity does not fit in uint128", {'step': snapshot.step})
        return real_decide(strategy, snapshot, state, position, range_)

    monkeypatch.setattr(strategy_simulator, 'decide', flaky_decide)
    report = GridSearchOptimizer(base_config, max_workers=3).optimize(
        make_path([100, 101, 102], volume=100), width_space
    )

    assert len(report.results) == 1
    assert report.best.parameters['range_width_pct'] == 20
    reasons = {failure.parameters['range_width_pct']: failure.reason for failure in report.failures}
    assert 'InvalidRebalance' in reasons[5]
    assert 'NumericOverflow' in reasons[10]
    assert all(failure.kind == FAILED for failure in report.failures)


def test_constraints_reject_points(base_config, make_path):
    space = ParameterSpace(
        strategies={'static': {}, 'threshold': {'threshold_pct': [1, 5]},
                    'periodic': {'interval': [1, 4]}},
        range_width_pct=[2, 10]
    )
    constraints = OptimizationConstraints.from_dict({
        'position': {'min_range_width_pct': 5},
        'rebalance': {'min_threshold_pct': 2, 'max_interval': 3},
    })
    optimizer = GridSearchOptimizer(base_config, constraints=constraints)
    report = optimizer.optimize(make_path([100, 101, 102, 101], volume=100), space)

    # Width 2 is rejected everywhere; threshold 1 and interval 4 are rejected at width 10
    assert len(report.rejected) == 5 + 2
    assert sorted(result.parameters['strategy_type'] for result in report.results) == [
        'periodic', 'static', 'threshold'
    ]
    assert all(result.parameters['range_width_pct'] == 10 for result in report.results)
    assert len(report.results) + len(report.failures) + report.cancelled == report.grid_size


def test_constraints_reject_results(base_config, make_path):
    path = make_path([100, 103, 97, 104, 96], volume=100)
    space = ParameterSpace(strategies={'periodic': {'interval': [1]}}, range_width_pct=[10])

    unbounded = GridSearchOptimizer(base_config).optimize(path, space)
    assert unbounded.best.summary_metrics.rebalance_count == 4

    limited = OptimizationConstraints(rebalance=RebalanceConstraints(max_rebalances=2))
    report = GridSearchOptimizer(base_config, constraints=limited).optimize(path, space)
    assert report.best is None
    assert '4 rebalances exceed 2' in report.rejected[0].reason

    in_range = OptimizationConstraints(position=PositionConstraints(min_time_in_range=Decimal(1)))
    report = GridSearchOptimizer(base_config, constraints=in_range).optimize(
        path, ParameterSpace(strategies={'static': {}}, range_width_pct=[2])
    )
    assert len(report.rejected) == 1


def test_constraint_validation(base_config):
    with pytest.raises(ValidationError):
        PositionConstraints(min_range_width_pct=10, max_range_width_pct=5)
    with pytest.raises(ValidationError):
        PositionConstraints(min_time_in_range=2)
    with pytest.raises(ValidationError):
        RebalanceConstraints(max_rebalances=-1)
    with pytest.raises(ValidationError):
        OptimizationConstraints.from_dict({'liquidity': {}})
    with pytest.raises(ValidationError):
        GridSearchOptimizer(base_config, constraints=OptimizationConstraints(
            position=PositionConstraints(max_capital=100)
        ))

    config = OptimizerConfig.from_dict({
        'objective': 'composite',
        'objective_params': {'il_weight': -1},
        'constraints': {'rebalance': {'max_rebalances': 3}},
    })
    assert config.objective_params.il_weight == -1
    assert config.constraints.rebalance.max_rebalances == 3


def test_parameterized_objectives(base_config, make_path):
    report = PositionSimulator(base_config).run(make_path([100, 104, 97, 101], volume=1000))
    summary = report.summary
    drawdown = summary.max_drawdown * summary.initial_capital
    assert drawdown > 0

    assert abs(score(Objective.RISK_ADJUSTED, report) - (summary.net_pnl - drawdown)) < Decimal('1e-20')
    doubled = ObjectiveParams(risk_weight=2)
    penalized = score(Objective.RISK_ADJUSTED, report, doubled)
    assert abs(penalized - (summary.net_pnl - 2 * drawdown)) < Decimal('1e-20')

    expected = (summary.net_pnl - Decimal('0.5') * abs(summary.impermanent_loss)
                - Decimal('0.3') * drawdown)
    assert abs(score(Objective.COMPOSITE, report) - expected) < Decimal('1e-20')
    fees_only = ObjectiveParams(pnl_weight=0, fees_weight=1, il_weight=0, drawdown_weight=0)
    assert score(Objective.COMPOSITE, report, fees_only) == summary.total_fees

    assert score(Objective.MIN_IL, report) + summary.max_il == 0
    guarded = ObjectiveParams(min_fees=summary.total_fees + 1)
    assert score(Objective.MIN_IL, report, guarded) == Decimal('-Infinity')

    assert Objective.parse('RiskAdjusted') is Objective.RISK_ADJUSTED
    with pytest.raises(ValidationError):
        ObjectiveParams.from_dict({'volatility_weight': 1})
