#!/usr/bin/env python3
"""
Main entry point for CLMM LP simulation, optimization and Monte Carlo evaluation
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import PoolConfig, load_config
from .data.price_path import PathConfig, SyntheticPricePath, build_price_path
from .errors import ClmmError
from .optimization.evaluator import MonteCarloEvaluator
from .optimization.optimizer import GridSearchOptimizer, OptimizerConfig, ParameterSpace
from .strategy.strategy_simulator import PositionSimulator, SimulationConfig
from .utils.logging_utils import plot_price_ranges, plot_simulation_results, setup_logging

logger = logging.getLogger(__name__)


def run_simulation(config: Dict[str, Any], output_dir: Path) -> Dict[str, Any]:
    """Simulate the configured strategy over the configured path and export the report."""
    pool = PoolConfig.from_dict(config['pool'])
    sim_config = SimulationConfig.from_dict(config['simulation'], pool=pool)
    path = build_price_path(PathConfig.from_dict(config['path']), pool)

    report = PositionSimulator(sim_config).run(path)

    output_dir.mkdir(parents=True, exist_ok=True)
    report.to_dataframe().to_csv(output_dir / 'snapshots.csv', index=False)
    with open(output_dir / 'report.json', 'w') as f:
        json.dump(report.to_dict(), f, indent=2)

    if config['logging'].get('plots', True):
        plot_simulation_results(report, output_dir / 'plots')
        plot_price_ranges(report, pool, output_dir / 'plots')

    summary = report.summary.to_dict()
    logger.info("=" * 50)
    logger.info("Simulation Summary")
    logger.info("=" * 50)
    for name, value in summary.items():
        logger.info(f"{name}: {value}")
    return summary


def run_optimization(config: Dict[str, Any], output_dir: Path) -> List[Dict[str, Any]]:
    """Grid-search the configured parameter space and export the ranking."""
    pool = PoolConfig.from_dict(config['pool'])
    sim_config = SimulationConfig.from_dict(config['simulation'], pool=pool)
    opt_config = OptimizerConfig.from_dict(config['optimizer'])
    space = ParameterSpace.from_dict(config['optimizer'].get('space'), opt_config.grid_resolution)
    path = build_price_path(PathConfig.from_dict(config['path']), pool)

    optimizer = GridSearchOptimizer(
        sim_config,
        objective=opt_config.objective,
        max_workers=opt_config.max_workers,
        show_progress=opt_config.show_progress,
        objective_params=opt_config.objective_params,
        constraints=opt_config.constraints
    )
    report = optimizer.optimize(path, space)

    output_dir.mkdir(parents=True, exist_ok=True)
    ranking = report.to_dataframe()
    ranking.to_csv(output_dir / 'optimization_results.csv', index=False)
    if report.failures:
        report.failures_dataframe().to_csv(output_dir / 'optimization_failures.csv', index=False)

    logger.info("=" * 50)
    logger.info(f"Top results ({report.objective.value})")
    logger.info("=" * 50)
    for rank, result in enumerate(report.results[:5], start=1):
        logger.info(f"{rank}. score={result.objective_score} {result.parameters}")
    return ranking.head(5).to_dict('records')


def run_monte_carlo(config: Dict[str, Any], output_dir: Path) -> Dict[str, Any]:
    """Evaluate the configured strategy over many seeded synthetic paths."""
    pool = PoolConfig.from_dict(config['pool'])
    sim_config = SimulationConfig.from_dict(config['simulation'], pool=pool)
    path_config = PathConfig.from_dict(config['path'])
    path = build_price_path(path_config, pool)
    if not isinstance(path, SyntheticPricePath):
        raise ClmmError("Monte Carlo evaluation requires a synthetic path source")

    evaluator = MonteCarloEvaluator(
        sim_config,
        path,
        iterations=int(config['path'].get('iterations', 100)),
        base_seed=path_config.rng_seed,
        output_dir=str(output_dir) if config['logging'].get('plots', True) else None,
        show_progress=True
    )
    result = evaluator.evaluate().to_dict()
    output_dir.mkdir(parents=True, exist_ok=True)
    with open(output_dir / 'monte_carlo.json', 'w') as f:
        json.dump(result, f, indent=2)
    return result


MODES = {
    'simulate': run_simulation,
    'optimize': run_optimization,
    'montecarlo': run_monte_carlo,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='CLMM LP strategy simulation and optimization')
    parser.add_argument('--config', type=str, required=True, help='Path to config file')
    parser.add_argument('--mode', type=str, required=True, choices=sorted(MODES),
                        help='Mode to run: simulate one strategy, optimize a grid or run Monte Carlo')
    parser.add_argument('--output-dir', type=str, default='outputs', help='Directory for reports and plots')
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ClmmError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(f"Could not load config: {e}")
        return 1

    log_config = config['logging']
    setup_logging(
        log_dir=log_config.get('dir', 'logs'),
        level=getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO)
    )

    try:
        MODES[args.mode](config, Path(args.output_dir))
    except (ClmmError, FileNotFoundError) as e:
        logger.error(f"{args.mode} failed: {type(e).__name__}: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
