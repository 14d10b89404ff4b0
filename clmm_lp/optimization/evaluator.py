"""
Monte Carlo evaluation of one configuration over many synthetic paths
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from tqdm import tqdm

from ..data.price_path import SyntheticPricePath
from ..errors import ValidationError
from ..strategy import metrics
from ..strategy.strategy_simulator import PositionSimulator, SimulationConfig, SimulationReport
from ..strategy.tick_math import decimal_precision
from .objective import sharpe_ratio

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregateResult:
    """Distribution of outcomes across Monte Carlo runs.

    ``var_95_net_pnl`` is the 5th percentile of net PnL.
    """
    iterations: int
    mean_net_pnl: Decimal
    median_net_pnl: Decimal
    var_95_net_pnl: Decimal
    mean_fees: Decimal
    mean_il: Decimal
    mean_rebalances: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'iterations': self.iterations,
            'mean_net_pnl': str(self.mean_net_pnl),
            'median_net_pnl': str(self.median_net_pnl),
            'var_95_net_pnl': str(self.var_95_net_pnl),
            'mean_fees': str(self.mean_fees),
            'mean_il': str(self.mean_il),
            'mean_rebalances': str(self.mean_rebalances)
        }


def run_metrics(report: SimulationReport) -> Dict[str, Any]:
    """Per-run figures collected by the evaluator."""
    summary = report.summary
    sharpe = sharpe_ratio(metrics.step_returns(report.equity_curve()))
    return {
        'net_pnl': summary.net_pnl,
        'fees': summary.total_fees,
        'impermanent_loss': summary.impermanent_loss,
        'max_il': summary.max_il,
        'rebalances': summary.rebalance_count,
        'time_in_range': summary.time_in_range,
        'max_drawdown': summary.max_drawdown,
        'sharpe': sharpe
    }


@decimal_precision
def aggregate(runs: List[Dict[str, Any]]) -> AggregateResult:
    """Mean, median and 5% VaR of net PnL plus mean fees, IL and rebalances."""
    if not runs:
        raise ValidationError("Cannot aggregate zero runs")
    count = Decimal(len(runs))
    pnls = sorted(run['net_pnl'] for run in runs)
    var_index = min(int(len(pnls) * 0.05), len(pnls) - 1)
    return AggregateResult(
        iterations=len(runs),
        mean_net_pnl=sum(pnls, Decimal(0)) / count,
        median_net_pnl=pnls[len(pnls) // 2],
        var_95_net_pnl=pnls[var_index],
        mean_fees=sum((run['fees'] for run in runs), Decimal(0)) / count,
        mean_il=sum((run['impermanent_loss'] for run in runs), Decimal(0)) / count,
        mean_rebalances=Decimal(sum(int(run['rebalances']) for run in runs)) / count
    )


class MonteCarloEvaluator:
    """Runs one simulation config over ``iterations`` synthetic paths.

    Path seeds are drawn from a generator seeded with ``base_seed`` so the
    whole evaluation is reproducible.
    """

    def __init__(self,
                 config: SimulationConfig,
                 path: SyntheticPricePath,
                 iterations: int = 100,
                 base_seed: int = 0,
                 output_dir: Optional[str] = None,
                 show_progress: bool = False):
        """Initialize evaluator.

        Args:
            config: Simulation configuration to evaluate
            path: Template path; only its seed changes between runs
            iterations: Number of paths to simulate
            base_seed: Seed of the generator that draws the path seeds
            output_dir: Where plots and the metrics summary go; nothing is
                written when ``None``
            show_progress: Display a tqdm progress bar
        """
        if iterations < 1:
            raise ValidationError(f"iterations must be at least 1, got {iterations}")
        self.config = config
        self.path = path
        self.iterations = iterations
        self.base_seed = base_seed
        self.output_dir = Path(output_dir) if output_dir else None
        self.show_progress = show_progress

    def seeds(self) -> List[int]:
        rng = np.random.default_rng(self.base_seed)
        return [int(s) for s in rng.integers(0, 2**31 - 1, size=self.iterations, dtype=np.int64)]

    def run_rows(self) -> List[Dict[str, Any]]:
        """Simulate every path, one metrics row per run."""
        rows = []
        for seed in tqdm(self.seeds(), desc="Monte Carlo", unit="run", disable=not self.show_progress):
            report = PositionSimulator(self.config).run(self.path.with_seed(seed))
            row = run_metrics(report)
            row['seed'] = seed
            rows.append(row)
        return rows

    def run(self) -> pd.DataFrame:
        """Simulate every path.

        Returns:
            DataFrame with one row per run (Decimal values kept as objects)
        """
        return pd.DataFrame(self.run_rows())

    def evaluate(self) -> AggregateResult:
        """Run all paths and aggregate the outcomes."""
        rows = self.run_rows()
        result = aggregate(rows)
        logger.info(
            f"Monte Carlo over {result.iterations} paths: mean net PnL {result.mean_net_pnl}, "
            f"median {result.median_net_pnl}, VaR95 {result.var_95_net_pnl}"
        )
        if self.output_dir is not None:
            self._plot_evaluation_results(pd.DataFrame(rows))
        return result

    def _plot_evaluation_results(self, results: pd.DataFrame) -> None:
        """Plot the net PnL distribution and save a metrics summary."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        numeric = results.drop(columns=['seed']).apply(
            lambda column: column.map(float)
        )

        plt.figure(figsize=(10, 6))
        sns.histplot(data=numeric, x='net_pnl', bins=30)
        plt.title('Distribution of Net PnL')
        plt.xlabel('Net PnL')
        plt.ylabel('Count')
        plt.savefig(self.output_dir / 'net_pnl_distribution.png')
        plt.close()

        plt.figure(figsize=(10, 6))
        sns.scatterplot(data=numeric, x='impermanent_loss', y='fees')
        plt.title('Fees vs Impermanent Loss')
        plt.xlabel('Impermanent Loss')
        plt.ylabel('Fees')
        plt.savefig(self.output_dir / 'fees_vs_il.png')
        plt.close()

        numeric.describe().to_csv(self.output_dir / 'metrics_summary.csv')
