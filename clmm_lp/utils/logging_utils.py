"""
Logging and plotting utilities for simulations
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(log_dir: str = 'logs', level: int = logging.INFO) -> None:
    """Setup logging configuration."""
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    # Configure file handler
    file_handler = logging.FileHandler(log_path / 'clmm_lp.log')
    file_handler.setLevel(level)

    # Configure console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT)
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(file_handler)
    root.addHandler(console_handler)


def log_simulation_step(step_data: Dict[str, Any], log_dir: str = 'logs') -> None:
    """Append one snapshot to ``simulation_steps.jsonl``."""
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    with open(log_path / 'simulation_steps.jsonl', 'a') as f:
        f.write(json.dumps(step_data) + '\n')


def load_simulation_steps(log_dir: str = 'logs') -> pd.DataFrame:
    """Read snapshots written by ``log_simulation_step`` back into a DataFrame."""
    steps_data = []
    with open(Path(log_dir) / 'simulation_steps.jsonl', 'r') as f:
        for line in f:
            steps_data.append(json.loads(line))
    return pd.DataFrame(steps_data)


def plot_simulation_results(report, output_dir: str = 'outputs/plots') -> List[Path]:
    """Generate value, fee, IL and PnL plots from a simulation report.

    Returns:
        Paths of the written images
    """
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)
    df = report.to_dataframe()
    samples = df[df['event'].isin(['open', 'step'])]

    written = []
    for column, title, ylabel, filename in (
        ('position_value', 'Position Value Over Time', 'Value', 'position_value.png'),
        ('fees_earned_cumulative', 'Cumulative Fees Earned', 'Fees', 'fees_earned.png'),
        ('impermanent_loss', 'Impermanent Loss', 'IL', 'impermanent_loss.png'),
        ('net_pnl', 'Net PnL', 'PnL', 'net_pnl.png'),
    ):
        plt.figure(figsize=(12, 6))
        sns.lineplot(data=samples, x='timestamp', y=column)
        plt.title(title)
        plt.xlabel('Time')
        plt.ylabel(ylabel)
        plt.savefig(output_path / filename)
        plt.close()
        written.append(output_path / filename)

    # Time in range
    plt.figure(figsize=(12, 6))
    plt.step(samples['timestamp'], samples['in_range'].astype(int), where='post')
    plt.title('In Range')
    plt.xlabel('Time')
    plt.ylabel('In Range')
    plt.savefig(output_path / 'in_range.png')
    plt.close()
    written.append(output_path / 'in_range.png')

    return written


def plot_price_ranges(report, pool, output_dir: str = 'outputs/plots') -> Path:
    """Plot the price path with the range held over each period."""
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)
    df = report.to_dataframe()
    samples = df[df['event'].isin(['open', 'step'])]

    plt.figure(figsize=(15, 8))
    plt.plot(samples['timestamp'], samples['price'], color='black', label='Price')

    for i, segment in enumerate(report.range_segments(pool)):
        plt.fill_between(
            [segment['start'], segment['end']],
            float(segment['lower_price']),
            float(segment['upper_price']),
            alpha=0.3,
            color='tab:blue',
            label='Range' if i == 0 else None
        )

    for event in report.rebalances:
        plt.axvline(x=event.timestamp, color='r', linestyle='--', alpha=0.5)

    plt.title('Position Ranges and Price')
    plt.xlabel('Time')
    plt.ylabel('Price')
    plt.legend(bbox_to_anchor=(1.05, 1), loc='upper left')
    plt.tight_layout()
    plt.savefig(output_path / 'position_ranges.png')
    plt.close()
    return output_path / 'position_ranges.png'
