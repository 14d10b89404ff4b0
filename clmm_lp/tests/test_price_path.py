"""
Tests for historical and synthetic price paths
"""

from datetime import timedelta
from decimal import Decimal

import numpy as np
import pandas as pd
import pytest

from clmm_lp.config import PoolConfig
from clmm_lp.data.price_path import (
    ConstantVolume,
    HistoricalPricePath,
    LogNormalVolume,
    PathConfig,
    PricePathSample,
    SyntheticPricePath,
    build_price_path,
    validate_samples,
    volume_model_from_dict,
)
from clmm_lp.errors import ValidationError
from clmm_lp.strategy.tick_math import price_to_sqrt_price
from clmm_lp.tests.conftest import START


class FixedNormals:
    """Generator stand-in returning the same normal on every draw."""

    def __init__(self, value=0.0):
        self.value = value
        self.draws = 0

    def standard_normal(self):
        self.draws += 1
        return self.value


def test_historical_path_replays_samples(make_path):
    path = make_path([100, 101, '99.5'], volume=10)
    assert len(path) == 3
    assert [sample.price for sample in path] == [Decimal(100), Decimal(101), Decimal('99.5')]
    assert [sample.price for sample in path.samples(1)] == [Decimal(101), Decimal('99.5')]
    # Iterating twice gives the same samples
    assert list(path) == list(path)


def test_historical_path_rejects_bad_samples():
    with pytest.raises(ValidationError):
        HistoricalPricePath([
            PricePathSample(START, Decimal(100)),
            PricePathSample(START - timedelta(hours=1), Decimal(101)),
        ])
    with pytest.raises(ValidationError):
        HistoricalPricePath([PricePathSample(START, Decimal(-5))])
    with pytest.raises(ValidationError):
        HistoricalPricePath([PricePathSample(START, Decimal(5), Decimal(-1))])
    with pytest.raises(ValidationError):
        list(validate_samples([(START, 100)]))


def test_historical_path_from_dataframe():
    df = pd.DataFrame({
        'timestamp': pd.date_range('2024-01-01', periods=3, freq='h', tz='UTC'),
        'price': ['100', '100.5', '101'],
        'volume': ['1', '2', '3'],
    })
    path = HistoricalPricePath.from_dataframe(df)
    samples = list(path)
    assert samples[1].price == Decimal('100.5')
    assert samples[2].volume == 3

    with pytest.raises(ValidationError):
        HistoricalPricePath.from_dataframe(df.drop(columns=['price']))


def test_synthetic_path_sample_count():
    path = SyntheticPricePath(start_price=100, step_count=24, seed=1)
    samples = list(path)
    assert len(samples) == len(path) == 25
    assert samples[0].price == 100
    assert all(sample.price > 0 for sample in samples)
    assert samples[1].timestamp - samples[0].timestamp == timedelta(days=1)


def test_synthetic_path_is_deterministic():
    first = list(SyntheticPricePath(start_price=2000, volatility='0.7', step_count=50, seed=42))
    second = list(SyntheticPricePath(start_price=2000, volatility='0.7', step_count=50, seed=42))
    other = list(SyntheticPricePath(start_price=2000, volatility='0.7', step_count=50, seed=43))
    assert first == second
    assert first != other

    path = SyntheticPricePath(start_price=2000, step_count=10, seed=5)
    assert list(path) == list(path)
    assert list(path.samples(3)) == list(path)[3:]
    assert list(path.with_seed(42)) != list(path)


def test_synthetic_path_uses_injected_generator():
    seeds = []

    def factory(seed):
        seeds.append(seed)
        return FixedNormals(0.0)

    path = SyntheticPricePath(start_price=50, drift=0, volatility=0, step_count=5, seed=9,
                              rng_factory=factory)
    samples = list(path)
    assert seeds == [9]
    assert [sample.price for sample in samples] == [Decimal(50)] * 6


def test_synthetic_path_drift():
    """With no volatility the price grows at the drift rate."""
    path = SyntheticPricePath(start_price=100, drift='0.365', volatility=0,
                              step_count=1, rng_factory=lambda seed: FixedNormals(0.0))
    samples = list(path)
    expected = Decimal(100) * Decimal('0.001').exp()
    assert abs(samples[1].price - expected) < Decimal('1e-20')


def test_synthetic_path_validation():
    with pytest.raises(ValidationError):
        SyntheticPricePath(start_price=0)
    with pytest.raises(ValidationError):
        SyntheticPricePath(start_price=100, volatility=-1)
    with pytest.raises(ValidationError):
        SyntheticPricePath(start_price=100, step_duration=timedelta(0))


def test_volume_models():
    assert ConstantVolume(250).next_volume(None) == 250
    with pytest.raises(ValidationError):
        ConstantVolume(-1)

    model = LogNormalVolume(1000, sigma=0)
    assert model.next_volume(FixedNormals(1.5)) == 1000

    rng = np.random.default_rng(3)
    volumes = [LogNormalVolume(1000).next_volume(rng) for _ in range(200)]
    assert all(volume > 0 for volume in volumes)

    assert isinstance(volume_model_from_dict({'model': 'lognormal', 'mean': 10}), LogNormalVolume)
    assert isinstance(volume_model_from_dict(None), ConstantVolume)
    with pytest.raises(ValidationError):
        volume_model_from_dict({'model': 'poisson'})


def test_path_config():
    config = PathConfig.from_dict({'rng_seed': 3, 'step_hours': 1, 'step_count': 12,
                                   'volume': {'amount': 500}})
    path = build_price_path(config)
    samples = list(path)
    assert len(samples) == 13
    assert samples[1].timestamp - samples[0].timestamp == timedelta(hours=1)
    assert samples[0].volume == 500

    with pytest.raises(ValidationError):
        PathConfig.from_dict({'path_source': 'historical'})
    with pytest.raises(ValidationError):
        PathConfig.from_dict({'path_source': 'oracle'})


def test_historical_path_from_csv(tmp_path):
    csv_path = tmp_path / 'prices.csv'
    csv_path.write_text(
        "timestamp,price,volume\n"
        "2024-01-01T01:00:00Z,101,5\n"
        "2024-01-01T00:00:00Z,100,4\n"
    )
    path = build_price_path(PathConfig.from_dict({'path_source': 'historical', 'csv_path': str(csv_path)}))
    assert [sample.price for sample in path] == [Decimal(100), Decimal(101)]


def test_historical_sqrt_prices_use_pool_decimals(tmp_path):
    """ETH/USDC sqrtPriceX96 rows only read as ~2000 with the pool's 18/6 decimals."""
    sqrt_price = price_to_sqrt_price(Decimal(2000), 18, 6)
    csv_path = tmp_path / 'pool.csv'
    csv_path.write_text(
        "timestamp,sqrtPriceX96,volume\n"
        f"2024-01-01T00:00:00Z,{sqrt_price},10\n"
        f"2024-01-01T01:00:00Z,{sqrt_price},10\n"
    )
    config = PathConfig.from_dict({'path_source': 'historical', 'csv_path': str(csv_path)})

    prices = [sample.price for sample in build_price_path(config, PoolConfig(decimals_a=18, decimals_b=6))]
    assert all(abs(price - 2000) < Decimal('0.001') for price in prices)

    raw = [sample.price for sample in build_price_path(config)]
    assert raw[0] < Decimal('1e-6')
