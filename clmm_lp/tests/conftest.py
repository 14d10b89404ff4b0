"""
Shared fixtures for the clmm_lp tests
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from clmm_lp.config import PoolConfig
from clmm_lp.data.price_path import HistoricalPricePath, PricePathSample

START = datetime(2024, 5, 1, tzinfo=timezone.utc)


def build_path(prices, volume=0, step=timedelta(hours=1)):
    """Historical path with one sample per price, evenly spaced."""
    return HistoricalPricePath([
        PricePathSample(START + i * step, Decimal(str(price)), Decimal(str(volume)))
        for i, price in enumerate(prices)
    ])


@pytest.fixture
def make_path():
    return build_path


@pytest.fixture
def pool():
    """0.3% pool with 18-decimal tokens on both sides."""
    return PoolConfig(tick_spacing=60, fee_tier=3000, decimals_a=18, decimals_b=18)
