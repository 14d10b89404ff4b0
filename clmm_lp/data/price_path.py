"""
Price paths: replayed history and seeded geometric Brownian motion
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, localcontext
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Tuple

import numpy as np
import pandas as pd

from ..config import PoolConfig
from ..errors import ValidationError
from ..strategy.tick_math import DECIMAL_CONTEXT, to_decimal
from .data_loader import load_price_data

logger = logging.getLogger(__name__)

DEFAULT_START_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)
SECONDS_PER_YEAR = Decimal(365 * 24 * 3600)

RngFactory = Callable[[int], Any]


@dataclass(frozen=True)
class PricePathSample:
    """One observation of the pool: price of token A in token B and step volume."""
    timestamp: datetime
    price: Decimal
    volume: Decimal = Decimal(0)

    def __post_init__(self):
        object.__setattr__(self, 'price', to_decimal(self.price))
        object.__setattr__(self, 'volume', to_decimal(self.volume))


class SampleValidator:
    """Checks samples one at a time: positive price, non-negative volume and
    strictly increasing timestamps."""

    def __init__(self):
        self.previous: Optional[datetime] = None
        self.count = 0

    def check(self, sample: PricePathSample) -> PricePathSample:
        if not isinstance(sample, PricePathSample):
            raise ValidationError(f"Expected PricePathSample, got {type(sample).__name__}")
        if sample.price <= 0:
            raise ValidationError(f"Sample {self.count} has non-positive price {sample.price}")
        if sample.volume < 0:
            raise ValidationError(f"Sample {self.count} has negative volume {sample.volume}")
        if self.previous is not None and sample.timestamp <= self.previous:
            raise ValidationError(
                f"Sample {self.count} timestamp {sample.timestamp} is not after {self.previous}"
            )
        self.previous = sample.timestamp
        self.count += 1
        return sample


def validate_samples(samples: Iterable[PricePathSample]) -> Iterator[PricePathSample]:
    """Yield samples unchanged, raising ValidationError at the first bad one."""
    validator = SampleValidator()
    for sample in samples:
        yield validator.check(sample)


class HistoricalPricePath:
    """Replays supplied samples unmodified."""

    def __init__(self, samples: Iterable[PricePathSample]):
        self._samples: Tuple[PricePathSample, ...] = tuple(validate_samples(samples))

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> 'HistoricalPricePath':
        """Build a path from a DataFrame with ``timestamp``, ``price`` and optional ``volume``."""
        missing = {'timestamp', 'price'} - set(df.columns)
        if missing:
            raise ValidationError(f"Missing required columns: {', '.join(sorted(missing))}")

        volumes = df['volume'] if 'volume' in df.columns else [0] * len(df)
        samples = [
            PricePathSample(pd.Timestamp(timestamp).to_pydatetime(), price, volume)
            for timestamp, price, volume in zip(df['timestamp'], df['price'], volumes)
        ]
        return cls(samples)

    def samples(self, start: int = 0) -> Iterator[PricePathSample]:
        return iter(self._samples[start:])

    def __iter__(self) -> Iterator[PricePathSample]:
        return self.samples()

    def __len__(self) -> int:
        return len(self._samples)


class ConstantVolume:
    """Same volume at every step."""

    def __init__(self, amount: Any = 0):
        self.amount = to_decimal(amount)
        if self.amount < 0:
            raise ValidationError(f"Volume must be non-negative, got {self.amount}")

    def next_volume(self, rng: Any) -> Decimal:
        return self.amount


class LogNormalVolume:
    """Log-normally distributed volume with the given mean.

    Draws one standard normal from the path's generator per sample.
    """

    def __init__(self, mean: Any, sigma: Any = Decimal('0.5')):
        self.mean = to_decimal(mean)
        self.sigma = to_decimal(sigma)
        if self.mean < 0 or self.sigma < 0:
            raise ValidationError("Volume mean and sigma must be non-negative")

    def next_volume(self, rng: Any) -> Decimal:
        z = to_decimal(float(rng.standard_normal()))
        with localcontext(DECIMAL_CONTEXT):
            return self.mean * (self.sigma * z - self.sigma * self.sigma / 2).exp()


def volume_model_from_dict(data: Optional[Dict[str, Any]]):
    data = dict(data or {})
    model = str(data.get('model', 'constant')).lower()
    if model == 'constant':
        return ConstantVolume(data.get('amount', 0))
    if model == 'lognormal':
        return LogNormalVolume(data.get('mean', 0), data.get('sigma', '0.5'))
    raise ValidationError(f"Unknown volume model: {model}")


class SyntheticPricePath:
    """
    Geometric Brownian motion price path.

    Each step multiplies the price by ``exp((mu - sigma^2 / 2) dt + sigma sqrt(dt) z)``
    with annualized ``mu`` and ``sigma`` and ``dt`` the step duration in years.
    Normals come from a generator created by ``rng_factory(seed)`` at the start
    of every iteration, so a path always replays the same samples.
    """

    def __init__(self,
                 start_price: Any,
                 drift: Any = 0,
                 volatility: Any = Decimal('0.5'),
                 step_duration: timedelta = timedelta(days=1),
                 step_count: int = 30,
                 seed: int = 0,
                 volume_model=None,
                 start_time: datetime = DEFAULT_START_TIME,
                 rng_factory: RngFactory = np.random.default_rng):
        self.start_price = to_decimal(start_price)
        self.drift = to_decimal(drift)
        self.volatility = to_decimal(volatility)
        if self.start_price <= 0:
            raise ValidationError(f"Start price must be positive, got {self.start_price}")
        if self.volatility < 0:
            raise ValidationError(f"Volatility must be non-negative, got {self.volatility}")
        if step_duration <= timedelta(0):
            raise ValidationError("Step duration must be positive")
        if step_count < 0:
            raise ValidationError(f"Step count must be non-negative, got {step_count}")

        self.step_duration = step_duration
        self.step_count = step_count
        self.seed = seed
        self.volume_model = volume_model or ConstantVolume(0)
        self.start_time = start_time
        self.rng_factory = rng_factory

    def _generate(self) -> Iterator[PricePathSample]:
        rng = self.rng_factory(self.seed)
        with localcontext(DECIMAL_CONTEXT):
            dt = Decimal(self.step_duration.total_seconds()) / SECONDS_PER_YEAR
            drift_term = (self.drift - self.volatility * self.volatility / 2) * dt
            vol_term = self.volatility * dt.sqrt()

        price = self.start_price
        timestamp = self.start_time
        yield PricePathSample(timestamp, price, self.volume_model.next_volume(rng))
        for _ in range(self.step_count):
            z = to_decimal(float(rng.standard_normal()))
            with localcontext(DECIMAL_CONTEXT):
                price = price * (drift_term + vol_term * z).exp()
            timestamp = timestamp + self.step_duration
            yield PricePathSample(timestamp, price, self.volume_model.next_volume(rng))

    def samples(self, start: int = 0) -> Iterator[PricePathSample]:
        """Iterate from the seed, skipping the first ``start`` samples."""
        iterator = self._generate()
        for _ in range(start):
            next(iterator, None)
        return iterator

    def __iter__(self) -> Iterator[PricePathSample]:
        return self.samples()

    def __len__(self) -> int:
        return self.step_count + 1

    def with_seed(self, seed: int) -> 'SyntheticPricePath':
        return SyntheticPricePath(
            self.start_price, self.drift, self.volatility, self.step_duration,
            self.step_count, seed, self.volume_model, self.start_time, self.rng_factory
        )


@dataclass(frozen=True)
class PathConfig:
    """Price path settings from the ``path`` config section.

    ``path_source`` is ``historical`` (``csv_path`` required) or ``synthetic``.
    """
    path_source: str = 'synthetic'
    rng_seed: int = 0
    start_price: Decimal = Decimal(100)
    drift: Decimal = Decimal(0)
    volatility: Decimal = Decimal('0.5')
    step_hours: Decimal = Decimal(24)
    step_count: int = 30
    volume: Dict[str, Any] = field(default_factory=dict)
    csv_path: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'PathConfig':
        data = dict(data or {})
        source = str(data.get('path_source', 'synthetic')).lower()
        if source not in ('historical', 'synthetic'):
            raise ValidationError(f"Unknown path source: {source}")
        if source == 'historical' and not data.get('csv_path'):
            raise ValidationError("Historical path source requires csv_path")
        return cls(
            path_source=source,
            rng_seed=int(data.get('rng_seed', 0)),
            start_price=to_decimal(data.get('start_price', 100)),
            drift=to_decimal(data.get('drift', 0)),
            volatility=to_decimal(data.get('volatility', '0.5')),
            step_hours=to_decimal(data.get('step_hours', 24)),
            step_count=int(data.get('step_count', 30)),
            volume=dict(data.get('volume') or {}),
            csv_path=data.get('csv_path')
        )


def build_price_path(config: PathConfig, pool: Optional[PoolConfig] = None):
    """Create the path described by a ``PathConfig``.

    Historical ``sqrtPriceX96`` data is converted with the token decimals of
    ``pool``. Without a pool both tokens are taken to have 0 decimals.
    """
    if config.path_source == 'historical':
        decimals_a, decimals_b = (pool.decimals_a, pool.decimals_b) if pool else (0, 0)
        return HistoricalPricePath.from_dataframe(
            load_price_data(config.csv_path, decimals_a=decimals_a, decimals_b=decimals_b)
        )

    logger.info(
        f"Synthetic GBM path: start={config.start_price} drift={config.drift} "
        f"vol={config.volatility} steps={config.step_count} seed={config.rng_seed}"
    )
    return SyntheticPricePath(
        start_price=config.start_price,
        drift=config.drift,
        volatility=config.volatility,
        step_duration=timedelta(hours=float(config.step_hours)),
        step_count=config.step_count,
        seed=config.rng_seed,
        volume_model=volume_model_from_dict(config.volume)
    )
