"""
Configuration loading and pool parameters
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml

from .errors import ValidationError
from .strategy.tick_math import TICK_SPACINGS, decimal_precision, to_decimal

logger = logging.getLogger(__name__)

CONFIG_SECTIONS = ('pool', 'simulation', 'path', 'optimizer', 'logging')


def load_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """Load a YAML configuration file.

    Args:
        config_path: Path to the YAML file

    Returns:
        Configuration dictionary with every known section present
    """
    path = Path(config_path)
    if not path.exists():
        raise ValidationError(f"Config file not found: {path}")

    with open(path, 'r') as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValidationError(f"Config file {path} must contain a mapping")

    unknown = set(config) - set(CONFIG_SECTIONS)
    if unknown:
        logger.warning(f"Ignoring unknown config sections: {', '.join(sorted(unknown))}")

    for section in CONFIG_SECTIONS:
        config.setdefault(section, {})
    logger.info(f"Loaded configuration from {path}")
    return config


@decimal_precision
def expand_values(spec: Any, grid_resolution: int = 5) -> List[Any]:
    """Expand a parameter specification into a list of candidate values.

    A list is returned unchanged (numbers converted to Decimal), a scalar becomes a
    one-element list and a ``{min, max}`` mapping becomes ``grid_resolution``
    evenly spaced values including both ends.
    """
    if isinstance(spec, dict):
        if 'values' in spec:
            return expand_values(spec['values'], grid_resolution)
        if 'min' not in spec or 'max' not in spec:
            raise ValidationError(f"Range specification needs 'min' and 'max': {spec}")
        low, high = to_decimal(spec['min']), to_decimal(spec['max'])
        steps = int(spec.get('steps', grid_resolution))
        if steps < 1:
            raise ValidationError(f"Grid resolution must be at least 1, got {steps}")
        if low > high:
            raise ValidationError(f"Range minimum {low} exceeds maximum {high}")
        if steps == 1 or low == high:
            return [low]
        span = high - low
        values = [(low + span * i / (steps - 1)).normalize() for i in range(steps - 1)]
        return values + [high.normalize()]
    if isinstance(spec, (list, tuple)):
        return [_coerce(value) for value in spec]
    return [_coerce(spec)]


def _coerce(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        return to_decimal(value)
    return value


def as_decimal(value: Any, name: str) -> Decimal:
    """Convert a config value to Decimal, naming the field on failure."""
    try:
        return to_decimal(value)
    except ValidationError as e:
        raise ValidationError(f"Invalid value for {name}: {value!r}") from e


@dataclass(frozen=True)
class PoolConfig:
    """Pool parameters supplied by a protocol adapter.

    Attributes:
        tick_spacing: Spacing between usable ticks
        fee_tier: Fee tier in hundredths of a bip (3000 = 0.30%)
        decimals_a: Decimals of token A (base)
        decimals_b: Decimals of token B (quote)
        pool_liquidity: Active pool liquidity in raw liquidity units, used for the
            position's fee share. ``None`` treats the position as the only liquidity.
    """
    tick_spacing: int = 60
    fee_tier: int = 3000
    decimals_a: int = 18
    decimals_b: int = 18
    pool_liquidity: Optional[int] = None

    def __post_init__(self):
        if self.tick_spacing <= 0:
            raise ValidationError(f"Tick spacing must be positive, got {self.tick_spacing}")
        if self.fee_tier < 0 or self.fee_tier >= 1_000_000:
            raise ValidationError(f"Fee tier must be within [0, 1000000), got {self.fee_tier}")
        for name in ('decimals_a', 'decimals_b'):
            if not 0 <= getattr(self, name) <= 36:
                raise ValidationError(f"{name} must be within [0, 36]")
        if self.pool_liquidity is not None and self.pool_liquidity < 0:
            raise ValidationError("Pool liquidity must be non-negative")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'PoolConfig':
        """Create pool parameters from a config section."""
        data = dict(data or {})
        fee_tier = int(data.get('fee_tier', 3000))
        pool_liquidity = data.get('pool_liquidity')
        return cls(
            tick_spacing=int(data.get('tick_spacing', TICK_SPACINGS.get(fee_tier, 60))),
            fee_tier=fee_tier,
            decimals_a=int(data.get('decimals_a', 18)),
            decimals_b=int(data.get('decimals_b', 18)),
            pool_liquidity=int(pool_liquidity) if pool_liquidity is not None else None
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tick_spacing': self.tick_spacing,
            'fee_tier': self.fee_tier,
            'decimals_a': self.decimals_a,
            'decimals_b': self.decimals_b,
            'pool_liquidity': self.pool_liquidity
        }


def pairs(values: Optional[Iterable[Any]]) -> Optional[tuple]:
    """Parse an optional two-element bound such as ``initial_price_bounds``."""
    if values is None:
        return None
    values = list(values)
    if len(values) != 2:
        raise ValidationError(f"Expected a [lower, upper] pair, got {values}")
    return to_decimal(values[0]), to_decimal(values[1])
