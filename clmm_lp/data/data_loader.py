"""
Loader for supplied price series (CSV files with timestamp, price and volume)
"""

import logging
import os
from decimal import Decimal
from typing import Union

import pandas as pd

from ..errors import ValidationError
from ..strategy.tick_math import sqrt_price_to_price, to_decimal

logger = logging.getLogger(__name__)

TIMESTAMP_COLUMNS = ('timestamp', 'block_timestamp')
SQRT_PRICE_COLUMNS = ('sqrtPriceX96', 'sqrt_price_x96')


def _first_present(df: pd.DataFrame, candidates) -> Union[str, None]:
    for column in candidates:
        if column in df.columns:
            return column
    return None


def _to_price(value) -> Decimal:
    return to_decimal(str(value).strip())


def process_price_data(df: pd.DataFrame, decimals_a: int = 0, decimals_b: int = 0) -> pd.DataFrame:
    """Normalize a raw price frame to ``timestamp``, ``price`` and ``volume`` columns.

    Prices come from a ``price`` column or, failing that, from a Q64.96
    ``sqrtPriceX96`` column converted exactly with the token decimals. Prices
    and volumes are held as Decimal objects.

    Args:
        df: Raw DataFrame
        decimals_a: Decimals of token A, used for sqrt price conversion
        decimals_b: Decimals of token B, used for sqrt price conversion

    Returns:
        DataFrame sorted by timestamp
    """
    timestamp_column = _first_present(df, TIMESTAMP_COLUMNS)
    if timestamp_column is None:
        raise ValidationError(f"Missing timestamp column (one of {', '.join(TIMESTAMP_COLUMNS)})")

    processed = pd.DataFrame({'timestamp': pd.to_datetime(df[timestamp_column], utc=True)})

    if 'price' in df.columns:
        processed['price'] = [_to_price(value) for value in df['price']]
    else:
        sqrt_column = _first_present(df, SQRT_PRICE_COLUMNS)
        if sqrt_column is None:
            raise ValidationError("Missing price column (price or sqrtPriceX96)")
        processed['price'] = [
            sqrt_price_to_price(int(str(value).strip()), decimals_a, decimals_b)
            for value in df[sqrt_column]
        ]

    if 'volume' in df.columns:
        processed['volume'] = [to_decimal(str(value).strip()) for value in df['volume'].fillna(0)]
    else:
        processed['volume'] = [Decimal(0)] * len(processed)

    if any(price <= 0 for price in processed['price']):
        raise ValidationError("Found non-positive prices")

    processed = processed.sort_values('timestamp', kind='mergesort').reset_index(drop=True)
    return processed


def load_price_data(path: str, decimals_a: int = 0, decimals_b: int = 0) -> pd.DataFrame:
    """Load a price series CSV.

    Numeric columns are read as strings so prices reach Decimal without a
    round trip through float.

    Args:
        path: CSV file path
        decimals_a: Decimals of token A
        decimals_b: Decimals of token B

    Returns:
        DataFrame with ``timestamp``, ``price`` and ``volume`` columns
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Price data file not found: {path}")

    df = pd.read_csv(path, dtype=str)
    if df.empty:
        raise ValidationError(f"Price data file {path} is empty")

    processed = process_price_data(df, decimals_a, decimals_b)
    logger.info(f"Loaded {len(processed):,} price samples from {path}")
    return processed
