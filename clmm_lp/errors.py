"""
Error taxonomy for the CLMM simulation core
"""

from typing import Any, Dict, Optional


class ClmmError(Exception):
    """Base class for every error raised by the core."""


class ValidationError(ClmmError, ValueError):
    """Malformed or out-of-domain input (bad samples, bad ranges, bad config)."""


class OutOfRange(ValidationError):
    """Tick, sqrt price or price outside the protocol's representable bounds."""


class InvalidRange(ValidationError):
    """A position range that is empty or inverted."""


class NumericOverflow(ClmmError, ArithmeticError):
    """An intermediate value does not fit the protocol's integer width."""

    def __init__(self, message: str, inputs: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.inputs = dict(inputs or {})

    def __str__(self) -> str:
        base = super().__str__()
        if not self.inputs:
            return base
        details = ', '.join(f'{k}={v}' for k, v in self.inputs.items())
        return f'{base} ({details})'


class InsufficientData(ClmmError):
    """The price path is too short to simulate."""


class InvalidRebalance(ClmmError):
    """A strategy produced a range that does not contain its trigger price."""

    def __init__(self, message: str, price: Any = None, new_range: Any = None):
        super().__init__(message)
        self.price = price
        self.new_range = new_range
