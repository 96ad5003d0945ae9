import numpy as np
from typing import Union, Sequence
import logging


class NetworkError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(NetworkError, ValueError):
    """A network could not be built from the given configuration."""


class DimensionMismatch(NetworkError, ValueError):
    """An input, output, or batch does not have the expected shape."""


class NumericInvariantViolation(NetworkError, ArithmeticError):
    """A NaN or infinity appeared in a forward, backward, or update step."""


class UnsupportedOptimizer(NetworkError, ValueError):
    """An optimizer tag that is not one of the four supported variants."""


def check_finite(values: Union[float, Sequence[float], np.ndarray], context: str) -> np.ndarray:
    """Validates that every element of `values` is finite.

    Args:
        values: Scalar or array-like to check.
        context: Short description of where the values came from, used in the error message.

    Returns:
        The values as a float numpy array.

    Raises:
        NumericInvariantViolation: If any element is NaN or infinite.
    """
    array = np.asarray(values, dtype=float)
    if not np.all(np.isfinite(array)):
        bad = int(np.size(array) - np.count_nonzero(np.isfinite(array)))
        logging.error(f"{context}: {bad} non-finite value(s) detected")
        raise NumericInvariantViolation(f"{context}: {bad} non-finite value(s) in {array}")
    return array
