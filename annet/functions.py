"""
functions.py
~~~~~~~~~~~~

Transfer functions and SOM neighborhood kernels.

Both families are closed enums. A name is resolved to its function table
entry once, when the network is configured; the numeric code only ever
holds the resolved callables. Names are matched exactly (case-sensitive)
and unknown names are rejected.
"""

from enum import Enum
from typing import Callable, NamedTuple, Union

import numpy as np

from .errors import ConfigurationError


class TransferFunction(Enum):
    """Activation functions available to a network."""

    SIGMOID = 'sigmoid'
    TANH = 'tanh'
    LINEAR = 'linear'


class NeighborhoodFunction(Enum):
    """Neighborhood kernels available to a SOM."""

    BUBBLE = 'bubble'
    GAUSSIAN = 'gaussian'
    CUT_GAUSSIAN = 'cut_gaussian'
    MEXICAN_HAT = 'mexican_hat'
    EPANECHNIKOV = 'epanechnikov'


class Transfer(NamedTuple):
    """Resolved transfer function.

    ``derivative`` takes the activation (the function's output), which is
    what the backward pass has at hand.
    """

    kind: TransferFunction
    function: Callable[[np.ndarray], np.ndarray]
    derivative: Callable[[np.ndarray], np.ndarray]


def _sigmoid(x: np.ndarray) -> np.ndarray:
    # Clip to keep exp() finite for large negative net inputs
    return 1.0 / (1.0 + np.exp(-np.clip(x, -500.0, 500.0)))


def _sigmoid_prime(a: np.ndarray) -> np.ndarray:
    return a * (1.0 - a)


def _tanh_prime(a: np.ndarray) -> np.ndarray:
    return 1.0 - a * a


def _linear(x: np.ndarray) -> np.ndarray:
    return np.asarray(x, dtype=float)


def _linear_prime(a: np.ndarray) -> np.ndarray:
    return np.ones_like(a, dtype=float)


_TRANSFER_TABLE = {
    TransferFunction.SIGMOID: Transfer(TransferFunction.SIGMOID, _sigmoid, _sigmoid_prime),
    TransferFunction.TANH: Transfer(TransferFunction.TANH, np.tanh, _tanh_prime),
    TransferFunction.LINEAR: Transfer(TransferFunction.LINEAR, _linear, _linear_prime),
}


def bubble(dist: np.ndarray, sigma: float) -> np.ndarray:
    """1 inside the radius ``sigma``, 0 outside."""
    return np.where(np.asarray(dist) <= sigma, 1.0, 0.0)


def gaussian(dist: np.ndarray, sigma: float) -> np.ndarray:
    """exp(-d^2 / 2 sigma^2)"""
    dist = np.asarray(dist, dtype=float)
    return np.exp(-(dist ** 2) / (2.0 * sigma ** 2))


def cut_gaussian(dist: np.ndarray, sigma: float) -> np.ndarray:
    """Gaussian kernel zeroed outside the radius ``sigma``."""
    dist = np.asarray(dist, dtype=float)
    return np.where(dist <= sigma, gaussian(dist, sigma), 0.0)


def mexican_hat(dist: np.ndarray, sigma: float) -> np.ndarray:
    """Ricker wavelet scaled so that the kernel is 1 at the BMU.

    Becomes negative between ``sigma`` and roughly ``2.5 sigma``, which
    pushes those neurons away from the input.
    """
    dist = np.asarray(dist, dtype=float)
    ratio = (dist ** 2) / (sigma ** 2)
    return (1.0 - ratio) * np.exp(-ratio / 2.0)


def epanechnikov(dist: np.ndarray, sigma: float) -> np.ndarray:
    """Quadratic falloff, zero outside the radius ``sigma``."""
    dist = np.asarray(dist, dtype=float)
    return np.maximum(0.0, 1.0 - (dist ** 2) / (sigma ** 2))


_NEIGHBORHOOD_TABLE = {
    NeighborhoodFunction.BUBBLE: bubble,
    NeighborhoodFunction.GAUSSIAN: gaussian,
    NeighborhoodFunction.CUT_GAUSSIAN: cut_gaussian,
    NeighborhoodFunction.MEXICAN_HAT: mexican_hat,
    NeighborhoodFunction.EPANECHNIKOV: epanechnikov,
}


def resolve_transfer_function(name: Union[str, TransferFunction]) -> Transfer:
    """
    Resolve a transfer function by its exact name.

    Args:
        name: One of 'sigmoid', 'tanh', 'linear' or a TransferFunction

    Returns:
        Transfer: the function and its derivative

    Raises:
        ConfigurationError: If the name is not a known transfer function
    """
    try:
        kind = TransferFunction(name)
    except ValueError:
        raise ConfigurationError(
            f"Unknown transfer function '{name}'. "
            f"Expected one of {[t.value for t in TransferFunction]}",
            details={'name': str(name)}
        ) from None
    return _TRANSFER_TABLE[kind]


def resolve_neighborhood_function(
    name: Union[str, NeighborhoodFunction]
) -> Callable[[np.ndarray, float], np.ndarray]:
    """
    Resolve a neighborhood kernel by its exact name.

    Raises:
        ConfigurationError: If the name is not a known kernel
    """
    try:
        kind = NeighborhoodFunction(name)
    except ValueError:
        raise ConfigurationError(
            f"Unknown neighborhood function '{name}'. "
            f"Expected one of {[n.value for n in NeighborhoodFunction]}",
            details={'name': str(name)}
        ) from None
    return _NEIGHBORHOOD_TABLE[kind]
