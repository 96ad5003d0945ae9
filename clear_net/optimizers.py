"""
Parameter update rules.

The four variants share one gradient-descent contract and differ only in the
persistent state they keep per parameter:

    SGD       x -= lr * g
    MOMENTUM  v = b1*v + (1-b1)*g;  x -= lr * v
    RMS_PROP  s = b2*s + (1-b2)*g^2;  x -= lr * g / sqrt(s + eps)
    ADAM      both of the above, bias-corrected by (1 - b^t), x -= lr * v_hat / sqrt(s_hat + eps)

`apply_update` works in place on whatever array it is given, so a layer can
pass a full parameter matrix or a view of one slice (e.g. a single kernel).
"""

from enum import Enum
from typing import Optional, Union
import logging

import numpy as np

from .errors import ConfigurationError, UnsupportedOptimizer, check_finite


class Optimizer(Enum):
    SGD = 'sgd'
    MOMENTUM = 'momentum'
    RMS_PROP = 'rms_prop'
    ADAM = 'adam'

    @property
    def uses_velocity(self) -> bool:
        return self in (Optimizer.MOMENTUM, Optimizer.ADAM)

    @property
    def uses_velocity_squared(self) -> bool:
        return self in (Optimizer.RMS_PROP, Optimizer.ADAM)

    @classmethod
    def resolve(cls, value: Union['Optimizer', str]) -> 'Optimizer':
        """Turns a tag (member, value, or member name, case-insensitive) into an Optimizer.

        Raises:
            UnsupportedOptimizer: If the tag names none of the four variants.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.lower()
            for member in cls:
                if key in (member.value, member.name.lower()):
                    return member
        logging.error(f"Unsupported optimizer: {value!r}")
        raise UnsupportedOptimizer(
            f"Unsupported optimizer '{value}'. Valid options: {[m.value for m in cls]}"
        )


def validate_hyper_parameters(learning_rate: float, momentum: float, beta: float, epsilon: float, context: str):
    """Rejects hyper-parameters that would make an update non-finite.

    Raises:
        NumericInvariantViolation: If any value is NaN or infinite.
        ConfigurationError: If momentum or beta is outside [0, 1) or epsilon is negative.
    """
    check_finite([learning_rate, momentum, beta, epsilon], f"{context} hyper-parameters")
    for name, value in (('momentum', momentum), ('beta', beta)):
        if not 0.0 <= value < 1.0:
            logging.error(f"{context}: {name}={value} is outside [0, 1)")
            raise ConfigurationError(f"{context}: {name} must be in [0, 1), got {value}")
    if epsilon < 0:
        logging.error(f"{context}: epsilon={epsilon} is negative")
        raise ConfigurationError(f"{context}: epsilon must not be negative, got {epsilon}")


def apply_update(
    optimizer: Optimizer,
    param: np.ndarray,
    grad: np.ndarray,
    velocity: Optional[np.ndarray],
    velocity_squared: Optional[np.ndarray],
    learning_rate: float,
    momentum: float,
    beta: float,
    epsilon: float,
    step: int,
):
    """Updates `param` (and the optimizer state arrays) in place.

    Args:
        optimizer: Which update rule to use.
        param: Parameter array to update.
        grad: Accumulated gradient, same shape as `param`.
        velocity: Moving average of the gradient (MOMENTUM, ADAM), else None.
        velocity_squared: Moving average of the squared gradient (RMS_PROP, ADAM), else None.
        learning_rate: Step size, already divided by the batch size.
        momentum: Decay of the first moment (beta1).
        beta: Decay of the second moment (beta2).
        epsilon: Stabilizer added under the square root.
        step: 1-based update counter for ADAM bias correction.
    """
    if optimizer is Optimizer.SGD:
        param -= learning_rate * grad
    elif optimizer is Optimizer.MOMENTUM:
        velocity *= momentum
        velocity += (1.0 - momentum) * grad
        param -= learning_rate * velocity
    elif optimizer is Optimizer.RMS_PROP:
        velocity_squared *= beta
        velocity_squared += (1.0 - beta) * grad ** 2
        param -= learning_rate * grad / np.sqrt(velocity_squared + epsilon)
    elif optimizer is Optimizer.ADAM:
        velocity *= momentum
        velocity += (1.0 - momentum) * grad
        velocity_squared *= beta
        velocity_squared += (1.0 - beta) * grad ** 2
        corrected_velocity = velocity / (1.0 - momentum ** step)
        corrected_velocity_squared = velocity_squared / (1.0 - beta ** step)
        param -= learning_rate * corrected_velocity / np.sqrt(corrected_velocity_squared + epsilon)
    else:
        raise UnsupportedOptimizer(f"Unsupported optimizer '{optimizer}'")
