import numpy as np
from typing import Callable, Tuple, Union
import logging

from .errors import check_finite


class Activation:
    """Base class for all activation functions.

    Subclasses implement `_forward` and `_backward`. The public `calculate` and
    `derivative` methods wrap them with the finite-value check so every
    activation shares one validation path.
    """

    name = 'activation'
    is_rectifier = False

    def calculate(self, x: np.ndarray) -> np.ndarray:
        """Compute the activation function value.

        Args:
            x: Pre-activation vector (often denoted 'z').

        Returns:
            Activated output, same shape as x.
        """
        x = check_finite(x, f"{self.__class__.__name__} input")
        result = self._forward(x)
        return check_finite(result, f"{self.__class__.__name__} output")

    def derivative(self, z: np.ndarray, gradient: np.ndarray) -> np.ndarray:
        """Push an upstream gradient back through the activation.

        Args:
            z: The *input* to the activation function at which the derivative is evaluated.
            gradient: Gradient of the loss with respect to the activation's output (dL/dA).

        Returns:
            Gradient of the loss with respect to z (dL/dZ).
        """
        z = check_finite(z, f"{self.__class__.__name__} derivative input")
        gradient = check_finite(gradient, f"{self.__class__.__name__} upstream gradient")
        result = self._backward(z, gradient)
        return check_finite(result, f"{self.__class__.__name__} derivative output")

    def _forward(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def _backward(self, z: np.ndarray, gradient: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def __eq__(self, other):
        return type(self) is type(other)

    def __hash__(self):
        return hash(type(self))

    def __repr__(self):
        return f"{self.__class__.__name__}()"


class Identity(Activation):
    """Linear activation function (identity).

    Mathematical form:
        forward: f(x) = x
        backward: f'(x) = 1
    """

    name = 'identity'

    def _forward(self, x):
        return x.copy()

    def _backward(self, z, gradient):
        return gradient.copy()


class ReLU(Activation):
    """Rectified Linear Unit activation function.

    Mathematical form:
        forward: f(x) = max(0, x)
        backward: f'(x) = 1 if x > 0 else 0
    """

    name = 'relu'
    is_rectifier = True

    def _forward(self, x):
        logging.debug(f"ReLU forward - input shape: {x.shape}")
        return np.maximum(0.0, x)

    def _backward(self, z, gradient):
        return gradient * np.where(z > 0, 1.0, 0.0)


class LeakyReLU(Activation):
    """Leaky Rectified Linear Unit.

    Mathematical form:
        forward: f(x) = x if x > 0 else slope * x
        backward: f'(x) = 1 if x > 0 else slope
    """

    name = 'leaky_relu'
    is_rectifier = True
    slope = 0.1

    def _forward(self, x):
        logging.debug(f"LeakyReLU forward - input shape: {x.shape}")
        return np.where(x > 0, x, self.slope * x)

    def _backward(self, z, gradient):
        return gradient * np.where(z > 0, 1.0, self.slope)


class Sigmoid(Activation):
    """Sigmoid activation function.

    Mathematical form:
        forward: f(x) = 1 / (1 + e^-x)
        backward: f'(x) = f(x) * (1 - f(x))
    """

    name = 'sigmoid'

    def _forward(self, x):
        logging.debug(f"Sigmoid forward - input shape: {x.shape}")
        # Clip input to avoid overflow in exp(-x) for large negative x
        clipped_x = np.clip(x, -500, 500)
        return 1.0 / (1.0 + np.exp(-clipped_x))

    def _backward(self, z, gradient):
        sig = self._forward(z)
        return gradient * sig * (1.0 - sig)


class Tanh(Activation):
    """Hyperbolic tangent activation function.

    Mathematical form:
        forward: f(x) = tanh(x)
        backward: f'(x) = 1 - tanh^2(x)
    """

    name = 'tanh'

    def _forward(self, x):
        logging.debug(f"Tanh forward - input shape: {x.shape}")
        return np.tanh(x)

    def _backward(self, z, gradient):
        return gradient * (1.0 - np.tanh(z) ** 2)


class Softmax(Activation):
    """Softmax activation function.

    Normalizes a whole vector to a probability distribution, so unlike the other
    activations its derivative is a full Jacobian. Instead of building the matrix,
    `derivative` returns the vector-Jacobian product directly:

        dL/dz = s * (dL/ds - dot(s, dL/ds)),  s = softmax(z)
    """

    name = 'softmax'

    def _forward(self, x):
        # Max subtraction keeps exp() from overflowing and leaves the result unchanged
        exp_x = np.exp(x - np.max(x))
        return exp_x / np.sum(exp_x)

    def _backward(self, z, gradient):
        s = self._forward(z)
        return s * (gradient - np.dot(s, gradient))


# Dictionary mapping activation function names to their classes
ACTIVATION_FUNCTIONS = {
    'identity': Identity,
    'linear': Identity,
    'none': Identity,
    'relu': ReLU,
    'leaky_relu': LeakyReLU,
    'sigmoid': Sigmoid,
    'tanh': Tanh,
    'softmax': Softmax,
}


def get_activation(name: Union[str, Activation]) -> Activation:
    """Factory function to get an activation function instance by name.

    Args:
        name: Name of the activation function (case-insensitive), or an
              Activation instance which is returned unchanged.

    Returns:
        An instance of the requested Activation class.

    Raises:
        ValueError: If the activation function name is not recognized.
    """
    if isinstance(name, Activation):
        return name
    name_lower = str(name).lower()
    if name_lower not in ACTIVATION_FUNCTIONS:
        raise ValueError(
            f"Unknown activation function '{name}'. "
            f"Available functions: {list(ACTIVATION_FUNCTIONS.keys())}"
        )
    return ACTIVATION_FUNCTIONS[name_lower]()


Initializer = Callable[[Tuple[int, ...]], np.ndarray]


def get_initializer(activation: Activation, fan_in: int, fan_out: int) -> Initializer:
    """Returns the parameter initializer best suited to `activation`.

    Rectifying activations get a He-style Gaussian with standard deviation
    sqrt(2 / (fan_in + fan_out)); every other activation gets a Xavier-style
    Gaussian with standard deviation sqrt(1 / sqrt(fan_in + fan_out)).

    Args:
        activation: The hidden activation of the network.
        fan_in: Number of inputs feeding the layer.
        fan_out: Number of outputs the layer produces.

    Returns:
        A callable taking an array shape and returning freshly drawn values.
    """
    if activation.is_rectifier:
        scale = np.sqrt(2.0 / (fan_in + fan_out))
        logging.debug(f"Using He initialization (std={scale:.4f}) for {activation.__class__.__name__}")
    else:
        scale = np.sqrt(1.0 / np.sqrt(fan_in + fan_out))
        logging.debug(f"Using Xavier initialization (std={scale:.4f}) for {activation.__class__.__name__}")

    def initializer(shape: Tuple[int, ...]) -> np.ndarray:
        return np.random.normal(0.0, scale, size=shape)

    return initializer
