"""
clear_net: a small NumPy neural-network engine.

Fixed linear stacks of dense and convolutional layers, pluggable activations and
costs, four optimizers, and batch training that backpropagates each example on
its own worker thread.
"""

from .activations import (
    ACTIVATION_FUNCTIONS,
    Activation,
    Identity,
    LeakyReLU,
    ReLU,
    Sigmoid,
    Softmax,
    Tanh,
    get_activation,
    get_initializer,
)
from .costs import COST_FUNCTIONS, Cost, CrossEntropy, MeanSquaredError, get_cost
from .errors import (
    ConfigurationError,
    DimensionMismatch,
    NetworkError,
    NumericInvariantViolation,
    UnsupportedOptimizer,
)
from .layers import ConvolutionalLayer, DenseLayer, Layer
from .network import (
    ConvolutionalSpec,
    DenseSpec,
    Network,
    NetworkConfig,
    build,
    forward,
    learn,
    set_temperature,
)
from .optimizers import Optimizer

__version__ = "0.1.0"
