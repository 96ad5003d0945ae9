"""
Learnable layers for the network's linear stack.

Every layer follows the same contract:

    forward(x)                          -> output (pure, no side effects)
    backward(output_gradient, x)        -> input gradient, accumulates into self.grads
    apply_gradient(optimizer, lr, ...)  -> updates self.params in place
    clear_gradient()                    -> zeroes self.grads

Parameters, gradients and optimizer state live in dictionaries keyed by
parameter name, so the generic update and bookkeeping code in `Layer` works for
every concrete layer. `backward` may be called from several batch workers at
once: each call computes its contribution privately and only holds the layer's
lock while adding it into the shared gradient buffers.
"""

import copy
import math
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

import numpy as np

from .errors import ConfigurationError, DimensionMismatch, NumericInvariantViolation, check_finite
from .optimizers import Optimizer, apply_update, validate_hyper_parameters

MAX_KERNEL_WORKERS = os.cpu_count() or 1


class Layer:
    """
    Abstract base class for all layers in the network.

    Key Attributes:
        nodes (int): Length of the output vector.
        input_size (int): Length of the input vector.
        params (dict): Learnable parameters. Always holds 'bias' of shape (nodes,).
        grads (dict): Gradient accumulators, one per entry in `params`, same shapes.
        optimizer_state (dict): Per-parameter 'velocity' / 'velocity_squared' arrays,
                                allocated the first time an optimizer needs them.
        step (int): Update counter used for ADAM bias correction. Starts at 1.
    """

    def __init__(self, nodes: int, input_size: int, id: int = 0):
        if nodes <= 0 or input_size <= 0:
            raise ConfigurationError(
                f"Layer {id}: node count ({nodes}) and input size ({input_size}) must be positive"
            )
        self.nodes = int(nodes)
        self.input_size = int(input_size)
        self.id = id
        self.params: Dict[str, np.ndarray] = {'bias': np.zeros(self.nodes)}
        self.grads: Dict[str, np.ndarray] = {'bias': np.zeros(self.nodes)}
        self.optimizer_state: Dict[str, Dict[str, np.ndarray]] = {}
        self.step = 1
        self._gradient_lock = threading.Lock()

    @property
    def bias(self) -> np.ndarray:
        return self.params['bias']

    def initialize(self, initializer: Callable[[Tuple[int, ...]], np.ndarray]):
        """Draws every parameter (including the bias) from `initializer` and zeroes the gradients."""
        for name, param in self.params.items():
            param[...] = initializer(param.shape)
        self.clear_gradient()
        logging.debug(f"Layer #{self.id}: initialized {self.num_parameters()} parameters")

    def forward(self, inputs: np.ndarray) -> np.ndarray:
        """
        Passes one input vector through the layer.

        Args:
            inputs: Vector of shape (input_size,).

        Returns:
            Pre-activation output vector of shape (nodes,).

        Raises:
            DimensionMismatch: If the input length is wrong.
            NumericInvariantViolation: If the input or output contains NaN/inf.
        """
        inputs = self._check_input(inputs)
        output = self._forward(inputs)
        return check_finite(output, f"Layer {self.id} forward output")

    def backward(self, output_gradient: np.ndarray, inputs: np.ndarray) -> np.ndarray:
        """
        Accumulates this example's parameter gradients and returns dL/dInput.

        Args:
            output_gradient: dL/dZ for this layer's output, shape (nodes,).
            inputs: The input that produced that output during the forward pass.

        Returns:
            Gradient with respect to `inputs`, shape (input_size,).
        """
        inputs = self._check_input(inputs)
        output_gradient = check_finite(output_gradient, f"Layer {self.id} incoming gradient")
        if output_gradient.shape != (self.nodes,):
            logging.error(f"Layer {self.id}: expected gradient of shape ({self.nodes},), got {output_gradient.shape}")
            raise DimensionMismatch(
                f"Layer {self.id}: Expected {self.nodes} incoming gradients, got shape {output_gradient.shape}"
            )

        contributions, input_gradient = self._backward(output_gradient, inputs)
        for name, contribution in contributions.items():
            check_finite(contribution, f"Layer {self.id} {name} gradient")

        with self._gradient_lock:
            for name, contribution in contributions.items():
                self.grads[name] += contribution

        return check_finite(input_gradient, f"Layer {self.id} gradient passed back")

    def apply_gradient(
        self,
        optimizer: Optimizer,
        learning_rate: float,
        momentum: float = 0.9,
        beta: float = 0.999,
        epsilon: float = 1e-8,
    ):
        """
        Updates every parameter from its accumulated gradient.

        The update is all-or-nothing: if any parameter or optimizer state comes
        out non-finite, the layer is restored to its state before the call.
        The caller is responsible for clearing the gradient afterwards.

        Args:
            optimizer: Update rule (Optimizer member or its tag).
            learning_rate: Step size. The network passes learning_rate / batch_size.
            momentum: First-moment decay (MOMENTUM, ADAM), in [0, 1).
            beta: Second-moment decay (RMS_PROP, ADAM), in [0, 1).
            epsilon: Stabilizer under the square root (RMS_PROP, ADAM).

        Raises:
            ConfigurationError: If a hyper-parameter is out of range.
            NumericInvariantViolation: If the gradient or the updated values are not finite.
        """
        optimizer = Optimizer.resolve(optimizer)
        validate_hyper_parameters(learning_rate, momentum, beta, epsilon, f"Layer {self.id}")
        for name in self.params:
            check_finite(self.grads[name], f"Layer {self.id} {name} gradient")

        saved = self.save_state()
        try:
            for name in self.params:
                self._update_parameter(name, optimizer, learning_rate, momentum, beta, epsilon)
                check_finite(self.params[name], f"Layer {self.id} {name} after {optimizer.value} update")
                for key, value in self.optimizer_state.get(name, {}).items():
                    check_finite(value, f"Layer {self.id} {name} {key}")
        except NumericInvariantViolation:
            self.restore_state(saved)
            raise

        if optimizer is Optimizer.ADAM:
            self.step += 1

    def save_state(self) -> Dict[str, Any]:
        """Copies the parameters, optimizer state and step counter."""
        return {
            'params': {name: value.copy() for name, value in self.params.items()},
            'optimizer_state': {
                name: {key: value.copy() for key, value in state.items()}
                for name, state in self.optimizer_state.items()
            },
            'step': self.step,
        }

    def restore_state(self, saved: Dict[str, Any]):
        """Puts back what `save_state` copied. Parameter arrays are overwritten in place."""
        for name, value in saved['params'].items():
            self.params[name][...] = value
        self.optimizer_state = {
            name: {key: value.copy() for key, value in state.items()}
            for name, state in saved['optimizer_state'].items()
        }
        self.step = saved['step']

    def clear_gradient(self):
        """Resets the accumulated gradients to zero."""
        for grad in self.grads.values():
            grad.fill(0.0)

    def num_parameters(self) -> int:
        """Returns the number of learnable parameters in this layer."""
        return int(sum(param.size for param in self.params.values()))

    def clone(self) -> 'Layer':
        """Returns a deep copy with its own parameter, gradient and optimizer-state arrays."""
        duplicate = copy.copy(self)
        duplicate.params = {name: value.copy() for name, value in self.params.items()}
        duplicate.grads = {name: value.copy() for name, value in self.grads.items()}
        duplicate.optimizer_state = {
            name: {key: value.copy() for key, value in state.items()}
            for name, state in self.optimizer_state.items()
        }
        duplicate._gradient_lock = threading.Lock()
        return duplicate

    def get_config(self) -> Dict[str, Any]:
        """Returns the constructor arguments needed to rebuild a layer of this shape."""
        raise NotImplementedError

    def _forward(self, inputs: np.ndarray) -> np.ndarray:
        raise NotImplementedError("Each layer must implement its own forward pass.")

    def _backward(self, output_gradient: np.ndarray, inputs: np.ndarray) -> Tuple[Dict[str, np.ndarray], np.ndarray]:
        """Returns (per-parameter gradient contributions, input gradient) without touching self.grads."""
        raise NotImplementedError("Each layer must implement its own backward pass.")

    def _check_input(self, inputs) -> np.ndarray:
        inputs = np.asarray(inputs, dtype=float)
        if inputs.shape != (self.input_size,):
            logging.error(f"Layer {self.id}: expected input of shape ({self.input_size},), got {inputs.shape}")
            raise DimensionMismatch(f"Layer {self.id}: Expected {self.input_size} inputs, got shape {inputs.shape}")
        return check_finite(inputs, f"Layer {self.id} input")

    def _optimizer_arrays(self, name: str, optimizer: Optimizer) -> Tuple[Optional[np.ndarray], Optional[np.ndarray]]:
        """Returns (velocity, velocity_squared) for `name`, allocating what `optimizer` needs."""
        state = self.optimizer_state.setdefault(name, {})
        if optimizer.uses_velocity and 'velocity' not in state:
            state['velocity'] = np.zeros_like(self.params[name])
        if optimizer.uses_velocity_squared and 'velocity_squared' not in state:
            state['velocity_squared'] = np.zeros_like(self.params[name])
        return state.get('velocity'), state.get('velocity_squared')

    def _update_parameter(self, name, optimizer, learning_rate, momentum, beta, epsilon):
        velocity, velocity_squared = self._optimizer_arrays(name, optimizer)
        apply_update(optimizer, self.params[name], self.grads[name], velocity, velocity_squared,
                     learning_rate, momentum, beta, epsilon, self.step)

    def __eq__(self, other):
        if type(self) is not type(other):
            return False
        return (
            self.get_config() == other.get_config()
            and self.step == other.step
            and _same_arrays(self.params, other.params)
            and _same_arrays(self.grads, other.grads)
            and self.optimizer_state.keys() == other.optimizer_state.keys()
            and all(_same_arrays(state, other.optimizer_state[name])
                    for name, state in self.optimizer_state.items())
        )

    __hash__ = None

    def summary(self) -> str:
        """Returns a string summary of the layer's configuration."""
        lines = [f"Layer Summary (id={self.id}):", f"  Type: {self.__class__.__name__}"]
        lines += [f"  {key}: {value}" for key, value in self.get_config().items() if key != 'type']
        lines += [f"  {name} shape: {param.shape}" for name, param in self.params.items()]
        lines.append(f"  Parameters: {self.num_parameters():,} parameters")
        return "\n".join(lines) + "\n"

    def __repr__(self):
        args = ", ".join(f"{key}={value}" for key, value in self.get_config().items() if key != 'type')
        return f"{self.__class__.__name__}(id={self.id}, {args})"


def _same_arrays(left: Dict[str, np.ndarray], right: Dict[str, np.ndarray]) -> bool:
    return left.keys() == right.keys() and all(np.array_equal(left[key], right[key]) for key in left)


class DenseLayer(Layer):
    """
    Fully connected layer: every output node sees every input.

    Key Attributes:
        weights (np.ndarray): Shape (nodes, input_size). Row i holds the weights
                              feeding output node i.
        bias (np.ndarray): Shape (nodes,).
    """

    def __init__(self, input_size: int, nodes: int, id: int = 0):
        super().__init__(nodes, input_size, id=id)
        self.params['weights'] = np.zeros((self.nodes, self.input_size))
        self.grads['weights'] = np.zeros((self.nodes, self.input_size))
        logging.debug(f"Layer #{self.id} created: DenseLayer {self.input_size} -> {self.nodes}")

    @property
    def weights(self) -> np.ndarray:
        return self.params['weights']

    def _forward(self, inputs):
        # output[i] = sum_j W[i, j] * x[j] + b[i]
        return np.dot(self.params['weights'], inputs) + self.params['bias']

    def _backward(self, output_gradient, inputs):
        # dL/dW = g x^T, dL/db = g, dL/dx = W^T g
        contributions = {
            'weights': np.outer(output_gradient, inputs),
            'bias': output_gradient.copy(),
        }
        return contributions, np.dot(self.params['weights'].T, output_gradient)

    def get_config(self) -> Dict[str, Any]:
        return {'type': 'dense', 'input_size': self.input_size, 'nodes': self.nodes}


class ConvolutionalLayer(Layer):
    """
    A bank of 2D kernels sliding over a (channels, height, width) input.

    Each kernel is a (kernel_width, kernel_height) matrix shared by every input
    channel; the per-channel responses are summed into one output map per
    kernel, and every output node carries its own bias.

    Flat layouts:
        input offset   = c * W * H + y * W + x
        output offset  = k * outW * outH + y * outW + x

    Output size per axis is ceil((in - kernel + 1) / stride) without padding and
    equal to the input size with padding. Padding mirrors the input about its
    edges instead of filling with zeros.

    `index_map` translates a padded (channel, y, x) position into a flat offset
    of the unpadded input, and `receptive_fields` gathers, for every output
    position, the offsets its kernel window covers. Both are built once here and
    reused by forward and backward.

    Forward, backward and the kernel update run one task per kernel; each task
    only touches its own kernel slice.
    """

    def __init__(
        self,
        input_width: int,
        input_height: int,
        input_channels: int,
        kernel_width: int,
        kernel_height: int,
        num_kernels: int,
        stride_width: int = 1,
        stride_height: int = 1,
        padding: bool = False,
        id: int = 0,
    ):
        dims = {
            'input_width': input_width, 'input_height': input_height, 'input_channels': input_channels,
            'kernel_width': kernel_width, 'kernel_height': kernel_height, 'num_kernels': num_kernels,
            'stride_width': stride_width, 'stride_height': stride_height,
        }
        for key, value in dims.items():
            if int(value) != value or value <= 0:
                raise ConfigurationError(f"Layer {id}: {key} must be a positive integer, got {value}")
        if not padding and (kernel_width > input_width or kernel_height > input_height):
            raise ConfigurationError(
                f"Layer {id}: kernel ({kernel_width}x{kernel_height}) does not fit the "
                f"unpadded input ({input_width}x{input_height})"
            )

        self.input_width = int(input_width)
        self.input_height = int(input_height)
        self.input_channels = int(input_channels)
        self.kernel_width = int(kernel_width)
        self.kernel_height = int(kernel_height)
        self.num_kernels = int(num_kernels)
        self.stride_width = int(stride_width)
        self.stride_height = int(stride_height)
        self.padding = bool(padding)

        if self.padding:
            self.output_width, self.output_height = self.input_width, self.input_height
        else:
            self.output_width = math.ceil((self.input_width - self.kernel_width + 1) / self.stride_width)
            self.output_height = math.ceil((self.input_height - self.kernel_height + 1) / self.stride_height)

        super().__init__(
            self.output_width * self.output_height * self.num_kernels,
            self.input_width * self.input_height * self.input_channels,
            id=id,
        )

        kernel_shape = (self.num_kernels, self.kernel_width, self.kernel_height)
        self.params['kernels'] = np.zeros(kernel_shape)
        self.grads['kernels'] = np.zeros(kernel_shape)

        self.index_map = self._build_index_map()
        self.receptive_fields = self._build_receptive_fields()
        self._kernel_pool = self._make_kernel_pool()

        logging.debug(
            f"Layer #{self.id} created: ConvolutionalLayer "
            f"{self.input_channels}x{self.input_height}x{self.input_width} -> "
            f"{self.num_kernels}x{self.output_height}x{self.output_width}, padded map shape {self.index_map.shape}"
        )

    @property
    def kernels(self) -> np.ndarray:
        return self.params['kernels']

    def _build_index_map(self) -> np.ndarray:
        """Flat input offsets laid out as a (channels, padded_height, padded_width) grid."""
        offsets = np.arange(self.input_size).reshape(self.input_channels, self.input_height, self.input_width)
        if not self.padding:
            return offsets

        # Enough padding that (in - 1) strides plus one kernel span the padded input
        pad_width = (self.input_width - 1) * self.stride_width + self.kernel_width - self.input_width
        pad_height = (self.input_height - 1) * self.stride_height + self.kernel_height - self.input_height
        left, up = math.ceil(pad_width / 2), math.ceil(pad_height / 2)
        return np.pad(
            offsets,
            ((0, 0), (up, pad_height - up), (left, pad_width - left)),
            mode='reflect',
        )

    def _build_receptive_fields(self) -> np.ndarray:
        """Offsets read by each window, shape (out_h, out_w, channels, kernel_w, kernel_h)."""
        rows = (np.arange(self.output_height) * self.stride_height)[:, None, None, None, None] \
            + np.arange(self.kernel_height)[None, None, None, None, :]
        cols = (np.arange(self.output_width) * self.stride_width)[None, :, None, None, None] \
            + np.arange(self.kernel_width)[None, None, None, :, None]
        channels = np.arange(self.input_channels)[None, None, :, None, None]
        return self.index_map[channels, rows, cols]

    def _make_kernel_pool(self) -> Optional[ThreadPoolExecutor]:
        # Threads start on first submit and are reused by every later call
        if self.num_kernels == 1:
            return None
        return ThreadPoolExecutor(
            max_workers=min(self.num_kernels, MAX_KERNEL_WORKERS),
            thread_name_prefix=f"conv-layer-{self.id}",
        )

    def _map_kernels(self, task: Callable[[int], Any]) -> List[Any]:
        """Runs `task(k)` for every kernel and returns the results in kernel order."""
        if self._kernel_pool is None:
            return [task(0)]
        return list(self._kernel_pool.map(task, range(self.num_kernels)))

    def clone(self) -> 'ConvolutionalLayer':
        duplicate = super().clone()
        duplicate._kernel_pool = duplicate._make_kernel_pool()
        return duplicate

    def _forward(self, inputs):
        patches = inputs[self.receptive_fields]
        kernels = self.params['kernels']

        def convolve(k):
            return np.einsum('hwcij,ij->hw', patches, kernels[k]).ravel()

        return np.concatenate(self._map_kernels(convolve)) + self.params['bias']

    def _backward(self, output_gradient, inputs):
        patches = inputs[self.receptive_fields]
        kernels = self.params['kernels']
        gradient_maps = output_gradient.reshape(self.num_kernels, self.output_height, self.output_width)
        flat_fields = self.receptive_fields.ravel()

        def kernel_backward(k):
            kernel_gradient = np.einsum('hw,hwcij->ij', gradient_maps[k], patches)
            # Every window position sends gradient * kernel back to the offsets it read
            spread = gradient_maps[k][:, :, None, None, None] * kernels[k]
            spread = np.broadcast_to(spread, self.receptive_fields.shape)
            input_gradient = np.bincount(flat_fields, weights=spread.ravel(), minlength=self.input_size)
            return kernel_gradient, input_gradient

        results = self._map_kernels(kernel_backward)
        contributions = {
            'kernels': np.stack([kernel_gradient for kernel_gradient, _ in results]),
            'bias': output_gradient.copy(),
        }
        input_gradient = np.sum([partial for _, partial in results], axis=0)
        return contributions, input_gradient

    def _update_parameter(self, name, optimizer, learning_rate, momentum, beta, epsilon):
        if name != 'kernels':
            return super()._update_parameter(name, optimizer, learning_rate, momentum, beta, epsilon)

        velocity, velocity_squared = self._optimizer_arrays(name, optimizer)
        kernels, grads = self.params['kernels'], self.grads['kernels']

        def update_kernel(k):
            apply_update(
                optimizer, kernels[k], grads[k],
                None if velocity is None else velocity[k],
                None if velocity_squared is None else velocity_squared[k],
                learning_rate, momentum, beta, epsilon, self.step,
            )

        self._map_kernels(update_kernel)

    def get_config(self) -> Dict[str, Any]:
        return {
            'type': 'convolutional',
            'input_width': self.input_width,
            'input_height': self.input_height,
            'input_channels': self.input_channels,
            'kernel_width': self.kernel_width,
            'kernel_height': self.kernel_height,
            'num_kernels': self.num_kernels,
            'stride_width': self.stride_width,
            'stride_height': self.stride_height,
            'padding': self.padding,
        }
