import numpy as np
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from dataclasses import dataclass, field
from concurrent.futures import ThreadPoolExecutor
import json
import logging
import os
import threading
import time

from .activations import Activation, Softmax, get_activation, get_initializer
from .costs import Cost, get_cost
from .errors import ConfigurationError, DimensionMismatch, NumericInvariantViolation, check_finite
from .layers import ConvolutionalLayer, DenseLayer, Layer
from .optimizers import Optimizer, validate_hyper_parameters


# --- Configuration ---

@dataclass
class DenseSpec:
    """A fully connected stage producing `nodes` outputs."""
    nodes: int

    def make_layer(self, input_size: int, id: int) -> Layer:
        return DenseLayer(input_size, self.nodes, id=id)


@dataclass
class ConvolutionalSpec:
    """A convolutional stage. Its input must be input_width * input_height * input_channels long."""
    input_width: int
    input_height: int
    input_channels: int
    kernel_width: int
    kernel_height: int
    num_kernels: int
    stride_width: int = 1
    stride_height: int = 1
    padding: bool = False

    def make_layer(self, input_size: int, id: int) -> Layer:
        expected = self.input_width * self.input_height * self.input_channels
        if expected != input_size:
            logging.error(f"Layer {id}: convolution expects {expected} inputs, previous stage gives {input_size}")
            raise ConfigurationError(
                f"Layer {id}: convolution over {self.input_channels}x{self.input_height}x{self.input_width} "
                f"needs {expected} inputs, but the previous stage produces {input_size}"
            )
        return ConvolutionalLayer(
            self.input_width, self.input_height, self.input_channels,
            self.kernel_width, self.kernel_height, self.num_kernels,
            self.stride_width, self.stride_height, self.padding, id=id,
        )


LayerSpec = Union[DenseSpec, ConvolutionalSpec]


def spec_from_config(layer_config: Dict[str, Any]) -> LayerSpec:
    """Rebuilds a layer spec from `Layer.get_config()` output."""
    options = dict(layer_config)
    layer_type = options.pop('type')
    if layer_type == 'dense':
        return DenseSpec(nodes=options['nodes'])
    if layer_type == 'convolutional':
        return ConvolutionalSpec(**options)
    raise ConfigurationError(f"Unknown layer type '{layer_type}'")


@dataclass
class NetworkConfig:
    """
    Everything `build` needs to create a Network.

    Mandatory: input_size, hidden_activation, output_activation, cost_function and
    at least one layer. Activations and the cost accept a tag ('relu', 'mse', ...)
    or an instance. `temperature` only matters for a softmax output.

    Example:
        config = (NetworkConfig(input_size=2, hidden_activation='relu',
                                output_activation='softmax', cost_function='cross_entropy')
                  .add_dense(16)
                  .add_dense(3))
    """
    input_size: Optional[int] = None
    hidden_activation: Union[str, Activation, None] = None
    output_activation: Union[str, Activation, None] = None
    cost_function: Union[str, Cost, None] = None
    temperature: float = 1.0
    optimizer: Union[str, Optimizer] = Optimizer.SGD
    layers: List[LayerSpec] = field(default_factory=list)

    def add_dense(self, nodes: int) -> 'NetworkConfig':
        self.layers.append(DenseSpec(nodes))
        return self

    def add_convolutional(
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
    ) -> 'NetworkConfig':
        self.layers.append(ConvolutionalSpec(
            input_width, input_height, input_channels,
            kernel_width, kernel_height, num_kernels,
            stride_width, stride_height, padding,
        ))
        return self


def build(config: NetworkConfig) -> 'Network':
    """
    Validates `config`, creates the layers and draws their initial parameters.

    Raises:
        ConfigurationError: If a mandatory field is missing, a tag is unknown, or
                            consecutive layer shapes do not line up.
    """
    missing = [
        name for name in ('input_size', 'hidden_activation', 'output_activation', 'cost_function')
        if getattr(config, name) is None
    ]
    if not config.layers:
        missing.append('layers')
    if missing:
        logging.error(f"Cannot build network, missing: {missing}")
        raise ConfigurationError(f"Missing mandatory configuration field(s): {', '.join(missing)}")

    try:
        hidden_activation = get_activation(config.hidden_activation)
        output_activation = get_activation(config.output_activation)
        cost_function = get_cost(config.cost_function)
        optimizer = Optimizer.resolve(config.optimizer)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    layers: List[Layer] = []
    size = config.input_size
    for i, spec in enumerate(config.layers):
        layer = spec.make_layer(size, i)
        layers.append(layer)
        size = layer.nodes

    for layer in layers:
        layer.initialize(get_initializer(hidden_activation, layer.input_size, layer.nodes))

    return Network(
        layers,
        hidden_activation=hidden_activation,
        output_activation=output_activation,
        cost_function=cost_function,
        temperature=config.temperature,
        optimizer=optimizer,
    )


# --- Network ---

class Network:
    """
    A fixed linear stack of layers with a hidden activation between every pair of
    layers and an output activation after the last one.

    Shapes are fixed at construction; parameter values change through `learn`.
    `learn` runs one backpropagation task per example on a thread pool. The
    tasks share each layer's gradient buffers (guarded by the layer's lock), and
    the averaged gradient is applied only after every task has finished. Only one
    `learn` call per network runs at a time.
    """

    def __init__(
        self,
        layers: Sequence[Layer],
        hidden_activation: Union[str, Activation],
        output_activation: Union[str, Activation],
        cost_function: Union[str, Cost],
        temperature: float = 1.0,
        optimizer: Union[str, Optimizer] = Optimizer.SGD,
        max_workers: Optional[int] = None,
    ):
        """
        Args:
            layers: Initialized layers, in order. Layer i's node count must equal
                    layer i+1's input size.
            hidden_activation: Activation applied between layers.
            output_activation: Activation applied after the last layer.
            cost_function: Loss used by backpropagate/learn.
            temperature: Divisor for the final logits when the output activation is softmax.
            optimizer: Default update rule for learn().
            max_workers: Upper bound on batch worker threads.
        """
        if not layers:
            raise ConfigurationError("Network must have at least one layer.")
        for previous, following in zip(layers, layers[1:]):
            if previous.nodes != following.input_size:
                logging.error(f"Layer shapes do not line up: {previous.nodes} -> {following.input_size}")
                raise ConfigurationError(
                    f"Layer {previous.id} produces {previous.nodes} values but the next layer "
                    f"expects {following.input_size}"
                )

        self.layers: Tuple[Layer, ...] = tuple(layers)
        for i, layer in enumerate(self.layers):
            layer.id = i
        self.input_size = self.layers[0].input_size
        self.output_size = self.layers[-1].nodes

        self.hidden_activation = get_activation(hidden_activation)
        self.output_activation = get_activation(output_activation)
        self.cost_function = get_cost(cost_function)
        self.optimizer = Optimizer.resolve(optimizer)
        self.temperature = 1.0
        self.set_temperature(temperature)
        self.max_workers = max_workers or min(32, (os.cpu_count() or 1) + 4)

        self._learn_lock = threading.Lock()

        self.training_history: Dict[str, List] = {
            'epoch': [],
            'loss': [],
            'time_per_epoch': [],
        }

        logging.info(
            f"Created neural network with architecture: "
            f"{[self.input_size] + [layer.nodes for layer in self.layers]}"
        )
        logging.info(
            f"Activations: hidden={self.hidden_activation.__class__.__name__}, "
            f"output={self.output_activation.__class__.__name__}, "
            f"cost={self.cost_function.__class__.__name__}"
        )

    # --- Temperature ---

    def set_temperature(self, value: float):
        """Sets the softmax temperature (exploration control). Must be finite and positive."""
        value = float(check_finite(value, "temperature"))
        if value <= 0:
            raise ConfigurationError(f"Temperature must be positive, got {value}")
        if value != 1.0 and not isinstance(self.output_activation, Softmax):
            logging.warning("Temperature only affects a softmax output activation; it will be ignored.")
        self.temperature = value

    def _logit_divisor(self) -> float:
        return self.temperature if isinstance(self.output_activation, Softmax) else 1.0

    # --- Forward / backward ---

    def _check_vector(self, values, size: int, what: str) -> np.ndarray:
        values = np.asarray(values, dtype=float)
        if values.shape != (size,):
            logging.error(f"Network {what}: expected shape ({size},), got {values.shape}")
            raise DimensionMismatch(f"Network {what} must have shape ({size},), got {values.shape}")
        return values

    def _propagate(self, inputs: np.ndarray) -> Tuple[List[np.ndarray], List[np.ndarray], np.ndarray]:
        """Forward pass keeping every layer's input and pre-activation output."""
        layer_inputs, pre_activations = [], []
        x = inputs
        last = len(self.layers) - 1
        for i, layer in enumerate(self.layers):
            layer_inputs.append(x)
            z = layer.forward(x)
            logging.debug(f"Forward pass - Layer {i} output shape: {z.shape}")
            if i < last:
                pre_activations.append(z)
                x = self.hidden_activation.calculate(z)
            else:
                z = z / self._logit_divisor()
                pre_activations.append(z)
                x = self.output_activation.calculate(z)
        return layer_inputs, pre_activations, x

    def forward(self, inputs: Sequence[float]) -> np.ndarray:
        """
        Evaluates the network on one input vector.

        Raises:
            DimensionMismatch: If len(inputs) != input_size.
        """
        inputs = self._check_vector(inputs, self.input_size, "input")
        _, _, output = self._propagate(inputs)
        return output

    def predict(self, X: np.ndarray) -> np.ndarray:
        """Evaluates a single vector, or every row of a (num_samples, input_size) matrix."""
        X = np.asarray(X, dtype=float)
        if X.ndim == 1:
            return self.forward(X)
        if X.ndim != 2:
            raise DimensionMismatch(f"Input X must be a 1D or 2D array, got {X.ndim}D.")
        return np.array([self.forward(row) for row in X])

    def cost(self, inputs: Sequence[float], targets: Sequence[float]) -> float:
        """Total cost (sum of per-element losses) of the network's output for one example."""
        targets = self._check_vector(targets, self.output_size, "target")
        return float(np.sum(self.cost_function.calculate(self.forward(inputs), targets)))

    def backpropagate(self, inputs: Sequence[float], targets: Sequence[float]) -> np.ndarray:
        """
        Adds one example's gradient to every layer's gradient buffers.

        Walks the stack in reverse, alternating layer.backward and the hidden
        activation's derivative. When a temperature divides the logits, the chain
        rule contributes a further 1/temperature to the output gradient.

        Returns:
            Gradient of the cost with respect to the network input.
        """
        inputs = self._check_vector(inputs, self.input_size, "input")
        targets = self._check_vector(targets, self.output_size, "target")
        layer_inputs, pre_activations, output = self._propagate(inputs)

        cost_gradient = self.cost_function.derivative(output, targets)
        gradient = self.output_activation.derivative(pre_activations[-1], cost_gradient) / self._logit_divisor()

        for i in reversed(range(len(self.layers))):
            gradient = self.layers[i].backward(gradient, layer_inputs[i])
            if i > 0:
                gradient = self.hidden_activation.derivative(pre_activations[i - 1], gradient)
        return gradient

    # --- Training ---

    def clear_gradient(self):
        """Resets the gradients of all layers to zero before processing a new batch."""
        for layer in self.layers:
            layer.clear_gradient()

    def apply_gradient(self, learning_rate: float, optimizer: Optimizer, momentum: float, beta: float, epsilon: float):
        """
        Applies every layer's accumulated gradient with an already batch-adjusted learning rate.

        Either every layer is updated or none is: if one layer's update comes out
        non-finite, the layers updated before it are restored and the error is re-raised.
        """
        validate_hyper_parameters(learning_rate, momentum, beta, epsilon, "Network")
        saved = [layer.save_state() for layer in self.layers]
        try:
            for layer in self.layers:
                logging.debug(f"Updating layer {layer.id}")
                layer.apply_gradient(optimizer, learning_rate, momentum, beta, epsilon)
        except NumericInvariantViolation:
            for layer, state in zip(self.layers, saved):
                layer.restore_state(state)
            logging.error("Gradient update produced non-finite values; all layers rolled back")
            raise

    def _check_batch(self, batch, size: int, what: str) -> np.ndarray:
        try:
            batch = np.asarray(batch, dtype=float)
        except ValueError as e:
            logging.error(f"Batch {what} rows have inconsistent lengths")
            raise DimensionMismatch(f"Batch {what} rows must all have length {size}") from e
        if batch.ndim != 2 or batch.shape[1] != size:
            logging.error(f"Batch {what}: expected shape (n, {size}), got {batch.shape}")
            raise DimensionMismatch(f"Batch {what} must have shape (n, {size}), got {batch.shape}")
        return batch

    def learn(
        self,
        learning_rate: float,
        momentum: float,
        beta: float,
        epsilon: float,
        batch_inputs: Sequence[Sequence[float]],
        batch_targets: Sequence[Sequence[float]],
        optimizer: Union[str, Optimizer, None] = None,
    ):
        """
        Trains the network on one batch.

        Clears the gradients, backpropagates every example on its own worker task,
        waits for all of them, then applies the summed gradient scaled by
        learning_rate / batch_size. If any example fails, or the update produces a
        non-finite value, no parameter changes and the first error is re-raised.

        Args:
            learning_rate: Step size before batch averaging.
            momentum: First-moment decay (MOMENTUM, ADAM), in [0, 1).
            beta: Second-moment decay (RMS_PROP, ADAM), in [0, 1).
            epsilon: Stabilizer (RMS_PROP, ADAM).
            batch_inputs: One input vector per example.
            batch_targets: One target vector per example.
            optimizer: Update rule for this call; defaults to the network's optimizer.

        Raises:
            DimensionMismatch: If the batches differ in length, are empty, or any
                               example has the wrong size.
            UnsupportedOptimizer: If `optimizer` is not a known variant.
            ConfigurationError: If momentum or beta is outside [0, 1) or epsilon is negative.
            NumericInvariantViolation: If an example or the update is not finite.
        """
        if len(batch_inputs) != len(batch_targets):
            logging.error(f"Batch size mismatch: {len(batch_inputs)} inputs, {len(batch_targets)} targets")
            raise DimensionMismatch(
                f"Number of inputs ({len(batch_inputs)}) must match number of targets ({len(batch_targets)})"
            )
        if len(batch_inputs) == 0:
            raise DimensionMismatch("Cannot learn from an empty batch.")
        batch_inputs = self._check_batch(batch_inputs, self.input_size, "inputs")
        batch_targets = self._check_batch(batch_targets, self.output_size, "targets")
        optimizer = self.optimizer if optimizer is None else Optimizer.resolve(optimizer)
        validate_hyper_parameters(learning_rate, momentum, beta, epsilon, "learn")
        batch_size = len(batch_inputs)

        with self._learn_lock:
            self.clear_gradient()

            # Leaving the executor block waits for every task
            with ThreadPoolExecutor(max_workers=min(batch_size, self.max_workers)) as pool:
                futures = [pool.submit(self.backpropagate, x, y) for x, y in zip(batch_inputs, batch_targets)]

            errors = [future.exception() for future in futures if future.exception() is not None]
            if errors:
                self.clear_gradient()
                logging.error(f"{len(errors)} of {batch_size} examples failed; batch discarded")
                raise errors[0]

            try:
                self.apply_gradient(learning_rate / batch_size, optimizer, momentum, beta, epsilon)
            finally:
                self.clear_gradient()

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        epochs: int = 100,
        batch_size: int = 32,
        learning_rate: float = 0.01,
        momentum: float = 0.9,
        beta: float = 0.999,
        epsilon: float = 1e-8,
        optimizer: Union[str, Optimizer, None] = None,
        shuffle: bool = True,
        verbose: bool = True,
        log_every: int = 10,
    ) -> Dict[str, List]:
        """
        Trains for a number of epochs using mini-batches of `learn`.

        The loss recorded for an epoch is the mean per-example cost measured on
        each batch just before it is learned.

        Returns:
            The training history dictionary ('epoch', 'loss', 'time_per_epoch').
        """
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float)
        num_samples = X.shape[0]
        if y.shape[0] != num_samples:
            raise DimensionMismatch("Number of samples in X and y must match.")
        if num_samples == 0:
            raise DimensionMismatch("Cannot fit on an empty dataset.")

        if batch_size > num_samples or batch_size <= 0:
            logging.warning(f"Batch size ({batch_size}) is not in 1..{num_samples}. Setting batch size to {num_samples}.")
            batch_size = num_samples

        for epoch in range(epochs):
            epoch_start_time = time.time()
            epoch_loss = 0.0

            indices = np.random.permutation(num_samples) if shuffle else np.arange(num_samples)
            for start in range(0, num_samples, batch_size):
                batch = indices[start:start + batch_size]
                X_batch, y_batch = X[batch], y[batch]
                epoch_loss += sum(self.cost(inputs, targets) for inputs, targets in zip(X_batch, y_batch))
                self.learn(learning_rate, momentum, beta, epsilon, X_batch, y_batch, optimizer=optimizer)

            epoch_loss /= num_samples
            epoch_time = time.time() - epoch_start_time

            self.training_history['epoch'].append(epoch)
            self.training_history['loss'].append(epoch_loss)
            self.training_history['time_per_epoch'].append(epoch_time)

            if verbose and (epoch % log_every == 0 or epoch == epochs - 1):
                print(f"Epoch {epoch+1}/{epochs} - loss: {epoch_loss:.5f} - time: {epoch_time:.2f}s")

        logging.info("Training finished.")
        return self.training_history

    # --- Introspection, copying, persistence ---

    def num_parameters(self) -> int:
        return sum(layer.num_parameters() for layer in self.layers)

    def get_config(self) -> NetworkConfig:
        """Returns a NetworkConfig that builds a network of the same shape."""
        return NetworkConfig(
            input_size=self.input_size,
            hidden_activation=self.hidden_activation.name,
            output_activation=self.output_activation.name,
            cost_function=self.cost_function.name,
            temperature=self.temperature,
            optimizer=self.optimizer,
            layers=[spec_from_config(layer.get_config()) for layer in self.layers],
        )

    def clone(self) -> 'Network':
        """Deep copy: parameters, gradients and optimizer state are all duplicated."""
        return Network(
            [layer.clone() for layer in self.layers],
            hidden_activation=self.hidden_activation,
            output_activation=self.output_activation,
            cost_function=self.cost_function,
            temperature=self.temperature,
            optimizer=self.optimizer,
            max_workers=self.max_workers,
        )

    def __eq__(self, other):
        if not isinstance(other, Network):
            return False
        return (
            self.hidden_activation == other.hidden_activation
            and self.output_activation == other.output_activation
            and self.cost_function == other.cost_function
            and self.temperature == other.temperature
            and self.optimizer is other.optimizer
            and self.layers == other.layers
        )

    __hash__ = None

    def save_weights(self, filename: str):
        """
        Saves the architecture, parameters and optimizer state to a compressed .npz file.

        Args:
            filename: Path to the file. '.npz' is appended if missing.
        """
        config = self.get_config()
        architecture = {
            'input_size': config.input_size,
            'hidden_activation': config.hidden_activation,
            'output_activation': config.output_activation,
            'cost_function': config.cost_function,
            'temperature': config.temperature,
            'optimizer': self.optimizer.value,
            'layers': [layer.get_config() for layer in self.layers],
        }
        save_dict = {'architecture': np.array(json.dumps(architecture))}
        for i, layer in enumerate(self.layers):
            save_dict[f'layer_{i}_step'] = np.array(layer.step)
            for name, param in layer.params.items():
                save_dict[f'layer_{i}_{name}'] = param
            for name, state in layer.optimizer_state.items():
                for key, value in state.items():
                    save_dict[f'layer_{i}_{name}_{key}'] = value

        filename = str(filename)
        if not filename.endswith('.npz'):
            filename += '.npz'
        np.savez_compressed(filename, **save_dict)
        logging.info(f"Network weights and configuration saved to {filename}")

    @classmethod
    def load_weights(cls, filename: str) -> 'Network':
        """
        Rebuilds a network saved with `save_weights`.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the file is incomplete or describes an invalid network.
        """
        try:
            data = np.load(filename)
        except FileNotFoundError:
            logging.error(f"Weight file not found: {filename}")
            raise

        try:
            architecture = json.loads(str(data['architecture']))
            config = NetworkConfig(
                input_size=architecture['input_size'],
                hidden_activation=architecture['hidden_activation'],
                output_activation=architecture['output_activation'],
                cost_function=architecture['cost_function'],
                temperature=architecture['temperature'],
                optimizer=architecture['optimizer'],
                layers=[spec_from_config(layer) for layer in architecture['layers']],
            )
            network = build(config)
            for i, layer in enumerate(network.layers):
                layer.step = int(data[f'layer_{i}_step'])
                for name in layer.params:
                    layer.params[name][...] = data[f'layer_{i}_{name}']
                    for key in ('velocity', 'velocity_squared'):
                        state_key = f'layer_{i}_{name}_{key}'
                        if state_key in data.files:
                            layer.optimizer_state.setdefault(name, {})[key] = np.array(data[state_key], dtype=float)
        except KeyError as e:
            logging.error(f"Missing expected key in weight file {filename}: {e}")
            raise ValueError(f"Incompatible or incomplete weight file: {filename}") from e
        finally:
            data.close()

        logging.info(f"Network loaded successfully from {filename}")
        return network

    def summary(self) -> str:
        """Generates a text summary of the network architecture and parameters."""
        summary_str = "\n" + "=" * 50 + "\n"
        summary_str += "Neural Network Summary\n"
        summary_str += "=" * 50 + "\n"
        summary_str += f"Input size: {self.input_size}\n"
        summary_str += f"Hidden activation: {self.hidden_activation.__class__.__name__}\n"
        summary_str += f"Output activation: {self.output_activation.__class__.__name__}"
        if isinstance(self.output_activation, Softmax):
            summary_str += f" (temperature={self.temperature})"
        summary_str += f"\nCost: {self.cost_function.__class__.__name__}\n"
        summary_str += "-" * 50 + "\n"
        for layer in self.layers:
            summary_str += layer.summary()
            summary_str += "-" * 50 + "\n"
        summary_str += f"Total Parameters: {self.num_parameters()}\n"
        summary_str += "=" * 50 + "\n"
        return summary_str

    def __repr__(self):
        return (f"Network(input_size={self.input_size}, output_size={self.output_size}, "
                f"layers={len(self.layers)}, parameters={self.num_parameters()})")


# --- Functional entry points ---

def forward(network: Network, inputs: Sequence[float]) -> np.ndarray:
    """Evaluates `network` on one input vector."""
    return network.forward(inputs)


def learn(
    network: Network,
    learning_rate: float,
    momentum: float,
    beta: float,
    epsilon: float,
    batch_inputs: Sequence[Sequence[float]],
    batch_targets: Sequence[Sequence[float]],
    optimizer: Union[str, Optimizer, None] = None,
):
    """Trains `network` on one batch. See Network.learn."""
    network.learn(learning_rate, momentum, beta, epsilon, batch_inputs, batch_targets, optimizer=optimizer)


def set_temperature(network: Network, value: float):
    """Sets the softmax temperature of `network`."""
    network.set_temperature(value)
