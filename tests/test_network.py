import threading

import numpy as np
import pytest

import clear_net
from clear_net import (
    ConfigurationError, DimensionMismatch, Network, NetworkConfig, NumericInvariantViolation,
    Optimizer, UnsupportedOptimizer, build,
)
from clear_net.activations import Softmax


def small_classifier(temperature=1.0, optimizer=Optimizer.SGD):
    np.random.seed(42)
    config = (NetworkConfig(input_size=9,
                            hidden_activation='tanh',
                            output_activation='softmax',
                            cost_function='cross_entropy',
                            temperature=temperature,
                            optimizer=optimizer)
              .add_convolutional(3, 3, 1, 2, 2, 2)
              .add_dense(3))
    return build(config)


def linear_network():
    config = (NetworkConfig(input_size=2, hidden_activation='identity',
                            output_activation='identity', cost_function='mse')
              .add_dense(1))
    network = build(config)
    network.layers[0].params['weights'][...] = [[0.5, 0.5]]
    network.layers[0].params['bias'][...] = 0.0
    return network


# --- build ---

def test_build_creates_connected_layers():
    network = small_classifier()
    assert [layer.id for layer in network.layers] == [0, 1]
    assert network.input_size == 9
    assert network.layers[0].nodes == 8
    assert network.layers[1].input_size == 8
    assert network.output_size == 3
    assert network.num_parameters() == (2 * 2 * 2 + 8) + (3 * 8 + 3)


@pytest.mark.parametrize("missing", ['input_size', 'hidden_activation', 'output_activation', 'cost_function'])
def test_build_requires_mandatory_fields(missing):
    config = NetworkConfig(input_size=2, hidden_activation='relu', output_activation='sigmoid',
                           cost_function='mse').add_dense(1)
    setattr(config, missing, None)
    with pytest.raises(ConfigurationError, match=missing):
        build(config)


def test_build_requires_layers():
    with pytest.raises(ConfigurationError):
        build(NetworkConfig(input_size=2, hidden_activation='relu', output_activation='sigmoid',
                            cost_function='mse'))


def test_build_rejects_unknown_tags():
    config = NetworkConfig(input_size=2, hidden_activation='gelu', output_activation='sigmoid',
                           cost_function='mse').add_dense(1)
    with pytest.raises(ConfigurationError):
        build(config)
    config.hidden_activation = 'relu'
    config.optimizer = 'adagrad'
    with pytest.raises(ConfigurationError):
        build(config)


def test_build_rejects_convolution_of_wrong_size():
    config = (NetworkConfig(input_size=10, hidden_activation='relu', output_activation='softmax',
                            cost_function='cross_entropy')
              .add_convolutional(3, 3, 1, 2, 2, 1)
              .add_dense(2))
    with pytest.raises(ConfigurationError):
        build(config)


def test_network_rejects_disconnected_layers():
    with pytest.raises(ConfigurationError):
        Network([clear_net.DenseLayer(2, 3), clear_net.DenseLayer(4, 1)], 'relu', 'identity', 'mse')


# --- forward / backpropagate ---

def test_forward_linear_scenario():
    network = linear_network()
    np.testing.assert_allclose(network.forward([1.0, 2.0]), [1.5])
    np.testing.assert_allclose(clear_net.forward(network, np.array([1.0, 2.0])), [1.5])


def test_forward_wrong_input_size():
    network = linear_network()
    with pytest.raises(DimensionMismatch):
        network.forward([1.0, 2.0, 3.0])


def test_backpropagate_linear_scenario():
    network = linear_network()
    network.backpropagate([1.0, 2.0], [2.0])
    layer = network.layers[0]
    np.testing.assert_allclose(layer.grads['weights'], [[-1.0, -2.0]])
    np.testing.assert_allclose(layer.grads['bias'], [-1.0])


def test_cost_is_summed():
    network = linear_network()
    assert network.cost([1.0, 2.0], [2.0]) == pytest.approx(0.25)


@pytest.mark.parametrize("temperature", [1.0, 2.5])
def test_backpropagate_matches_finite_differences(temperature):
    network = small_classifier(temperature=temperature)
    rng = np.random.RandomState(0)
    inputs = rng.normal(size=9)
    targets = np.array([0.0, 1.0, 0.0])
    h = 1e-5

    input_gradient = network.backpropagate(inputs, targets)

    for layer in network.layers:
        for name, param in layer.params.items():
            numeric = np.zeros_like(param)
            for idx in np.ndindex(param.shape):
                original = param[idx]
                param[idx] = original + h
                plus = network.cost(inputs, targets)
                param[idx] = original - h
                minus = network.cost(inputs, targets)
                param[idx] = original
                numeric[idx] = (plus - minus) / (2 * h)
            np.testing.assert_allclose(layer.grads[name], numeric, atol=1e-6, rtol=1e-4)

    numeric_input = np.zeros(9)
    for i in range(9):
        step = np.zeros(9)
        step[i] = h
        numeric_input[i] = (network.cost(inputs + step, targets) - network.cost(inputs - step, targets)) / (2 * h)
    np.testing.assert_allclose(input_gradient, numeric_input, atol=1e-6, rtol=1e-4)


# --- temperature ---

def test_temperature_divides_logits_once():
    network = small_classifier(temperature=3.0)
    inputs = np.linspace(-1, 1, 9)
    hidden = network.hidden_activation.calculate(network.layers[0].forward(inputs))
    logits = network.layers[1].forward(hidden)
    np.testing.assert_allclose(network.forward(inputs), Softmax().calculate(logits / 3.0))


def test_set_temperature_validation():
    network = small_classifier()
    clear_net.set_temperature(network, 0.5)
    assert network.temperature == 0.5
    for bad in (0.0, -1.0):
        with pytest.raises(ConfigurationError):
            network.set_temperature(bad)
    with pytest.raises(NumericInvariantViolation):
        network.set_temperature(np.nan)
    assert network.temperature == 0.5


# --- learn ---

def test_learn_matches_averaged_manual_update():
    network = small_classifier()
    manual = network.clone()
    rng = np.random.RandomState(1)
    inputs = rng.normal(size=(2, 9))
    targets = np.eye(3)[[0, 2]]

    network.learn(0.1, 0.9, 0.999, 1e-8, inputs, targets)

    for x, t in zip(inputs, targets):
        manual.backpropagate(x, t)
    manual.apply_gradient(0.1 / 2, Optimizer.SGD, 0.9, 0.999, 1e-8)
    manual.clear_gradient()

    for trained, expected in zip(network.layers, manual.layers):
        for name in trained.params:
            np.testing.assert_allclose(trained.params[name], expected.params[name], rtol=1e-12, atol=1e-12)
            assert not np.any(trained.grads[name])


def test_learn_mismatched_batch_lengths_changes_nothing():
    network = small_classifier()
    before = network.clone()
    with pytest.raises(DimensionMismatch):
        network.learn(0.1, 0.9, 0.999, 1e-8, np.zeros((3, 9)), np.zeros((2, 3)))
    assert network == before


def test_learn_empty_batch():
    network = small_classifier()
    with pytest.raises(DimensionMismatch):
        network.learn(0.1, 0.9, 0.999, 1e-8, [], [])


def test_learn_wrong_example_size():
    network = small_classifier()
    before = network.clone()
    with pytest.raises(DimensionMismatch):
        network.learn(0.1, 0.9, 0.999, 1e-8, np.zeros((2, 8)), np.zeros((2, 3)))
    assert network == before


def test_failed_example_discards_the_whole_batch():
    network = small_classifier()
    before = network.clone()
    inputs = np.zeros((4, 9))
    inputs[2, 5] = np.nan
    with pytest.raises(NumericInvariantViolation):
        network.learn(0.1, 0.9, 0.999, 1e-8, inputs, np.tile([1.0, 0.0, 0.0], (4, 1)))
    assert network == before


def test_failed_update_rolls_back_every_layer(monkeypatch):
    network = small_classifier(optimizer=Optimizer.ADAM)
    rng = np.random.RandomState(8)
    inputs = rng.normal(size=(3, 9))
    targets = np.eye(3)[[0, 1, 2]]
    network.learn(0.01, 0.9, 0.999, 1e-8, inputs, targets)
    before = network.clone()

    last = network.layers[-1]

    def overflowing_update(name, *args):
        last.params[name][...] = np.inf

    # The first layer updates cleanly, then the last one overflows
    monkeypatch.setattr(last, '_update_parameter', overflowing_update)
    with pytest.raises(NumericInvariantViolation):
        network.learn(0.01, 0.9, 0.999, 1e-8, inputs, targets)

    assert network == before
    assert network.layers[0].step == 2
    assert np.all(np.isfinite(network.forward(inputs[0])))


@pytest.mark.parametrize("momentum, beta, epsilon", [
    (1.0, 0.999, 1e-8),
    (-0.1, 0.999, 1e-8),
    (0.9, 1.0, 1e-8),
    (0.9, 1.5, 1e-8),
    (0.9, 0.999, -1e-8),
])
def test_learn_rejects_out_of_range_hyper_parameters(momentum, beta, epsilon):
    network = small_classifier(optimizer=Optimizer.ADAM)
    before = network.clone()
    with pytest.raises(ConfigurationError):
        network.learn(0.1, momentum, beta, epsilon, np.ones((1, 9)), [[0.0, 1.0, 0.0]])
    assert network == before


def test_concurrent_learn_calls_are_serialized():
    network = small_classifier()
    serial = network.clone()
    rng = np.random.RandomState(6)
    inputs = rng.normal(size=(2, 9))
    targets = np.eye(3)[[1, 2]]
    errors = []

    def train():
        try:
            for _ in range(10):
                network.learn(0.05, 0.9, 0.999, 1e-8, inputs, targets)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=train) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    for _ in range(40):
        serial.learn(0.05, 0.9, 0.999, 1e-8, inputs, targets)

    assert errors == []
    for trained, expected in zip(network.layers, serial.layers):
        for name in trained.params:
            np.testing.assert_allclose(trained.params[name], expected.params[name], rtol=1e-10, atol=1e-12)
            assert not np.any(trained.grads[name])


def test_learn_unsupported_optimizer():
    network = small_classifier()
    with pytest.raises(UnsupportedOptimizer):
        network.learn(0.1, 0.9, 0.999, 1e-8, np.zeros((1, 9)), [[1.0, 0.0, 0.0]], optimizer='adagrad')


@pytest.mark.parametrize("optimizer", list(Optimizer))
def test_learn_reduces_cost(optimizer):
    network = small_classifier(optimizer=optimizer)
    rng = np.random.RandomState(5)
    inputs = rng.normal(size=(6, 9))
    targets = np.eye(3)[[0, 1, 2, 0, 1, 2]]

    def total_cost():
        return sum(network.cost(x, t) for x, t in zip(inputs, targets))

    learning_rate = {Optimizer.SGD: 0.05, Optimizer.MOMENTUM: 0.05,
                     Optimizer.RMS_PROP: 0.001, Optimizer.ADAM: 0.005}[optimizer]
    initial = total_cost()
    for _ in range(100):
        clear_net.learn(network, learning_rate, 0.9, 0.999, 1e-8, inputs, targets)
    assert total_cost() < initial
    if optimizer is Optimizer.ADAM:
        assert all(layer.step == 101 for layer in network.layers)
    else:
        assert all(layer.step == 1 for layer in network.layers)


def test_fit_records_history(capsys):
    network = small_classifier()
    rng = np.random.RandomState(2)
    X = rng.normal(size=(10, 9))
    y = np.eye(3)[rng.randint(0, 3, size=10)]
    history = network.fit(X, y, epochs=3, batch_size=4, learning_rate=0.05, log_every=1)
    assert history['epoch'] == [0, 1, 2]
    assert len(history['loss']) == 3
    assert all(np.isfinite(history['loss']))
    assert "Epoch 3/3" in capsys.readouterr().out


def test_predict_batch():
    network = small_classifier()
    X = np.random.RandomState(3).normal(size=(4, 9))
    predictions = network.predict(X)
    assert predictions.shape == (4, 3)
    np.testing.assert_allclose(predictions.sum(axis=1), 1.0)
    np.testing.assert_allclose(predictions[1], network.forward(X[1]))


# --- copying and persistence ---

def test_clone_is_equal_and_independent():
    network = small_classifier()
    duplicate = network.clone()
    assert duplicate == network
    duplicate.layers[1].params['bias'][0] += 1.0
    assert duplicate != network


def test_save_and_load_round_trip(tmp_path):
    network = small_classifier(temperature=2.0, optimizer=Optimizer.ADAM)
    rng = np.random.RandomState(4)
    for _ in range(3):
        network.learn(0.01, 0.9, 0.999, 1e-8, rng.normal(size=(4, 9)), np.eye(3)[[0, 1, 2, 1]])

    path = tmp_path / "weights"
    network.save_weights(str(path))
    restored = Network.load_weights(str(path) + ".npz")

    assert restored == network
    assert restored.optimizer is Optimizer.ADAM
    assert restored.temperature == 2.0
    assert restored.layers[0].step == 4
    inputs = rng.normal(size=9)
    np.testing.assert_allclose(restored.forward(inputs), network.forward(inputs))


def test_load_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        Network.load_weights(str(tmp_path / "missing.npz"))


def test_summary_mentions_every_layer():
    text = small_classifier().summary()
    assert "ConvolutionalLayer" in text
    assert "DenseLayer" in text
    assert "Total Parameters: 43" in text
