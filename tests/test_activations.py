import numpy as np
import pytest

from clear_net.activations import (
    ACTIVATION_FUNCTIONS, Identity, LeakyReLU, ReLU, Sigmoid, Softmax, Tanh,
    get_activation, get_initializer,
)
from clear_net.errors import NumericInvariantViolation


def numerical_vjp(activation, z, gradient, h=1e-6):
    """d/dz of dot(gradient, activation(z)) by central differences."""
    result = np.zeros_like(z)
    for i in range(z.size):
        step = np.zeros_like(z)
        step[i] = h
        result[i] = (np.dot(gradient, activation.calculate(z + step))
                     - np.dot(gradient, activation.calculate(z - step))) / (2 * h)
    return result


@pytest.mark.parametrize("z", [
    [1.0, 2.0, 3.0, -4.0],
    [0.0, 0.0, 0.0, 0.0, 0.0],
    [-1000.0, -1000.5, -999.0],
    [700.0, 710.0, 720.0],
    [1e6, -1e6, 3.0],
    [-3e-8, 42.0, -17.5, 0.125, 9.75, -250.0],
])
def test_softmax_is_a_distribution(z):
    out = Softmax().calculate(np.array(z))
    assert np.all(out >= 0)
    assert np.sum(out) == pytest.approx(1.0, abs=1e-9)


def test_softmax_shift_invariant_and_stable_for_large_inputs():
    z = np.array([0.5, -1.0, 2.0])
    np.testing.assert_allclose(Softmax().calculate(z), Softmax().calculate(z + 1000.0))


def test_relu_and_leaky_relu_values():
    z = np.array([-2.0, 0.0, 3.0])
    np.testing.assert_array_equal(ReLU().calculate(z), [0.0, 0.0, 3.0])
    np.testing.assert_allclose(LeakyReLU().calculate(z), [-0.2, 0.0, 3.0])


def test_relu_derivative_masks_gradient():
    z = np.array([-1.0, 2.0])
    np.testing.assert_array_equal(ReLU().derivative(z, np.array([5.0, 7.0])), [0.0, 7.0])


def test_sigmoid_saturates_without_overflow():
    out = Sigmoid().calculate(np.array([-1000.0, 0.0, 1000.0]))
    np.testing.assert_allclose(out, [0.0, 0.5, 1.0], atol=1e-12)


@pytest.mark.parametrize("activation", [Identity(), LeakyReLU(), Sigmoid(), Tanh(), Softmax()])
def test_derivative_matches_finite_differences(activation):
    rng = np.random.RandomState(0)
    z = rng.normal(size=5)
    gradient = rng.normal(size=5)
    np.testing.assert_allclose(
        activation.derivative(z, gradient), numerical_vjp(activation, z, gradient), atol=1e-7,
    )


@pytest.mark.parametrize("bad", [np.nan, np.inf, -np.inf])
def test_non_finite_input_is_rejected(bad):
    with pytest.raises(NumericInvariantViolation):
        Tanh().calculate(np.array([0.0, bad]))
    with pytest.raises(NumericInvariantViolation):
        Softmax().derivative(np.array([0.0, 1.0]), np.array([bad, 0.0]))


def test_get_activation_by_tag_and_instance():
    assert isinstance(get_activation('RELU'), ReLU)
    assert isinstance(get_activation('linear'), Identity)
    instance = Tanh()
    assert get_activation(instance) is instance
    assert set(ACTIVATION_FUNCTIONS) >= {'identity', 'relu', 'leaky_relu', 'sigmoid', 'tanh', 'softmax'}


def test_get_activation_unknown_tag():
    with pytest.raises(ValueError, match="Unknown activation"):
        get_activation('swish')


def test_initializer_scale_depends_on_activation():
    np.random.seed(0)
    he = get_initializer(ReLU(), 300, 200)((200, 300))
    xavier = get_initializer(Tanh(), 300, 200)((200, 300))
    assert he.shape == xavier.shape == (200, 300)
    assert np.std(he) == pytest.approx(np.sqrt(2.0 / 500), rel=0.05)
    assert np.std(xavier) == pytest.approx(np.sqrt(1.0 / np.sqrt(500)), rel=0.05)
