import numpy as np
import pytest

from clear_net.costs import CrossEntropy, MeanSquaredError, get_cost
from clear_net.errors import DimensionMismatch, NumericInvariantViolation


def test_mse_values_and_derivative():
    mse = MeanSquaredError()
    outputs, targets = np.array([1.0, 2.0]), np.array([0.0, 0.0])
    np.testing.assert_allclose(mse.calculate(outputs, targets), [0.5, 2.0])
    np.testing.assert_allclose(mse.derivative(outputs, targets), [1.0, 2.0])


def test_cross_entropy_one_hot():
    ce = CrossEntropy()
    outputs, targets = np.array([0.2, 0.8]), np.array([0.0, 1.0])
    assert np.sum(ce.calculate(outputs, targets)) == pytest.approx(-2 * np.log(0.8))
    np.testing.assert_allclose(ce.derivative(outputs, targets), [1 / 0.8, -1 / 0.8])


def test_cross_entropy_stays_finite_at_the_edges():
    ce = CrossEntropy()
    outputs, targets = np.array([0.0, 1.0]), np.array([1.0, 0.0])
    assert np.all(np.isfinite(ce.calculate(outputs, targets)))
    assert np.all(np.isfinite(ce.derivative(outputs, targets)))


def test_shape_mismatch():
    with pytest.raises(DimensionMismatch):
        MeanSquaredError().calculate(np.zeros(3), np.zeros(2))


def test_non_finite_prediction():
    with pytest.raises(NumericInvariantViolation):
        CrossEntropy().derivative(np.array([np.nan, 0.5]), np.array([0.0, 1.0]))


def test_get_cost():
    assert isinstance(get_cost('squared_error'), MeanSquaredError)
    assert isinstance(get_cost('Cross_Entropy'), CrossEntropy)
    with pytest.raises(ValueError):
        get_cost('hinge')
