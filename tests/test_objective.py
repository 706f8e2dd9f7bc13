import numpy as np
import pytest

from lidarcalib.core.objective import DifferentiableObjective, NumericDiffObjective
from lidarcalib.errors import EvaluationError, NumericDegeneracyError


def _quadratic(p: np.ndarray) -> float:
    w = np.arange(1.0, p.size + 1.0)
    return float(np.sum(w * (p - 0.5) ** 2))


def test_central_difference_gradient_matches_analytic():
    obj = NumericDiffObjective(_quadratic, num_parameters=6, step=1e-4)
    p = np.array([0.1, -0.2, 0.3, 0.0, 1.0, -1.0])
    cost, grad = obj.evaluate_with_gradient(p)
    assert cost == pytest.approx(_quadratic(p))
    expected = 2.0 * np.arange(1.0, 7.0) * (p - 0.5)
    np.testing.assert_allclose(grad, expected, atol=1e-6)
    assert obj.evaluations == 1 + 2 * 6


def test_parameters_are_not_mutated():
    seen = []

    def cost_fn(p: np.ndarray) -> float:
        seen.append(p)
        p += 100.0
        return 0.0

    obj = NumericDiffObjective(cost_fn, num_parameters=3)
    p = np.array([1.0, 2.0, 3.0])
    obj.evaluate_with_gradient(p)
    assert p.tolist() == [1.0, 2.0, 3.0]
    assert len(seen) == 7


def test_wrong_size_is_rejected():
    obj = NumericDiffObjective(_quadratic, num_parameters=6)
    with pytest.raises(ValueError):
        obj.evaluate(np.zeros(5))


def test_degenerate_cost_becomes_evaluation_error():
    def cost_fn(p: np.ndarray) -> float:
        raise NumericDegeneracyError("no samples")

    obj = NumericDiffObjective(cost_fn)
    with pytest.raises(EvaluationError):
        obj.evaluate(np.zeros(6))


def test_non_finite_cost_becomes_evaluation_error():
    obj = NumericDiffObjective(lambda p: float("nan"))
    with pytest.raises(EvaluationError):
        obj.evaluate_with_gradient(np.zeros(6))


def test_base_class_is_abstract():
    with pytest.raises(TypeError):
        DifferentiableObjective()  # type: ignore[abstract]
