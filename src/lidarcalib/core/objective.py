from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable

import numpy as np

from lidarcalib.errors import EvaluationError, NumericDegeneracyError


class DifferentiableObjective(ABC):
    """
    Scalar objective of a parameter vector, with a gradient.

    Implementations must not modify the parameter vector they are given. A failed
    evaluation raises EvaluationError.
    """

    @property
    @abstractmethod
    def num_parameters(self) -> int: ...

    @abstractmethod
    def evaluate(self, params: np.ndarray) -> float: ...

    @abstractmethod
    def evaluate_with_gradient(self, params: np.ndarray) -> tuple[float, np.ndarray]: ...

    def _check(self, params: np.ndarray) -> np.ndarray:
        p = np.array(params, dtype=np.float64, copy=True).reshape(-1)
        if p.size != self.num_parameters:
            raise ValueError(f"expected {self.num_parameters} parameters, got {p.size}")
        return p


class NumericDiffObjective(DifferentiableObjective):
    """
    Gradient by central differences:

      g_i = (f(p + h e_i) - f(p - h e_i)) / (2 h)

    which costs 2 * num_parameters extra evaluations per gradient.
    """

    def __init__(self, cost_fn: Callable[[np.ndarray], float], num_parameters: int = 6, step: float = 1e-4) -> None:
        if num_parameters < 1:
            raise ValueError("num_parameters must be >= 1")
        if not step > 0:
            raise ValueError("step must be > 0")
        self._cost_fn = cost_fn
        self._n = int(num_parameters)
        self.step = float(step)
        self.evaluations = 0

    @property
    def num_parameters(self) -> int:
        return self._n

    def _call(self, p: np.ndarray) -> float:
        self.evaluations += 1
        try:
            cost = float(self._cost_fn(p.copy()))
        except NumericDegeneracyError as e:
            raise EvaluationError(f"cost evaluation failed: {e}") from e
        if not np.isfinite(cost):
            raise EvaluationError(f"cost evaluation returned {cost}")
        return cost

    def evaluate(self, params: np.ndarray) -> float:
        return self._call(self._check(params))

    def evaluate_with_gradient(self, params: np.ndarray) -> tuple[float, np.ndarray]:
        p = self._check(params)
        cost = self._call(p)
        grad = np.zeros((self._n,), dtype=np.float64)
        h = self.step
        for i in range(self._n):
            p_plus = p.copy()
            p_minus = p.copy()
            p_plus[i] += h
            p_minus[i] -= h
            grad[i] = (self._call(p_plus) - self._call(p_minus)) / (2.0 * h)
        return cost, grad
