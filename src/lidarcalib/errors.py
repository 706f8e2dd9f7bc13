from __future__ import annotations


class DataError(ValueError):
    """Calibration input is missing or malformed; raised before any numeric work."""


class NumericDegeneracyError(ArithmeticError):
    """A statistic cannot be computed (e.g. a histogram with zero accumulated pairs)."""


class EvaluationError(RuntimeError):
    """An objective evaluation failed; the original cause is chained."""
