from __future__ import annotations

import enum
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import numpy as np

from lidarcalib.config import CalibrationConfig
from lidarcalib.core.camera import CameraModel
from lidarcalib.core.geometry import CalibrationParameters, as_transform, matrix_to_params, params_to_matrix
from lidarcalib.core.objective import DifferentiableObjective, NumericDiffObjective
from lidarcalib.data import CalibrationSample, prepare_scan, validate_samples
from lidarcalib.errors import EvaluationError
from lidarcalib.mi.cost import MutualInformationCost
from lidarcalib.mi.histogram import build_histogram
from lidarcalib.telemetry import TelemetrySink


logger = logging.getLogger(__name__)


class Termination(str, enum.Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    SOLVER_FAILURE = "solver_failure"


@dataclass(frozen=True)
class SolverSummary:
    iterations: int
    final_cost: float
    termination: Termination
    message: str
    evaluations: int


@dataclass(frozen=True)
class CameraLidarResult:
    parameters: CalibrationParameters
    initial_parameters: CalibrationParameters
    summary: SolverSummary

    @property
    def transform(self) -> np.ndarray:
        return self.parameters.to_matrix()


def initial_parameters(samples: Sequence[CalibrationSample], initial_transform: np.ndarray | None = None) -> np.ndarray:
    """
    Starting 6-vector: explicit transform, else the one recorded with the first sample, else identity.
    """
    if initial_transform is None and samples and samples[0].initial_transform is not None:
        initial_transform = samples[0].initial_transform
    if initial_transform is None:
        return np.zeros((6,), dtype=np.float64)
    return matrix_to_params(as_transform(initial_transform))


def _termination_from_scipy(status: int, success: bool) -> Termination:
    if success:
        return Termination.CONVERGED
    if status == 1:
        return Termination.MAX_ITERATIONS_REACHED
    # Status 2: the line search could not reduce the cost any further (step-size underflow).
    if status == 2:
        return Termination.CONVERGED
    return Termination.SOLVER_FAILURE


def minimize_objective(
    objective: DifferentiableObjective,
    x0: np.ndarray,
    *,
    max_iterations: int,
    gradient_tolerance: float,
) -> tuple[np.ndarray, SolverSummary]:
    """
    Run SciPy's BFGS (quasi-Newton with line search) on `objective` from `x0`.

    An evaluation failure ends the run with SOLVER_FAILURE and the last parameters that
    evaluated successfully.
    """
    from scipy.optimize import minimize  # type: ignore

    x0 = np.asarray(x0, dtype=np.float64).reshape(-1)
    best = {"x": x0.copy(), "cost": float("nan"), "iterations": 0}

    def fun(p: np.ndarray) -> tuple[float, np.ndarray]:
        cost, grad = objective.evaluate_with_gradient(p)
        best["x"] = np.array(p, dtype=np.float64, copy=True)
        best["cost"] = cost
        return cost, grad

    def callback(_xk: np.ndarray) -> None:
        best["iterations"] += 1

    n_evals_before = getattr(objective, "evaluations", 0)
    try:
        res = minimize(
            fun,
            x0,
            jac=True,
            method="BFGS",
            callback=callback,
            options={"maxiter": int(max_iterations), "gtol": float(gradient_tolerance)},
        )
    except EvaluationError as e:
        logger.warning("optimization aborted: %s", e)
        summary = SolverSummary(
            iterations=int(best["iterations"]),
            final_cost=float(best["cost"]),
            termination=Termination.SOLVER_FAILURE,
            message=str(e),
            evaluations=int(getattr(objective, "evaluations", 0) - n_evals_before),
        )
        return np.asarray(best["x"], dtype=np.float64), summary

    summary = SolverSummary(
        iterations=int(res.nit),
        final_cost=float(res.fun),
        termination=_termination_from_scipy(int(res.status), bool(res.success)),
        message=str(res.message),
        evaluations=int(getattr(objective, "evaluations", 0) - n_evals_before),
    )
    return np.asarray(res.x, dtype=np.float64), summary


def calibrate_camera_lidar(
    samples: Sequence[CalibrationSample],
    cameras: Mapping[str, CameraModel],
    *,
    config: CalibrationConfig | None = None,
    initial_transform: np.ndarray | None = None,
    telemetry: TelemetrySink | None = None,
) -> CameraLidarResult:
    """
    Estimate the lidar -> sensor-head transform by maximizing mutual information between
    lidar reflectance and image intensity over all samples.

    Raises DataError before any optimization when the samples are unusable.
    """
    cfg = config or CalibrationConfig()
    validate_samples(samples, cameras)

    samples = list(samples)
    if cfg.prepare_scans:
        rng = np.random.default_rng(int(cfg.seed))
        samples = [
            prepare_scan(s, max_reflectance=cfg.max_reflectance, sample_size=cfg.scan_sample_size, rng=rng)
            for s in samples
        ]
        validate_samples(samples, cameras)

    x0 = initial_parameters(samples, initial_transform)
    logger.info("initial calibration: %s", np.array2string(x0, precision=6))

    cost = MutualInformationCost(
        samples,
        cameras,
        bin_fraction=cfg.bin_fraction,
        telemetry=telemetry,
        overlay_distance=cfg.overlay_distance,
    )
    objective = NumericDiffObjective(cost, num_parameters=6, step=cfg.gradient_step)
    x, summary = minimize_objective(
        objective, x0, max_iterations=cfg.max_iterations, gradient_tolerance=cfg.gradient_tolerance
    )
    logger.info(
        "optimization finished (%s) after %d iterations, cost %.10f: %s",
        summary.termination.value,
        summary.iterations,
        summary.final_cost,
        np.array2string(x, precision=6),
    )

    if telemetry is not None:
        build_histogram(
            samples,
            params_to_matrix(x),
            cameras,
            bin_fraction=cfg.bin_fraction,
            telemetry=telemetry,
            overlay_distance=cfg.overlay_distance,
        )

    return CameraLidarResult(
        parameters=CalibrationParameters.from_array(x),
        initial_parameters=CalibrationParameters.from_array(x0),
        summary=summary,
    )


def sweep_cost(
    objective: DifferentiableObjective,
    params: np.ndarray,
    index: int,
    offsets: Sequence[float],
) -> np.ndarray:
    """
    Cost after offsetting parameter `index` of `params` by each value in `offsets`.

    Useful to inspect the shape of the cost around a calibration.
    """
    base = np.asarray(params, dtype=np.float64).reshape(-1)
    if not 0 <= int(index) < base.size:
        raise ValueError(f"index must be in [0, {base.size})")
    costs = np.empty((len(offsets),), dtype=np.float64)
    for k, off in enumerate(offsets):
        p = base.copy()
        p[int(index)] += float(off)
        costs[k] = objective.evaluate(p)
    return costs
