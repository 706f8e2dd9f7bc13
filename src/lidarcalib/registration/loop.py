from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

import numpy as np

from lidarcalib.config import CalibrationConfig
from lidarcalib.core.geometry import CalibrationParameters, as_transform, params_to_matrix, transform_points
from lidarcalib.errors import DataError
from lidarcalib.registration.neighbors import NO_MATCH, find_correspondences
from lidarcalib.registration.normals import WeightedNormals, estimate_normals
from lidarcalib.registration.planes import Plane, fit_plane_ransac
from lidarcalib.telemetry import NullTelemetry, TelemetrySink


logger = logging.getLogger(__name__)

# x, y, roll, pitch, yaw; z stays 0 in the lidar-lidar problem.
FREE_PARAMETERS = (0, 1, 3, 4, 5)


class RegistrationState(str, enum.Enum):
    INITIALIZE = "initialize"
    APPLY_TRANSFORM = "apply_transform"
    ESTIMATE_NORMALS = "estimate_normals"
    FIND_CORRESPONDENCES = "find_correspondences"
    SOLVE_INCREMENT = "solve_increment"
    CHECK_CONVERGENCE = "check_convergence"
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"

    @property
    def terminal(self) -> bool:
        return self in (RegistrationState.CONVERGED, RegistrationState.MAX_ITERATIONS_REACHED)


@dataclass(frozen=True)
class RegistrationResult:
    parameters: CalibrationParameters
    state: RegistrationState
    iterations: int
    sequence: tuple[CalibrationParameters, ...]
    residual_rms: float
    correspondences: np.ndarray  # (N_source,) target index or NO_MATCH
    planes: dict[str, Plane] = field(default_factory=dict)
    diagnostics: dict[str, float] = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return self.state == RegistrationState.CONVERGED


def _expand(free: np.ndarray) -> np.ndarray:
    p = np.zeros((6,), dtype=np.float64)
    p[list(FREE_PARAMETERS)] = np.asarray(free, dtype=np.float64).reshape(len(FREE_PARAMETERS))
    return p


def _crop(points: np.ndarray, crop_range: float | None) -> np.ndarray:
    if crop_range is None:
        return points
    return points[np.linalg.norm(points, axis=1) <= float(crop_range)]


def point_to_plane_residuals(
    params: np.ndarray,
    source: np.ndarray,
    target: np.ndarray,
    normals: np.ndarray,
    sqrt_weights: np.ndarray,
) -> np.ndarray:
    """
    r_i = sqrt(w_i) * n_i . (T(params) s_i - q_i)

    Signed distance from each transformed source point to the plane through its matched
    target point, with the plane orientation taken from the estimated normal.
    """
    moved = transform_points(params_to_matrix(params), source)
    return sqrt_weights * np.sum(normals * (moved - target), axis=1)


def solve_increment(
    current: np.ndarray,
    source: np.ndarray,
    target: np.ndarray,
    normals: WeightedNormals,
    mapping: np.ndarray,
    *,
    loss: str = "linear",
    f_scale: float = 0.05,
    max_nfev: int = 100,
) -> tuple[np.ndarray, dict[str, float]]:
    """
    One non-linear least-squares update of the 5 free parameters, starting at `current`.

    Only correspondences with a match and a usable normal contribute. With fewer residuals
    than free parameters no solve is made: the current estimate is returned unchanged and
    `diag["solved"]` is 0.
    """
    from scipy.optimize import least_squares  # type: ignore

    current = np.asarray(current, dtype=np.float64).reshape(6)
    valid = (mapping != NO_MATCH) & normals.valid
    n_valid = int(valid.sum())
    diag: dict[str, float] = {"n_valid": float(n_valid), "n_no_match": float(np.sum(mapping == NO_MATCH))}
    if n_valid < len(FREE_PARAMETERS):
        logger.warning("only %d usable correspondences; keeping the current estimate", n_valid)
        diag.update({"solved": 0.0, "solve_cost": float("nan"), "solve_nfev": 0.0, "solve_success": 0.0})
        return current.copy(), diag

    S = np.asarray(source, dtype=np.float64)[valid]
    Q = np.asarray(target, dtype=np.float64)[mapping[valid]]
    N = normals.normals[valid]
    sw = np.sqrt(normals.weights[valid])

    def fun(q: np.ndarray) -> np.ndarray:
        return point_to_plane_residuals(_expand(q), S, Q, N, sw)

    q0 = current[list(FREE_PARAMETERS)]
    sol = least_squares(fun, q0, method="trf", loss=loss, f_scale=float(f_scale), max_nfev=int(max_nfev))
    diag.update(
        {
            "solved": 1.0,
            "solve_cost": float(sol.cost),
            "solve_nfev": float(sol.nfev),
            "solve_success": float(bool(sol.success)),
            "residual_rms": float(np.sqrt(np.mean(sol.fun**2))),
        }
    )
    return _expand(sol.x), diag


class LidarCalibration:
    """
    Iterative point-to-plane registration of two overlapping clouds of the same lidar.

    The candidate calibration (x, y, roll, pitch, yaw; z = 0) maps cloud 1 from its sensor
    frame into the common frame; cloud 2 is placed in the common frame by its fixed mount
    transform. Each iteration estimates normals on the moved cloud 1, matches it against
    cloud 2 and re-solves the calibration, until two successive estimates agree within
    `convergence_threshold` or `max_iterations` solves have been made. If too few
    correspondences remain to solve at all, the loop stops as MAX_ITERATIONS_REACHED.
    """

    def __init__(
        self,
        config: CalibrationConfig | None = None,
        *,
        telemetry: TelemetrySink | None = None,
        plane_threshold: float = 0.02,
        plane_max_tilt_deg: float = 15.0,
    ) -> None:
        self.config = config or CalibrationConfig()
        self.telemetry = telemetry or NullTelemetry()
        self.plane_threshold = float(plane_threshold)
        self.plane_max_tilt_deg = float(plane_max_tilt_deg)

    def calibrate(
        self,
        cloud1: np.ndarray,
        cloud2: np.ndarray,
        *,
        initial: CalibrationParameters | None = None,
        target_transform: np.ndarray | None = None,
    ) -> RegistrationResult:
        cfg = self.config
        P1 = np.asarray(cloud1, dtype=np.float64)
        P2 = np.asarray(cloud2, dtype=np.float64)
        if P1.ndim != 2 or P1.shape[1] != 3 or P2.ndim != 2 or P2.shape[1] != 3:
            raise DataError("clouds must be (N,3) arrays")
        P1 = _crop(P1[np.all(np.isfinite(P1), axis=1)], cfg.crop_range)
        P2 = _crop(P2[np.all(np.isfinite(P2), axis=1)], cfg.crop_range)
        if P1.shape[0] == 0 or P2.shape[0] == 0:
            raise DataError("a cloud is empty (after removing non-finite and cropped points)")
        T2 = np.eye(4) if target_transform is None else as_transform(target_transform)

        state = RegistrationState.INITIALIZE
        sequence: list[np.ndarray] = []
        iterations = 0
        moved1 = P1
        target = P2
        normals: WeightedNormals | None = None
        mapping = np.full((P1.shape[0],), NO_MATCH, dtype=np.int64)
        diag: dict[str, float] = {}

        while not state.terminal:
            if state == RegistrationState.INITIALIZE:
                start = (initial or CalibrationParameters()).with_z(0.0)
                sequence.append(start.as_array())
                state = RegistrationState.APPLY_TRANSFORM

            elif state == RegistrationState.APPLY_TRANSFORM:
                moved1 = transform_points(params_to_matrix(sequence[-1]), P1)
                target = transform_points(T2, P2)
                state = RegistrationState.ESTIMATE_NORMALS

            elif state == RegistrationState.ESTIMATE_NORMALS:
                normals = estimate_normals(moved1, cfg.normals_search_radius)
                state = RegistrationState.FIND_CORRESPONDENCES

            elif state == RegistrationState.FIND_CORRESPONDENCES:
                mapping, _dist = find_correspondences(moved1, target, max_distance=cfg.max_neighbor_distance)
                state = RegistrationState.SOLVE_INCREMENT

            elif state == RegistrationState.SOLVE_INCREMENT:
                assert normals is not None
                updated, diag = solve_increment(
                    sequence[-1],
                    P1,
                    target,
                    normals,
                    mapping,
                    loss=cfg.loss,
                    f_scale=cfg.loss_scale,
                    max_nfev=cfg.solver_max_evaluations,
                )
                sequence.append(updated)
                iterations += 1
                self.telemetry.iteration(iterations, updated, diag)
                state = RegistrationState.CHECK_CONVERGENCE

            elif state == RegistrationState.CHECK_CONVERGENCE:
                change = float(np.linalg.norm(sequence[-1] - sequence[-2]))
                diag["change"] = change
                if not diag.get("solved", 0.0):
                    # Nothing was solved; the next pass would see the same correspondences.
                    logger.warning("no solve possible at iteration %d; stopping without convergence", iterations)
                    state = RegistrationState.MAX_ITERATIONS_REACHED
                elif change < cfg.convergence_threshold:
                    state = RegistrationState.CONVERGED
                elif iterations >= cfg.max_iterations:
                    state = RegistrationState.MAX_ITERATIONS_REACHED
                else:
                    state = RegistrationState.APPLY_TRANSFORM

        final = sequence[-1]
        logger.info("registration %s after %d iterations: %s", state.value, iterations, np.array2string(final, precision=6))

        planes = self._detect_planes(transform_points(params_to_matrix(final), P1), target)
        return RegistrationResult(
            parameters=CalibrationParameters.from_array(final),
            state=state,
            iterations=iterations,
            sequence=tuple(CalibrationParameters.from_array(p) for p in sequence),
            residual_rms=float(diag.get("residual_rms", float("nan"))),
            correspondences=mapping,
            planes=planes,
            diagnostics=dict(diag),
        )

    def _detect_planes(self, cloud1: np.ndarray, cloud2: np.ndarray) -> dict[str, Plane]:
        cfg = self.config
        planes: dict[str, Plane] = {}
        if not (cfg.detect_ground_plane or cfg.detect_ceiling):
            return planes
        merged = np.concatenate([cloud1, cloud2], axis=0)
        rng = np.random.default_rng(int(cfg.seed))
        up = np.array([0.0, 0.0, 1.0])
        for name, enabled, side in (("ground", cfg.detect_ground_plane, -1.0), ("ceiling", cfg.detect_ceiling, 1.0)):
            if not enabled:
                continue
            candidates = merged[side * merged[:, 2] > 0.0]
            plane = fit_plane_ransac(
                candidates,
                threshold=self.plane_threshold,
                up_axis=up,
                max_tilt_deg=self.plane_max_tilt_deg,
                rng=rng,
            )
            if plane is None:
                logger.warning("no %s plane found", name)
                continue
            logger.info("%s plane: normal %s, offset %.4f", name, np.array2string(plane.normal, precision=4), plane.offset)
            planes[name] = plane
        return planes


def register_clouds(
    cloud1: np.ndarray,
    cloud2: np.ndarray,
    *,
    config: CalibrationConfig | None = None,
    initial: CalibrationParameters | None = None,
    target_transform: np.ndarray | None = None,
    telemetry: TelemetrySink | None = None,
) -> RegistrationResult:
    return LidarCalibration(config, telemetry=telemetry).calibrate(
        cloud1, cloud2, initial=initial, target_transform=target_transform
    )
