from __future__ import annotations

from collections.abc import Mapping, Sequence

import numpy as np

from lidarcalib.core.camera import CameraModel
from lidarcalib.core.geometry import params_to_matrix
from lidarcalib.data import CalibrationSample
from lidarcalib.mi.density import ProbabilityDistribution, estimate_density
from lidarcalib.mi.histogram import bin_count_for, build_histogram
from lidarcalib.telemetry import TelemetrySink


LOG_EPS = 1e-7


def entropy(p: np.ndarray, eps: float = LOG_EPS) -> float:
    """
    Shannon entropy -sum(p log p) of a discrete distribution (any shape).

    Zero probabilities are replaced by `eps` inside the log only, so they contribute 0.
    """
    p = np.asarray(p, dtype=np.float64)
    p_log = np.where(p == 0.0, float(eps), p)
    return float(-np.sum(p * np.log(p_log)))


def mutual_information(dist: ProbabilityDistribution) -> float:
    """MI = H(intensity) + H(reflectance) - H(intensity, reflectance)."""
    h_x = entropy(dist.intensity)
    h_y = entropy(dist.reflectance)
    h_xy = entropy(dist.joint)
    return h_x + h_y - h_xy


def evaluate_cost(dist: ProbabilityDistribution) -> float:
    """Negative mutual information: lower is better aligned."""
    return -mutual_information(dist)


class MutualInformationCost:
    """
    Cost of a (6,) parameter vector (x, y, z, roll, pitch, yaw) of the lidar -> sensor-head
    transform: histogram -> smoothed density -> negative mutual information.

    Samples and camera models are held by reference and never modified.
    """

    def __init__(
        self,
        samples: Sequence[CalibrationSample],
        cameras: Mapping[str, CameraModel],
        *,
        bin_fraction: int = 1,
        telemetry: TelemetrySink | None = None,
        overlay_distance: float = 3.0,
        emit_overlays: bool = False,
    ) -> None:
        self.samples = tuple(samples)
        self.cameras = cameras
        self.bin_fraction = int(bin_fraction)
        self.bin_count = bin_count_for(self.bin_fraction)
        self.telemetry = telemetry
        self.overlay_distance = float(overlay_distance)
        self.emit_overlays = bool(emit_overlays)

    def distribution(self, params: np.ndarray) -> ProbabilityDistribution:
        hist = build_histogram(
            self.samples,
            params_to_matrix(params),
            self.cameras,
            bin_fraction=self.bin_fraction,
            telemetry=self.telemetry if self.emit_overlays else None,
            overlay_distance=self.overlay_distance,
        )
        return estimate_density(hist)

    def __call__(self, params: np.ndarray) -> float:
        cost = evaluate_cost(self.distribution(params))
        if self.telemetry is not None:
            self.telemetry.evaluation(np.asarray(params, dtype=np.float64), cost)
        return cost
