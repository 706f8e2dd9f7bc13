from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.ndimage import gaussian_filter1d

from lidarcalib.errors import NumericDegeneracyError
from lidarcalib.mi.histogram import Histogram


@dataclass(frozen=True)
class ProbabilityDistribution:
    joint: np.ndarray  # (B,B), axis 0 intensity, axis 1 reflectance
    intensity: np.ndarray  # (B,)
    reflectance: np.ndarray  # (B,)
    count: int
    sigma_intensity: float
    sigma_reflectance: float


def silverman_bandwidth(variance: float, count: int) -> float:
    """Gaussian KDE bandwidth: 1.06 * sigma * n^(-1/5)."""
    if count <= 0:
        raise NumericDegeneracyError("bandwidth undefined for an empty sample")
    return float(1.06 * np.sqrt(max(float(variance), 0.0)) / float(count) ** 0.2)


def _marginal_variance(counts: np.ndarray, mean: float, count: int) -> float:
    bins = np.arange(counts.shape[0], dtype=np.float64)
    return float(np.sum(counts * (bins - mean) ** 2) / count)


def _smooth(p: np.ndarray, sigma: float, axis: int) -> np.ndarray:
    # A zero bandwidth (all mass in one bin) means nothing to smooth along this axis.
    if sigma <= 0.0:
        return p
    return gaussian_filter1d(p, sigma=float(sigma), axis=axis, mode="reflect", truncate=4.0)


def estimate_density(histogram: Histogram) -> ProbabilityDistribution:
    """
    Turn histogram counts into kernel-smoothed probabilities.

    Counts are normalized by the pair count, then blurred with a Gaussian whose width per
    channel follows Silverman's rule on that channel's quantized values. The joint grid uses
    the intensity width along axis 0 and the reflectance width along axis 1. The reflecting
    boundary keeps the total mass at 1 up to kernel truncation.
    """
    count = int(histogram.count)
    if count <= 0:
        raise NumericDegeneracyError("histogram is empty (no projected point pairs)")

    intensity = np.asarray(histogram.intensity, dtype=np.float64)
    reflectance = np.asarray(histogram.reflectance, dtype=np.float64)
    joint = np.asarray(histogram.joint, dtype=np.float64)

    mu_i = histogram.intensity_sum / count
    mu_r = histogram.reflectance_sum / count
    sigma_i = silverman_bandwidth(_marginal_variance(intensity, mu_i, count), count)
    sigma_r = silverman_bandwidth(_marginal_variance(reflectance, mu_r, count), count)

    p_i = _smooth(intensity / count, sigma_i, axis=0)
    p_r = _smooth(reflectance / count, sigma_r, axis=0)
    p_joint = _smooth(_smooth(joint / count, sigma_i, axis=0), sigma_r, axis=1)

    return ProbabilityDistribution(
        joint=p_joint,
        intensity=p_i,
        reflectance=p_r,
        count=count,
        sigma_intensity=sigma_i,
        sigma_reflectance=sigma_r,
    )
