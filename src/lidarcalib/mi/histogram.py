from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import cv2
import numpy as np
from scipy.ndimage import map_coordinates

from lidarcalib.core.camera import CameraModel
from lidarcalib.core.geometry import as_transform, transform_points
from lidarcalib.data import CalibrationSample, CameraObservation
from lidarcalib.telemetry import TelemetrySink


def bin_count_for(bin_fraction: int) -> int:
    bin_fraction = int(bin_fraction)
    if bin_fraction < 1 or bin_fraction > 256:
        raise ValueError("bin_fraction must be in [1, 256]")
    return 256 // bin_fraction


def quantize(values: np.ndarray, bin_fraction: int) -> np.ndarray:
    """
    Map raw 0..255 values to integer bins: floor(v / bin_fraction).

    Inputs are clamped to [0, 255] first (non-finite -> 0) and the result is clamped to
    the last bin, so the output is always in [0, 256 // bin_fraction).
    """
    n_bins = bin_count_for(bin_fraction)
    v = np.asarray(values, dtype=np.float64)
    v = np.where(np.isfinite(v), v, 0.0)
    v = np.clip(v, 0.0, 255.0)
    bins = np.floor(v / float(bin_fraction)).astype(np.int64)
    return np.minimum(bins, n_bins - 1)


@dataclass
class Histogram:
    """
    Joint and marginal counts of (intensity bin, reflectance bin) pairs.

    `joint[i, r]` counts pairs with intensity bin i and reflectance bin r. The running sums
    hold the quantized values (for the marginal means). `excluded` counts points that were
    skipped (projection failure or masked pixel).
    """

    joint: np.ndarray  # (B,B) int64
    intensity: np.ndarray  # (B,) int64
    reflectance: np.ndarray  # (B,) int64
    count: int = 0
    intensity_sum: int = 0
    reflectance_sum: int = 0
    excluded: int = 0

    @classmethod
    def empty(cls, bin_count: int) -> "Histogram":
        bin_count = int(bin_count)
        if bin_count < 1:
            raise ValueError("bin_count must be >= 1")
        return cls(
            joint=np.zeros((bin_count, bin_count), dtype=np.int64),
            intensity=np.zeros((bin_count,), dtype=np.int64),
            reflectance=np.zeros((bin_count,), dtype=np.int64),
        )

    @property
    def bin_count(self) -> int:
        return int(self.intensity.shape[0])

    def accumulate(self, intensity_bins: np.ndarray, reflectance_bins: np.ndarray) -> None:
        ib = np.asarray(intensity_bins, dtype=np.int64).reshape(-1)
        rb = np.asarray(reflectance_bins, dtype=np.int64).reshape(-1)
        if ib.shape != rb.shape:
            raise ValueError("intensity_bins and reflectance_bins must have the same length")
        if ib.size == 0:
            return
        n = self.bin_count
        if ib.min() < 0 or ib.max() >= n or rb.min() < 0 or rb.max() >= n:
            raise IndexError(f"bin index out of range [0, {n})")

        np.add.at(self.joint, (ib, rb), 1)
        self.intensity += np.bincount(ib, minlength=n)
        self.reflectance += np.bincount(rb, minlength=n)
        self.intensity_sum += int(ib.sum())
        self.reflectance_sum += int(rb.sum())
        self.count += int(ib.size)

    def merge(self, other: "Histogram") -> "Histogram":
        """Return a new histogram holding the counts of both (inputs untouched)."""
        if other.bin_count != self.bin_count:
            raise ValueError("cannot merge histograms with different bin counts")
        return Histogram(
            joint=self.joint + other.joint,
            intensity=self.intensity + other.intensity,
            reflectance=self.reflectance + other.reflectance,
            count=self.count + other.count,
            intensity_sum=self.intensity_sum + other.intensity_sum,
            reflectance_sum=self.reflectance_sum + other.reflectance_sum,
            excluded=self.excluded + other.excluded,
        )


def sample_bilinear(image: np.ndarray, uv: np.ndarray) -> np.ndarray:
    """Bilinear lookup of a (H,W) image at (N,2) sub-pixel (u,v) positions."""
    img = np.asarray(image, dtype=np.float64)
    if img.ndim == 3:
        img = img[..., 0]
    uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
    if uv.shape[0] == 0:
        return np.zeros((0,), dtype=np.float64)
    return map_coordinates(img, [uv[:, 1], uv[:, 0]], order=1, mode="nearest", prefilter=False)


def _overlay_base(obs: CameraObservation) -> np.ndarray:
    if obs.color is not None:
        return np.array(obs.color, dtype=np.uint8, copy=True)
    gray = np.clip(np.asarray(obs.intensity, dtype=np.float64), 0, 255).astype(np.uint8)
    return cv2.cvtColor(gray, cv2.COLOR_GRAY2RGB)


def _paint_overlay(img: np.ndarray, uv: np.ndarray, reflectance: np.ndarray) -> None:
    h, w = img.shape[:2]
    px = np.rint(uv).astype(np.int64)
    inside = (px[:, 0] >= 0) & (px[:, 0] < w) & (px[:, 1] >= 0) & (px[:, 1] < h)
    px = px[inside]
    value = np.clip(reflectance[inside], 0, 255).astype(np.uint8)
    img[px[:, 1], px[:, 0]] = value[:, None]


def build_histogram(
    samples: Sequence[CalibrationSample],
    transform: np.ndarray,
    cameras: Mapping[str, CameraModel],
    *,
    bin_fraction: int = 1,
    telemetry: TelemetrySink | None = None,
    overlay_distance: float = 3.0,
) -> Histogram:
    """
    Accumulate the reflectance / intensity histogram for one candidate lidar -> head transform.

    Each scan point is moved to the sensor-head frame by `transform`, then to every camera
    frame by the observation's fixed transform, projected, and paired with the bilinearly
    interpolated image intensity. Points that fail projection or fall on a non-positive mask
    value are skipped and counted in `Histogram.excluded`.

    With `telemetry`, one overlay per (sample, camera) is emitted where accepted points
    closer than `overlay_distance` to the camera are painted with their reflectance.
    """
    T = as_transform(transform)
    hist = Histogram.empty(bin_count_for(bin_fraction))

    for s_idx, sample in enumerate(samples):
        pts = np.asarray(sample.points, dtype=np.float64).reshape(-1, 3)
        refl = np.asarray(sample.reflectance, dtype=np.float64).reshape(-1)
        pts_head = transform_points(T, pts)

        for obs in sample.observations:
            pts_cam = transform_points(as_transform(obs.transform), pts_head)
            uv, ok = cameras[obs.name].world_to_pixel(pts_cam)
            ok = np.asarray(ok, dtype=bool).reshape(-1)
            uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)

            h, w = np.asarray(obs.intensity).shape[:2]
            ok &= np.all(np.isfinite(uv), axis=1)
            ok &= (uv[:, 0] >= 0.0) & (uv[:, 0] <= w - 1) & (uv[:, 1] >= 0.0) & (uv[:, 1] <= h - 1)

            idx = np.flatnonzero(ok)
            if obs.mask is not None and idx.size:
                keep = sample_bilinear(obs.mask, uv[idx]) > 0.0
                idx = idx[keep]
            hist.excluded += int(pts.shape[0] - idx.size)

            gray = sample_bilinear(obs.intensity, uv[idx])
            hist.accumulate(quantize(gray, bin_fraction), quantize(refl[idx], bin_fraction))

            if telemetry is not None:
                img = _overlay_base(obs)
                near = np.linalg.norm(pts_cam[idx], axis=1) < float(overlay_distance)
                _paint_overlay(img, uv[idx[near]], refl[idx[near]])
                telemetry.diagnostic_image(s_idx, obs.name, img)

    return hist
