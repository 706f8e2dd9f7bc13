from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace

import cv2
import numpy as np

from lidarcalib.errors import DataError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CameraObservation:
    """
    One image co-observed with a scan.

    - `intensity`: (H,W) grayscale, 0..255
    - `mask`: (H,W) validity mask (>0 means usable) or None
    - `color`: (H,W,3) uint8 image used for diagnostic overlays, or None
    - `transform`: (4,4) fixed transform from the sensor-head frame to this camera frame
    """

    name: str
    intensity: np.ndarray
    transform: np.ndarray
    mask: np.ndarray | None = None
    color: np.ndarray | None = None

    @classmethod
    def from_color(
        cls, name: str, color_rgb: np.ndarray, transform: np.ndarray, mask: np.ndarray | None = None
    ) -> "CameraObservation":
        color_rgb = np.ascontiguousarray(color_rgb, dtype=np.uint8)
        gray = cv2.cvtColor(color_rgb, cv2.COLOR_RGB2GRAY)
        return cls(
            name=str(name),
            intensity=gray.astype(np.float64),
            transform=np.asarray(transform, dtype=np.float64),
            mask=None if mask is None else np.asarray(mask),
            color=color_rgb,
        )


@dataclass(frozen=True)
class CalibrationSample:
    """
    One recorded scene: a lidar scan (positions + reflectance) and the images seen at the same time.

    `initial_transform` optionally stores the recorded lidar -> sensor-head transform used as
    the starting point of the optimization.
    """

    points: np.ndarray  # (N,3)
    reflectance: np.ndarray  # (N,)
    observations: tuple[CameraObservation, ...] = field(default_factory=tuple)
    initial_transform: np.ndarray | None = None


def _check_sample(idx: int, sample: CalibrationSample, cameras: Mapping[str, object] | None) -> None:
    pts = np.asarray(sample.points)
    refl = np.asarray(sample.reflectance)
    if pts.ndim != 2 or pts.shape[1] != 3 or pts.shape[0] == 0:
        raise DataError(f"sample {idx}: points must be a non-empty (N,3) array")
    if refl.ndim != 1 or refl.shape[0] != pts.shape[0]:
        raise DataError(f"sample {idx}: reflectance must be (N,) with N={pts.shape[0]}")
    if sample.initial_transform is not None and np.asarray(sample.initial_transform).shape != (4, 4):
        raise DataError(f"sample {idx}: initial_transform must be (4,4)")

    for obs in sample.observations:
        where = f"sample {idx} camera {obs.name!r}"
        if obs.intensity is None or np.asarray(obs.intensity).ndim != 2:
            raise DataError(f"{where}: intensity must be a (H,W) image")
        shape = np.asarray(obs.intensity).shape
        if obs.mask is not None and np.asarray(obs.mask).shape[:2] != shape:
            raise DataError(f"{where}: mask shape {np.asarray(obs.mask).shape} != image shape {shape}")
        if obs.color is not None and np.asarray(obs.color).shape[:2] != shape:
            raise DataError(f"{where}: color shape {np.asarray(obs.color).shape} != image shape {shape}")
        if np.asarray(obs.transform).shape != (4, 4):
            raise DataError(f"{where}: transform must be (4,4)")
        if cameras is not None and obs.name not in cameras:
            raise DataError(f"{where}: no camera model registered under this name")


def validate_samples(samples: Sequence[CalibrationSample], cameras: Mapping[str, object] | None = None) -> None:
    """
    Raise DataError if the sample set cannot be used for calibration.

    With `cameras` given, every sample must also carry at least one image overall and every
    image name must resolve to a camera model.
    """
    if samples is None or len(samples) == 0:
        raise DataError("no calibration samples provided")
    for idx, sample in enumerate(samples):
        _check_sample(idx, sample, cameras)
    if cameras is not None and not any(len(s.observations) > 0 for s in samples):
        raise DataError("no camera observations in any calibration sample")


def prepare_scan(
    sample: CalibrationSample,
    *,
    max_reflectance: float = 100.0,
    sample_size: int | None = None,
    rng: np.random.Generator | None = None,
) -> CalibrationSample:
    """
    Clean a raw scan before histogramming.

    - drop points with non-finite position or reflectance
    - cut reflectance to [0, max_reflectance] and rescale it to 0..255
    - keep at most `sample_size` points (uniform random subset, order preserved)
    """
    pts = np.asarray(sample.points, dtype=np.float64).reshape(-1, 3)
    refl = np.asarray(sample.reflectance, dtype=np.float64).reshape(-1)
    good = np.all(np.isfinite(pts), axis=1) & np.isfinite(refl)
    pts = pts[good]
    refl = refl[good]

    refl = np.clip(refl, 0.0, float(max_reflectance)) * (255.0 / float(max_reflectance))

    if sample_size is not None and pts.shape[0] > int(sample_size):
        rng = np.random.default_rng(0) if rng is None else rng
        keep = np.sort(rng.choice(pts.shape[0], size=int(sample_size), replace=False))
        pts = pts[keep]
        refl = refl[keep]

    logger.debug("prepared scan: %d -> %d points", int(good.size), int(pts.shape[0]))
    return replace(sample, points=pts, reflectance=refl)
