from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class Plane:
    """Plane n . X + offset = 0 with unit normal n."""

    normal: np.ndarray  # (3,)
    offset: float
    inliers: int

    def distance(self, points: np.ndarray) -> np.ndarray:
        P = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return P @ self.normal + self.offset


def _plane_from_points(P: np.ndarray) -> tuple[np.ndarray, float] | None:
    centroid = P.mean(axis=0)
    _u, s, vt = np.linalg.svd(P - centroid, full_matrices=False)
    if s.size < 3 or s[1] <= 1e-12:
        return None
    n = vt[-1]
    return n, float(-n @ centroid)


def fit_plane_ransac(
    points: np.ndarray,
    *,
    threshold: float = 0.02,
    iterations: int = 200,
    up_axis: np.ndarray | None = None,
    max_tilt_deg: float | None = None,
    rng: np.random.Generator | None = None,
) -> Plane | None:
    """
    RANSAC plane fit followed by a least-squares refit on the inliers.

    With `up_axis` and `max_tilt_deg`, only planes whose normal is within that angle of the
    axis are accepted (e.g. horizontal floors and ceilings). The returned normal points
    along `up_axis` when one is given. Returns None if no plane is found.
    """
    P = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    if P.shape[0] < 3:
        return None
    rng = np.random.default_rng(0) if rng is None else rng
    up = None if up_axis is None else np.asarray(up_axis, dtype=np.float64).reshape(3) / np.linalg.norm(up_axis)
    cos_min = None if (up is None or max_tilt_deg is None) else float(np.cos(np.deg2rad(max_tilt_deg)))

    best_mask: np.ndarray | None = None
    best_count = 0
    for _ in range(int(iterations)):
        tri = P[rng.choice(P.shape[0], size=3, replace=False)]
        n = np.cross(tri[1] - tri[0], tri[2] - tri[0])
        norm = np.linalg.norm(n)
        if norm <= 1e-12:
            continue
        n /= norm
        if cos_min is not None and abs(float(n @ up)) < cos_min:
            continue
        d = -float(n @ tri[0])
        mask = np.abs(P @ n + d) < float(threshold)
        count = int(mask.sum())
        if count > best_count:
            best_count = count
            best_mask = mask

    if best_mask is None or best_count < 3:
        return None
    fit = _plane_from_points(P[best_mask])
    if fit is None:
        return None
    n, d = fit
    if up is not None and float(n @ up) < 0.0:
        n, d = -n, -d
    return Plane(normal=n, offset=d, inliers=best_count)
