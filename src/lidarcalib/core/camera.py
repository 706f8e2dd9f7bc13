from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import numpy as np


@runtime_checkable
class CameraModel(Protocol):
    """
    Projection capability consumed by the histogram builder.

    `world_to_pixel` maps (N,3) points in the camera frame to (N,2) pixel coordinates
    and an (N,) boolean success mask. Failed entries may hold any value.
    """

    width: int
    height: int

    def world_to_pixel(self, points_cam: np.ndarray) -> tuple[np.ndarray, np.ndarray]: ...


@dataclass(frozen=True)
class PinholeCameraModel:
    """
    Pinhole camera with Brown-Conrady distortion (OpenCV naming: k1, k2, p1, p2, k3).

    Camera frame: x right, y down, z forward. Pixel-center convention: (0,0) is the
    center of the top-left pixel.
    """

    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int
    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    k3: float = 0.0
    min_depth: float = 1e-6

    def K(self) -> np.ndarray:
        return np.array(
            [[float(self.fx), 0.0, float(self.cx)], [0.0, float(self.fy), float(self.cy)], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def _distort(self, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        r2 = x * x + y * y
        radial = 1.0 + self.k1 * r2 + self.k2 * r2 * r2 + self.k3 * r2 * r2 * r2
        xd = x * radial + 2.0 * self.p1 * x * y + self.p2 * (r2 + 2.0 * x * x)
        yd = y * radial + self.p1 * (r2 + 2.0 * y * y) + 2.0 * self.p2 * x * y
        return xd, yd

    def world_to_pixel(self, points_cam: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        P = np.asarray(points_cam, dtype=np.float64).reshape(-1, 3)
        uv = np.full((P.shape[0], 2), np.nan, dtype=np.float64)
        Z = P[:, 2]
        ok = np.all(np.isfinite(P), axis=1) & (Z > float(self.min_depth))
        if not np.any(ok):
            return uv, ok

        xd, yd = self._distort(P[ok, 0] / Z[ok], P[ok, 1] / Z[ok])
        uv[ok, 0] = self.fx * xd + self.cx
        uv[ok, 1] = self.fy * yd + self.cy

        # Bilinear sampling needs the pixel inside [0, W-1] x [0, H-1].
        inside = (uv[:, 0] >= 0.0) & (uv[:, 0] <= self.width - 1) & (uv[:, 1] >= 0.0) & (uv[:, 1] <= self.height - 1)
        ok &= inside
        return uv, ok


def pinhole_from_dict(d: dict[str, Any]) -> PinholeCameraModel:
    return PinholeCameraModel(
        fx=float(d["fx"]),
        fy=float(d["fy"]),
        cx=float(d["cx"]),
        cy=float(d["cy"]),
        width=int(d["width"]),
        height=int(d["height"]),
        k1=float(d.get("k1", 0.0)),
        k2=float(d.get("k2", 0.0)),
        p1=float(d.get("p1", 0.0)),
        p2=float(d.get("p2", 0.0)),
        k3=float(d.get("k3", 0.0)),
    )
