from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.spatial.transform import Rotation


@dataclass(frozen=True)
class CalibrationParameters:
    """
    Rigid transform as (x, y, z, roll, pitch, yaw).

    Convention: X_out = R X_in + t with R = Rz(yaw) Ry(pitch) Rx(roll), angles in radians.
    """

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    roll: float = 0.0
    pitch: float = 0.0
    yaw: float = 0.0

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z, self.roll, self.pitch, self.yaw], dtype=np.float64)

    @classmethod
    def from_array(cls, p: np.ndarray) -> "CalibrationParameters":
        p = np.asarray(p, dtype=np.float64).reshape(-1)
        if p.size != 6:
            raise ValueError("expected 6 parameters (x, y, z, roll, pitch, yaw)")
        x, y, z, roll, pitch, yaw = (float(v) for v in p.tolist())
        return cls(x=x, y=y, z=z, roll=roll, pitch=pitch, yaw=yaw)

    def to_matrix(self) -> np.ndarray:
        return params_to_matrix(self.as_array())

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> "CalibrationParameters":
        return cls.from_array(matrix_to_params(T))

    def with_z(self, z: float) -> "CalibrationParameters":
        return CalibrationParameters(x=self.x, y=self.y, z=float(z), roll=self.roll, pitch=self.pitch, yaw=self.yaw)


def rotation_from_rpy(roll: float, pitch: float, yaw: float) -> np.ndarray:
    return Rotation.from_euler("ZYX", [yaw, pitch, roll]).as_matrix()


def params_to_matrix(p: np.ndarray) -> np.ndarray:
    """(6,) parameter vector -> homogeneous (4,4) transform."""
    p = np.asarray(p, dtype=np.float64).reshape(6)
    T = np.eye(4, dtype=np.float64)
    T[:3, :3] = rotation_from_rpy(p[3], p[4], p[5])
    T[:3, 3] = p[:3]
    return T


def matrix_to_params(T: np.ndarray) -> np.ndarray:
    """
    Homogeneous (4,4) transform -> (6,) parameter vector.

    The rotation is decomposed in yaw / pitch / roll order (intrinsic Z, Y, X).
    """
    T = as_transform(T)
    yaw, pitch, roll = Rotation.from_matrix(T[:3, :3]).as_euler("ZYX")
    return np.array([T[0, 3], T[1, 3], T[2, 3], roll, pitch, yaw], dtype=np.float64)


def as_transform(T: np.ndarray) -> np.ndarray:
    T = np.asarray(T, dtype=np.float64)
    if T.shape != (4, 4):
        raise ValueError("transform must be a (4,4) homogeneous matrix")
    if not np.all(np.isfinite(T)):
        raise ValueError("transform has non-finite values")
    return T


def transform_points(T: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Apply a (4,4) transform to (N,3) points."""
    T = np.asarray(T, dtype=np.float64)
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return points @ T[:3, :3].T + T[:3, 3].reshape(1, 3)


def compose(*transforms: np.ndarray) -> np.ndarray:
    """compose(A, B, C) == A @ B @ C."""
    out = np.eye(4, dtype=np.float64)
    for T in transforms:
        out = out @ np.asarray(T, dtype=np.float64)
    return out
