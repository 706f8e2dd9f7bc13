"""
Lidar-lidar calibration by iterative point-to-plane registration of two overlapping clouds.
"""

from lidarcalib.registration.loop import LidarCalibration, RegistrationResult, RegistrationState, register_clouds
from lidarcalib.registration.neighbors import NO_MATCH, find_correspondences
from lidarcalib.registration.normals import WeightedNormals, estimate_normals

__all__ = [
    "NO_MATCH",
    "LidarCalibration",
    "RegistrationResult",
    "RegistrationState",
    "WeightedNormals",
    "estimate_normals",
    "find_correspondences",
    "register_clouds",
]
