from lidarcalib.api.camera_lidar import (
    CameraLidarResult,
    SolverSummary,
    Termination,
    calibrate_camera_lidar,
    sweep_cost,
)

__all__ = [
    "CameraLidarResult",
    "SolverSummary",
    "Termination",
    "calibrate_camera_lidar",
    "sweep_cost",
]
