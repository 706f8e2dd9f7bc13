from lidarcalib.api import CameraLidarResult, SolverSummary, Termination, calibrate_camera_lidar, sweep_cost
from lidarcalib.config import CalibrationConfig, ConfigValidationError, load_config, parse_config
from lidarcalib.core.camera import CameraModel, PinholeCameraModel
from lidarcalib.core.geometry import CalibrationParameters
from lidarcalib.data import CalibrationSample, CameraObservation
from lidarcalib.errors import DataError, EvaluationError, NumericDegeneracyError
from lidarcalib.registration import LidarCalibration, RegistrationResult, RegistrationState, register_clouds

__all__ = [
    "CalibrationConfig",
    "CalibrationParameters",
    "CalibrationSample",
    "CameraLidarResult",
    "CameraModel",
    "CameraObservation",
    "ConfigValidationError",
    "DataError",
    "EvaluationError",
    "LidarCalibration",
    "NumericDegeneracyError",
    "PinholeCameraModel",
    "RegistrationResult",
    "RegistrationState",
    "SolverSummary",
    "Termination",
    "calibrate_camera_lidar",
    "load_config",
    "parse_config",
    "register_clouds",
    "sweep_cost",
]
