from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Literal


LossName = Literal["linear", "huber", "soft_l1", "cauchy", "arctan"]

SCHEMA_VERSION = "lidarcalib.config.v0"
_LOSSES = ("linear", "huber", "soft_l1", "cauchy", "arctan")


class ConfigValidationError(ValueError):
    pass


@dataclass(frozen=True)
class CalibrationConfig:
    """
    Settings shared by the camera-lidar and lidar-lidar estimators.

    Histogram / mutual information:
    - `bin_fraction`: raw 0..255 values are divided by this before binning (grid side 256 // bin_fraction)
    - `gradient_step`: central-difference step of the numeric gradient
    - `gradient_tolerance`: gradient-norm stopping rule of the quasi-Newton solver

    Registration:
    - `convergence_threshold`: norm of the change between the last two estimates
    - `normals_search_radius`, `max_neighbor_distance`, `crop_range` in cloud units (m)

    Direct construction is validated the same way as `parse_config`.
    """

    bin_fraction: int = 1
    max_iterations: int = 20
    convergence_threshold: float = 1e-6
    normals_search_radius: float = 0.07
    max_neighbor_distance: float = 0.1
    detect_ground_plane: bool = False
    detect_ceiling: bool = False
    crop_range: float | None = None
    gradient_step: float = 1e-4
    gradient_tolerance: float = 1e-5
    loss: LossName = "linear"
    loss_scale: float = 0.05
    solver_max_evaluations: int = 100
    overlay_distance: float = 3.0
    prepare_scans: bool = False
    max_reflectance: float = 100.0
    scan_sample_size: int = 300_000
    seed: int = 0

    def __post_init__(self) -> None:
        _validate(self)

    @property
    def bin_count(self) -> int:
        return 256 // int(self.bin_fraction)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["schema_version"] = SCHEMA_VERSION
        return out


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigValidationError(msg)


def _as_bool(data: dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    _require(isinstance(value, bool), f"{key} must be a boolean")
    return bool(value)


def _validate(cfg: CalibrationConfig) -> None:
    _require(1 <= cfg.bin_fraction <= 256, "bin_fraction must be in [1, 256]")
    _require(cfg.max_iterations >= 1, "max_iterations must be >= 1")
    _require(cfg.convergence_threshold > 0.0, "convergence_threshold must be > 0")
    _require(cfg.normals_search_radius > 0.0, "normals_search_radius must be > 0")
    _require(cfg.max_neighbor_distance > 0.0, "max_neighbor_distance must be > 0")
    _require(cfg.crop_range is None or cfg.crop_range > 0.0, "crop_range must be > 0 or null")
    _require(cfg.gradient_step > 0.0, "gradient_step must be > 0")
    _require(cfg.gradient_tolerance > 0.0, "gradient_tolerance must be > 0")
    _require(cfg.loss in _LOSSES, f"loss must be one of {'|'.join(_LOSSES)}")
    _require(cfg.loss_scale > 0.0, "loss_scale must be > 0")
    _require(cfg.solver_max_evaluations >= 1, "solver_max_evaluations must be >= 1")
    _require(cfg.overlay_distance > 0.0, "overlay_distance must be > 0")
    _require(cfg.max_reflectance > 0.0, "max_reflectance must be > 0")
    _require(cfg.scan_sample_size >= 1, "scan_sample_size must be >= 1")


def parse_config(data: dict[str, Any] | None) -> CalibrationConfig:
    data = dict(data or {})
    schema_version = data.pop("schema_version", SCHEMA_VERSION)
    _require(schema_version == SCHEMA_VERSION, f"schema_version must be {SCHEMA_VERSION}")

    known = set(CalibrationConfig.__dataclass_fields__)
    unknown = sorted(set(data) - known)
    _require(not unknown, f"unknown config keys: {unknown}")

    defaults = CalibrationConfig()
    crop_raw = data.get("crop_range", defaults.crop_range)

    return CalibrationConfig(
        bin_fraction=int(data.get("bin_fraction", defaults.bin_fraction)),
        max_iterations=int(data.get("max_iterations", defaults.max_iterations)),
        convergence_threshold=float(data.get("convergence_threshold", defaults.convergence_threshold)),
        normals_search_radius=float(data.get("normals_search_radius", defaults.normals_search_radius)),
        max_neighbor_distance=float(data.get("max_neighbor_distance", defaults.max_neighbor_distance)),
        detect_ground_plane=_as_bool(data, "detect_ground_plane", defaults.detect_ground_plane),
        detect_ceiling=_as_bool(data, "detect_ceiling", defaults.detect_ceiling),
        crop_range=None if crop_raw is None else float(crop_raw),
        gradient_step=float(data.get("gradient_step", defaults.gradient_step)),
        gradient_tolerance=float(data.get("gradient_tolerance", defaults.gradient_tolerance)),
        loss=str(data.get("loss", defaults.loss)),  # type: ignore[arg-type]
        loss_scale=float(data.get("loss_scale", defaults.loss_scale)),
        solver_max_evaluations=int(data.get("solver_max_evaluations", defaults.solver_max_evaluations)),
        overlay_distance=float(data.get("overlay_distance", defaults.overlay_distance)),
        prepare_scans=_as_bool(data, "prepare_scans", defaults.prepare_scans),
        max_reflectance=float(data.get("max_reflectance", defaults.max_reflectance)),
        scan_sample_size=int(data.get("scan_sample_size", defaults.scan_sample_size)),
        seed=int(data.get("seed", defaults.seed)),
    )


def load_config(path: Path) -> CalibrationConfig:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    _require(isinstance(data, dict), f"{path} must contain a JSON object")
    return parse_config(data)
