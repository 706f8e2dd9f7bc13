"""
Injected side channel for progress reporting and diagnostic artifacts.

The numeric code never writes files itself; callers pass a sink.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import numpy as np
from PIL import Image


logger = logging.getLogger(__name__)


class TelemetrySink(Protocol):
    def evaluation(self, params: np.ndarray, cost: float) -> None: ...

    def iteration(self, iteration: int, params: np.ndarray, diagnostics: dict[str, float]) -> None: ...

    def diagnostic_image(self, sample_index: int, camera_name: str, image: np.ndarray) -> None: ...


class NullTelemetry:
    def evaluation(self, params: np.ndarray, cost: float) -> None:
        pass

    def iteration(self, iteration: int, params: np.ndarray, diagnostics: dict[str, float]) -> None:
        pass

    def diagnostic_image(self, sample_index: int, camera_name: str, image: np.ndarray) -> None:
        pass


def _fmt_params(params: np.ndarray) -> str:
    return "[" + ", ".join(f"{float(v):.6f}" for v in np.asarray(params).reshape(-1)) + "]"


class LoggingTelemetry(NullTelemetry):
    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def evaluation(self, params: np.ndarray, cost: float) -> None:
        self._log.debug("cost %.10f at %s", cost, _fmt_params(params))

    def iteration(self, iteration: int, params: np.ndarray, diagnostics: dict[str, float]) -> None:
        extra = " ".join(f"{k}={v:.6g}" for k, v in sorted(diagnostics.items()))
        self._log.info("iteration %d: %s %s", iteration, _fmt_params(params), extra)


@dataclass
class RecordingTelemetry:
    """Keeps every event in memory (tests, notebooks)."""

    evaluations: list[tuple[np.ndarray, float]] = field(default_factory=list)
    iterations: list[tuple[int, np.ndarray, dict[str, float]]] = field(default_factory=list)
    images: list[tuple[int, str, np.ndarray]] = field(default_factory=list)

    def evaluation(self, params: np.ndarray, cost: float) -> None:
        self.evaluations.append((np.array(params, dtype=np.float64, copy=True), float(cost)))

    def iteration(self, iteration: int, params: np.ndarray, diagnostics: dict[str, float]) -> None:
        self.iterations.append((int(iteration), np.array(params, dtype=np.float64, copy=True), dict(diagnostics)))

    def diagnostic_image(self, sample_index: int, camera_name: str, image: np.ndarray) -> None:
        self.images.append((int(sample_index), str(camera_name), image))


class ImageDirectoryTelemetry(LoggingTelemetry):
    """
    Writes diagnostic overlays to `out_dir` as PNG:

      overlay_obs_<sample>_<camera>_<counter>.png

    The counter increments per written image so successive evaluations do not overwrite.
    """

    def __init__(self, out_dir: Path, log: logging.Logger | None = None) -> None:
        super().__init__(log)
        self.out_dir = Path(out_dir)
        self.out_dir.mkdir(parents=True, exist_ok=True)
        self._counter = 0

    def diagnostic_image(self, sample_index: int, camera_name: str, image: np.ndarray) -> None:
        arr = np.clip(np.asarray(image), 0, 255).astype(np.uint8)
        path = self.out_dir / f"overlay_obs_{int(sample_index)}_{camera_name}_{self._counter:06d}.png"
        Image.fromarray(arr).save(path)
        self._counter += 1
