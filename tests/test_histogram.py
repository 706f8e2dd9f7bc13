from __future__ import annotations

import numpy as np
import pytest

from lidarcalib.core.camera import PinholeCameraModel
from lidarcalib.data import CalibrationSample, CameraObservation
from lidarcalib.mi.histogram import Histogram, build_histogram, quantize, sample_bilinear
from lidarcalib.telemetry import RecordingTelemetry

W, H = 64, 48
CAM = PinholeCameraModel(fx=50.0, fy=50.0, cx=(W - 1) / 2.0, cy=(H - 1) / 2.0, width=W, height=H)


def _points_at_pixels(u: np.ndarray, v: np.ndarray, z: float = 4.0) -> np.ndarray:
    """Camera-frame points that project exactly onto pixels (u, v)."""
    x = (u - CAM.cx) * z / CAM.fx
    y = (v - CAM.cy) * z / CAM.fy
    return np.stack([x, y, np.full_like(x, z)], axis=-1)


def _pixel_grid(offset: float = 0.0) -> tuple[np.ndarray, np.ndarray]:
    uu, vv = np.meshgrid(np.arange(2, W - 2, dtype=np.float64), np.arange(2, H - 2, dtype=np.float64))
    return uu.reshape(-1) + offset, vv.reshape(-1)


def test_quantize_bounded_and_monotonic():
    v = np.linspace(-10.0, 300.0, 2001)
    for bf in (1, 2, 3, 4, 7, 16, 256):
        q = quantize(v, bf)
        assert q.min() >= 0
        assert q.max() < 256 // bf
        assert np.all(np.diff(q) >= 0)
    assert quantize(np.array([0.0, 3.9, 4.0, 255.0]), 4).tolist() == [0, 0, 1, 63]
    assert quantize(np.array([np.nan, np.inf]), 1).tolist() == [0, 0]


def test_quantize_rejects_bad_fraction():
    with pytest.raises(ValueError):
        quantize(np.zeros(3), 0)


def test_histogram_accumulate_and_bounds():
    h = Histogram.empty(4)
    h.accumulate(np.array([0, 1, 1, 3]), np.array([0, 1, 2, 3]))
    assert h.count == 4
    assert h.joint.sum() == 4
    assert h.intensity.tolist() == [1, 2, 0, 1]
    assert h.reflectance.tolist() == [1, 1, 1, 1]
    assert h.intensity_sum == 5 and h.reflectance_sum == 6
    with pytest.raises(IndexError):
        h.accumulate(np.array([4]), np.array([0]))
    with pytest.raises(ValueError):
        h.accumulate(np.array([0, 1]), np.array([0]))


def test_histogram_merge_does_not_alias():
    a = Histogram.empty(4)
    b = Histogram.empty(4)
    a.accumulate(np.array([0]), np.array([1]))
    b.accumulate(np.array([2, 2]), np.array([3, 3]))
    m = a.merge(b)
    assert m.count == 3
    assert m.joint[0, 1] == 1 and m.joint[2, 3] == 2
    m.joint[0, 0] += 10
    assert a.joint[0, 0] == 0 and b.joint[0, 0] == 0


def test_sample_bilinear_interpolates():
    img = np.array([[0.0, 10.0], [20.0, 30.0]])
    val = sample_bilinear(img, np.array([[0.5, 0.5], [1.0, 0.0]]))
    assert np.allclose(val, [15.0, 10.0])


def test_grid_size_follows_bin_fraction():
    rng = np.random.default_rng(0)
    u, v = _pixel_grid()
    image = rng.integers(0, 256, size=(H, W)).astype(np.float64)
    sample = CalibrationSample(
        points=_points_at_pixels(u, v),
        reflectance=rng.uniform(0, 255, size=u.size),
        observations=(CameraObservation(name="cam", intensity=image, transform=np.eye(4)),),
    )
    h1 = build_histogram([sample], np.eye(4), {"cam": CAM}, bin_fraction=1)
    h4 = build_histogram([sample], np.eye(4), {"cam": CAM}, bin_fraction=4)
    assert h1.joint.shape == (256, 256)
    assert h4.joint.shape == (64, 64)
    assert h1.count == h4.count == u.size
    assert h1.excluded == 0


def test_points_outside_view_are_excluded_silently():
    u, v = _pixel_grid()
    pts = _points_at_pixels(u, v)
    behind = pts.copy()
    behind[:, 2] *= -1.0
    sample = CalibrationSample(
        points=np.concatenate([pts, behind], axis=0),
        reflectance=np.full((2 * u.size,), 100.0),
        observations=(CameraObservation(name="cam", intensity=np.full((H, W), 50.0), transform=np.eye(4)),),
    )
    h = build_histogram([sample], np.eye(4), {"cam": CAM})
    assert h.count == u.size
    assert h.excluded == u.size


def test_masked_pixels_are_excluded():
    # Half-pixel positions: the mask interpolates to exactly 0 left of the boundary.
    u, v = _pixel_grid(offset=0.5)
    mask = np.ones((H, W), dtype=np.uint8)
    mask[:, :32] = 0
    sample = CalibrationSample(
        points=_points_at_pixels(u, v),
        reflectance=np.full((u.size,), 100.0),
        observations=(CameraObservation(name="cam", intensity=np.full((H, W), 50.0), transform=np.eye(4), mask=mask),),
    )
    h = build_histogram([sample], np.eye(4), {"cam": CAM})
    expected = int(np.sum(u > 31.0))
    assert h.count == expected
    assert h.excluded == u.size - expected


def test_candidate_transform_moves_points_out_of_view():
    u, v = _pixel_grid()
    sample = CalibrationSample(
        points=_points_at_pixels(u, v),
        reflectance=np.full((u.size,), 100.0),
        observations=(CameraObservation(name="cam", intensity=np.full((H, W), 50.0), transform=np.eye(4)),),
    )
    T = np.eye(4)
    T[2, 3] = -10.0  # everything ends up behind the camera
    h = build_histogram([sample], T, {"cam": CAM})
    assert h.count == 0


def test_overlay_images_are_emitted_per_camera():
    u, v = _pixel_grid()
    refl = np.linspace(0.0, 255.0, u.size)
    obs = CameraObservation(name="cam", intensity=np.zeros((H, W)), transform=np.eye(4))
    sample = CalibrationSample(points=_points_at_pixels(u, v), reflectance=refl, observations=(obs, obs))
    sink = RecordingTelemetry()
    build_histogram([sample], np.eye(4), {"cam": CAM}, telemetry=sink, overlay_distance=10.0)

    assert len(sink.images) == 2
    idx, name, img = sink.images[0]
    assert idx == 0 and name == "cam"
    assert img.shape == (H, W, 3)
    k = u.size // 2
    assert img[int(v[k]), int(u[k]), 0] == np.uint8(refl[k])

    # Nothing is closer than 1 m: the overlay stays blank.
    near = RecordingTelemetry()
    build_histogram([sample], np.eye(4), {"cam": CAM}, telemetry=near, overlay_distance=1.0)
    assert int(near.images[0][2].max()) == 0
