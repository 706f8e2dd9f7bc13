from __future__ import annotations

import numpy as np
import pytest

from lidarcalib.config import CalibrationConfig
from lidarcalib.core.geometry import CalibrationParameters, params_to_matrix, transform_points
from lidarcalib.errors import DataError
from lidarcalib.registration import (
    NO_MATCH,
    LidarCalibration,
    RegistrationState,
    estimate_normals,
    find_correspondences,
    register_clouds,
)
from lidarcalib.registration.loop import solve_increment
from lidarcalib.registration.normals import WeightedNormals
from lidarcalib.registration.planes import fit_plane_ransac
from lidarcalib.telemetry import RecordingTelemetry

TRUE_PARAMS = np.array([0.05, -0.04, 0.0, 0.02, -0.015, 0.03])


def _room(spacing: float = 0.05) -> np.ndarray:
    """Floor at z = -1 and three walls; every rigid motion in (x, y, roll, pitch, yaw) is observable."""
    g = np.arange(-1.4, 1.4 + 1e-9, spacing)
    zs = np.arange(-1.0, 0.6 + 1e-9, spacing)
    fx, fy = np.meshgrid(g, g)
    floor = np.stack([fx.ravel(), fy.ravel(), np.full(fx.size, -1.0)], axis=-1)
    a, z = np.meshgrid(g, zs)
    a = a.ravel()
    z = z.ravel()
    walls = [
        np.stack([np.full(a.size, 1.5), a, z], axis=-1),
        np.stack([np.full(a.size, -1.5), a, z], axis=-1),
        np.stack([a, np.full(a.size, 1.5), z], axis=-1),
    ]
    return np.concatenate([floor] + walls, axis=0)


def _config(**kwargs) -> CalibrationConfig:
    kwargs.setdefault("normals_search_radius", 0.12)
    kwargs.setdefault("max_neighbor_distance", 0.3)
    return CalibrationConfig(**kwargs)


def _clouds() -> tuple[np.ndarray, np.ndarray]:
    target = _room()
    source = transform_points(np.linalg.inv(params_to_matrix(TRUE_PARAMS)), target)
    return source, target


def test_normals_on_a_plane():
    g = np.arange(-0.5, 0.5 + 1e-9, 0.05)
    x, y = np.meshgrid(g, g)
    pts = np.stack([x.ravel(), y.ravel(), np.zeros(x.size)], axis=-1)
    pts = np.concatenate([pts, [[5.0, 5.0, 5.0]]], axis=0)
    wn = estimate_normals(pts, 0.12)

    interior = (np.abs(pts[:, 0]) < 0.3) & (np.abs(pts[:, 1]) < 0.3)
    np.testing.assert_allclose(np.abs(wn.normals[interior, 2]), 1.0, atol=1e-9)
    assert np.all(wn.weights[interior] > 0.9)
    assert np.all(wn.weights[wn.valid] <= 1.0)
    # The isolated point has no neighbourhood.
    assert not wn.valid[-1]
    assert wn.weights[-1] == 0.0


def test_points_on_a_line_get_no_weight():
    pts = np.stack([np.linspace(0, 1, 30), np.zeros(30), np.zeros(30)], axis=-1)
    wn = estimate_normals(pts, 0.2)
    assert not np.any(wn.valid)
    with pytest.raises(ValueError):
        estimate_normals(pts, 0.0)


def test_correspondences_use_sentinel_for_misses():
    target = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
    source = np.array([[0.9, 0.1, 0.0], [0.05, 0.0, 0.0], [10.0, 10.0, 10.0]])
    mapping, dist = find_correspondences(source, target, max_distance=0.3)
    assert mapping.shape == (3,)
    assert mapping.tolist() == [1, 0, NO_MATCH]
    assert dist[1] == pytest.approx(0.05)
    assert np.isinf(dist[2])

    empty, _ = find_correspondences(source, np.zeros((0, 3)))
    assert np.all(empty == NO_MATCH)


def test_solve_increment_needs_enough_correspondences():
    current = np.array([0.1, 0.0, 0.0, 0.0, 0.0, 0.0])
    pts = np.zeros((4, 3))
    normals = WeightedNormals(normals=np.tile([0.0, 0.0, 1.0], (4, 1)), weights=np.ones(4))
    mapping = np.array([0, 1, NO_MATCH, NO_MATCH])
    updated, diag = solve_increment(current, pts, pts, normals, mapping)
    assert updated.tolist() == current.tolist()
    assert diag["n_valid"] == 2.0


@pytest.mark.integration
def test_recovers_known_calibration():
    source, target = _clouds()
    cfg = _config(max_iterations=30)
    sink = RecordingTelemetry()
    result = LidarCalibration(cfg, telemetry=sink).calibrate(source, target)

    assert result.state == RegistrationState.CONVERGED
    assert result.converged
    est = result.parameters.as_array()
    np.testing.assert_allclose(est[[0, 1, 3, 4, 5]], TRUE_PARAMS[[0, 1, 3, 4, 5]], atol=1e-3)
    assert est[2] == 0.0
    assert result.iterations <= cfg.max_iterations
    assert len(result.sequence) == result.iterations + 1
    assert len(sink.iterations) == result.iterations
    assert result.correspondences.shape == (source.shape[0],)
    assert result.residual_rms < 1e-3


def test_stops_at_iteration_limit():
    source, target = _clouds()
    cfg = _config(max_iterations=2, convergence_threshold=1e-12)
    result = register_clouds(source, target, config=cfg)
    assert result.state == RegistrationState.MAX_ITERATIONS_REACHED
    assert result.iterations == 2
    assert len(result.sequence) == 3
    assert result.sequence[0] == CalibrationParameters()


def test_z_translation_is_held_at_zero():
    source, target = _clouds()
    cfg = _config(max_iterations=3)
    result = register_clouds(source, target, config=cfg, initial=CalibrationParameters(z=0.5, yaw=0.01))
    assert all(p.z == 0.0 for p in result.sequence)
    assert result.sequence[0].yaw == 0.01


def test_target_transform_places_second_cloud():
    source, target = _clouds()
    shift = params_to_matrix(np.array([0.0, 0.0, 0.0, 0.0, 0.0, 0.1]))
    moved_target = transform_points(np.linalg.inv(shift), target)
    cfg = _config(max_iterations=30)
    result = register_clouds(source, moved_target, config=cfg, target_transform=shift)
    assert result.converged
    np.testing.assert_allclose(result.parameters.as_array(), TRUE_PARAMS, atol=1e-3)


def test_ground_plane_is_reported():
    source, target = _clouds()
    cfg = _config(max_iterations=30, detect_ground_plane=True)
    result = register_clouds(source, target, config=cfg)
    assert "ground" in result.planes and "ceiling" not in result.planes
    plane = result.planes["ground"]
    np.testing.assert_allclose(plane.normal, [0.0, 0.0, 1.0], atol=1e-3)
    assert plane.offset == pytest.approx(1.0, abs=1e-3)


def test_ransac_plane_ignores_clutter():
    rng = np.random.default_rng(0)
    floor = np.column_stack([rng.uniform(-2, 2, 500), rng.uniform(-2, 2, 500), rng.normal(-0.5, 0.003, 500)])
    clutter = rng.uniform(-2, 2, size=(100, 3))
    plane = fit_plane_ransac(np.concatenate([floor, clutter]), threshold=0.02, up_axis=np.array([0.0, 0.0, 1.0]), rng=rng)
    assert plane is not None
    assert plane.inliers >= 490
    assert plane.normal[2] > 0.999
    assert abs(plane.offset - 0.5) < 0.01
    assert np.median(np.abs(plane.distance(floor))) < 0.005
    assert fit_plane_ransac(np.zeros((2, 3))) is None


def test_unusable_clouds_raise():
    source, target = _clouds()
    with pytest.raises(DataError):
        register_clouds(np.zeros((0, 3)), target)
    with pytest.raises(DataError):
        register_clouds(source[:, :2], target)
    with pytest.raises(DataError):
        register_clouds(source + 100.0, target, config=CalibrationConfig(crop_range=10.0))


def test_clouds_out_of_reach_do_not_converge():
    _source, target = _clouds()
    far = target + np.array([10.0, 0.0, 0.0])
    sink = RecordingTelemetry()
    result = register_clouds(far, target, config=_config(max_iterations=10), telemetry=sink)

    assert result.state == RegistrationState.MAX_ITERATIONS_REACHED
    assert not result.converged
    assert result.iterations == 1
    assert result.parameters == CalibrationParameters()
    assert np.all(result.correspondences == NO_MATCH)
    assert sink.iterations[0][2]["solved"] == 0.0


def test_batched_normals_match_per_point_fit():
    rng = np.random.default_rng(4)
    xy = rng.uniform(-1.0, 1.0, size=(400, 2))
    z = 0.3 * xy[:, 0] - 0.2 * xy[:, 1] ** 2 + rng.normal(0.0, 0.005, size=400)
    pts = np.column_stack([xy, z])
    radius = 0.2
    wn = estimate_normals(pts, radius)

    for i in range(0, pts.shape[0], 37):
        nb = pts[np.linalg.norm(pts - pts[i], axis=1) <= radius]
        if nb.shape[0] < 3:
            assert not wn.valid[i]
            continue
        evals, evecs = np.linalg.eigh(np.cov(nb, rowvar=False, bias=True))
        assert abs(float(evecs[:, 0] @ wn.normals[i])) == pytest.approx(1.0, abs=1e-8)
        assert wn.weights[i] == pytest.approx((evals[1] - evals[0]) / evals[2], abs=1e-8)
