from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.spatial import cKDTree


@dataclass(frozen=True)
class WeightedNormals:
    """
    Per-point surface normals with a planarity weight in [0,1].

    Points without enough neighbours have NaN normals and weight 0.
    """

    normals: np.ndarray  # (N,3)
    weights: np.ndarray  # (N,)

    @property
    def valid(self) -> np.ndarray:
        return np.all(np.isfinite(self.normals), axis=1) & (self.weights > 0.0)


def estimate_normals(points: np.ndarray, radius: float, *, min_neighbors: int = 3) -> WeightedNormals:
    """
    Fit a first-order (planar) local surface to the neighbours of every point within `radius`.

    The normal is the eigenvector of the neighbourhood covariance with the smallest
    eigenvalue. With eigenvalues l1 <= l2 <= l3 the planarity weight is (l2 - l1) / l3:
    close to 1 on flat patches, close to 0 on edges, corners and lines.
    """
    P = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    if radius <= 0:
        raise ValueError("radius must be > 0")
    n = P.shape[0]
    normals = np.full((n, 3), np.nan, dtype=np.float64)
    weights = np.zeros((n,), dtype=np.float64)
    if n == 0:
        return WeightedNormals(normals=normals, weights=weights)

    tree = cKDTree(P)
    neighborhoods = tree.query_ball_point(P, r=float(radius))
    counts = np.fromiter((len(nb) for nb in neighborhoods), dtype=np.int64, count=n)
    flat = np.concatenate([np.asarray(nb, dtype=np.int64) for nb in neighborhoods])
    owner = np.repeat(np.arange(n), counts)

    # Per-neighbourhood mean, then centred second moments, all in flat (owner, neighbour) form.
    mean = np.stack([np.bincount(owner, weights=P[flat, k], minlength=n) for k in range(3)], axis=1)
    denom = np.maximum(counts, 1).astype(np.float64)
    mean /= denom[:, None]
    D = P[flat] - mean[owner]
    C = np.empty((n, 3, 3), dtype=np.float64)
    for a in range(3):
        for b in range(a, 3):
            s = np.bincount(owner, weights=D[:, a] * D[:, b], minlength=n) / denom
            C[:, a, b] = s
            C[:, b, a] = s

    enough = counts >= int(min_neighbors)
    if not np.any(enough):
        return WeightedNormals(normals=normals, weights=weights)
    evals, evecs = np.linalg.eigh(C[enough])
    l1, l2, l3 = evals[:, 0], evals[:, 1], evals[:, 2]
    spread = l3 > 0.0
    rows = np.flatnonzero(enough)[spread]
    normals[rows] = evecs[spread, :, 0]
    weights[rows] = np.clip((l2[spread] - l1[spread]) / l3[spread], 0.0, 1.0)
    return WeightedNormals(normals=normals, weights=weights)
