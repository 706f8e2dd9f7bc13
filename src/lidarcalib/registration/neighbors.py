from __future__ import annotations

import numpy as np
from scipy.spatial import cKDTree


NO_MATCH = -1


def find_correspondences(
    source: np.ndarray,
    target: np.ndarray,
    *,
    max_distance: float = np.inf,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Nearest neighbour in `target` for every point of `source`.

    Returns (mapping, distances), both of length len(source). `mapping[i]` is a target index
    or NO_MATCH when no target point lies within `max_distance` (or the target is empty);
    the matching distance is then inf.
    """
    S = np.asarray(source, dtype=np.float64).reshape(-1, 3)
    Q = np.asarray(target, dtype=np.float64).reshape(-1, 3)
    mapping = np.full((S.shape[0],), NO_MATCH, dtype=np.int64)
    dist = np.full((S.shape[0],), np.inf, dtype=np.float64)
    if S.shape[0] == 0 or Q.shape[0] == 0:
        return mapping, dist

    tree = cKDTree(Q)
    d, idx = tree.query(S, k=1, distance_upper_bound=float(max_distance))
    hit = np.isfinite(d) & (idx < Q.shape[0])
    mapping[hit] = idx[hit]
    dist[hit] = d[hit]
    return mapping, dist
