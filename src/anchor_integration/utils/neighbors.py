"""
Deterministic k-nearest-neighbour search.

scikit-learn does not define an order for neighbours at equal distance, so the
raw result is re-sorted by (distance, index) and rows whose k-th and (k+1)-th
distances tie are resolved with a radius query.
"""

import logging

import numpy as np
from sklearn.neighbors import NearestNeighbors

logger = logging.getLogger(__name__)


def _radius_slack(radius):
    return radius * (1.0 + 1e-12) + 1e-15


def knn(index_data, query_data, k, algorithm="auto"):
    """
    Find the k nearest rows of ``index_data`` for each row of ``query_data``.

    Parameters
    ----------
    index_data : ndarray, shape (n_index, n_dims)
        Points to search.
    query_data : ndarray, shape (n_query, n_dims)
        Points to find neighbours for.
    k : int
        Number of neighbours. Clamped to ``n_index``.
    algorithm : str
        Passed to ``sklearn.neighbors.NearestNeighbors``.

    Returns
    -------
    distances, indices : ndarray, shape (n_query, k)
        Euclidean distances and row indices into ``index_data``, ordered by
        increasing distance with exact ties broken by lower index.
    """
    index_data = np.asarray(index_data, dtype=np.float64)
    query_data = np.asarray(query_data, dtype=np.float64)
    n_index = index_data.shape[0]
    if n_index == 0 or query_data.shape[0] == 0:
        empty = np.zeros((query_data.shape[0], 0))
        return empty, empty.astype(np.intp)

    k = min(int(k), n_index)
    n_search = min(k + 1, n_index)

    nn = NearestNeighbors(n_neighbors=n_search, algorithm=algorithm).fit(index_data)
    distances, indices = nn.kneighbors(query_data)

    order = np.lexsort((indices, distances), axis=-1)
    distances = np.take_along_axis(distances, order, axis=1)
    indices = np.take_along_axis(indices, order, axis=1)

    if n_search > k:
        tied_rows = np.flatnonzero(distances[:, k - 1] == distances[:, k])
        if tied_rows.size:
            logger.debug(f"Resolving boundary ties for {tied_rows.size} query points")
        for row in tied_rows:
            radius = _radius_slack(distances[row, k - 1])
            cand_dist, cand_ind = nn.radius_neighbors(
                query_data[row:row + 1], radius=radius, sort_results=False
            )
            cand_dist, cand_ind = cand_dist[0], cand_ind[0]
            keep = np.lexsort((cand_ind, cand_dist))[:k]
            distances[row, :k] = cand_dist[keep]
            indices[row, :k] = cand_ind[keep]

    return distances[:, :k], indices[:, :k]


def l2_normalize(matrix):
    """Scale each row to unit Euclidean norm; all-zero rows stay zero."""
    matrix = np.asarray(matrix, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms
