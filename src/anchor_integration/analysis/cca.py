"""
Canonical correlation analysis between two datasets over shared features.

Cells are the variables and genes the observations. Each dataset is scaled
per gene, then each cell is centred and scaled across genes; the per-cell
variances form a diagonal within-dataset covariance that is ridge-regularized
before whitening. The whitened cross-product is decomposed by SVD and the
singular vectors give the per-cell embeddings.
"""

import logging
from dataclasses import dataclass

import numpy as np
from scipy import linalg
from sklearn.preprocessing import StandardScaler
from sklearn.utils.extmath import randomized_svd, svd_flip

from anchor_integration.exceptions import RankDeficiencyError
from anchor_integration.utils.neighbors import l2_normalize

logger = logging.getLogger(__name__)

RANK_TOLERANCE = 1e-10


@dataclass(frozen=True)
class CCAEmbedding:
    """L2-normalized CCA embeddings of a reference/query dataset pair."""

    reference: str
    query: str
    reference_embedding: np.ndarray
    query_embedding: np.ndarray
    singular_values: np.ndarray
    epsilon: float

    @property
    def n_components(self):
        return self.reference_embedding.shape[1]

    def embedding(self, dataset_id):
        if dataset_id == self.reference:
            return self.reference_embedding
        if dataset_id == self.query:
            return self.query_embedding
        raise KeyError(dataset_id)


def scale_features(matrix):
    """Centre and scale each gene (column) to unit variance; constant genes become 0."""
    return StandardScaler(with_mean=True, with_std=True).fit_transform(
        np.asarray(matrix, dtype=np.float64)
    )


def regularized_cell_scaling(matrix, epsilon, max_condition=1e6, max_retries=3):
    """
    Centre each cell across genes and divide by its ridge-regularized spread.

    Parameters
    ----------
    matrix : ndarray, shape (n_cells, n_genes)
        Gene-scaled expression.
    epsilon : float
        Initial ridge, relative to the mean per-cell variance.
    max_condition : float
        Largest accepted ratio between the largest and smallest regularized
        per-cell variance.
    max_retries : int
        Number of times epsilon is multiplied by 10 before giving up.

    Returns
    -------
    scaled : ndarray
    epsilon : float
        The epsilon that stabilized the covariance.

    Raises
    ------
    RankDeficiencyError
        If the covariance is still ill-conditioned after all retries.
    """
    centred = matrix - matrix.mean(axis=1, keepdims=True)
    variance = np.square(centred).mean(axis=1)
    scale = variance.mean()

    for attempt in range(max_retries + 1):
        ridge = epsilon * scale
        regularized = variance + ridge
        smallest = regularized.min()
        if smallest > 0 and regularized.max() / smallest <= max_condition:
            if attempt:
                logger.warning(f"Covariance stabilized after raising epsilon to {epsilon:g}")
            return centred / np.sqrt(regularized)[:, None], epsilon
        logger.warning(
            f"Within-dataset covariance ill-conditioned at epsilon={epsilon:g} "
            f"(attempt {attempt + 1}/{max_retries + 1})"
        )
        epsilon *= 10.0

    raise RankDeficiencyError(
        f"Covariance could not be stabilized after {max_retries} regularization retries"
    )


def _cross_svd(cross, n_components, exact_limit, random_state):
    if min(cross.shape) <= exact_limit:
        u, d, vt = linalg.svd(cross, full_matrices=False, lapack_driver="gesdd")
        u, d, vt = u[:, :n_components], d[:n_components], vt[:n_components]
    else:
        u, d, vt = randomized_svd(
            cross, n_components=n_components, n_iter=7, random_state=random_state
        )
    u, vt = svd_flip(u, vt)
    return u, d, vt


def run_cca(
    reference,
    query,
    n_components=30,
    epsilon=1e-4,
    max_condition=1e6,
    max_retries=3,
    exact_svd_limit=5000,
    random_state=0,
    reference_name="reference",
    query_name="query",
):
    """
    Compute CCA embeddings for a reference and a query residual matrix.

    Parameters
    ----------
    reference, query : ndarray, shape (n_cells, n_features)
        Residuals over the same shared features, in the same column order.
    n_components : int
        Embedding dimensionality.
    epsilon, max_condition, max_retries
        Ridge regularization control, see ``regularized_cell_scaling``.
    exact_svd_limit : int
        Use exact LAPACK SVD when the smaller dataset has at most this many
        cells, seeded randomized SVD otherwise.
    random_state : int
        Seed for randomized SVD.

    Returns
    -------
    CCAEmbedding
    """
    reference = np.asarray(reference, dtype=np.float64)
    query = np.asarray(query, dtype=np.float64)
    if reference.shape[1] != query.shape[1]:
        raise ValueError(
            f"Feature mismatch: reference has {reference.shape[1]}, query has {query.shape[1]}"
        )

    ref_scaled, eps_ref = regularized_cell_scaling(
        scale_features(reference), epsilon, max_condition, max_retries
    )
    query_scaled, eps_query = regularized_cell_scaling(
        scale_features(query), epsilon, max_condition, max_retries
    )

    cross = ref_scaled @ query_scaled.T
    max_rank = min(cross.shape)
    u, d, vt = _cross_svd(cross, min(n_components, max_rank), exact_svd_limit, random_state)

    if d.size == 0 or d[0] <= 0:
        raise RankDeficiencyError("Cross-dataset covariance is zero; no shared variation")

    rank = int(np.sum(d > d[0] * RANK_TOLERANCE))
    if rank < n_components:
        logger.warning(
            f"Cross-covariance rank {rank} below requested {n_components} dimensions; "
            f"truncating embedding"
        )
        u, d, vt = u[:, :rank], d[:rank], vt[:rank]

    logger.info(
        f"CCA {reference_name} vs {query_name}: {d.size} components, "
        f"leading singular values {np.round(d[:3], 3).tolist()}"
    )

    return CCAEmbedding(
        reference=reference_name,
        query=query_name,
        reference_embedding=l2_normalize(u),
        query_embedding=l2_normalize(vt.T),
        singular_values=d,
        epsilon=max(eps_ref, eps_query),
    )
