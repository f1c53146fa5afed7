"""
Correction-vector estimation and application for query datasets.

Each anchor contributes the expression difference between its query and
reference cell. A query cell's correction is the kernel-weighted average of
the differences of its nearest anchors in the CCA embedding, and is
subtracted from the cell's raw expression.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import sparse

from anchor_integration.exceptions import MissingGeneError, NoAnchorsError
from anchor_integration.utils.neighbors import knn

logger = logging.getLogger(__name__)

MIN_BANDWIDTH = 1e-12

# Chord length at a right angle between unit vectors; anchors at or beyond it
# share no direction with the cell in the normalized embedding
MAX_RADIUS = np.sqrt(2.0)


@dataclass(frozen=True)
class CorrectionResult:
    """Corrected expression for one query dataset."""

    query: str
    corrected: np.ndarray
    corrections: np.ndarray
    unanchored: np.ndarray
    n_anchors: np.ndarray
    bandwidth: float
    radius: float

    @property
    def n_unanchored(self):
        return int(self.unanchored.sum())


def integration_vectors(anchors, reference, query):
    """Per-anchor expression difference ``query[cell2] - reference[cell1]``."""
    return query[anchors["cell2"].to_numpy()] - reference[anchors["cell1"].to_numpy()]


def auto_bandwidth(query_embedding, anchor_cells, k=5):
    """
    Local anchor spacing: median distance from a query cell to its k-th
    nearest anchored cell.

    Several anchors can share one query cell, so distances are taken to the
    distinct anchored cells.

    Parameters
    ----------
    query_embedding : ndarray, shape (n_query, n_dims)
    anchor_cells : array-like of int
        Query cell index of every anchor.
    k : int
        Neighbour rank, clamped to the number of anchored cells.
    """
    positions = query_embedding[np.unique(np.asarray(anchor_cells))]
    distances, _ = knn(positions, query_embedding, k)
    if distances.size == 0:
        return 1.0
    return max(float(np.median(distances[:, -1])), MIN_BANDWIDTH)


def anchor_weights(
    query_embedding,
    anchors,
    k_weight=100,
    bandwidth=None,
    radius_multiplier=3.0,
    k_bandwidth=5,
):
    """
    Gaussian-kernel anchor weights for every query cell.

    Parameters
    ----------
    query_embedding : ndarray, shape (n_query, n_dims)
    anchors : pandas.DataFrame
        Scored anchors; an anchor sits at its query cell's embedding.
    k_weight : int
        Nearest anchors considered per cell, clamped to the anchor count.
    bandwidth : float, optional
        Kernel standard deviation. Estimated with ``auto_bandwidth`` if None.
    radius_multiplier : float
        Anchors farther than ``radius_multiplier * bandwidth`` get no weight.
        The radius never exceeds ``MAX_RADIUS``.
    k_bandwidth : int
        Neighbour rank used by ``auto_bandwidth``.

    Returns
    -------
    weights : scipy.sparse.csr_matrix, shape (n_query, n_anchors)
        Rows sum to 1, except all-zero rows of unanchored cells.
    unanchored : ndarray of bool
    bandwidth : float
    radius : float
    """
    if anchors.empty:
        raise NoAnchorsError("Cannot weight query cells without anchors")

    n_query = query_embedding.shape[0]
    n_anchors = len(anchors)
    positions = query_embedding[anchors["cell2"].to_numpy()]
    distances, nearest = knn(positions, query_embedding, min(k_weight, n_anchors))

    if bandwidth is None:
        bandwidth = auto_bandwidth(query_embedding, anchors["cell2"].to_numpy(), k=k_bandwidth)
    radius = min(radius_multiplier * bandwidth, MAX_RADIUS)

    kernel = np.exp(-np.square(distances) / (2.0 * bandwidth ** 2))
    kernel[distances > radius] = 0.0
    weights = kernel * anchors["score"].to_numpy()[nearest]

    totals = weights.sum(axis=1)
    unanchored = totals <= 0
    anchored = ~unanchored
    weights[anchored] /= totals[anchored, None]

    rows = np.repeat(np.arange(n_query), nearest.shape[1])
    matrix = sparse.csr_matrix(
        (weights.ravel(), (rows, nearest.ravel())), shape=(n_query, n_anchors)
    )
    matrix.eliminate_zeros()
    return matrix, unanchored, bandwidth, radius


def correct_query(
    anchors,
    reference,
    query,
    query_embedding,
    k_weight=100,
    bandwidth=None,
    radius_multiplier=3.0,
    k_bandwidth=5,
    query_name="query",
):
    """
    Subtract weighted anchor corrections from a query dataset.

    Parameters
    ----------
    anchors : pandas.DataFrame
        Scored, filtered anchors between reference and query.
    reference, query : ndarray, shape (n_cells, n_features)
        Shared-feature residuals.
    query_embedding : ndarray
        Query cells in the CCA embedding shared with the reference.

    Returns
    -------
    CorrectionResult
    """
    weights, unanchored, bandwidth, radius = anchor_weights(
        query_embedding,
        anchors,
        k_weight=k_weight,
        bandwidth=bandwidth,
        radius_multiplier=radius_multiplier,
        k_bandwidth=k_bandwidth,
    )
    vectors = integration_vectors(anchors, reference, query)

    corrections = np.asarray(weights @ vectors)
    corrections[unanchored] = 0.0

    corrected = query - corrections
    # Unanchored cells keep their raw values exactly
    corrected[unanchored] = query[unanchored]

    n_used = np.diff(weights.indptr)
    if unanchored.any():
        logger.warning(
            f"{int(unanchored.sum())}/{query.shape[0]} cells of {query_name} have no anchor "
            f"within radius {radius:.4g}; raw expression kept"
        )
    logger.info(
        f"Corrected {query_name}: bandwidth {bandwidth:.4g}, "
        f"mean |correction| {np.abs(corrections).mean():.4g}"
    )

    return CorrectionResult(
        query=query_name,
        corrected=corrected,
        corrections=corrections,
        unanchored=unanchored,
        n_anchors=n_used,
        bandwidth=bandwidth,
        radius=radius,
    )


def correct_expression(expression, corrections):
    """
    Subtract a correction table from an expression table, aligned by gene id.

    Parameters
    ----------
    expression : pandas.DataFrame
        Cells x genes. May carry genes outside the corrected feature set.
    corrections : pandas.DataFrame
        Cells x corrected genes, same cell index as ``expression``.

    Returns
    -------
    pandas.DataFrame
        Copy of ``expression``; genes absent from ``corrections`` are untouched.
    """
    missing = corrections.columns.difference(expression.columns)
    if len(missing):
        raise MissingGeneError("expression", missing)
    if not corrections.index.equals(expression.index):
        raise ValueError("Correction and expression tables must share the same cell index")

    corrected = expression.copy()
    corrected[corrections.columns] = expression[corrections.columns].to_numpy() - corrections.to_numpy()
    return corrected


def corrections_frame(result, cell_index, features):
    """Correction vectors of a CorrectionResult as a labelled table."""
    return pd.DataFrame(result.corrections, index=cell_index, columns=pd.Index(features))
