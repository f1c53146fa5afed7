"""
Anchor filtering and neighbourhood-overlap scoring.

Low-confidence anchors are hard-filtered: an anchor is kept only when its
score exceeds the configured threshold. Zero-score anchors would carry zero
weight in the correction anyway, so nothing is lost by dropping them.
"""

import logging

import numpy as np
from scipy import sparse

from anchor_integration.analysis.anchors import neighbor_indicator
from anchor_integration.analysis.cca import scale_features
from anchor_integration.exceptions import NoAnchorsError
from anchor_integration.utils.neighbors import knn, l2_normalize

logger = logging.getLogger(__name__)


def filter_by_expression(anchors, reference, query, k_filter=200):
    """
    Drop anchors whose partners are not close in expression space.

    The shared-feature residuals of each dataset are scaled per gene and
    L2-normalized per cell. An anchor survives if its reference cell is among
    the ``k_filter`` nearest reference cells of its query cell.

    Parameters
    ----------
    anchors : pandas.DataFrame
    reference, query : ndarray, shape (n_cells, n_features)
        Residuals over the shared features.
    k_filter : int or None
        None disables the filter.

    Returns
    -------
    pandas.DataFrame
    """
    if k_filter is None or anchors.empty:
        return anchors

    n_reference = reference.shape[0]
    if k_filter >= n_reference:
        logger.debug(f"k_filter={k_filter} covers all {n_reference} reference cells; no filtering")
        return anchors

    ref_space = l2_normalize(scale_features(reference))
    query_space = l2_normalize(scale_features(query))

    query_cells = np.unique(anchors["cell2"].to_numpy())
    _, nn = knn(ref_space, query_space[query_cells], k_filter)

    lookup = neighbor_indicator(nn, n_reference, dtype=np.bool_)
    rows = np.searchsorted(query_cells, anchors["cell2"].to_numpy())
    keep = np.asarray(lookup[rows, anchors["cell1"].to_numpy()]).ravel().astype(bool)

    logger.info(
        f"Expression filter (k_filter={k_filter}) kept {int(keep.sum())}/{len(anchors)} anchors"
    )
    return anchors.loc[keep].reset_index(drop=True)


def score_anchors(anchors, reference_embedding, query_embedding, k_score=30):
    """
    Score each anchor by the overlap of the two cells' neighbourhoods.

    For anchor (a, b) the score is the fraction of a's ``k_score`` nearest
    reference cells (a included) that are joined by some other anchor to one
    of b's ``k_score`` nearest query cells.

    Parameters
    ----------
    anchors : pandas.DataFrame
        Candidate anchors between the two embeddings.
    reference_embedding, query_embedding : ndarray
        CCA embeddings of the reference and query cells.
    k_score : int
        Neighbourhood size, clamped to each dataset's cell count.

    Returns
    -------
    pandas.DataFrame
        Copy of ``anchors`` with the ``score`` column filled in [0, 1].
    """
    anchors = anchors.copy()
    if anchors.empty:
        return anchors

    n_reference = reference_embedding.shape[0]
    n_query = query_embedding.shape[0]
    k_ref = min(k_score, n_reference)
    k_query = min(k_score, n_query)

    cell1 = anchors["cell1"].to_numpy()
    cell2 = anchors["cell2"].to_numpy()
    n_anchors = len(anchors)

    ref_cells, ref_rows = np.unique(cell1, return_inverse=True)
    query_cells, query_rows = np.unique(cell2, return_inverse=True)
    _, ref_nn = knn(reference_embedding, reference_embedding[ref_cells], k_ref)
    _, query_nn = knn(query_embedding, query_embedding[query_cells], k_query)

    around_a = neighbor_indicator(ref_nn[ref_rows], n_reference, dtype=np.int32)
    around_b = neighbor_indicator(query_nn[query_rows], n_query, dtype=np.int32)
    graph = sparse.csr_matrix(
        (np.ones(n_anchors, dtype=np.int32), (cell1, cell2)), shape=(n_reference, n_query)
    )

    # links[i, a'] = anchors from reference cell a' into b_i's neighbourhood
    links = (around_b @ graph.T).tocsr()

    # Remove the anchor's own edge when b_i lies in its own neighbourhood
    own = np.asarray(around_b[np.arange(n_anchors), cell2]).ravel()
    links = links - sparse.csr_matrix(
        (own.astype(np.int32), (np.arange(n_anchors), cell1)), shape=links.shape
    )

    hits = links.multiply(around_a).tocsr()
    hits.eliminate_zeros()
    n_hits = np.asarray((hits > 0).sum(axis=1)).ravel()

    anchors["score"] = n_hits / float(k_ref)
    logger.info(
        f"Scored {n_anchors} anchors (k_score={k_score}): "
        f"median {np.median(anchors['score']):.3f}"
    )
    return anchors


def filter_by_score(anchors, threshold=0.0):
    """
    Keep anchors scoring strictly above ``threshold``.

    Raises
    ------
    NoAnchorsError
        If no anchor survives.
    """
    keep = anchors["score"].to_numpy() > threshold
    kept = anchors.loc[keep].reset_index(drop=True)
    logger.info(f"Score filter (> {threshold}) kept {len(kept)}/{len(anchors)} anchors")

    if kept.empty:
        pair = ""
        if len(anchors):
            pair = f" between {anchors['dataset1'].iloc[0]} and {anchors['dataset2'].iloc[0]}"
        raise NoAnchorsError(f"No anchors{pair} scored above {threshold}")
    return kept


def score_and_filter(anchors, embedding, reference, query, k_score=30, k_filter=200, threshold=0.0):
    """
    Run the expression filter, scoring and score filter for one dataset pair.

    Parameters
    ----------
    anchors : pandas.DataFrame
        Candidate anchors from ``find_anchors``.
    embedding : CCAEmbedding
    reference, query : ndarray
        Shared-feature residuals of the two datasets.

    Returns
    -------
    pandas.DataFrame
        Scored anchors above the threshold.
    """
    if anchors.empty:
        raise NoAnchorsError(
            f"No mutual nearest neighbours between {embedding.reference} and {embedding.query}"
        )
    anchors = filter_by_expression(anchors, reference, query, k_filter=k_filter)
    anchors = score_anchors(
        anchors, embedding.reference_embedding, embedding.query_embedding, k_score=k_score
    )
    return filter_by_score(anchors, threshold=threshold)
