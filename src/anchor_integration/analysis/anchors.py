"""
Mutual-nearest-neighbour anchor detection in a shared CCA embedding.
"""

import logging

import numpy as np
import pandas as pd
from scipy import sparse

from anchor_integration.utils.neighbors import knn
from anchor_integration.utils.parallel import parallel_map

logger = logging.getLogger(__name__)

ANCHOR_COLUMNS = ["cell1", "cell2", "score", "dataset1", "dataset2"]


def make_anchor_frame(cell1, cell2, dataset1, dataset2, score=None):
    """
    Build an anchor table.

    ``cell1`` indexes ``dataset1`` (the reference side) and ``cell2`` indexes
    ``dataset2``. Rows are sorted by (cell1, cell2).
    """
    cell1 = np.asarray(cell1, dtype=np.int64)
    cell2 = np.asarray(cell2, dtype=np.int64)
    if score is None:
        score = np.full(cell1.shape, np.nan)

    anchors = pd.DataFrame(
        {
            "cell1": cell1,
            "cell2": cell2,
            "score": np.asarray(score, dtype=np.float64),
            "dataset1": pd.Series([dataset1] * len(cell1), dtype=object),
            "dataset2": pd.Series([dataset2] * len(cell1), dtype=object),
        },
        columns=ANCHOR_COLUMNS,
    )
    return anchors.sort_values(["cell1", "cell2"], kind="mergesort").reset_index(drop=True)


def neighbor_indicator(indices, n_columns, dtype=np.int8):
    """Sparse 0/1 matrix with row i set at the columns listed in ``indices[i]``."""
    n_rows, k = indices.shape
    rows = np.repeat(np.arange(n_rows), k)
    data = np.ones(n_rows * k, dtype=dtype)
    return sparse.csr_matrix((data, (rows, indices.ravel())), shape=(n_rows, n_columns))


def mutual_nearest_neighbors(embedding_a, embedding_b, k=5):
    """
    Find mutual nearest-neighbour pairs between two embeddings.

    Parameters
    ----------
    embedding_a : ndarray, shape (n_a, n_dims)
    embedding_b : ndarray, shape (n_b, n_dims)
    k : int
        Neighbours searched in each direction.

    Returns
    -------
    ndarray, shape (n_pairs, 2)
        ``(a, b)`` index pairs sorted by a then b, where b is among a's k
        nearest cells in B and a is among b's k nearest cells in A.
    """
    _, a_to_b = knn(embedding_b, embedding_a, k)
    _, b_to_a = knn(embedding_a, embedding_b, k)

    forward = neighbor_indicator(a_to_b, embedding_b.shape[0])
    backward = neighbor_indicator(b_to_a, embedding_a.shape[0])
    mutual = forward.multiply(backward.T).tocoo()

    pairs = np.column_stack([mutual.row, mutual.col]).astype(np.int64)
    order = np.lexsort((pairs[:, 1], pairs[:, 0]))
    return pairs[order]


def find_anchors(embedding, k=5):
    """
    Candidate anchors for one CCA embedding pair.

    Parameters
    ----------
    embedding : CCAEmbedding
        Reference and query embeddings in the same space.
    k : int
        ``k_neighbors`` for the mutual nearest-neighbour search.

    Returns
    -------
    pandas.DataFrame
        Unscored anchors (``score`` is NaN).
    """
    pairs = mutual_nearest_neighbors(
        embedding.reference_embedding, embedding.query_embedding, k=k
    )
    anchors = make_anchor_frame(pairs[:, 0], pairs[:, 1], embedding.reference, embedding.query)
    logger.info(
        f"Found {len(anchors)} candidate anchors between "
        f"{embedding.reference} and {embedding.query} (k={k})"
    )
    return anchors


def swap_anchors(anchors):
    """The same anchors seen from the other dataset's side."""
    swapped = anchors.rename(
        columns={"cell1": "cell2", "cell2": "cell1", "dataset1": "dataset2", "dataset2": "dataset1"}
    )
    swapped = swapped[ANCHOR_COLUMNS]
    return swapped.sort_values(["cell1", "cell2"], kind="mergesort").reset_index(drop=True)


def find_pairwise_anchors(embeddings, k=5, n_jobs=1):
    """
    Candidate anchors for several dataset pairs, pairs run concurrently.

    Parameters
    ----------
    embeddings : sequence of CCAEmbedding
    k : int
    n_jobs : int

    Returns
    -------
    dict
        ``(reference, query) -> anchors``, in input order.
    """
    embeddings = list(embeddings)
    results = parallel_map(lambda emb: find_anchors(emb, k=k), embeddings, n_jobs=n_jobs)
    return {(emb.reference, emb.query): anchors for emb, anchors in zip(embeddings, results)}
