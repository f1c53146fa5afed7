import numpy as np
import pandas as pd

from anchor_integration.analysis.anchors import (
    ANCHOR_COLUMNS,
    find_anchors,
    find_pairwise_anchors,
    make_anchor_frame,
    mutual_nearest_neighbors,
    swap_anchors,
)
from anchor_integration.analysis.cca import run_cca
from anchor_integration.utils.neighbors import knn, l2_normalize

from conftest import make_clustered


def test_knn_breaks_distance_ties_by_index():
    points = np.array([[1.0, 0.0], [-1.0, 0.0], [0.0, 1.0], [0.0, -1.0]])
    distances, indices = knn(points, np.zeros((1, 2)), k=2)
    assert list(indices[0]) == [0, 1]
    assert np.allclose(distances[0], [1.0, 1.0])


def test_knn_clamps_k_to_index_size(rng):
    distances, indices = knn(rng.normal(size=(3, 2)), rng.normal(size=(4, 2)), k=10)
    assert indices.shape == (4, 3)
    assert np.all(np.diff(distances, axis=1) >= 0)


def test_l2_normalize_keeps_zero_rows():
    normalized = l2_normalize(np.array([[3.0, 4.0], [0.0, 0.0]]))
    assert np.allclose(normalized, [[0.6, 0.8], [0.0, 0.0]])


def test_pairs_are_mutual(rng):
    a = rng.normal(size=(40, 4))
    b = rng.normal(size=(50, 4))
    k = 5

    pairs = mutual_nearest_neighbors(a, b, k=k)
    _, a_to_b = knn(b, a, k)
    _, b_to_a = knn(a, b, k)

    assert len(pairs) > 0
    for i, j in pairs:
        assert j in a_to_b[i]
        assert i in b_to_a[j]


def test_every_mutual_pair_is_found(rng):
    a = rng.normal(size=(30, 3))
    b = rng.normal(size=(30, 3))
    _, a_to_b = knn(b, a, 3)
    _, b_to_a = knn(a, b, 3)
    expected = {(i, j) for i in range(30) for j in a_to_b[i] if i in b_to_a[j]}

    found = {tuple(pair) for pair in mutual_nearest_neighbors(a, b, k=3)}
    assert found == expected


def test_anchor_symmetry(rng):
    a = rng.normal(size=(40, 4))
    b = rng.normal(size=(35, 4))

    forward = make_anchor_frame(*mutual_nearest_neighbors(a, b, k=5).T, "a", "b")
    backward = make_anchor_frame(*mutual_nearest_neighbors(b, a, k=5).T, "b", "a")

    pd.testing.assert_frame_equal(swap_anchors(forward), backward)


def test_identical_embeddings_pair_each_cell_with_itself(rng):
    embedding = l2_normalize(rng.normal(size=(25, 5)))
    pairs = mutual_nearest_neighbors(embedding, embedding, k=1)
    assert np.array_equal(pairs, np.column_stack([np.arange(25), np.arange(25)]))


def test_anchor_frame_layout(offset_pair):
    ctrl, stim = offset_pair
    embedding = run_cca(ctrl.X, stim.X, n_components=5, reference_name="ctrl", query_name="stim")

    anchors = find_anchors(embedding, k=5)

    assert list(anchors.columns) == ANCHOR_COLUMNS
    assert anchors["score"].isna().all()
    assert set(anchors["dataset1"]) == {"ctrl"}
    assert set(anchors["dataset2"]) == {"stim"}
    assert anchors["cell1"].between(0, ctrl.n_cells - 1).all()
    assert anchors["cell2"].between(0, stim.n_cells - 1).all()
    assert not anchors.duplicated(["cell1", "cell2"]).any()
    assert anchors[["cell1", "cell2"]].equals(anchors.sort_values(["cell1", "cell2"])[["cell1", "cell2"]])


def test_anchors_link_matching_cell_types(offset_pair):
    ctrl, stim = offset_pair
    embedding = run_cca(ctrl.X, stim.X, n_components=3, reference_name="ctrl", query_name="stim")

    anchors = find_anchors(embedding, k=5)

    ref_types = ctrl.obs["cell_type"].to_numpy()[anchors["cell1"]]
    query_types = stim.obs["cell_type"].to_numpy()[anchors["cell2"]]
    assert np.mean(ref_types == query_types) > 0.9


def test_pairwise_anchors_are_keyed_by_pair(rng, centers):
    ctrl = make_clustered(rng, centers, 60, name="ctrl")
    embeddings = [
        run_cca(ctrl.X, make_clustered(rng, centers, 50, name=name).X,
                n_components=3, reference_name="ctrl", query_name=name)
        for name in ("stim", "rest")
    ]

    serial = find_pairwise_anchors(embeddings, k=5, n_jobs=1)
    threaded = find_pairwise_anchors(embeddings, k=5, n_jobs=2)

    assert list(serial) == [("ctrl", "stim"), ("ctrl", "rest")]
    for key in serial:
        pd.testing.assert_frame_equal(serial[key], threaded[key])
