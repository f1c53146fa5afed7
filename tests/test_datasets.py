import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from anchor_integration.data.datasets import Dataset, split_anndata
from anchor_integration.exceptions import DataError


def test_dataset_is_read_only():
    dataset = Dataset("ctrl", np.ones((3, 2)), ["a", "b"])
    with pytest.raises(ValueError):
        dataset.X[0, 0] = 5.0


def test_obs_property_returns_copy():
    dataset = Dataset("ctrl", np.ones((2, 2)), ["a", "b"])
    obs = dataset.obs
    obs["extra"] = 1
    assert "extra" not in dataset.obs.columns


def test_non_finite_values_replaced(caplog):
    X = np.array([[1.0, np.nan], [np.inf, 2.0]])
    with caplog.at_level("WARNING"):
        dataset = Dataset("ctrl", X, ["a", "b"])
    assert np.array_equal(dataset.X, [[1.0, 0.0], [0.0, 2.0]])
    assert "NaN/inf" in caplog.text


def test_sparse_input_densified():
    dataset = Dataset("ctrl", sparse.csr_matrix(np.eye(3)), ["a", "b", "c"])
    assert isinstance(dataset.X, np.ndarray)
    assert dataset.X[1, 1] == 1.0


def test_duplicate_gene_names_made_unique():
    dataset = Dataset("ctrl", np.zeros((1, 3)), ["a", "a", "b"])
    assert dataset.genes.is_unique
    assert len(dataset.genes) == 3


@pytest.mark.parametrize(
    "X, genes, obs",
    [
        (np.zeros((2, 3)), ["a", "b"], None),
        (np.zeros((2, 2)), ["a", "b"], pd.DataFrame(index=["c1"])),
        (np.zeros(4), ["a"], None),
    ],
)
def test_shape_mismatches_rejected(X, genes, obs):
    with pytest.raises(DataError):
        Dataset("ctrl", X, genes, obs=obs)


def test_gene_positions_marks_absent_genes():
    dataset = Dataset("ctrl", np.zeros((1, 2)), ["a", "b"])
    assert list(dataset.gene_positions(["b", "z", "a"])) == [1, -1, 0]


def test_split_anndata_by_condition():
    obs = pd.DataFrame(
        {
            "stim": ["CTRL", "STIM", "CTRL", "STIM", "CTRL"],
            "seurat_annotations": ["B", "B", "T", "T", "NK"],
        },
        index=[f"bc{i}" for i in range(5)],
    )
    adata = ad.AnnData(
        X=np.arange(10, dtype=float).reshape(5, 2),
        obs=obs,
        var=pd.DataFrame(index=["ISG15", "CD14"]),
    )

    datasets = split_anndata(adata, "stim", cell_type_key="seurat_annotations")

    assert [d.name for d in datasets] == ["CTRL", "STIM"]
    assert datasets[0].n_cells == 3
    assert list(datasets[0].obs.index) == ["bc0", "bc2", "bc4"]
    assert list(datasets[1].obs["cell_type"]) == ["B", "T"]
    assert np.array_equal(datasets[1].X, [[2.0, 3.0], [6.0, 7.0]])


def test_split_anndata_reads_layer_and_order():
    adata = ad.AnnData(
        X=np.zeros((2, 2)),
        obs=pd.DataFrame({"batch": ["a", "b"]}, index=["x", "y"]),
        var=pd.DataFrame(index=["g1", "g2"]),
    )
    adata.layers["residuals"] = np.ones((2, 2))

    datasets = split_anndata(adata, "batch", layer="residuals", order=["b", "a"])

    assert [d.name for d in datasets] == ["b", "a"]
    assert datasets[0].X.sum() == 2.0


def test_split_anndata_unknown_key():
    adata = ad.AnnData(X=np.zeros((1, 1)))
    with pytest.raises(DataError):
        split_anndata(adata, "stim")
