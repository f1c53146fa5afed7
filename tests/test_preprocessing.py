import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from anchor_integration.data.datasets import split_anndata
from anchor_integration.data.preprocessing import compute_residuals, quality_control
from anchor_integration.exceptions import DataError


@pytest.fixture
def counts(rng):
    X = rng.poisson(2.0, size=(60, 40)).astype(np.float32)
    obs = pd.DataFrame(
        {"stim": ["CTRL"] * 30 + ["STIM"] * 30},
        index=[f"AAAC{i:04d}-1" for i in range(60)],
    )
    return ad.AnnData(X=X, obs=obs, var=pd.DataFrame(index=[f"gene_{i}" for i in range(40)]))


def test_residuals_layer_is_finite(counts):
    adata = compute_residuals(counts)

    residuals = adata.layers["residuals"]
    assert residuals.shape == (60, 40)
    assert np.all(np.isfinite(residuals))
    assert "counts" in adata.layers
    # X keeps the raw counts
    assert np.array_equal(adata.X, adata.layers["counts"])


def test_residuals_feed_dataset_split(counts):
    compute_residuals(counts)

    datasets = split_anndata(counts, "stim", layer="residuals")

    assert [d.name for d in datasets] == ["CTRL", "STIM"]
    assert all(d.n_genes == 40 for d in datasets)


def test_sparse_counts_accepted(counts):
    counts.X = sparse.csr_matrix(counts.X)
    adata = compute_residuals(counts, clip=5.0)
    assert np.abs(np.asarray(adata.layers["residuals"])).max() <= 5.0


@pytest.mark.parametrize("bad", [-1.0, 0.5])
def test_non_count_values_rejected(counts, bad):
    counts.X[0, 0] = bad
    with pytest.raises(DataError):
        compute_residuals(counts)


def test_quality_control_filters_sparse_cells_and_genes(counts):
    counts.X[:, 0] = 0.0
    counts.X[0, :] = 0.0

    filtered = quality_control(counts, min_genes=5, min_cells=3)

    assert filtered.n_obs == 59
    assert "gene_0" not in filtered.var_names
