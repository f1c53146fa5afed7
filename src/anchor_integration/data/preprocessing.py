"""
Variance-stabilizing normalization for raw count data.

The integration core consumes residuals computed upstream. This module turns
raw counts into analytic Pearson residuals with scanpy, the Python
counterpart of SCTransform, for callers that start from counts.
"""

import logging

import numpy as np
import scanpy as sc
from scipy import sparse

from anchor_integration.exceptions import DataError

logger = logging.getLogger(__name__)


def quality_control(adata, min_genes=200, min_cells=3):
    """Drop near-empty cells and rarely detected genes."""
    n_cells, n_genes = adata.n_obs, adata.n_vars
    sc.pp.filter_cells(adata, min_genes=min_genes)
    sc.pp.filter_genes(adata, min_cells=min_cells)
    logger.info(
        f"Quality control: {n_cells} -> {adata.n_obs} cells, {n_genes} -> {adata.n_vars} genes"
    )
    return adata


def compute_residuals(adata, theta=100.0, clip=None, layer_name="residuals", counts_layer=None):
    """
    Store analytic Pearson residuals of raw counts in a layer.

    Parameters
    ----------
    adata : anndata.AnnData
        Raw UMI counts in ``X`` (or ``counts_layer``).
    theta : float
        Negative binomial overdispersion parameter.
    clip : float, optional
        Clip residuals to [-clip, clip]. scanpy defaults to sqrt(n_cells).
    layer_name : str
        Layer to write residuals into.
    counts_layer : str, optional
        Layer holding counts instead of ``X``.

    Returns
    -------
    anndata.AnnData
        The same object, with ``adata.layers[layer_name]`` set.
    """
    counts = adata.layers[counts_layer] if counts_layer is not None else adata.X
    values = counts.data if sparse.issparse(counts) else np.asarray(counts)
    if values.size and (np.min(values) < 0 or not np.allclose(values, np.round(values))):
        raise DataError("Pearson residuals need raw non-negative integer counts")

    adata.layers["counts"] = counts.copy()
    residuals = sc.experimental.pp.normalize_pearson_residuals(
        adata,
        theta=theta,
        clip=clip,
        layer="counts",
        inplace=False,
    )
    adata.layers[layer_name] = residuals["X"]
    logger.info(f"Computed Pearson residuals (theta={theta}) for {adata.n_obs} cells")
    return adata
