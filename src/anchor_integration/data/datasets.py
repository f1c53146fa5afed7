"""
Immutable per-condition expression datasets.

A Dataset holds normalized expression (cells x genes) for one condition or
batch, together with per-cell metadata. It is read-only once built: stages
that need transformed values produce new arrays instead of editing it.
"""

import logging

from anndata.utils import make_index_unique
import numpy as np
import pandas as pd

from anchor_integration.exceptions import DataError

logger = logging.getLogger(__name__)


def _to_dense(matrix):
    if hasattr(matrix, "toarray"):
        return matrix.toarray()
    return np.asarray(matrix)


def _make_unique(names):
    """Suffix repeated names with -1, -2, ... like AnnData.var_names_make_unique."""
    index = pd.Index(names).astype(str)
    if index.is_unique:
        return index
    logger.warning(f"Making {int(index.duplicated().sum())} duplicated gene names unique")
    return make_index_unique(index)


class Dataset:
    """A named cells x genes expression matrix with per-cell metadata."""

    def __init__(self, name, X, genes, obs=None):
        """
        Parameters
        ----------
        name : str
            Dataset identifier, e.g. the condition label.
        X : array-like or sparse matrix, shape (n_cells, n_genes)
            Normalized expression (variance-stabilized residuals).
        genes : sequence of str
            Gene identifiers, one per column.
        obs : pandas.DataFrame, optional
            Per-cell metadata, one row per cell. May carry ``condition`` and
            ``cell_type`` columns.
        """
        if not name:
            raise DataError("Dataset name must be a non-empty string")

        values = np.array(_to_dense(X), dtype=np.float64)
        if values.ndim != 2:
            raise DataError(f"Dataset '{name}': expression must be 2-dimensional, got {values.ndim}")

        genes = _make_unique(genes)
        if len(genes) != values.shape[1]:
            raise DataError(
                f"Dataset '{name}': {values.shape[1]} expression columns but {len(genes)} gene names"
            )

        if obs is None:
            obs = pd.DataFrame(index=[f"cell_{i}" for i in range(values.shape[0])])
        else:
            obs = obs.copy()
        if len(obs) != values.shape[0]:
            raise DataError(f"Dataset '{name}': {values.shape[0]} cells but {len(obs)} metadata rows")
        obs.index = obs.index.astype(str)

        # Clean up any NaN or inf values
        non_finite = ~np.isfinite(values)
        if non_finite.any():
            logger.warning(
                f"Dataset '{name}': replacing {int(non_finite.sum())} NaN/inf values with 0"
            )
            values[non_finite] = 0.0

        values.setflags(write=False)
        self._name = str(name)
        self._X = values
        self._genes = genes
        self._obs = obs

    @property
    def name(self):
        return self._name

    @property
    def X(self):
        return self._X

    @property
    def genes(self):
        return self._genes

    @property
    def obs(self):
        # Callers get a copy so the stored metadata cannot be edited in place.
        return self._obs.copy()

    @property
    def n_cells(self):
        return self._X.shape[0]

    @property
    def n_genes(self):
        return self._X.shape[1]

    def __len__(self):
        return self.n_cells

    def __repr__(self):
        return f"Dataset(name={self._name!r}, n_cells={self.n_cells}, n_genes={self.n_genes})"

    def gene_positions(self, gene_ids):
        """Column positions of ``gene_ids``; -1 where a gene is absent."""
        return self._genes.get_indexer(pd.Index(gene_ids).astype(str))

    def to_frame(self):
        """Expression as a DataFrame indexed by cell, with genes as columns."""
        return pd.DataFrame(self._X, index=self._obs.index, columns=self._genes)

    @classmethod
    def from_anndata(cls, adata, name=None, layer=None, condition_key=None, cell_type_key=None):
        """
        Build a Dataset from an AnnData object.

        Parameters
        ----------
        adata : anndata.AnnData
            Expression data. ``adata.X`` (or ``layer``) must already hold
            normalized residuals.
        name : str, optional
            Dataset name. Defaults to the single value of ``condition_key``.
        layer : str, optional
            Layer to read instead of ``X``.
        condition_key, cell_type_key : str, optional
            ``obs`` columns copied to ``condition`` and ``cell_type``.
        """
        X = adata.layers[layer] if layer is not None else adata.X

        obs = pd.DataFrame(index=adata.obs_names.astype(str))
        if condition_key is not None:
            if condition_key not in adata.obs.columns:
                raise DataError(f"Condition column '{condition_key}' not found in obs")
            obs["condition"] = adata.obs[condition_key].astype(str).values
        if cell_type_key is not None:
            if cell_type_key not in adata.obs.columns:
                raise DataError(f"Cell type column '{cell_type_key}' not found in obs")
            obs["cell_type"] = adata.obs[cell_type_key].astype(str).values

        if name is None:
            if "condition" in obs and obs["condition"].nunique() == 1:
                name = obs["condition"].iloc[0]
            else:
                raise DataError("A dataset name is required unless obs holds a single condition")

        return cls(name, X, adata.var_names, obs=obs)


def split_anndata(adata, key, layer=None, cell_type_key=None, order=None):
    """
    Split a combined AnnData into one Dataset per value of ``obs[key]``.

    Parameters
    ----------
    adata : anndata.AnnData
        Combined object holding every condition.
    key : str
        ``obs`` column that identifies the condition or batch.
    layer : str, optional
        Layer holding residuals instead of ``X``.
    cell_type_key : str, optional
        ``obs`` column copied to each dataset's ``cell_type``.
    order : sequence of str, optional
        Dataset order. Defaults to order of first appearance.

    Returns
    -------
    list of Dataset
    """
    if key not in adata.obs.columns:
        raise DataError(f"Split column '{key}' not found in obs")

    labels = adata.obs[key].astype(str)
    if order is None:
        order = list(pd.unique(labels))
    else:
        missing = set(order) - set(labels)
        if missing:
            raise DataError(f"Values {sorted(missing)} not present in obs['{key}']")

    datasets = []
    for label in order:
        subset = adata[(labels == label).values]
        datasets.append(
            Dataset.from_anndata(
                subset,
                name=label,
                layer=layer,
                condition_key=key,
                cell_type_key=cell_type_key,
            )
        )
        logger.info(f"Split '{label}': {subset.n_obs} cells, {subset.n_vars} genes")
    return datasets
