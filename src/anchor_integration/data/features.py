"""
Shared feature selection over variance-stabilized residuals.
"""

import logging

import numpy as np
import pandas as pd

from anchor_integration.exceptions import (
    DataError,
    InsufficientFeaturesError,
    MissingGeneError,
)

logger = logging.getLogger(__name__)


def common_genes(datasets):
    """Genes present in every dataset, in the first dataset's column order."""
    common = datasets[0].genes
    for dataset in datasets[1:]:
        common = common[common.isin(dataset.genes)]
    return common


def combined_variance(datasets, genes):
    """
    Sample variance of each gene over the cells of all datasets combined.

    Computed from per-dataset sums so the datasets are never concatenated.
    """
    genes = pd.Index(genes)
    n_total = 0
    total = np.zeros(len(genes))
    total_sq = np.zeros(len(genes))
    for dataset in datasets:
        values = dataset.X[:, dataset.gene_positions(genes)]
        n_total += values.shape[0]
        total += values.sum(axis=0)
        total_sq += np.square(values).sum(axis=0)

    if n_total < 2:
        return pd.Series(np.zeros(len(genes)), index=genes)

    mean = total / n_total
    variance = (total_sq - n_total * np.square(mean)) / (n_total - 1)
    return pd.Series(np.maximum(variance, 0.0), index=genes)


class ResidualFeatureStore:
    """
    Residual matrices for a set of datasets plus their ranked shared features.

    Parameters
    ----------
    datasets : sequence of Dataset
        Normalized datasets with unique names.
    num_features : int
        Number of top-variance shared genes to select.
    min_features : int
        Fewer shared genes than this raises InsufficientFeaturesError.
    features : sequence of str, optional
        Explicit feature list. Genes absent from any dataset are dropped with
        a warning instead of being ranked by variance.
    """

    def __init__(self, datasets, num_features=3000, min_features=50, features=None):
        datasets = list(datasets)
        if not datasets:
            raise DataError("At least one dataset is required")

        names = [dataset.name for dataset in datasets]
        duplicated = sorted({name for name in names if names.count(name) > 1})
        if duplicated:
            raise DataError(f"Dataset names must be unique, repeated: {duplicated}")

        self._datasets = {dataset.name: dataset for dataset in datasets}
        self._order = names
        self.num_features = num_features
        self.min_features = min_features

        if features is None:
            self._features = self._select_by_variance()
        else:
            self._features = self._restrict_to_shared(features)

        if len(self._features) < self.min_features:
            raise InsufficientFeaturesError(len(self._features), self.min_features)

        logger.info(
            f"Selected {len(self._features)} shared features across {len(datasets)} datasets"
        )

    @property
    def dataset_names(self):
        return list(self._order)

    def dataset(self, dataset_id):
        try:
            return self._datasets[dataset_id]
        except KeyError:
            raise DataError(f"Unknown dataset '{dataset_id}'") from None

    def _select_by_variance(self):
        datasets = [self._datasets[name] for name in self._order]
        shared = common_genes(datasets)
        logger.info(f"Found {len(shared)} genes common to all datasets")

        if len(shared) < self.min_features:
            raise InsufficientFeaturesError(len(shared), self.min_features)

        variance = combined_variance(datasets, shared)
        # Highest variance first, ties by gene id
        order = np.lexsort((shared.values.astype(str), -variance.values))
        return shared[order[:self.num_features]]

    def _restrict_to_shared(self, features):
        requested = pd.Index(features).astype(str)
        if requested.has_duplicates:
            requested = requested.unique()

        keep = np.ones(len(requested), dtype=bool)
        for name in self._order:
            present = requested.isin(self._datasets[name].genes)
            if not present.all():
                missing = MissingGeneError(name, requested[~present])
                logger.warning(f"{missing}; excluding from the shared feature set")
            keep &= present

        features = requested[keep]
        if keep.sum() < len(requested) and len(features) < self.min_features:
            logger.warning(
                f"Excluding missing genes left {len(features)} shared features, "
                f"below the minimum of {self.min_features}"
            )
        return features[:self.num_features]

    def shared_features(self):
        """Ranked shared gene ids."""
        return list(self._features)

    def residuals(self, dataset_id, gene_ids=None):
        """
        Residual matrix for one dataset.

        Parameters
        ----------
        dataset_id : str
            Dataset name.
        gene_ids : sequence of str, optional
            Genes (columns) to return, in order. Defaults to the shared
            features.

        Returns
        -------
        ndarray, shape (n_cells, n_genes)
            A read-only view when possible.
        """
        dataset = self.dataset(dataset_id)
        if gene_ids is None:
            gene_ids = self._features

        positions = dataset.gene_positions(gene_ids)
        if (positions < 0).any():
            raise MissingGeneError(dataset_id, pd.Index(gene_ids)[positions < 0])

        values = dataset.X[:, positions]
        values.setflags(write=False)
        return values
