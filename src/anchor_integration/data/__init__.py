"""Datasets, shared feature selection and residual normalization."""

from anchor_integration.data.datasets import Dataset, split_anndata
from anchor_integration.data.features import ResidualFeatureStore, combined_variance, common_genes

__all__ = [
    "Dataset",
    "ResidualFeatureStore",
    "combined_variance",
    "common_genes",
    "split_anndata",
]
