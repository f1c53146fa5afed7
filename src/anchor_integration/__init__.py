"""
Anchor-based Single-Cell Dataset Integration

Integrates control and stimulated (or otherwise batch-separated) single-cell
RNA-seq datasets using canonical correlation analysis, mutual-nearest-neighbour
anchors and weighted correction vectors.
"""

__version__ = "0.1.0"
__author__ = "Anchor Integration Team"

# Import key components for easy access
from anchor_integration.analysis.integration import (
    AnchorIntegrator,
    CancellationToken,
    IntegratedMatrix,
    integrate,
)
from anchor_integration.config.settings import IntegrationConfig, get_settings
from anchor_integration.data.datasets import Dataset, split_anndata

__all__ = [
    "AnchorIntegrator",
    "CancellationToken",
    "Dataset",
    "IntegratedMatrix",
    "IntegrationConfig",
    "get_settings",
    "integrate",
    "split_anndata",
]
