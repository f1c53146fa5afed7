"""
Pytest configuration and fixtures for anchor integration tests.
"""

import pytest
from pathlib import Path
import sys

import numpy as np
import pandas as pd

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from anchor_integration.config.settings import IntegrationConfig  # noqa: E402
from anchor_integration.data.datasets import Dataset  # noqa: E402


def make_clustered(rng, centers, n_cells, noise=0.5, offset=0.0, genes=None, name="ctrl"):
    """Cells drawn around cluster centres, with an optional constant shift."""
    labels = rng.integers(0, len(centers), n_cells)
    X = centers[labels] + rng.normal(0.0, noise, (n_cells, centers.shape[1])) + offset
    if genes is None:
        genes = [f"gene_{i}" for i in range(centers.shape[1])]

    obs = pd.DataFrame(
        {"cell_type": [f"type_{label}" for label in labels]},
        index=[f"{name}_cell_{i}" for i in range(n_cells)],
    )
    return Dataset(name, X, genes, obs=obs)


@pytest.fixture
def project_root():
    """Return project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def sample_settings(tmp_path):
    """Return sample settings for testing."""
    from anchor_integration.config.settings import Settings
    return Settings(base_dir=tmp_path)


@pytest.fixture
def rng():
    return np.random.default_rng(7)


@pytest.fixture
def centers(rng):
    """Four well separated cell-state centres over 50 genes."""
    return rng.normal(0.0, 2.0, size=(4, 50))


@pytest.fixture
def offset_pair(rng, centers):
    """Control and stimulated datasets, 100 cells x 50 genes, stimulated shifted by +2.0."""
    ctrl = make_clustered(rng, centers, 100, name="ctrl")
    stim = make_clustered(rng, centers, 100, offset=2.0, name="stim")
    return ctrl, stim


@pytest.fixture
def small_config():
    """Defaults with a minimum feature count suited to 50-gene synthetic data."""
    return IntegrationConfig(min_shared_features=20)
