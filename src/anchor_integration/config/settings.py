"""
Centralized configuration settings for anchor-based dataset integration.
"""

from dataclasses import dataclass, fields, replace as _replace
from pathlib import Path
from typing import Optional, Union
import os

from anchor_integration.exceptions import ConfigurationError


def _optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or value.strip().lower() in ("", "auto", "none"):
        return None
    return float(value)


def _env(name, default, cast):
    """Read and convert an environment variable, rejecting malformed values."""
    value = os.getenv(name, default)
    try:
        return cast(value)
    except ValueError:
        raise ConfigurationError(f"Invalid value for {name}: {value!r}") from None


class Settings:
    """Global settings for the integration pipeline."""

    def __init__(self, base_dir: Optional[Path] = None):
        """
        Initialize settings.

        Parameters
        ----------
        base_dir : Path, optional
            Base directory for the project. Defaults to project root.
        """
        if base_dir is None:
            # Auto-detect project root (where pyproject.toml or setup.py exists)
            current = Path(__file__).resolve()
            for parent in current.parents:
                if (parent / "pyproject.toml").exists() or (parent / "setup.py").exists():
                    base_dir = parent
                    break
            else:
                base_dir = Path.cwd()

        self.BASE_DIR = Path(base_dir)

        # Data directories
        self.DATA_DIR = self.BASE_DIR / "data"
        self.RAW_DATA_DIR = self.DATA_DIR / "raw"
        self.PROCESSED_DATA_DIR = self.DATA_DIR / "processed"

        # Results directories
        self.RESULTS_DIR = self.BASE_DIR / "results"
        self.TABLES_DIR = self.RESULTS_DIR / "tables"

        # Feature selection
        self.NUM_SHARED_FEATURES = _env("NUM_SHARED_FEATURES", "3000", int)
        self.MIN_SHARED_FEATURES = _env("MIN_SHARED_FEATURES", "50", int)

        # CCA parameters
        self.EMBEDDING_DIM = _env("EMBEDDING_DIM", "30", int)
        self.REGULARIZATION_EPSILON = _env("REGULARIZATION_EPSILON", "1e-4", float)
        self.MAX_REGULARIZATION_RETRIES = _env("MAX_REGULARIZATION_RETRIES", "3", int)

        # Anchor parameters
        self.K_NEIGHBORS = _env("K_NEIGHBORS", "5", int)
        self.K_SCORE = _env("K_SCORE", "30", int)
        self.K_FILTER = _env("K_FILTER", "200", int)
        self.ANCHOR_SCORE_THRESHOLD = _env("ANCHOR_SCORE_THRESHOLD", "0.0", float)

        # Correction parameters
        self.K_WEIGHT = _env("K_WEIGHT", "100", int)
        self.KERNEL_BANDWIDTH = _env("KERNEL_BANDWIDTH", None, _optional_float)
        self.RADIUS_MULTIPLIER = _env("RADIUS_MULTIPLIER", "3.0", float)
        self.INTEGRATION_REFERENCE = os.getenv("INTEGRATION_REFERENCE", "first")

        # Execution
        self.N_JOBS = _env("N_JOBS", "1", int)
        self.RANDOM_STATE = _env("RANDOM_STATE", "0", int)

        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    def create_directories(self):
        """Create necessary directories if they don't exist."""
        directories = [
            self.DATA_DIR,
            self.RAW_DATA_DIR,
            self.PROCESSED_DATA_DIR,
            self.RESULTS_DIR,
            self.TABLES_DIR,
        ]

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)

    def get_processed_data_path(self, dataset_name: str, suffix: str = "processed") -> Path:
        """Get path to processed data file."""
        return self.PROCESSED_DATA_DIR / f"{dataset_name}_{suffix}.h5ad"

    def get_integrated_data_path(self, name: str = "integrated") -> Path:
        """Get path to integrated data file."""
        return self.PROCESSED_DATA_DIR / f"{name}_anchors.h5ad"


@dataclass(frozen=True)
class IntegrationConfig:
    """Immutable snapshot of the parameters for one integration run."""

    num_shared_features: int = 3000
    min_shared_features: int = 50
    embedding_dim: int = 30
    k_neighbors: int = 5
    k_score: int = 30
    k_filter: Optional[int] = 200
    k_weight: int = 100
    anchor_score_threshold: float = 0.0
    regularization_epsilon: float = 1e-4
    max_regularization_retries: int = 3
    max_condition: float = 1e6
    kernel_bandwidth: Optional[float] = None
    radius_multiplier: float = 3.0
    reference: Union[str, None] = "first"
    exact_svd_limit: int = 5000
    n_jobs: int = 1
    random_state: int = 0

    def __post_init__(self):
        positive = [
            "num_shared_features",
            "min_shared_features",
            "embedding_dim",
            "k_neighbors",
            "k_score",
            "k_weight",
            "exact_svd_limit",
            "n_jobs",
        ]
        for name in positive:
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

        if self.k_filter is not None and (not isinstance(self.k_filter, int) or self.k_filter < 1):
            raise ConfigurationError(f"k_filter must be a positive integer or None, got {self.k_filter!r}")
        if self.min_shared_features > self.num_shared_features:
            raise ConfigurationError(
                f"min_shared_features ({self.min_shared_features}) exceeds "
                f"num_shared_features ({self.num_shared_features})"
            )
        if not 0.0 <= self.anchor_score_threshold < 1.0:
            raise ConfigurationError(
                f"anchor_score_threshold must be in [0, 1), got {self.anchor_score_threshold!r}"
            )
        if self.regularization_epsilon <= 0:
            raise ConfigurationError("regularization_epsilon must be positive")
        if self.max_regularization_retries < 0:
            raise ConfigurationError("max_regularization_retries must be >= 0")
        if self.max_condition <= 1:
            raise ConfigurationError("max_condition must be greater than 1")
        if self.kernel_bandwidth is not None and self.kernel_bandwidth <= 0:
            raise ConfigurationError("kernel_bandwidth must be positive when set")
        if self.radius_multiplier <= 0:
            raise ConfigurationError("radius_multiplier must be positive")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides) -> "IntegrationConfig":
        """
        Build a config from environment-backed settings.

        Parameters
        ----------
        settings : Settings, optional
            Settings to read. Uses the global settings if None.
        **overrides
            Field values that take precedence over settings.

        Returns
        -------
        IntegrationConfig
        """
        if settings is None:
            settings = get_settings()

        values = {
            "num_shared_features": settings.NUM_SHARED_FEATURES,
            "min_shared_features": settings.MIN_SHARED_FEATURES,
            "embedding_dim": settings.EMBEDDING_DIM,
            "k_neighbors": settings.K_NEIGHBORS,
            "k_score": settings.K_SCORE,
            # 0 in the environment disables the expression-space filter
            "k_filter": settings.K_FILTER or None,
            "k_weight": settings.K_WEIGHT,
            "anchor_score_threshold": settings.ANCHOR_SCORE_THRESHOLD,
            "regularization_epsilon": settings.REGULARIZATION_EPSILON,
            "max_regularization_retries": settings.MAX_REGULARIZATION_RETRIES,
            "kernel_bandwidth": settings.KERNEL_BANDWIDTH,
            "radius_multiplier": settings.RADIUS_MULTIPLIER,
            "reference": settings.INTEGRATION_REFERENCE,
            "n_jobs": settings.N_JOBS,
            "random_state": settings.RANDOM_STATE,
        }
        values.update(overrides)
        return cls(**values)

    def replace(self, **changes) -> "IntegrationConfig":
        """Return a copy with the given fields changed."""
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ConfigurationError(f"Unknown integration options: {sorted(unknown)}")
        return _replace(self, **changes)

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# Global settings instance
_settings: Optional[Settings] = None


def get_settings(base_dir: Optional[Path] = None) -> Settings:
    """
    Get global settings instance (singleton pattern).

    Parameters
    ----------
    base_dir : Path, optional
        Base directory for the project. Only used on first call.

    Returns
    -------
    Settings
        Global settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings(base_dir)
    return _settings


def reset_settings():
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
