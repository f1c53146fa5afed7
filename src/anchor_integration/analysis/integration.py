"""
Anchor-based integration of multiple single-cell datasets.

An AnchorIntegrator walks one run through its stages:

    LOADED -> FEATURES_SELECTED -> PROJECTED -> ANCHORS_FOUND
           -> ANCHORS_FILTERED -> INTEGRATED

Each stage reads the previous stage's snapshot and stores a new one. A
failure moves the run to FAILED, records the stage on the raised error, and
no output is returned. With more than two datasets every query is paired with
the reference (a star around the reference hub) and pairs run independently.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum

import anndata as ad
import numpy as np
import pandas as pd

from anchor_integration.analysis.anchors import find_pairwise_anchors
from anchor_integration.analysis.cca import run_cca
from anchor_integration.analysis.scoring import score_and_filter
from anchor_integration.analysis.transform import correct_expression, correct_query, corrections_frame
from anchor_integration.config.settings import IntegrationConfig
from anchor_integration.data.features import ResidualFeatureStore
from anchor_integration.exceptions import (
    ConfigurationError,
    DataError,
    IntegrationCancelledError,
    IntegrationError,
)
from anchor_integration.utils.parallel import parallel_map

logger = logging.getLogger(__name__)


class Stage(Enum):
    LOADED = "loaded"
    FEATURES_SELECTED = "features_selected"
    PROJECTED = "projected"
    ANCHORS_FOUND = "anchors_found"
    ANCHORS_FILTERED = "anchors_filtered"
    INTEGRATED = "integrated"
    FAILED = "failed"


# Columns the integrated obs fills in itself; input columns of the same name
# are renamed with INPUT_PREFIX
RESERVED_OBS_COLUMNS = ["dataset", "cell_index", "unanchored", "n_anchors"]
INPUT_PREFIX = "input_"

STAGE_ORDER = [
    Stage.LOADED,
    Stage.FEATURES_SELECTED,
    Stage.PROJECTED,
    Stage.ANCHORS_FOUND,
    Stage.ANCHORS_FILTERED,
    Stage.INTEGRATED,
]


class CancellationToken:
    """Thread-safe flag a caller sets to stop a run at the next stage boundary."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self):
        return self._event.is_set()


@dataclass(frozen=True)
class IntegratedMatrix:
    """
    Terminal output of an integration run.

    ``X`` holds reference cells first (unmodified) followed by each corrected
    query, over the shared features. ``obs`` identifies every cell by
    ``dataset`` and ``cell_index`` and carries the ``unanchored`` flag.
    ``corrections`` maps each query name to its cells x features correction
    table, indexed by the query's own cell ids.
    """

    X: np.ndarray
    obs: pd.DataFrame
    genes: pd.Index
    reference: str
    anchors: dict = field(default_factory=dict)
    corrections: dict = field(default_factory=dict)

    @property
    def n_cells(self):
        return self.X.shape[0]

    @property
    def n_genes(self):
        return self.X.shape[1]

    def dataset_slice(self, dataset_id):
        """Rows of one input dataset, in its original cell order."""
        mask = (self.obs["dataset"] == dataset_id).to_numpy()
        rows = np.flatnonzero(mask)
        order = np.argsort(self.obs["cell_index"].to_numpy()[rows], kind="mergesort")
        return self.X[rows[order]]

    def to_frame(self):
        return pd.DataFrame(self.X, index=self.obs.index, columns=self.genes)

    def apply_corrections(self, dataset):
        """
        Correct a dataset's full expression table.

        Genes outside the shared features keep their values. The reference
        is returned unchanged.

        Parameters
        ----------
        dataset : Dataset
            One of the integrated datasets, with any gene set that includes
            the shared features.

        Returns
        -------
        pandas.DataFrame
        """
        expression = dataset.to_frame()
        if dataset.name == self.reference:
            return expression
        if dataset.name not in self.corrections:
            raise DataError(f"Dataset '{dataset.name}' was not part of this integration")
        return correct_expression(expression, self.corrections[dataset.name])

    def to_anndata(self):
        """AnnData for downstream clustering and embedding with scanpy."""
        adata = ad.AnnData(
            X=self.X.copy(),
            obs=self.obs.copy(),
            var=pd.DataFrame(index=self.genes.copy()),
        )
        adata.uns["integration"] = {
            "method": "cca_anchors",
            "reference": self.reference,
            "n_anchors": {f"{ref}->{query}": len(a) for (ref, query), a in self.anchors.items()},
        }
        return adata


def choose_reference(datasets, reference="first"):
    """
    Pick the reference dataset name.

    ``"first"`` (or None) takes the first listed dataset, ``"largest"`` the
    one with most cells (ties go to the earlier dataset), any other value must
    be a dataset name.
    """
    names = [dataset.name for dataset in datasets]
    if reference in (None, "first"):
        return names[0]
    if reference == "largest":
        sizes = [dataset.n_cells for dataset in datasets]
        return names[int(np.argmax(sizes))]
    if reference in names:
        return reference
    raise ConfigurationError(f"Reference '{reference}' is not one of {names}")


class AnchorIntegrator:
    """
    Integrate datasets with CCA anchors.

    Parameters
    ----------
    datasets : sequence of Dataset
        Residual datasets with unique names.
    config : IntegrationConfig, optional
        Run parameters. Built from the global settings if None.
    features : sequence of str, optional
        Explicit shared feature list instead of variance ranking.
    cancel_token : CancellationToken, optional
        Checked between stages.
    """

    def __init__(self, datasets, config=None, features=None, cancel_token=None):
        self.datasets = list(datasets)
        self.config = config if config is not None else IntegrationConfig.from_settings()
        self.features = features
        self.cancel_token = cancel_token

        self.stage = Stage.LOADED
        self.failed_stage = None
        self.error = None

        # Stage snapshots
        self.store = None
        self.reference = None
        self.queries = []
        self.embeddings = {}
        self.candidate_anchors = {}
        self.anchors = {}
        self.result = None

    def _advance(self, stage):
        expected = STAGE_ORDER[STAGE_ORDER.index(self.stage) + 1]
        if stage is not expected:
            raise RuntimeError(f"Cannot move from {self.stage.value} to {stage.value}")
        self.stage = stage
        logger.debug(f"Integration run reached {stage.value}")

    def _check_cancelled(self, next_stage):
        if self.cancel_token is not None and self.cancel_token.cancelled:
            raise IntegrationCancelledError(f"Cancelled before {next_stage.value}")

    def _run_stage(self, stage, step):
        try:
            self._check_cancelled(stage)
            step()
        except IntegrationError as e:
            self._fail(stage, e)
            raise
        except Exception as e:
            error = IntegrationError(f"{type(e).__name__}: {e}")
            self._fail(stage, error)
            raise error from e
        self._advance(stage)

    def _fail(self, stage, error):
        if error.stage is None:
            error.stage = stage.value
        self.failed_stage = stage
        self.error = error
        self.stage = Stage.FAILED
        self.result = None
        logger.error(f"Integration failed at {stage.value}: {error}")

    # Stages

    def select_features(self):
        if not self.datasets:
            raise DataError("At least one dataset is required")
        self.store = ResidualFeatureStore(
            self.datasets,
            num_features=self.config.num_shared_features,
            min_features=self.config.min_shared_features,
            features=self.features,
        )
        self.reference = choose_reference(self.datasets, self.config.reference)
        self.queries = [name for name in self.store.dataset_names if name != self.reference]
        logger.info(f"Reference dataset: {self.reference}; queries: {self.queries}")

    def project(self):
        config = self.config
        reference = self.store.residuals(self.reference)

        def project_query(name):
            return run_cca(
                reference,
                self.store.residuals(name),
                n_components=config.embedding_dim,
                epsilon=config.regularization_epsilon,
                max_condition=config.max_condition,
                max_retries=config.max_regularization_retries,
                exact_svd_limit=config.exact_svd_limit,
                random_state=config.random_state,
                reference_name=self.reference,
                query_name=name,
            )

        embeddings = parallel_map(project_query, self.queries, n_jobs=config.n_jobs)
        self.embeddings = dict(zip(self.queries, embeddings))

    def find_anchors(self):
        pairs = find_pairwise_anchors(
            [self.embeddings[name] for name in self.queries],
            k=self.config.k_neighbors,
            n_jobs=self.config.n_jobs,
        )
        self.candidate_anchors = {query: pairs[(self.reference, query)] for query in self.queries}

    def filter_anchors(self):
        config = self.config
        reference = self.store.residuals(self.reference)

        def filter_query(name):
            return score_and_filter(
                self.candidate_anchors[name],
                self.embeddings[name],
                reference,
                self.store.residuals(name),
                k_score=config.k_score,
                k_filter=config.k_filter,
                threshold=config.anchor_score_threshold,
            )

        filtered = parallel_map(filter_query, self.queries, n_jobs=config.n_jobs)
        self.anchors = dict(zip(self.queries, filtered))

    def transform(self):
        config = self.config
        features = pd.Index(self.store.shared_features())
        reference = self.store.residuals(self.reference)

        blocks = [np.array(reference)]
        obs_blocks = [self._cell_obs(self.reference, np.zeros(len(reference), dtype=bool), None)]
        corrections = {}

        for name in self.queries:
            correction = correct_query(
                self.anchors[name],
                reference,
                self.store.residuals(name),
                self.embeddings[name].query_embedding,
                k_weight=config.k_weight,
                bandwidth=config.kernel_bandwidth,
                radius_multiplier=config.radius_multiplier,
                k_bandwidth=config.k_neighbors,
                query_name=name,
            )
            blocks.append(correction.corrected)
            obs_blocks.append(self._cell_obs(name, correction.unanchored, correction.n_anchors))
            corrections[name] = corrections_frame(
                correction, self.store.dataset(name).obs.index, features
            )

        X = np.vstack(blocks)
        X.setflags(write=False)
        self.result = IntegratedMatrix(
            X=X,
            obs=pd.concat(obs_blocks),
            genes=features,
            reference=self.reference,
            anchors={(self.reference, name): self.anchors[name] for name in self.queries},
            corrections=corrections,
        )
        logger.info(
            f"Integrated {self.result.n_cells} cells x {self.result.n_genes} features "
            f"({int(self.result.obs['unanchored'].sum())} unanchored)"
        )

    def _cell_obs(self, name, unanchored, n_anchors):
        dataset = self.store.dataset(name)
        obs = dataset.obs
        clashing = [column for column in RESERVED_OBS_COLUMNS if column in obs.columns]
        if clashing:
            logger.warning(
                f"Dataset '{name}': obs columns {clashing} are reserved; "
                f"kept as {[INPUT_PREFIX + column for column in clashing]}"
            )
            obs = obs.rename(columns={column: INPUT_PREFIX + column for column in clashing})

        obs.index = obs.index + f"-{name}"
        obs.insert(0, "cell_index", np.arange(dataset.n_cells))
        obs.insert(0, "dataset", name)
        if "condition" not in obs.columns:
            obs["condition"] = name
        obs["unanchored"] = unanchored
        obs["n_anchors"] = n_anchors if n_anchors is not None else 0
        return obs

    def run(self):
        """
        Execute every stage in order.

        Returns
        -------
        IntegratedMatrix

        Raises
        ------
        IntegrationError
            Subclass describing the failure, with ``stage`` set.
        """
        if self.stage is not Stage.LOADED:
            raise RuntimeError(f"Run already {self.stage.value}; create a new integrator")

        logger.info(f"Integrating {len(self.datasets)} datasets")
        self._run_stage(Stage.FEATURES_SELECTED, self.select_features)
        self._run_stage(Stage.PROJECTED, self.project)
        self._run_stage(Stage.ANCHORS_FOUND, self.find_anchors)
        self._run_stage(Stage.ANCHORS_FILTERED, self.filter_anchors)
        self._run_stage(Stage.INTEGRATED, self.transform)
        return self.result


def integrate(datasets, config=None, features=None, cancel_token=None, **overrides):
    """
    Integrate datasets into a single corrected expression matrix.

    Parameters
    ----------
    datasets : sequence of Dataset
        The first dataset is the reference unless ``config.reference`` says
        otherwise.
    config : IntegrationConfig, optional
        Built from environment settings if None.
    features : sequence of str, optional
        Explicit feature list.
    cancel_token : CancellationToken, optional
    **overrides
        Individual config fields, e.g. ``k_neighbors=10``.

    Returns
    -------
    IntegratedMatrix
    """
    if config is None:
        config = IntegrationConfig.from_settings(**overrides)
    elif overrides:
        config = config.replace(**overrides)

    integrator = AnchorIntegrator(datasets, config=config, features=features, cancel_token=cancel_token)
    return integrator.run()
