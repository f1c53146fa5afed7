"""CCA projection, anchor detection, scoring and correction."""

from anchor_integration.analysis.anchors import find_anchors, find_pairwise_anchors, mutual_nearest_neighbors
from anchor_integration.analysis.cca import CCAEmbedding, run_cca
from anchor_integration.analysis.integration import (
    AnchorIntegrator,
    CancellationToken,
    IntegratedMatrix,
    Stage,
    integrate,
)
from anchor_integration.analysis.scoring import score_and_filter, score_anchors
from anchor_integration.analysis.transform import CorrectionResult, correct_expression, correct_query

__all__ = [
    "AnchorIntegrator",
    "CCAEmbedding",
    "CancellationToken",
    "CorrectionResult",
    "IntegratedMatrix",
    "Stage",
    "correct_expression",
    "correct_query",
    "find_anchors",
    "find_pairwise_anchors",
    "integrate",
    "mutual_nearest_neighbors",
    "run_cca",
    "score_and_filter",
    "score_anchors",
]
