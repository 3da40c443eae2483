"""Q-sort analysis engine: correlation, extraction, rotation and loading analysis."""

from qanalytics.analysis.correlation import correlate
from qanalytics.analysis.extraction import extract, scree, suggest_factor_count
from qanalytics.analysis.loadings import analyze_loadings, classify, compute_z_scores
from qanalytics.analysis.models import AnalysisSnapshot, FactorSolution, RotationStatus, SortMatrix
from qanalytics.analysis.rotation import RotationController, varimax
from qanalytics.analysis.sort_matrix import (
    build_sort_matrix,
    build_sort_matrix_from_rows,
    standard_distribution,
)

__all__ = [
    "AnalysisSnapshot",
    "FactorSolution",
    "RotationController",
    "RotationStatus",
    "SortMatrix",
    "analyze_loadings",
    "build_sort_matrix",
    "build_sort_matrix_from_rows",
    "classify",
    "compute_z_scores",
    "correlate",
    "extract",
    "scree",
    "standard_distribution",
    "suggest_factor_count",
    "varimax",
]
