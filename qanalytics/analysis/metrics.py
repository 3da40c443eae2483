"""Low-level statistical functions for Q-sort analysis.

These are pure arithmetic with no session state or I/O.  Higher-level code
(extraction, rotation, loading analysis) calls these.
"""

from __future__ import annotations

import math

import numpy as np
from scipy.stats import norm

#: Average reliability of a single Q-sort, the conventional value used
#: when estimating factor reliability from the number of defining sorts.
SORT_RELIABILITY = 0.80

#: Loadings are capped below 1 before weighting (f / (1 - f**2) diverges).
_MAX_ABS_LOADING = 0.9999


def standardize(values: np.ndarray, axis: int = -1) -> np.ndarray:
    """Z-score *values* along *axis* using the population standard deviation.

    A constant slice standardizes to zeros rather than NaN.
    """
    values = np.asarray(values, dtype=np.float64)
    mean = values.mean(axis=axis, keepdims=True)
    sd = values.std(axis=axis, keepdims=True)
    safe_sd = np.where(sd == 0, 1.0, sd)
    return np.where(sd == 0, 0.0, (values - mean) / safe_sd)


def factor_weight(loading: float) -> float:
    """Weight a defining sort contributes to its factor's scores.

    ``w = f / (1 - f**2)``: higher loaders count disproportionately more.
    The sign of the loading is kept, so a negative loader contributes its
    sort reversed.
    """
    f = max(-_MAX_ABS_LOADING, min(_MAX_ABS_LOADING, loading))
    return f / (1.0 - f * f)


def factor_reliability(n_defining: int) -> float:
    """Reliability of a factor defined by *n_defining* sorts.

    ``r = 0.8n / (1 + 0.8(n - 1))``; 0 for an empty factor.
    """
    if n_defining <= 0:
        return 0.0
    r = SORT_RELIABILITY
    return (r * n_defining) / (1.0 + r * (n_defining - 1))


def factor_standard_error(n_defining: int) -> float:
    """Standard error of a factor's z-scores: ``sqrt(1 - reliability)``."""
    return math.sqrt(1.0 - factor_reliability(n_defining))


def difference_standard_error(n_a: int, n_b: int) -> float:
    """Standard error of the difference between two factors' z-scores."""
    return math.sqrt(factor_standard_error(n_a) ** 2 + factor_standard_error(n_b) ** 2)


def critical_z(alpha: float) -> float:
    """Two-tailed critical value of the standard normal for *alpha*."""
    if not 0.0 < alpha < 1.0:
        raise ValueError(f"alpha must be in (0, 1), got {alpha}")
    return float(norm.ppf(1.0 - alpha / 2.0))


def significant_loading(n_statements: int, alpha: float = 0.05) -> float:
    """Critical absolute loading at *alpha*; loadings above it are significant.

    The standard error of a zero loading is ``1 / sqrt(statements)``; with
    alpha = .05 this is the familiar ``1.96 / sqrt(N)``.
    """
    if n_statements <= 0:
        raise ValueError("n_statements must be positive")
    return critical_z(alpha) / math.sqrt(n_statements)


def total_variance(loadings: np.ndarray) -> float:
    """Sum of squared loadings over every participant and factor."""
    return float(np.sum(np.asarray(loadings) ** 2))


def orthogonality_error(matrix: np.ndarray) -> float:
    """Largest absolute entry of ``R Rt - I``."""
    matrix = np.asarray(matrix)
    return float(np.max(np.abs(matrix @ matrix.T - np.eye(matrix.shape[0]))))
