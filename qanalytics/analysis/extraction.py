"""Initial (unrotated) factor extraction.

Two named strategies, each a pure function of ``(correlation, factor_count)``:

- ``pca``: principal components: eigen-decomposition of the correlation
  matrix, eigenvectors scaled by ``sqrt(eigenvalue)``.
- ``centroid``: Brown's centroid method, the historical Q-methodology
  default.  Loadings are not eigenvectors, so the "eigenvalue" of a
  centroid factor is its sum of squared loadings.

Whichever method a session starts with stays fixed for that session.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np
from scipy import linalg

from qanalytics.analysis.models import AnalysisWarning, CorrelationMatrix, FactorSolution
from qanalytics.errors import InvalidFactorCountError, ValidationError

logger = logging.getLogger(__name__)

#: Negative eigenvalues smaller than this in magnitude are rounding noise
#: and are clamped without a warning.
EIGENVALUE_NOISE_FLOOR = 1e-12

#: Kaiser criterion: retain factors with eigenvalue above this.
KAISER_EIGENVALUE = 1.0


def extract(
    correlation: CorrelationMatrix,
    factor_count: int,
    method: str = "pca",
) -> FactorSolution:
    """Extract *factor_count* unrotated factors with the named *method*.

    Raises:
        InvalidFactorCountError: ``factor_count`` is not in ``1..participants-1``.
        ValidationError: *method* is not a known extraction method.
    """
    validate_factor_count(factor_count, correlation.size)
    strategy = EXTRACTION_METHODS.get(method)
    if strategy is None:
        raise ValidationError(
            f"Unknown extraction method {method!r};"
            f" expected one of {', '.join(sorted(EXTRACTION_METHODS))}"
        )
    solution = strategy(correlation, factor_count)
    logger.info(
        "Extracted %d factor(s) by %s from %d participants; eigenvalues %s",
        factor_count,
        method,
        correlation.size,
        np.array2string(solution.eigenvalues, precision=3),
    )
    for warning in solution.warnings:
        logger.warning("%s", warning.message)
    return solution


def validate_factor_count(factor_count: int, participant_count: int) -> None:
    """Raise unless ``1 <= factor_count < participant_count``."""
    if not 1 <= factor_count < participant_count:
        raise InvalidFactorCountError(factor_count, participant_count)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def principal_components(correlation: CorrelationMatrix, factor_count: int) -> FactorSolution:
    """Principal-component extraction by symmetric eigen-decomposition."""
    values, vectors = linalg.eigh(correlation.values)
    order = np.argsort(values)[::-1]
    values = values[order]
    vectors = vectors[:, order]

    spectrum, warnings = _clamp_negative(values)
    retained = spectrum[:factor_count]
    columns = vectors[:, :factor_count]

    # Eigenvector sign is arbitrary; orient each column to a non-negative sum
    signs = np.where(columns.sum(axis=0) < 0, -1.0, 1.0)
    loadings = columns * signs * np.sqrt(retained)

    return FactorSolution(
        method="pca",
        participant_ids=correlation.participant_ids,
        eigenvalues=retained,
        spectrum=spectrum,
        loadings=loadings,
        warnings=tuple(warnings),
    )


def centroid(correlation: CorrelationMatrix, factor_count: int) -> FactorSolution:
    """Brown's centroid extraction.

    For each factor: estimate the diagonal from the largest absolute
    off-diagonal entry of the (residual) matrix, reflect variables until no
    column has a negative off-diagonal sum, take loadings from the column
    sums, undo the reflection, and subtract the reproduced correlations.
    """
    n = correlation.size
    residual = np.array(correlation.values, dtype=np.float64)
    loadings = np.zeros((n, factor_count))

    for f in range(factor_count):
        work = residual.copy()
        off_diagonal = np.abs(work)
        np.fill_diagonal(off_diagonal, 0.0)
        np.fill_diagonal(work, off_diagonal.max(axis=1))

        signs = _reflection_signs(work)
        reflected = work * np.outer(signs, signs)
        column_sums = reflected.sum(axis=0)
        total = float(column_sums.sum())
        if total <= 0.0:
            logger.debug("Centroid residual exhausted at factor %d", f + 1)
            break
        column = column_sums / np.sqrt(total) * signs
        if column.sum() < 0:
            column = -column
        loadings[:, f] = column
        residual = residual - np.outer(column, column)

    eigenvalues = np.sum(loadings**2, axis=0)
    order = np.argsort(eigenvalues, kind="stable")[::-1]
    spectrum, warnings = _clamp_negative(np.sort(linalg.eigvalsh(correlation.values))[::-1])

    return FactorSolution(
        method="centroid",
        participant_ids=correlation.participant_ids,
        eigenvalues=eigenvalues[order],
        spectrum=spectrum,
        loadings=loadings[:, order],
        warnings=tuple(warnings),
    )


EXTRACTION_METHODS: dict[str, Callable[[CorrelationMatrix, int], FactorSolution]] = {
    "pca": principal_components,
    "centroid": centroid,
}


def _reflection_signs(matrix: np.ndarray) -> np.ndarray:
    """Sign vector making every column's off-diagonal sum non-negative.

    Flips the most negative column one at a time; each flip strictly
    raises the off-diagonal total, so the loop terminates.
    """
    n = matrix.shape[0]
    signs = np.ones(n)
    off = matrix.copy()
    np.fill_diagonal(off, 0.0)
    for _ in range(n * n):
        sums = (off * np.outer(signs, signs)).sum(axis=0)
        worst = int(np.argmin(sums))
        if sums[worst] >= 0:
            break
        signs[worst] = -signs[worst]
    return signs


def _clamp_negative(values: np.ndarray) -> tuple[np.ndarray, list[AnalysisWarning]]:
    """Clamp negative eigenvalues to zero, warning about non-trivial ones."""
    warnings: list[AnalysisWarning] = []
    negative = values[values < -EIGENVALUE_NOISE_FLOOR]
    if negative.size:
        warnings.append(
            AnalysisWarning(
                code="clamped_eigenvalue",
                message=(
                    f"{negative.size} negative eigenvalue(s) clamped to zero"
                    f" (most negative {float(negative.min()):.3g})"
                ),
                detail={"clamped": [float(v) for v in negative]},
            )
        )
    return np.clip(values, 0.0, None), warnings


# ---------------------------------------------------------------------------
# Factor-count guidance
# ---------------------------------------------------------------------------


@dataclass
class ScreePoint:
    """One row of scree data."""

    factor: int  # 1-based
    eigenvalue: float
    variance: float  # percent of total
    cumulative_variance: float


def scree(correlation: CorrelationMatrix) -> list[ScreePoint]:
    """Eigenvalue, variance % and cumulative % for every component."""
    spectrum, _ = _clamp_negative(np.sort(linalg.eigvalsh(correlation.values))[::-1])
    total = float(spectrum.sum()) or 1.0
    points: list[ScreePoint] = []
    cumulative = 0.0
    for i, value in enumerate(spectrum):
        variance = float(value) / total * 100.0
        cumulative += variance
        points.append(ScreePoint(i + 1, float(value), variance, cumulative))
    return points


@dataclass
class ParallelAnalysis:
    """Horn's parallel analysis: observed eigenvalues against random-data ones."""

    eigenvalues: list[float]  # observed, descending
    random_mean: list[float]
    random_p95: list[float]
    simulations: int
    suggested: int


def parallel_analysis(
    correlation: CorrelationMatrix,
    n_statements: int,
    simulations: int = 100,
    *,
    seed: int | None = 0,
) -> ParallelAnalysis:
    """Compare the eigenvalues of *correlation* with those of random sorts.

    Each simulation draws ``participants x n_statements`` independent normal
    scores, correlates the participants and keeps the sorted eigenvalues.
    Factors are retained while the observed eigenvalue beats the mean random
    eigenvalue at the same position.  A fixed *seed* makes the suggestion
    reproducible; ``None`` draws fresh entropy.
    """
    if simulations < 1:
        raise ValidationError(
            f"Parallel analysis needs at least one simulation (got {simulations})"
        )
    if n_statements < 3:
        raise ValidationError(
            f"Parallel analysis needs at least 3 statements (got {n_statements})"
        )

    n = correlation.size
    rng = np.random.default_rng(seed)
    simulated = np.empty((simulations, n))
    for i in range(simulations):
        scores = rng.standard_normal((n, n_statements))
        simulated[i] = np.sort(linalg.eigvalsh(np.corrcoef(scores)))[::-1]
    random_mean = simulated.mean(axis=0)
    random_p95 = np.percentile(simulated, 95, axis=0)

    observed = np.sort(linalg.eigvalsh(correlation.values))[::-1]
    above = observed > random_mean
    retained = int(np.argmin(above)) if not above.all() else n
    suggested = max(1, min(retained, n - 1))

    logger.debug(
        "Parallel analysis (%d simulation(s)): %d factor(s) above random", simulations, retained
    )
    return ParallelAnalysis(
        eigenvalues=[float(v) for v in observed],
        random_mean=[float(v) for v in random_mean],
        random_p95=[float(v) for v in random_p95],
        simulations=simulations,
        suggested=suggested,
    )


#: Rules for choosing a default factor count.
FACTOR_COUNT_RULES = ("kaiser", "parallel")


def suggest_factor_count(
    correlation: CorrelationMatrix,
    rule: str = "kaiser",
    *,
    n_statements: int | None = None,
    simulations: int = 100,
) -> int:
    """Default factor count, bounded to ``1 <= k < participants``.

    ``kaiser`` keeps factors with eigenvalue above 1; ``parallel`` runs
    :func:`parallel_analysis` and needs *n_statements*.
    """
    if rule == "parallel":
        if n_statements is None:
            raise ValidationError("Parallel analysis needs the statement count")
        return parallel_analysis(correlation, n_statements, simulations).suggested
    if rule != "kaiser":
        raise ValidationError(
            f"Unknown factor-count rule {rule!r};"
            f" expected one of {', '.join(FACTOR_COUNT_RULES)}"
        )
    spectrum = linalg.eigvalsh(correlation.values)
    count = int(np.sum(spectrum > KAISER_EIGENVALUE))
    return max(1, min(count, correlation.size - 1))
