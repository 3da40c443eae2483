"""Participant classification and statement statistics from rotated loadings.

Everything here is a pure function of the sort matrix and one loading
matrix; the session recomputes the whole :class:`LoadingAnalysis` after
every rotation change rather than patching it.

Pipeline::

    classify          -> who defines which factor (assigned / ambiguous / unassigned)
    compute_z_scores  -> weighted, standardized statement scores per factor
    derive_distinguishing / derive_consensus -> pairwise significance tests
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace

import numpy as np

from qanalytics.analysis.metrics import (
    critical_z,
    difference_standard_error,
    factor_reliability,
    factor_standard_error,
    factor_weight,
    significant_loading,
    standardize,
)
from qanalytics.analysis.models import (
    AnalysisWarning,
    AssignmentStatus,
    ConsensusStatement,
    DistinguishingStatement,
    FactorAssignment,
    FactorCharacteristics,
    FactorScores,
    LoadingAnalysis,
    SortMatrix,
)
from qanalytics.models import RankDistribution

logger = logging.getLogger(__name__)

DEFAULT_MARGIN = 0.05

# Second significance tier reported as "**"
_STRONG_ALPHA = 0.01

# Loading gaps within this of the margin count as meeting it
_MARGIN_TOLERANCE = 1e-9


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify(
    participant_ids: Sequence[str],
    loadings: np.ndarray,
    threshold: float,
    margin: float = DEFAULT_MARGIN,
) -> tuple[list[FactorAssignment], list[str]]:
    """Assign each participant to at most one factor.

    The candidate is the factor with the largest absolute loading.  It is
    assigned when that loading is strictly above *threshold* and beats the
    runner-up by at least *margin* (compared with a 1e-9 tolerance, so a gap
    of exactly *margin* qualifies whatever the float rounding).  Above the
    threshold without the margin the participant is ambiguous; at or below
    it, unassigned.  Ambiguous participants are never force-assigned.

    Returns:
        ``(assignments, ambiguous_participant_ids)``
    """
    loadings = np.asarray(loadings, dtype=np.float64)
    assignments: list[FactorAssignment] = []
    ambiguous: list[str] = []

    for pid, row in zip(participant_ids, loadings):
        magnitudes = np.abs(row)
        order = np.argsort(-magnitudes, kind="stable")
        top = int(order[0])
        top_abs = float(magnitudes[top])
        runner_up = float(magnitudes[order[1]]) if row.size > 1 else 0.0

        if top_abs <= threshold:
            status = AssignmentStatus.UNASSIGNED
        elif top_abs - runner_up < margin - _MARGIN_TOLERANCE:
            status = AssignmentStatus.AMBIGUOUS
            ambiguous.append(pid)
        else:
            status = AssignmentStatus.ASSIGNED

        assignments.append(
            FactorAssignment(
                participant_id=pid,
                status=status,
                factor=top if status is AssignmentStatus.ASSIGNED else None,
                top_factor=top,
                loading=float(row[top]),
                runner_up_loading=runner_up,
            )
        )
    return assignments, ambiguous


# ---------------------------------------------------------------------------
# Z-scores
# ---------------------------------------------------------------------------


def compute_z_scores(
    matrix: SortMatrix,
    loadings: np.ndarray,
    assignments: Sequence[FactorAssignment],
) -> tuple[list[FactorScores], list[AnalysisWarning]]:
    """Weighted-average statement z-scores for every factor.

    Each defining participant's ranks are standardized across statements,
    weighted by ``f / (1 - f**2)`` of their loading, summed, and the sum
    re-standardized.  Factors nobody defines get no scores and an
    ``empty_factor`` warning.  Significance flags are filled in later by
    :func:`analyze_loadings`.
    """
    loadings = np.asarray(loadings, dtype=np.float64)
    k = loadings.shape[1]
    standardized = standardize(matrix.ranks.astype(np.float64), axis=1)
    index = {pid: i for i, pid in enumerate(matrix.participant_ids)}

    scores: list[FactorScores] = []
    warnings: list[AnalysisWarning] = []
    for f in range(k):
        defining = [a.participant_id for a in assignments if a.factor == f]
        n = len(defining)
        if not defining:
            warnings.append(
                AnalysisWarning(
                    code="empty_factor",
                    message=f"Factor {f + 1} has no defining participants",
                    detail={"factor": f},
                )
            )
            scores.append(
                FactorScores(
                    factor=f,
                    defining_participants=(),
                    weights=(),
                    z_scores=None,
                    significant=None,
                    factor_array=None,
                    reliability=0.0,
                    standard_error=1.0,
                )
            )
            continue

        weights = [factor_weight(float(loadings[index[pid], f])) for pid in defining]
        rows = standardized[[index[pid] for pid in defining]]
        combined = np.asarray(weights) @ rows
        z = standardize(combined)
        scores.append(
            FactorScores(
                factor=f,
                defining_participants=tuple(defining),
                weights=tuple(weights),
                z_scores=z,
                significant=None,
                factor_array=factor_array(z, matrix.distribution),
                reliability=factor_reliability(n),
                standard_error=factor_standard_error(n),
            )
        )
    return scores, warnings


def factor_array(z_scores: np.ndarray, distribution: RankDistribution) -> np.ndarray:
    """Map z-scores back onto the forced distribution (the idealized Q-sort).

    The highest z-scores fill the highest rank cells; ties keep statement
    order.
    """
    cells = np.asarray(distribution.expanded(), dtype=np.int64)  # ascending
    order = np.argsort(-np.asarray(z_scores), kind="stable")
    array = np.empty(len(cells), dtype=np.int64)
    array[order] = cells[::-1]
    return array


# ---------------------------------------------------------------------------
# Pairwise significance
# ---------------------------------------------------------------------------


def _populated(scores: Sequence[FactorScores]) -> list[FactorScores]:
    return [s for s in scores if not s.is_empty]


def _insufficient_warning(populated: int) -> AnalysisWarning:
    return AnalysisWarning(
        code="insufficient_factors",
        message=(
            "Distinguishing and consensus statements need at least two"
            f" factors with defining participants (have {populated})"
        ),
        detail={"populated_factors": populated},
    )


def _threshold(a: FactorScores, b: FactorScores, alpha: float) -> float:
    return critical_z(alpha) * difference_standard_error(
        len(a.defining_participants), len(b.defining_participants)
    )


def derive_distinguishing(
    scores: Sequence[FactorScores],
    statement_ids: Sequence[str],
    alpha: float = 0.05,
) -> tuple[list[DistinguishingStatement], list[AnalysisWarning]]:
    """Statements on which one factor differs significantly from every other."""
    populated = _populated(scores)
    if len(populated) < 2:
        return [], [_insufficient_warning(len(populated))]

    strong_alpha = min(alpha, _STRONG_ALPHA)
    result: list[DistinguishingStatement] = []
    for fs in populated:
        others = [o for o in populated if o.factor != fs.factor]
        cutoffs = [_threshold(fs, o, alpha) for o in others]
        strong_cutoffs = [_threshold(fs, o, strong_alpha) for o in others]
        for s, sid in enumerate(statement_ids):
            z = float(fs.z_scores[s])
            diffs = [abs(z - float(o.z_scores[s])) for o in others]
            if not all(d > c for d, c in zip(diffs, cutoffs)):
                continue
            strong = all(d > c for d, c in zip(diffs, strong_cutoffs))
            result.append(
                DistinguishingStatement(
                    statement_id=sid,
                    factor=fs.factor,
                    z_score=z,
                    other_z_scores={o.factor: float(o.z_scores[s]) for o in others},
                    min_difference=min(diffs),
                    significance="**" if strong else "*",
                )
            )
    return result, []


def derive_consensus(
    scores: Sequence[FactorScores],
    statement_ids: Sequence[str],
    alpha: float = 0.05,
) -> tuple[list[ConsensusStatement], list[AnalysisWarning]]:
    """Statements on which no pair of factors differs significantly."""
    populated = _populated(scores)
    if len(populated) < 2:
        return [], [_insufficient_warning(len(populated))]

    pairs = [
        (a, b, _threshold(a, b, alpha))
        for i, a in enumerate(populated)
        for b in populated[i + 1 :]
    ]
    result: list[ConsensusStatement] = []
    for s, sid in enumerate(statement_ids):
        if any(abs(float(a.z_scores[s]) - float(b.z_scores[s])) > c for a, b, c in pairs):
            continue
        z = {fs.factor: float(fs.z_scores[s]) for fs in populated}
        values = list(z.values())
        result.append(
            ConsensusStatement(
                statement_id=sid,
                z_scores=z,
                mean_z_score=float(np.mean(values)),
                z_score_range=max(values) - min(values),
            )
        )
    return result, []


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------


def analyze_loadings(
    matrix: SortMatrix,
    loadings: np.ndarray,
    *,
    threshold: float | None = None,
    margin: float = DEFAULT_MARGIN,
    alpha: float = 0.05,
) -> LoadingAnalysis:
    """Classify, score and compare statements for one set of rotated loadings.

    *threshold* defaults to the significant-loading criterion at *alpha*
    (``1.96 / sqrt(statements)`` for alpha = .05).
    """
    if threshold is None:
        threshold = significant_loading(matrix.n_statements, alpha)

    assignments, ambiguous = classify(matrix.participant_ids, loadings, threshold, margin)
    warnings: list[AnalysisWarning] = []
    if ambiguous:
        warnings.append(
            AnalysisWarning(
                code="ambiguous_assignment",
                message=(
                    f"{len(ambiguous)} participant(s) load comparably on more than"
                    " one factor and were left unassigned"
                ),
                detail={"participants": list(ambiguous)},
            )
        )

    scores, score_warnings = compute_z_scores(matrix, loadings, assignments)
    warnings.extend(score_warnings)

    distinguishing, dist_warnings = derive_distinguishing(scores, matrix.statement_ids, alpha)
    consensus, _ = derive_consensus(scores, matrix.statement_ids, alpha)
    warnings.extend(dist_warnings)

    flagged: dict[int, set[str]] = {}
    for d in distinguishing:
        flagged.setdefault(d.factor, set()).add(d.statement_id)
    scores = [
        fs
        if fs.is_empty
        else replace(
            fs,
            significant=np.array(
                [sid in flagged.get(fs.factor, ()) for sid in matrix.statement_ids]
            ),
        )
        for fs in scores
    ]

    logger.debug(
        "Loading analysis: %d assigned, %d ambiguous, %d distinguishing, %d consensus",
        sum(a.status is AssignmentStatus.ASSIGNED for a in assignments),
        len(ambiguous),
        len(distinguishing),
        len(consensus),
    )
    return LoadingAnalysis(
        assignments=tuple(assignments),
        factor_scores=tuple(scores),
        distinguishing=tuple(distinguishing),
        consensus=tuple(consensus),
        threshold=threshold,
        margin=margin,
        warnings=tuple(warnings),
    )


def factor_characteristics(
    loadings: np.ndarray,
    scores: Sequence[FactorScores],
) -> list[FactorCharacteristics]:
    """Defining count, rotated eigenvalue and reliability per factor."""
    loadings = np.asarray(loadings, dtype=np.float64)
    n = loadings.shape[0]
    eigenvalues = np.sum(loadings**2, axis=0)
    return [
        FactorCharacteristics(
            factor=fs.factor,
            defining_count=len(fs.defining_participants),
            eigenvalue=float(eigenvalues[fs.factor]),
            variance_explained=float(eigenvalues[fs.factor] / n * 100.0),
            reliability=fs.reliability,
            standard_error=fs.standard_error,
        )
        for fs in scores
    ]
