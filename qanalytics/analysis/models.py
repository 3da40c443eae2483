"""Data structures for the analysis engine.

These are plain dataclasses (not Pydantic); they're computed from ingest
data, held in memory by a session, and serialised by the server layer.
Matrices are numpy arrays; arrays held by the immutable structures are
marked read-only on construction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np

from qanalytics.models import RankDistribution


def _freeze(array: np.ndarray) -> np.ndarray:
    """Return a read-only copy of *array*."""
    frozen = np.array(array, copy=True)
    frozen.setflags(write=False)
    return frozen


# ---------------------------------------------------------------------------
# Warnings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnalysisWarning:
    """A non-fatal numerical caveat attached to a result."""

    code: str  # "clamped_eigenvalue", "rotation_not_converged", ...
    message: str
    detail: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Inputs and cached derivations
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class SortMatrix:
    """Participant x statement rank matrix. Immutable once built."""

    participant_ids: tuple[str, ...]
    statement_ids: tuple[str, ...]
    distribution: RankDistribution
    ranks: np.ndarray  # int, shape (participants, statements)

    def __post_init__(self) -> None:
        object.__setattr__(self, "ranks", _freeze(np.asarray(self.ranks, dtype=np.int64)))

    @property
    def n_participants(self) -> int:
        return len(self.participant_ids)

    @property
    def n_statements(self) -> int:
        return len(self.statement_ids)


@dataclass(frozen=True, eq=False)
class CorrelationMatrix:
    """Symmetric participant x participant Pearson correlations."""

    participant_ids: tuple[str, ...]
    values: np.ndarray  # float64, shape (participants, participants)

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", _freeze(np.asarray(self.values, dtype=np.float64)))

    @property
    def size(self) -> int:
        return len(self.participant_ids)

    @property
    def trace(self) -> float:
        return float(np.trace(self.values))


@dataclass(frozen=True, eq=False)
class FactorSolution:
    """Unrotated factors extracted from a correlation matrix."""

    method: str  # "pca" or "centroid"
    participant_ids: tuple[str, ...]
    eigenvalues: np.ndarray  # retained factors, descending
    spectrum: np.ndarray  # every eigenvalue of the correlation matrix, descending
    loadings: np.ndarray  # shape (participants, factors)
    warnings: tuple[AnalysisWarning, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "eigenvalues", _freeze(self.eigenvalues))
        object.__setattr__(self, "spectrum", _freeze(self.spectrum))
        object.__setattr__(self, "loadings", _freeze(self.loadings))

    @property
    def factor_count(self) -> int:
        return int(self.loadings.shape[1])

    @property
    def communalities(self) -> np.ndarray:
        """Sum of squared loadings per participant."""
        return np.sum(self.loadings**2, axis=1)

    @property
    def variance_explained(self) -> np.ndarray:
        """Percentage of total variance (= participant count) per factor."""
        return self.eigenvalues / len(self.participant_ids) * 100.0


# ---------------------------------------------------------------------------
# Rotation state
# ---------------------------------------------------------------------------


class RotationStatus(str, Enum):
    """Lifecycle of a session's rotation state."""

    UNROTATED = "unrotated"
    ROTATING = "rotating"  # uncommitted manual rotation in progress
    ROTATED = "rotated"
    FINALIZED = "finalized"


@dataclass(frozen=True, eq=False)
class RotationStep:
    """One committed rotation: ``loadings_after = loadings_before @ matrix``."""

    kind: str  # "manual" or "varimax"
    matrix: np.ndarray  # orthogonal, shape (factors, factors)
    factor_a: int | None = None
    factor_b: int | None = None
    angle: float | None = None  # degrees, manual single-pair steps only
    iterations: int | None = None  # varimax only
    converged: bool | None = None  # varimax only

    def __post_init__(self) -> None:
        object.__setattr__(self, "matrix", _freeze(self.matrix))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "matrix": self.matrix.tolist(),
            "factor_a": self.factor_a,
            "factor_b": self.factor_b,
            "angle": self.angle,
            "iterations": self.iterations,
            "converged": self.converged,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RotationStep:
        return cls(
            kind=data["kind"],
            matrix=np.asarray(data["matrix"], dtype=np.float64),
            factor_a=data.get("factor_a"),
            factor_b=data.get("factor_b"),
            angle=data.get("angle"),
            iterations=data.get("iterations"),
            converged=data.get("converged"),
        )


@dataclass
class VarimaxResult:
    """Outcome of one automatic rotation run."""

    matrix: np.ndarray  # incremental rotation applied to the input loadings
    loadings: np.ndarray
    iterations: int
    converged: bool
    criterion: float
    stopped_by: str = "tolerance"  # "tolerance", "max_iterations", "timeout", "cancelled"


# ---------------------------------------------------------------------------
# Derived views
# ---------------------------------------------------------------------------


class AssignmentStatus(str, Enum):
    ASSIGNED = "assigned"
    AMBIGUOUS = "ambiguous"  # threshold met but margin over runner-up not met
    UNASSIGNED = "unassigned"  # no factor meets the threshold


@dataclass(frozen=True)
class FactorAssignment:
    """Where one participant's sort lands after rotation."""

    participant_id: str
    status: AssignmentStatus
    factor: int | None  # 0-based; None unless ASSIGNED
    top_factor: int  # factor with the largest absolute loading
    loading: float  # signed loading on top_factor
    runner_up_loading: float  # absolute loading on the second-best factor

    @property
    def is_ambiguous(self) -> bool:
        return self.status is AssignmentStatus.AMBIGUOUS


@dataclass(frozen=True, eq=False)
class FactorScores:
    """Statement z-scores for one rotated factor."""

    factor: int
    defining_participants: tuple[str, ...]
    weights: tuple[float, ...]
    z_scores: np.ndarray | None  # None when no participant defines the factor
    significant: np.ndarray | None  # bool per statement: distinguishing for this factor
    factor_array: np.ndarray | None  # z-scores mapped onto the forced distribution
    reliability: float
    standard_error: float

    @property
    def is_empty(self) -> bool:
        return self.z_scores is None


@dataclass(frozen=True)
class FactorCharacteristics:
    """Summary row for one rotated factor."""

    factor: int
    defining_count: int
    eigenvalue: float  # sum of squared rotated loadings
    variance_explained: float  # percent
    reliability: float
    standard_error: float


@dataclass(frozen=True)
class DistinguishingStatement:
    """A statement on which one factor differs from every other factor."""

    statement_id: str
    factor: int
    z_score: float
    other_z_scores: dict[int, float]
    min_difference: float
    significance: str  # "*" (p < alpha) or "**" (p < .01)


@dataclass(frozen=True)
class ConsensusStatement:
    """A statement on which no pair of factors differs significantly."""

    statement_id: str
    z_scores: dict[int, float]
    mean_z_score: float
    z_score_range: float


@dataclass(frozen=True, eq=False)
class LoadingAnalysis:
    """Everything derived from one set of rotated loadings."""

    assignments: tuple[FactorAssignment, ...]
    factor_scores: tuple[FactorScores, ...]
    distinguishing: tuple[DistinguishingStatement, ...]
    consensus: tuple[ConsensusStatement, ...]
    threshold: float
    margin: float
    warnings: tuple[AnalysisWarning, ...] = ()

    @property
    def ambiguous(self) -> tuple[str, ...]:
        return tuple(a.participant_id for a in self.assignments if a.is_ambiguous)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnalysisSnapshot:
    """Immutable view of a session for export, rendering, or streaming.

    Plain tuples of floats throughout, so consumers need neither numpy nor
    any recomputation.
    """

    study_id: str
    revision: int
    status: RotationStatus
    extraction_method: str
    participant_ids: tuple[str, ...]
    statement_ids: tuple[str, ...]
    eigenvalues: tuple[float, ...]
    variance_explained: tuple[float, ...]
    rotated_variance_explained: tuple[float, ...]
    characteristics: tuple[FactorCharacteristics, ...]
    rotation_matrix: tuple[tuple[float, ...], ...]
    loadings: tuple[tuple[float, ...], ...]
    assignments: tuple[FactorAssignment, ...]
    factor_scores: tuple[FactorScores, ...]
    distinguishing: tuple[DistinguishingStatement, ...]
    consensus: tuple[ConsensusStatement, ...]
    history_length: int
    history_cursor: int
    has_pending_rotation: bool
    warnings: tuple[AnalysisWarning, ...]


@dataclass(frozen=True)
class RotationDelta:
    """Compact live update: rotation matrix plus recomputed loadings."""

    study_id: str
    revision: int
    rotation_matrix: tuple[tuple[float, ...], ...]
    loadings: tuple[tuple[float, ...], ...]


@dataclass(frozen=True)
class CommandResult:
    """What every session command returns."""

    revision: int
    snapshot: AnalysisSnapshot
    warnings: tuple[AnalysisWarning, ...] = ()
