"""Orthogonal factor rotation: pairwise varimax/quartimax and interactive manual rotation.

The controller owns the only mutable analysis state in a session: the
current rotation matrix ``R`` (factors x factors, orthogonal) and the rotated
loadings ``L = L0 @ R``, where ``L0`` is the unrotated solution.  History is
a list of committed :class:`RotationStep` values plus a cursor, so undo and
redo are cursor moves followed by a replay from ``L0``.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable, Sequence

import numpy as np
from scipy import linalg

from qanalytics.analysis.metrics import orthogonality_error
from qanalytics.analysis.models import (
    AnalysisWarning,
    FactorSolution,
    RotationStatus,
    RotationStep,
    VarimaxResult,
)
from qanalytics.errors import ConcurrencyConflictError, EmptyHistoryError, RotationError

logger = logging.getLogger(__name__)

#: Re-orthonormalize the rotation matrix once ``|R Rt - I|`` exceeds this.
DRIFT_TOLERANCE = 1e-10

# Below this a pair rotation is skipped (atan2 of round-off).
_MIN_ANGLE = 1e-15


def planar_rotation(k: int, factor_a: int, factor_b: int, degrees: float) -> np.ndarray:
    """The k x k rotation of the (a, b) plane by *degrees*.

    Post-multiplying loadings by this matrix sends column ``a`` to
    ``a cos + b sin`` and column ``b`` to ``-a sin + b cos``.
    """
    theta = math.radians(degrees)
    c, s = math.cos(theta), math.sin(theta)
    matrix = np.eye(k)
    matrix[factor_a, factor_a] = c
    matrix[factor_b, factor_a] = s
    matrix[factor_a, factor_b] = -s
    matrix[factor_b, factor_b] = c
    return matrix


def _rotate_columns(array: np.ndarray, a: int, b: int, c: float, s: float) -> None:
    """Rotate columns *a* and *b* of *array* in place."""
    col_a = array[:, a].copy()
    col_b = array[:, b]
    array[:, a] = col_a * c + col_b * s
    array[:, b] = -col_a * s + col_b * c


def orthonormalize(matrix: np.ndarray) -> np.ndarray:
    """Nearest orthogonal matrix (the unitary factor of the polar decomposition)."""
    unitary, _ = linalg.polar(matrix)
    return unitary


# ---------------------------------------------------------------------------
# Pairwise orthogonal criteria (varimax, quartimax)
# ---------------------------------------------------------------------------


def varimax_criterion(loadings: np.ndarray) -> float:
    """Kaiser's raw varimax criterion: summed column variance of squared loadings."""
    squared = np.asarray(loadings) ** 2
    p = squared.shape[0]
    return float(np.sum(p * np.sum(squared**2, axis=0) - np.sum(squared, axis=0) ** 2) / p**2)


def quartimax_criterion(loadings: np.ndarray) -> float:
    """Sum of fourth powers of the loadings (row-wise simplicity)."""
    return float(np.sum(np.asarray(loadings) ** 4))


def _pair_terms(x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    return x * x - y * y, 2.0 * x * y


def _varimax_angle(x: np.ndarray, y: np.ndarray) -> float:
    """Angle (radians) maximizing varimax for one factor pair."""
    n = x.shape[0]
    u, v = _pair_terms(x, y)
    a = u.sum()
    b = v.sum()
    c = np.sum(u * u - v * v)
    d = 2.0 * np.sum(u * v)
    return math.atan2(d - 2.0 * a * b / n, c - (a * a - b * b) / n) / 4.0


def _quartimax_angle(x: np.ndarray, y: np.ndarray) -> float:
    """Angle (radians) maximizing quartimax for one factor pair."""
    u, v = _pair_terms(x, y)
    return math.atan2(2.0 * np.sum(u * v), np.sum(u * u - v * v)) / 4.0


def _pairwise_rotation(
    loadings: np.ndarray,
    pair_angle: Callable[[np.ndarray, np.ndarray], float],
    criterion: Callable[[np.ndarray], float],
    method: str,
    *,
    tolerance: float,
    max_iterations: int,
    normalize: bool,
    budget_seconds: float | None,
    cancel: threading.Event | None,
) -> VarimaxResult:
    """Sweep every factor pair with *pair_angle* until *criterion* settles.

    One sweep rotates every factor pair once.  Iteration stops when the
    criterion changes by less than *tolerance* between sweeps; the first
    comparison is against the starting loadings, so input that is already
    rotated converges after a single sweep.

    Running out of iterations or *budget_seconds*, or *cancel* being set,
    is not an error: the result of the last fully completed sweep is
    returned with ``converged=False`` and ``stopped_by`` saying why.
    """
    loadings = np.asarray(loadings, dtype=np.float64)
    p, k = loadings.shape
    deadline = time.monotonic() + budget_seconds if budget_seconds is not None else None

    work = loadings.copy()
    if normalize:
        h = np.sqrt(np.sum(work**2, axis=1))
        h[h == 0.0] = 1.0
        work /= h[:, None]

    matrix = np.eye(k)
    previous = criterion(work)
    current = previous
    iterations = 0
    converged = False
    stopped_by = "max_iterations"

    def _interrupted() -> str | None:
        if cancel is not None and cancel.is_set():
            return "cancelled"
        if deadline is not None and time.monotonic() > deadline:
            return "timeout"
        return None

    while iterations < max_iterations and k > 1:
        sweep_work = work.copy()
        sweep_matrix = matrix.copy()
        reason = None
        for a in range(k - 1):
            for b in range(a + 1, k):
                reason = _interrupted()
                if reason:
                    break
                phi = pair_angle(sweep_work[:, a], sweep_work[:, b])
                if abs(phi) < _MIN_ANGLE:
                    continue
                c, s = math.cos(phi), math.sin(phi)
                _rotate_columns(sweep_work, a, b, c, s)
                _rotate_columns(sweep_matrix, a, b, c, s)
            if reason:
                break
        if reason:
            # Partial sweep discarded
            stopped_by = reason
            break

        work, matrix = sweep_work, sweep_matrix
        iterations += 1
        current = criterion(work)
        if abs(current - previous) < tolerance:
            converged = True
            stopped_by = "tolerance"
            break
        previous = current

    if k <= 1:
        converged = True
        stopped_by = "tolerance"

    if orthogonality_error(matrix) > DRIFT_TOLERANCE:
        matrix = orthonormalize(matrix)

    logger.debug(
        "%s: %d sweep(s) over %d x %d, criterion %.6g, stopped by %s",
        method.capitalize(),
        iterations,
        p,
        k,
        current,
        stopped_by,
    )
    return VarimaxResult(
        matrix=matrix,
        loadings=loadings @ matrix,
        iterations=iterations,
        converged=converged,
        criterion=current,
        stopped_by=stopped_by,
    )


def varimax(
    loadings: np.ndarray,
    *,
    tolerance: float = 1e-6,
    max_iterations: int = 100,
    normalize: bool = True,
    budget_seconds: float | None = None,
    cancel: threading.Event | None = None,
) -> VarimaxResult:
    """Pairwise varimax rotation of *loadings*: simple columns."""
    return _pairwise_rotation(
        loadings,
        _varimax_angle,
        varimax_criterion,
        "varimax",
        tolerance=tolerance,
        max_iterations=max_iterations,
        normalize=normalize,
        budget_seconds=budget_seconds,
        cancel=cancel,
    )


def quartimax(
    loadings: np.ndarray,
    *,
    tolerance: float = 1e-6,
    max_iterations: int = 100,
    normalize: bool = True,
    budget_seconds: float | None = None,
    cancel: threading.Event | None = None,
) -> VarimaxResult:
    """Pairwise quartimax rotation: each participant loads on as few factors as possible.

    Same sweep, stopping rules and result shape as :func:`varimax`.
    """
    return _pairwise_rotation(
        loadings,
        _quartimax_angle,
        quartimax_criterion,
        "quartimax",
        tolerance=tolerance,
        max_iterations=max_iterations,
        normalize=normalize,
        budget_seconds=budget_seconds,
        cancel=cancel,
    )


ROTATION_METHODS: dict[str, Callable[..., VarimaxResult]] = {
    "varimax": varimax,
    "quartimax": quartimax,
}


def rotation_warnings(result: VarimaxResult, method: str = "varimax") -> list[AnalysisWarning]:
    """Warnings describing an auto-rotation that stopped early."""
    if result.converged:
        return []
    name = method.capitalize()
    messages = {
        "max_iterations": (
            "rotation_not_converged",
            f"{name} did not converge within {result.iterations} iteration(s)",
        ),
        "timeout": (
            "rotation_timeout",
            f"{name} stopped at its time budget after {result.iterations} sweep(s)",
        ),
        "cancelled": (
            "rotation_cancelled",
            f"{name} was cancelled after {result.iterations} sweep(s)",
        ),
    }
    code, message = messages[result.stopped_by]
    return [
        AnalysisWarning(
            code=code,
            message=message,
            detail={"iterations": result.iterations, "criterion": result.criterion},
        )
    ]


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class RotationController:
    """Rotation state machine over one unrotated factor solution.

    ``unrotated`` -> ``rotating`` (uncommitted manual rotation) ->
    ``rotated`` (committed) -> ``finalized`` (terminal, read-only).
    """

    def __init__(
        self,
        solution: FactorSolution,
        *,
        tolerance: float = 1e-6,
        max_iterations: int = 100,
        kaiser_normalization: bool = True,
        budget_seconds: float | None = 2.0,
    ) -> None:
        self.solution = solution
        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.kaiser_normalization = kaiser_normalization
        self.budget_seconds = budget_seconds

        k = solution.factor_count
        self._base = solution.loadings
        self._steps: list[RotationStep] = []
        self._cursor = 0
        self._committed = np.eye(k)
        self._matrix = np.eye(k)
        self._loadings = np.array(self._base, dtype=np.float64)
        self._pending: list[tuple[int, int, float]] = []
        self._status = RotationStatus.UNROTATED

    @classmethod
    def restore(
        cls,
        solution: FactorSolution,
        steps: Sequence[RotationStep],
        cursor: int,
        *,
        finalized: bool = False,
        **settings: object,
    ) -> RotationController:
        """Rebuild a controller from persisted history by replay."""
        controller = cls(solution, **settings)  # type: ignore[arg-type]
        k = solution.factor_count
        for step in steps:
            if step.matrix.shape != (k, k):
                raise RotationError(
                    f"History step has shape {step.matrix.shape}, expected {(k, k)}"
                )
        if not 0 <= cursor <= len(steps):
            raise RotationError(f"History cursor {cursor} outside 0..{len(steps)}")
        controller._steps = list(steps)
        controller._cursor = cursor
        controller._replay()
        if finalized:
            controller._status = RotationStatus.FINALIZED
        return controller

    # -- read-only views ----------------------------------------------------

    @property
    def factor_count(self) -> int:
        return self.solution.factor_count

    @property
    def status(self) -> RotationStatus:
        return self._status

    @property
    def loadings(self) -> np.ndarray:
        view = self._loadings.view()
        view.setflags(write=False)
        return view

    @property
    def rotation_matrix(self) -> np.ndarray:
        view = self._matrix.view()
        view.setflags(write=False)
        return view

    @property
    def history(self) -> tuple[RotationStep, ...]:
        return tuple(self._steps)

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    @property
    def can_undo(self) -> bool:
        return self.has_pending or self._cursor > 0

    @property
    def can_redo(self) -> bool:
        return self._cursor < len(self._steps)

    # -- commands -----------------------------------------------------------

    def rotate_pair(self, factor_a: int, factor_b: int, angle_delta: float) -> None:
        """Rotate factors *a* and *b* by *angle_delta* degrees (uncommitted)."""
        self._check_mutable()
        self._check_pair(factor_a, factor_b)
        if not math.isfinite(angle_delta):
            raise RotationError(f"Rotation angle must be finite (got {angle_delta})")

        theta = math.radians(angle_delta)
        c, s = math.cos(theta), math.sin(theta)
        _rotate_columns(self._loadings, factor_a, factor_b, c, s)
        _rotate_columns(self._matrix, factor_a, factor_b, c, s)
        self._pending.append((factor_a, factor_b, angle_delta))
        self._status = RotationStatus.ROTATING

        if orthogonality_error(self._matrix) > DRIFT_TOLERANCE:
            logger.debug("Re-orthonormalizing rotation matrix after drift")
            self._matrix = orthonormalize(self._matrix)
            self._loadings = self._base @ self._matrix

    def commit(self) -> RotationStep | None:
        """Record the pending manual rotation as one history step.

        Returns the new step, or ``None`` when nothing was pending.
        """
        self._check_mutable()
        if not self._pending:
            return None
        increment = self._committed.T @ self._matrix
        pairs = {(a, b) for a, b, _ in self._pending}
        if len(pairs) == 1:
            ((a, b),) = pairs
            step = RotationStep(
                kind="manual",
                matrix=increment,
                factor_a=a,
                factor_b=b,
                angle=sum(angle for _, _, angle in self._pending),
            )
        else:
            step = RotationStep(kind="manual", matrix=increment)
        self._push(step)
        logger.debug("Committed manual rotation (%d increment(s))", len(self._pending))
        self._pending.clear()
        return step

    def auto_rotate(
        self,
        method: str = "varimax",
        *,
        cancel: threading.Event | None = None,
    ) -> VarimaxResult:
        """Run an automatic rotation and commit it as one history step.

        Any pending manual rotation is committed first.
        """
        self._check_mutable()
        strategy = ROTATION_METHODS.get(method)
        if strategy is None:
            raise RotationError(
                f"Unknown rotation method {method!r};"
                f" expected one of {', '.join(sorted(ROTATION_METHODS))}"
            )
        if self.factor_count < 2:
            raise RotationError("Rotation needs at least two factors")

        result = strategy(
            self._loadings,
            tolerance=self.tolerance,
            max_iterations=self.max_iterations,
            normalize=self.kaiser_normalization,
            budget_seconds=self.budget_seconds,
            cancel=cancel,
        )
        self.commit()
        self._matrix = self._committed @ result.matrix
        if orthogonality_error(self._matrix) > DRIFT_TOLERANCE:
            self._matrix = orthonormalize(self._matrix)
        self._loadings = self._base @ self._matrix
        self._push(
            RotationStep(
                kind=method,
                matrix=result.matrix,
                iterations=result.iterations,
                converged=result.converged,
            )
        )
        logger.info(
            "Auto-rotated (%s): %d iteration(s), converged=%s",
            method,
            result.iterations,
            result.converged,
        )
        return result

    def undo(self) -> None:
        """Discard the pending rotation, or step the history cursor back."""
        self._check_mutable()
        if self._pending:
            self._discard_pending()
            return
        if self._cursor == 0:
            raise EmptyHistoryError("Nothing to undo")
        self._cursor -= 1
        self._replay()

    def redo(self) -> None:
        """Re-apply the next undone step (any pending rotation is discarded)."""
        self._check_mutable()
        if self._cursor >= len(self._steps):
            raise EmptyHistoryError("Nothing to redo")
        self._pending.clear()
        self._cursor += 1
        self._replay()

    def finalize(self) -> None:
        """Commit pending work and lock the rotation state."""
        self._check_mutable()
        self.commit()
        self._status = RotationStatus.FINALIZED

    # -- internals ----------------------------------------------------------

    def _check_mutable(self) -> None:
        if self._status is RotationStatus.FINALIZED:
            raise ConcurrencyConflictError("Analysis is finalized; rotation is locked")

    def _check_pair(self, factor_a: int, factor_b: int) -> None:
        k = self.factor_count
        if k < 2:
            raise RotationError("Rotation needs at least two factors")
        for index in (factor_a, factor_b):
            if not 0 <= index < k:
                raise RotationError(f"Factor index {index} outside 0..{k - 1}")
        if factor_a == factor_b:
            raise RotationError(f"Cannot rotate factor {factor_a} against itself")

    def _push(self, step: RotationStep) -> None:
        del self._steps[self._cursor :]
        self._steps.append(step)
        self._cursor += 1
        self._committed = self._matrix.copy()
        self._status = RotationStatus.ROTATED

    def _discard_pending(self) -> None:
        self._pending.clear()
        self._matrix = self._committed.copy()
        self._loadings = self._base @ self._matrix
        self._status = RotationStatus.ROTATED if self._cursor else RotationStatus.UNROTATED

    def _replay(self) -> None:
        matrix = np.eye(self.factor_count)
        for step in self._steps[: self._cursor]:
            matrix = matrix @ step.matrix
        if orthogonality_error(matrix) > DRIFT_TOLERANCE:
            matrix = orthonormalize(matrix)
        self._committed = matrix
        self._matrix = matrix.copy()
        self._loadings = self._base @ matrix
        self._status = RotationStatus.ROTATED if self._cursor else RotationStatus.UNROTATED
