"""Stateful analysis sessions: one per study, mutated only through commands.

An :class:`AnalysisSession` owns the immutable inputs (sort matrix,
correlation matrix, unrotated solution) and one :class:`RotationController`.
Every command runs under the session lock, bumps the revision on success,
and returns a :class:`CommandResult`.  Derived views (assignments, z-scores,
distinguishing/consensus tables) are rebuilt lazily after each change.

:class:`SessionRegistry` is the async gateway's view: one session per study
id, with per-study FIFO serialization so commands from concurrent requests
never interleave.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar, Union

import numpy as np

from qanalytics.analysis.correlation import correlate
from qanalytics.analysis.extraction import extract
from qanalytics.analysis.loadings import analyze_loadings, factor_characteristics
from qanalytics.analysis.models import (
    AnalysisSnapshot,
    AnalysisWarning,
    CommandResult,
    CorrelationMatrix,
    FactorSolution,
    LoadingAnalysis,
    RotationDelta,
    RotationStatus,
    RotationStep,
    SortMatrix,
)
from qanalytics.analysis.rotation import RotationController, rotation_warnings
from qanalytics.config import QAnalyticsSettings, load_settings
from qanalytics.errors import ConcurrencyConflictError, RotationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RotatePair:
    """Uncommitted manual rotation of one factor pair, in degrees."""

    factor_a: int
    factor_b: int
    angle: float


@dataclass(frozen=True)
class Commit:
    """Record pending manual rotation as a history step."""


@dataclass(frozen=True)
class AutoRotate:
    method: str = "varimax"
    cancel: threading.Event | None = field(default=None, compare=False)


RotationCommand = Union[RotatePair, Commit, AutoRotate]

Update = Union[AnalysisSnapshot, RotationDelta]
Listener = Callable[[Update], None]


def _rows(array: np.ndarray) -> tuple[tuple[float, ...], ...]:
    return tuple(tuple(float(v) for v in row) for row in array)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class AnalysisSession:
    """Interactive factor analysis of one study."""

    def __init__(
        self,
        study_id: str,
        sort_matrix: SortMatrix,
        factor_count: int,
        *,
        method: str | None = None,
        settings: QAnalyticsSettings | None = None,
        correlation: CorrelationMatrix | None = None,
        revision: int = 0,
    ) -> None:
        self.study_id = study_id
        self.sort_matrix = sort_matrix
        self.settings = settings or load_settings()
        self.method = method or self.settings.extraction_method
        self.correlation = correlation or correlate(sort_matrix)
        self.solution: FactorSolution = extract(self.correlation, factor_count, self.method)
        self._controller = self._new_controller(self.solution)
        self._revision = revision
        self._lock = threading.RLock()
        self._analysis: LoadingAnalysis | None = None
        self._listeners: list[Listener] = []
        logger.info(
            "Opened analysis of %s: %d participants, %d statements, %d factor(s)",
            study_id,
            sort_matrix.n_participants,
            sort_matrix.n_statements,
            factor_count,
        )

    @classmethod
    def create(
        cls,
        study_id: str,
        sort_matrix: SortMatrix,
        factor_count: int,
        **kwargs: Any,
    ) -> AnalysisSession:
        """Correlate, extract and start an unrotated session."""
        return cls(study_id, sort_matrix, factor_count, **kwargs)

    initialize = create

    def _new_controller(self, solution: FactorSolution) -> RotationController:
        return RotationController(
            solution,
            tolerance=self.settings.rotation_tolerance,
            max_iterations=self.settings.rotation_max_iterations,
            kaiser_normalization=self.settings.kaiser_normalization,
            budget_seconds=self.settings.auto_rotate_budget_seconds,
        )

    # -- read-only properties -----------------------------------------------

    @property
    def revision(self) -> int:
        return self._revision

    @property
    def status(self) -> RotationStatus:
        return self._controller.status

    @property
    def factor_count(self) -> int:
        return self.solution.factor_count

    @property
    def controller(self) -> RotationController:
        return self._controller

    # -- listeners ----------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* for updates; returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def take_over(self, previous: AnalysisSession) -> None:
        """Adopt *previous*'s subscribers and send them this session's snapshot.

        Used when a study is re-opened: the new session must start above
        ``previous.revision`` so subscribers never see a revision go back.
        """
        if self._revision <= previous.revision:
            raise ValueError(
                f"Session revision {self._revision} does not follow {previous.revision}"
            )
        with previous._lock:
            listeners = previous._listeners
        with self._lock:
            # Shared list: unsubscribe callables from the old session keep working
            listeners.extend(self._listeners)
            self._listeners = listeners
            self._publish(self._build_snapshot())

    def _publish(self, update: Update) -> None:
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                logger.exception("Session listener failed for %s", self.study_id)

    # -- commands -----------------------------------------------------------

    def rotate(self, op: RotationCommand) -> CommandResult:
        """Apply one rotation command."""
        if isinstance(op, RotatePair):
            return self._run(lambda: self._rotate_pair(op), compact=True)
        if isinstance(op, Commit):
            return self._run(lambda: (self._controller.commit() is not None, []))
        if isinstance(op, AutoRotate):
            return self._run(lambda: self._auto_rotate(op))
        raise RotationError(f"Unknown rotation command {op!r}")

    def rotate_pair(self, factor_a: int, factor_b: int, angle: float) -> CommandResult:
        return self.rotate(RotatePair(factor_a, factor_b, angle))

    def commit_rotation(self) -> CommandResult:
        return self.rotate(Commit())

    def auto_rotate(
        self, method: str = "varimax", cancel: threading.Event | None = None
    ) -> CommandResult:
        return self.rotate(AutoRotate(method, cancel))

    def undo(self) -> CommandResult:
        def _undo() -> tuple[bool, list[AnalysisWarning]]:
            self._controller.undo()
            return True, []

        return self._run(_undo)

    def redo(self) -> CommandResult:
        def _redo() -> tuple[bool, list[AnalysisWarning]]:
            self._controller.redo()
            return True, []

        return self._run(_redo)

    def finalize(self) -> CommandResult:
        def _finalize() -> tuple[bool, list[AnalysisWarning]]:
            self._controller.finalize()
            logger.info("Finalized analysis of %s", self.study_id)
            return True, []

        return self._run(_finalize)

    def reset(self, factor_count: int) -> CommandResult:
        """Re-extract *factor_count* factors and discard rotation history."""

        def _reset() -> tuple[bool, list[AnalysisWarning]]:
            if self._controller.status is RotationStatus.FINALIZED:
                raise ConcurrencyConflictError("Analysis is finalized; cannot re-extract")
            solution = extract(self.correlation, factor_count, self.method)
            self.solution = solution
            self._controller = self._new_controller(solution)
            return True, list(solution.warnings)

        return self._run(_reset)

    set_factor_count = reset

    def snapshot(self) -> AnalysisSnapshot:
        with self._lock:
            return self._build_snapshot()

    # -- internals ----------------------------------------------------------

    def _rotate_pair(self, op: RotatePair) -> tuple[bool, list[AnalysisWarning]]:
        self._controller.rotate_pair(op.factor_a, op.factor_b, op.angle)
        return True, []

    def _auto_rotate(self, op: AutoRotate) -> tuple[bool, list[AnalysisWarning]]:
        result = self._controller.auto_rotate(op.method, cancel=op.cancel)
        warnings = rotation_warnings(result, op.method)
        for warning in warnings:
            logger.warning("%s: %s", self.study_id, warning.message)
        return True, warnings

    def _run(
        self,
        action: Callable[[], tuple[bool, list[AnalysisWarning]]],
        *,
        compact: bool = False,
    ) -> CommandResult:
        """Run *action* under the lock; bump revision and notify on change.

        Actions validate before mutating, so an exception leaves both the
        rotation state and the revision as they were.
        """
        with self._lock:
            changed, warnings = action()
            if changed:
                self._revision += 1
                self._analysis = None
            snapshot = self._build_snapshot()
            if changed:
                if compact:
                    self._publish(
                        RotationDelta(
                            study_id=self.study_id,
                            revision=self._revision,
                            rotation_matrix=snapshot.rotation_matrix,
                            loadings=snapshot.loadings,
                        )
                    )
                else:
                    self._publish(snapshot)
            return CommandResult(
                revision=self._revision,
                snapshot=snapshot,
                warnings=tuple(warnings) + snapshot.warnings,
            )

    def _current_analysis(self) -> LoadingAnalysis:
        if self._analysis is None:
            self._analysis = analyze_loadings(
                self.sort_matrix,
                self._controller.loadings,
                threshold=self.settings.loading_threshold,
                margin=self.settings.assignment_margin,
                alpha=self.settings.significance_alpha,
            )
        return self._analysis

    def _build_snapshot(self) -> AnalysisSnapshot:
        analysis = self._current_analysis()
        loadings = self._controller.loadings
        n = self.sort_matrix.n_participants
        rotated = np.sum(loadings**2, axis=0) / n * 100.0
        return AnalysisSnapshot(
            study_id=self.study_id,
            revision=self._revision,
            status=self._controller.status,
            extraction_method=self.method,
            participant_ids=self.sort_matrix.participant_ids,
            statement_ids=self.sort_matrix.statement_ids,
            eigenvalues=tuple(float(v) for v in self.solution.eigenvalues),
            variance_explained=tuple(float(v) for v in self.solution.variance_explained),
            rotated_variance_explained=tuple(float(v) for v in rotated),
            characteristics=tuple(factor_characteristics(loadings, analysis.factor_scores)),
            rotation_matrix=_rows(self._controller.rotation_matrix),
            loadings=_rows(loadings),
            assignments=analysis.assignments,
            factor_scores=analysis.factor_scores,
            distinguishing=analysis.distinguishing,
            consensus=analysis.consensus,
            history_length=len(self._controller.history),
            history_cursor=self._controller.cursor,
            has_pending_rotation=self._controller.has_pending,
            warnings=self.solution.warnings + analysis.warnings,
        )

    # -- persistence --------------------------------------------------------

    def to_state(self) -> dict[str, Any]:
        """The persisted state shape.

        Pending (uncommitted) manual rotation is not part of the state; a
        restored session resumes at the last committed step.  ``revision``
        is the last revision published, pending rotation included, and
        ``pending_rotation`` records that the restored view will differ from it.
        """
        with self._lock:
            controller = self._controller
            status = controller.status
            if status is RotationStatus.ROTATING:
                status = RotationStatus.ROTATED if controller.cursor else RotationStatus.UNROTATED
            return {
                "study_id": self.study_id,
                "factor_count": self.factor_count,
                "method": self.method,
                "history": [step.to_dict() for step in controller.history],
                "cursor": controller.cursor,
                "status": status.value,
                "revision": self._revision,
                "pending_rotation": controller.has_pending,
            }

    @classmethod
    def from_state(
        cls,
        sort_matrix: SortMatrix,
        state: dict[str, Any],
        *,
        settings: QAnalyticsSettings | None = None,
    ) -> AnalysisSession:
        """Rebuild a session from :meth:`to_state` output by replaying history."""
        session = cls(
            state["study_id"],
            sort_matrix,
            int(state["factor_count"]),
            method=state["method"],
            settings=settings,
        )
        steps = [RotationStep.from_dict(d) for d in state.get("history", [])]
        session._controller = RotationController.restore(
            session.solution,
            steps,
            int(state.get("cursor", len(steps))),
            finalized=state.get("status") == RotationStatus.FINALIZED.value,
            tolerance=session.settings.rotation_tolerance,
            max_iterations=session.settings.rotation_max_iterations,
            kaiser_normalization=session.settings.kaiser_normalization,
            budget_seconds=session.settings.auto_rotate_budget_seconds,
        )
        session._revision = int(state.get("revision", 0))
        if state.get("pending_rotation"):
            # The dropped rotation was published under the stored revision
            session._revision += 1
        return session


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class SessionRegistry:
    """One live session per study id, with per-study FIFO serialization."""

    def __init__(self) -> None:
        self._sessions: dict[str, AnalysisSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __contains__(self, study_id: object) -> bool:
        return study_id in self._sessions

    def get(self, study_id: str) -> AnalysisSession | None:
        return self._sessions.get(study_id)

    def put(self, session: AnalysisSession) -> None:
        self._sessions[session.study_id] = session

    def discard(self, study_id: str) -> None:
        self._sessions.pop(study_id, None)
        lock = self._locks.get(study_id)
        if lock is not None and not lock.locked():
            del self._locks[study_id]

    def lock(self, study_id: str) -> asyncio.Lock:
        return self._locks.setdefault(study_id, asyncio.Lock())

    async def run(self, study_id: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run *fn* in a worker thread, after earlier work for the same study."""
        async with self.lock(study_id):
            return await asyncio.to_thread(fn, *args, **kwargs)
