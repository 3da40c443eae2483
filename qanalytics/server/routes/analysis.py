"""Analysis API endpoints: open a session, issue commands, fetch snapshots.

Endpoints:

- ``POST /studies/{id}/analysis``: correlate, extract and open a session
- ``GET /studies/{id}/analysis``: current snapshot
- ``POST /studies/{id}/analysis/commands``: one rotation/history command

Commands for one study run one at a time in arrival order (the registry's
per-study lock) in a worker thread; the persisted state is written after
every command, so the stored revision is the last one published.  Re-opening
a study starts above that revision and hands stream subscribers over.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from qanalytics.analysis.correlation import correlate
from qanalytics.analysis.extraction import suggest_factor_count
from qanalytics.analysis.models import (
    AnalysisSnapshot,
    AnalysisWarning,
    CommandResult,
    RotationDelta,
    RotationStatus,
    SortMatrix,
)
from qanalytics.analysis.sort_matrix import build_sort_matrix
from qanalytics.config import QAnalyticsSettings
from qanalytics.errors import (
    ConcurrencyConflictError,
    EmptyHistoryError,
    QAnalyticsError,
)
from qanalytics.models import SortSubmission
from qanalytics.server.models import AnalysisState, Study
from qanalytics.server.routes.studies import load_study, study_definition
from qanalytics.session import (
    AnalysisSession,
    AutoRotate,
    Commit,
    RotatePair,
    SessionRegistry,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class OpenAnalysisRequest(BaseModel):
    """Start (or restart) the analysis of a study."""

    factor_count: int | None = None  # None = configured factor-count rule
    method: str | None = None  # None = configured default


class CommandRequest(BaseModel):
    """One session command."""

    command: Literal[
        "rotate", "commit", "auto_rotate", "undo", "redo", "finalize", "set_factor_count"
    ]
    factor_a: int | None = None
    factor_b: int | None = None
    angle: float | None = None
    method: str = "varimax"
    factor_count: int | None = None


class WarningOut(BaseModel):
    code: str
    message: str
    detail: dict[str, Any] = {}


class AssignmentOut(BaseModel):
    participant_id: str
    status: str
    factor: int | None
    top_factor: int
    loading: float
    runner_up_loading: float


class FactorScoresOut(BaseModel):
    factor: int
    defining_participants: list[str]
    weights: list[float]
    z_scores: list[float] | None
    significant: list[bool] | None
    factor_array: list[int] | None
    reliability: float
    standard_error: float


class CharacteristicsOut(BaseModel):
    factor: int
    defining_count: int
    eigenvalue: float
    variance_explained: float
    reliability: float
    standard_error: float


class DistinguishingOut(BaseModel):
    statement_id: str
    factor: int
    z_score: float
    other_z_scores: dict[int, float]
    min_difference: float
    significance: str


class ConsensusOut(BaseModel):
    statement_id: str
    z_scores: dict[int, float]
    mean_z_score: float
    z_score_range: float


class SnapshotOut(BaseModel):
    """Full analysis view, as rendered or streamed."""

    study_id: str
    revision: int
    status: str
    extraction_method: str
    participant_ids: list[str]
    statement_ids: list[str]
    eigenvalues: list[float]
    variance_explained: list[float]
    rotated_variance_explained: list[float]
    characteristics: list[CharacteristicsOut]
    rotation_matrix: list[list[float]]
    loadings: list[list[float]]
    assignments: list[AssignmentOut]
    factor_scores: list[FactorScoresOut]
    distinguishing: list[DistinguishingOut]
    consensus: list[ConsensusOut]
    history_length: int
    history_cursor: int
    has_pending_rotation: bool
    warnings: list[WarningOut] = Field(default_factory=list)


class DeltaOut(BaseModel):
    """Compact update after an uncommitted rotation."""

    study_id: str
    revision: int
    rotation_matrix: list[list[float]]
    loadings: list[list[float]]


class CommandResponse(BaseModel):
    revision: int
    snapshot: SnapshotOut
    warnings: list[WarningOut]


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def _warning_out(w: AnalysisWarning) -> WarningOut:
    return WarningOut(code=w.code, message=w.message, detail=dict(w.detail))


def _optional_list(values: Any) -> list[Any] | None:
    return None if values is None else values.tolist()


def serialize_snapshot(snapshot: AnalysisSnapshot) -> SnapshotOut:
    """Convert an engine snapshot into its JSON response model."""
    return SnapshotOut(
        study_id=snapshot.study_id,
        revision=snapshot.revision,
        status=snapshot.status.value,
        extraction_method=snapshot.extraction_method,
        participant_ids=list(snapshot.participant_ids),
        statement_ids=list(snapshot.statement_ids),
        eigenvalues=list(snapshot.eigenvalues),
        variance_explained=list(snapshot.variance_explained),
        rotated_variance_explained=list(snapshot.rotated_variance_explained),
        characteristics=[
            CharacteristicsOut(
                factor=c.factor,
                defining_count=c.defining_count,
                eigenvalue=c.eigenvalue,
                variance_explained=c.variance_explained,
                reliability=c.reliability,
                standard_error=c.standard_error,
            )
            for c in snapshot.characteristics
        ],
        rotation_matrix=[list(row) for row in snapshot.rotation_matrix],
        loadings=[list(row) for row in snapshot.loadings],
        assignments=[
            AssignmentOut(
                participant_id=a.participant_id,
                status=a.status.value,
                factor=a.factor,
                top_factor=a.top_factor,
                loading=a.loading,
                runner_up_loading=a.runner_up_loading,
            )
            for a in snapshot.assignments
        ],
        factor_scores=[
            FactorScoresOut(
                factor=fs.factor,
                defining_participants=list(fs.defining_participants),
                weights=list(fs.weights),
                z_scores=_optional_list(fs.z_scores),
                significant=_optional_list(fs.significant),
                factor_array=_optional_list(fs.factor_array),
                reliability=fs.reliability,
                standard_error=fs.standard_error,
            )
            for fs in snapshot.factor_scores
        ],
        distinguishing=[
            DistinguishingOut(
                statement_id=d.statement_id,
                factor=d.factor,
                z_score=d.z_score,
                other_z_scores=dict(d.other_z_scores),
                min_difference=d.min_difference,
                significance=d.significance,
            )
            for d in snapshot.distinguishing
        ],
        consensus=[
            ConsensusOut(
                statement_id=c.statement_id,
                z_scores=dict(c.z_scores),
                mean_z_score=c.mean_z_score,
                z_score_range=c.z_score_range,
            )
            for c in snapshot.consensus
        ],
        history_length=snapshot.history_length,
        history_cursor=snapshot.history_cursor,
        has_pending_rotation=snapshot.has_pending_rotation,
        warnings=[_warning_out(w) for w in snapshot.warnings],
    )


def serialize_delta(delta: RotationDelta) -> DeltaOut:
    return DeltaOut(
        study_id=delta.study_id,
        revision=delta.revision,
        rotation_matrix=[list(row) for row in delta.rotation_matrix],
        loadings=[list(row) for row in delta.loadings],
    )


def _command_response(result: CommandResult) -> CommandResponse:
    return CommandResponse(
        revision=result.revision,
        snapshot=serialize_snapshot(result.snapshot),
        warnings=[_warning_out(w) for w in result.warnings],
    )


def http_error(exc: QAnalyticsError) -> HTTPException:
    """Map an engine error to its HTTP status."""
    if isinstance(exc, (ConcurrencyConflictError, EmptyHistoryError)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=422, detail=str(exc))


# ---------------------------------------------------------------------------
# Session plumbing (runs in worker threads)
# ---------------------------------------------------------------------------


def _sort_matrix(study: Study, participant_ids: list[str] | None = None) -> SortMatrix:
    """Build the sort matrix from stored submissions (optionally a fixed roster)."""
    by_participant = {s.participant_id: s for s in study.submissions}
    if participant_ids is None:
        participant_ids = [s.participant_id for s in study.submissions]
    missing = [pid for pid in participant_ids if pid not in by_participant]
    if missing:
        raise HTTPException(
            status_code=409,
            detail=f"Stored analysis references missing participant(s): {', '.join(missing)}",
        )
    submissions = [
        SortSubmission(participant_id=pid, ranks=by_participant[pid].ranks)
        for pid in participant_ids
    ]
    return build_sort_matrix(study_definition(study), submissions)


def _persist(db_factory: sessionmaker[Session], session: AnalysisSession) -> None:
    """Write the session's state shape to its study's AnalysisState row."""
    state = session.to_state()
    db = db_factory()
    try:
        row = db.query(AnalysisState).filter_by(study_id=int(session.study_id)).one_or_none()
        if row is None:
            row = AnalysisState(study_id=int(session.study_id))
            db.add(row)
        row.factor_count = state["factor_count"]
        row.method = state["method"]
        row.history = state["history"]
        row.cursor = state["cursor"]
        row.status = state["status"]
        row.revision = state["revision"]
        row.pending_rotation = state["pending_rotation"]
        row.participant_ids = list(session.sort_matrix.participant_ids)
        db.commit()
    finally:
        db.close()


def get_session(
    db_factory: sessionmaker[Session],
    registry: SessionRegistry,
    settings: QAnalyticsSettings,
    study_id: int,
) -> AnalysisSession:
    """The live session for *study_id*, restored from the database if needed."""
    session = registry.get(str(study_id))
    if session is not None:
        return session

    db = db_factory()
    try:
        study = load_study(db, study_id)
        state = study.analysis_state
        if state is None:
            raise HTTPException(status_code=404, detail=f"No analysis open for study {study_id}")
        try:
            session = AnalysisSession.from_state(
                _sort_matrix(study, list(state.participant_ids)),
                {
                    "study_id": str(study_id),
                    "factor_count": state.factor_count,
                    "method": state.method,
                    "history": state.history,
                    "cursor": state.cursor,
                    "status": state.status,
                    "revision": state.revision,
                    "pending_rotation": state.pending_rotation,
                },
                settings=settings,
            )
        except QAnalyticsError as exc:
            raise http_error(exc) from exc
    finally:
        db.close()

    logger.info("Restored analysis of study %d at revision %d", study_id, session.revision)
    registry.put(session)
    return session


def _open(
    db_factory: sessionmaker[Session],
    registry: SessionRegistry,
    settings: QAnalyticsSettings,
    study_id: int,
    body: OpenAnalysisRequest,
) -> CommandResult:
    previous = registry.get(str(study_id))
    db = db_factory()
    try:
        study = load_study(db, study_id)
        stored = study.analysis_state
        if stored is not None and stored.status == RotationStatus.FINALIZED.value:
            raise HTTPException(status_code=409, detail="Analysis is finalized")
        # Revisions keep rising across re-opens of the same study
        if previous is not None:
            revision = previous.revision + 1
        elif stored is not None:
            revision = stored.revision + 1
        else:
            revision = 0
        try:
            matrix = _sort_matrix(study)
            correlation = correlate(matrix)
            factor_count = body.factor_count
            if factor_count is None:
                factor_count = suggest_factor_count(
                    correlation,
                    settings.factor_count_rule,
                    n_statements=matrix.n_statements,
                    simulations=settings.parallel_simulations,
                )
            session = AnalysisSession.create(
                str(study_id),
                matrix,
                factor_count,
                method=body.method,
                settings=settings,
                correlation=correlation,
                revision=revision,
            )
        except QAnalyticsError as exc:
            raise http_error(exc) from exc
    finally:
        db.close()

    if previous is not None:
        session.take_over(previous)
        logger.info("Re-opened analysis of study %d at revision %d", study_id, revision)
    registry.put(session)
    _persist(db_factory, session)
    snapshot = session.snapshot()
    return CommandResult(revision=session.revision, snapshot=snapshot, warnings=snapshot.warnings)


def _execute(
    db_factory: sessionmaker[Session],
    registry: SessionRegistry,
    settings: QAnalyticsSettings,
    study_id: int,
    body: CommandRequest,
) -> CommandResult:
    session = get_session(db_factory, registry, settings, study_id)
    try:
        if body.command == "rotate":
            if body.factor_a is None or body.factor_b is None or body.angle is None:
                raise HTTPException(
                    status_code=422, detail="rotate needs factor_a, factor_b and angle"
                )
            result = session.rotate(RotatePair(body.factor_a, body.factor_b, body.angle))
        elif body.command == "commit":
            result = session.rotate(Commit())
        elif body.command == "auto_rotate":
            result = session.rotate(AutoRotate(body.method))
        elif body.command == "undo":
            result = session.undo()
        elif body.command == "redo":
            result = session.redo()
        elif body.command == "finalize":
            result = session.finalize()
        else:
            if body.factor_count is None:
                raise HTTPException(status_code=422, detail="set_factor_count needs factor_count")
            result = session.set_factor_count(body.factor_count)
    except QAnalyticsError as exc:
        raise http_error(exc) from exc

    _persist(db_factory, session)
    return result


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/studies/{study_id}/analysis", response_model=CommandResponse, status_code=201)
async def open_analysis(
    study_id: int,
    body: OpenAnalysisRequest,
    request: Request,
) -> CommandResponse:
    """Correlate all submissions, extract factors and open a fresh session."""
    state = request.app.state
    result = await state.registry.run(
        str(study_id), _open, state.db_factory, state.registry, state.settings, study_id, body
    )
    return _command_response(result)


@router.get("/studies/{study_id}/analysis", response_model=SnapshotOut)
async def get_snapshot(study_id: int, request: Request) -> SnapshotOut:
    """Return the current analysis snapshot."""
    state = request.app.state

    def _snapshot() -> AnalysisSnapshot:
        return get_session(
            state.db_factory, state.registry, state.settings, study_id
        ).snapshot()

    return serialize_snapshot(await state.registry.run(str(study_id), _snapshot))


@router.post("/studies/{study_id}/analysis/commands", response_model=CommandResponse)
async def run_command(
    study_id: int,
    body: CommandRequest,
    request: Request,
) -> CommandResponse:
    """Apply one command; returns the new revision, snapshot and warnings."""
    state = request.app.state
    result = await state.registry.run(
        str(study_id), _execute, state.db_factory, state.registry, state.settings, study_id, body
    )
    return _command_response(result)
