"""Study API endpoints: create a study, add submissions, fetch a study."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from qanalytics.analysis.sort_matrix import validate_submissions
from qanalytics.errors import ValidationError
from qanalytics.models import RankDistribution, SortSubmission, Statement, StudyDefinition
from qanalytics.server.models import StatementRow, Study, Submission

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class StudyResponse(BaseModel):
    """A study with its submission roster."""

    id: int
    name: str
    statements: list[Statement]
    distribution: RankDistribution
    participant_ids: list[str]


class SubmissionsAccepted(BaseModel):
    """Result of a submissions batch."""

    accepted: int
    participant_count: int


# ---------------------------------------------------------------------------
# Database dependency
# ---------------------------------------------------------------------------


def _get_db(request: Request) -> Session:
    """Get the database session from app state."""
    return request.app.state.db_factory()


def study_definition(study: Study) -> StudyDefinition:
    """Rebuild the ingest model from ORM rows."""
    return StudyDefinition(
        name=study.name,
        statements=[Statement(id=s.statement_key, text=s.text) for s in study.statements],
        distribution=RankDistribution(
            min_rank=study.min_rank, max_rank=study.max_rank, counts=list(study.counts)
        ),
    )


def load_study(db: Session, study_id: int) -> Study:
    """Fetch a study or raise 404."""
    study = db.get(Study, study_id)
    if study is None:
        raise HTTPException(status_code=404, detail=f"Study {study_id} not found")
    return study


def _study_response(study: Study) -> StudyResponse:
    definition = study_definition(study)
    return StudyResponse(
        id=study.id,
        name=study.name,
        statements=definition.statements,
        distribution=definition.distribution,
        participant_ids=[s.participant_id for s in study.submissions],
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/studies", response_model=StudyResponse, status_code=201)
def create_study(
    body: StudyDefinition,
    db: Session = Depends(_get_db),  # type: ignore[assignment]
) -> StudyResponse:
    """Create a study from its statement list and rank distribution."""
    try:
        study = Study(
            name=body.name,
            min_rank=body.distribution.min_rank,
            max_rank=body.distribution.max_rank,
            counts=list(body.distribution.counts),
        )
        db.add(study)
        db.flush()
        for position, statement in enumerate(body.statements):
            db.add(
                StatementRow(
                    study_id=study.id,
                    statement_key=statement.id,
                    text=statement.text,
                    position=position,
                )
            )
        db.commit()
        db.refresh(study)
        logger.info("Created study %d (%d statements)", study.id, len(body.statements))
        return _study_response(study)
    finally:
        db.close()


@router.get("/studies/{study_id}", response_model=StudyResponse)
def get_study(
    study_id: int,
    db: Session = Depends(_get_db),  # type: ignore[assignment]
) -> StudyResponse:
    """Return a study's definition and participant roster."""
    try:
        return _study_response(load_study(db, study_id))
    finally:
        db.close()


@router.post(
    "/studies/{study_id}/submissions",
    response_model=SubmissionsAccepted,
    status_code=201,
)
def add_submissions(
    study_id: int,
    body: list[SortSubmission],
    db: Session = Depends(_get_db),  # type: ignore[assignment]
) -> SubmissionsAccepted:
    """Validate and store a batch of Q-sorts; all or nothing."""
    try:
        study = load_study(db, study_id)
        existing = {s.participant_id for s in study.submissions}
        clashes = sorted(existing & {s.participant_id for s in body})
        if clashes:
            raise HTTPException(
                status_code=409,
                detail=f"Participant(s) already submitted: {', '.join(clashes)}",
            )
        try:
            validate_submissions(study_definition(study), body)
        except ValidationError as exc:
            raise HTTPException(
                status_code=422, detail={"message": str(exc), "problems": exc.problems}
            ) from exc

        for submission in body:
            db.add(
                Submission(
                    study_id=study.id,
                    participant_id=submission.participant_id,
                    ranks=dict(submission.ranks),
                )
            )
        db.commit()
        return SubmissionsAccepted(
            accepted=len(body), participant_count=len(existing) + len(body)
        )
    finally:
        db.close()
