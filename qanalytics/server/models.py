"""SQLAlchemy ORM models: studies, submissions and persisted rotation state.

Ranks and rotation history are stored as JSON; floats round-trip at double
precision, so a restored session replays to the same loadings.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from qanalytics.server.db import Base


class Study(Base):
    """A Q study: fixed statement set and forced distribution."""

    __tablename__ = "studies"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    min_rank: Mapped[int] = mapped_column(Integer)
    max_rank: Mapped[int] = mapped_column(Integer)
    counts: Mapped[list[int]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(default=func.now())

    statements: Mapped[list[StatementRow]] = relationship(
        back_populates="study", order_by="StatementRow.position"
    )
    submissions: Mapped[list[Submission]] = relationship(
        back_populates="study", order_by="Submission.id"
    )
    analysis_state: Mapped[AnalysisState | None] = relationship(back_populates="study")


class StatementRow(Base):
    """One statement of a study's Q-set, in presentation order."""

    __tablename__ = "statements"
    __table_args__ = (UniqueConstraint("study_id", "statement_key"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    study_id: Mapped[int] = mapped_column(ForeignKey("studies.id"))
    statement_key: Mapped[str] = mapped_column(String(100))
    text: Mapped[str] = mapped_column(Text, default="")
    position: Mapped[int] = mapped_column(Integer)

    study: Mapped[Study] = relationship(back_populates="statements")


class Submission(Base):
    """One participant's finalized Q-sort (statement key -> rank)."""

    __tablename__ = "submissions"
    __table_args__ = (UniqueConstraint("study_id", "participant_id"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    study_id: Mapped[int] = mapped_column(ForeignKey("studies.id"))
    participant_id: Mapped[str] = mapped_column(String(200))
    ranks: Mapped[dict[str, int]] = mapped_column(JSON)
    submitted_at: Mapped[datetime] = mapped_column(default=func.now())

    study: Mapped[Study] = relationship(back_populates="submissions")


class AnalysisState(Base):
    """Persisted rotation state of a study's analysis session."""

    __tablename__ = "analysis_states"

    id: Mapped[int] = mapped_column(primary_key=True)
    study_id: Mapped[int] = mapped_column(ForeignKey("studies.id"), unique=True)
    factor_count: Mapped[int] = mapped_column(Integer)
    method: Mapped[str] = mapped_column(String(20))
    history: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    cursor: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default="unrotated")
    revision: Mapped[int] = mapped_column(Integer, default=0)  # last published
    pending_rotation: Mapped[bool] = mapped_column(Boolean, default=False)
    participant_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())

    study: Mapped[Study] = relationship(back_populates="analysis_state")
