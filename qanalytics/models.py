"""Pydantic models for the ingest contract.

These describe what the study/participant subsystem hands the engine: the
ordered statement list, the study's forced rank distribution, and one
statement->rank mapping per participant.  The engine's own computed
structures live in :mod:`qanalytics.analysis.models` as plain dataclasses.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class RankDistribution(BaseModel):
    """The forced quasi-normal distribution every Q-sort must fill.

    ``counts[i]`` is the number of cells for rank ``min_rank + i``.
    """

    min_rank: int
    max_rank: int
    counts: list[int]

    @model_validator(mode="after")
    def _check_shape(self) -> RankDistribution:
        if self.max_rank < self.min_rank:
            raise ValueError("max_rank must be >= min_rank")
        width = self.max_rank - self.min_rank + 1
        if len(self.counts) != width:
            raise ValueError(
                f"counts must have {width} entries for ranks"
                f" {self.min_rank}..{self.max_rank} (got {len(self.counts)})"
            )
        if any(c < 0 for c in self.counts):
            raise ValueError("counts must be non-negative")
        return self

    @property
    def ranks(self) -> list[int]:
        """Rank values from lowest to highest."""
        return list(range(self.min_rank, self.max_rank + 1))

    @property
    def total_cells(self) -> int:
        return sum(self.counts)

    def expanded(self) -> list[int]:
        """The distribution as a sorted multiset of ranks (one per cell)."""
        cells: list[int] = []
        for rank, count in zip(self.ranks, self.counts):
            cells.extend([rank] * count)
        return cells


class Statement(BaseModel):
    """One statement in the Q-set."""

    id: str
    text: str = ""


class StudyDefinition(BaseModel):
    """A study's fixed statement list and rank distribution."""

    name: str = "Untitled study"
    statements: list[Statement]
    distribution: RankDistribution

    @model_validator(mode="after")
    def _check_statements(self) -> StudyDefinition:
        ids = [s.id for s in self.statements]
        if len(set(ids)) != len(ids):
            raise ValueError("statement ids must be unique")
        if self.distribution.total_cells != len(ids):
            raise ValueError(
                f"distribution has {self.distribution.total_cells} cells"
                f" but the study has {len(ids)} statements"
            )
        return self

    @property
    def statement_ids(self) -> list[str]:
        return [s.id for s in self.statements]


class SortSubmission(BaseModel):
    """One participant's finalized Q-sort: statement id -> rank."""

    participant_id: str = Field(min_length=1)
    ranks: dict[str, int]


class StudyPayload(BaseModel):
    """A study together with its submissions (CLI input / bulk import)."""

    study: StudyDefinition
    submissions: list[SortSubmission] = Field(default_factory=list)
