"""Assemble and validate the participant x statement rank matrix."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence

import numpy as np
from pydantic import ValidationError as PydanticValidationError
from scipy.stats import norm

from qanalytics.analysis.models import SortMatrix
from qanalytics.errors import ValidationError
from qanalytics.models import RankDistribution, SortSubmission, Statement, StudyDefinition

logger = logging.getLogger(__name__)

MIN_PARTICIPANTS = 2


def build_sort_matrix(
    study: StudyDefinition,
    submissions: Sequence[SortSubmission],
) -> SortMatrix:
    """Build a SortMatrix from per-participant statement->rank mappings.

    Participants keep the caller's order.  Every problem with every
    submission is collected before raising, so one ``ValidationError``
    reports the whole batch.
    """
    validate_submissions(study, submissions)
    if len(submissions) < MIN_PARTICIPANTS:
        raise ValidationError(
            f"At least {MIN_PARTICIPANTS} participants are required (got {len(submissions)})"
        )

    statement_ids = study.statement_ids
    return SortMatrix(
        participant_ids=tuple(s.participant_id for s in submissions),
        statement_ids=tuple(statement_ids),
        distribution=study.distribution,
        ranks=np.asarray(
            [[s.ranks[sid] for sid in statement_ids] for s in submissions], dtype=np.int64
        ),
    )


def validate_submissions(
    study: StudyDefinition,
    submissions: Sequence[SortSubmission],
) -> None:
    """Raise ``ValidationError`` naming every invalid submission in the batch."""
    statement_ids = study.statement_ids
    expected = Counter(study.distribution.expanded())
    problems: dict[str, list[str]] = {}
    seen: set[str] = set()

    for submission in submissions:
        pid = submission.participant_id
        if pid in seen:
            problems.setdefault(pid, []).append("duplicate participant id")
            continue
        seen.add(pid)

        reasons = _check_mapping(submission.ranks, statement_ids, study.distribution, expected)
        if reasons:
            problems[pid] = reasons

    if problems:
        summary = "; ".join(f"{pid}: {', '.join(r)}" for pid, r in problems.items())
        logger.info("Rejected %d of %d submissions", len(problems), len(submissions))
        raise ValidationError(f"Invalid Q-sort submissions: {summary}", problems)


def build_sort_matrix_from_rows(
    participant_ids: Sequence[str],
    statement_ids: Sequence[str],
    rows: Sequence[Sequence[int]],
    distribution: RankDistribution,
) -> SortMatrix:
    """Build a SortMatrix from rank rows already in statement order."""
    if len(participant_ids) != len(rows):
        raise ValidationError(
            f"{len(participant_ids)} participant ids but {len(rows)} rank rows"
        )
    try:
        study = StudyDefinition(
            statements=[Statement(id=sid) for sid in statement_ids],
            distribution=distribution,
        )
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid study definition: {exc}") from exc
    submissions = []
    problems: dict[str, list[str]] = {}
    for pid, row in zip(participant_ids, rows):
        if len(row) != len(statement_ids):
            problems[pid] = [f"has {len(row)} ranks, expected {len(statement_ids)}"]
            continue
        submissions.append(
            SortSubmission(participant_id=pid, ranks=dict(zip(statement_ids, row)))
        )
    if problems:
        summary = "; ".join(f"{pid}: {', '.join(r)}" for pid, r in problems.items())
        raise ValidationError(f"Invalid rank rows: {summary}", problems)
    return build_sort_matrix(study, submissions)


def _check_mapping(
    ranks: dict[str, int],
    statement_ids: Sequence[str],
    distribution: RankDistribution,
    expected: Counter[int],
) -> list[str]:
    """Return every reason one submission is invalid (empty when valid)."""
    reasons: list[str] = []
    known = set(statement_ids)

    missing = [sid for sid in statement_ids if sid not in ranks]
    if missing:
        reasons.append(f"missing ranks for {len(missing)} statement(s): {', '.join(missing[:5])}")
    unknown = sorted(set(ranks) - known)
    if unknown:
        reasons.append(f"ranks unknown statement(s): {', '.join(unknown[:5])}")

    out_of_range = sorted(
        {r for r in ranks.values() if not distribution.min_rank <= r <= distribution.max_rank}
    )
    if out_of_range:
        reasons.append(
            f"rank(s) {out_of_range} outside {distribution.min_rank}..{distribution.max_rank}"
        )

    if not reasons:
        used = Counter(ranks.values())
        for rank in distribution.ranks:
            if used.get(rank, 0) != expected.get(rank, 0):
                reasons.append(
                    f"rank {rank:+d} used {used.get(rank, 0)} time(s),"
                    f" distribution requires {expected.get(rank, 0)}"
                )
    return reasons


# ---------------------------------------------------------------------------
# Distributions
# ---------------------------------------------------------------------------


def infer_distribution(sample_ranks: Sequence[int]) -> RankDistribution:
    """Read the distribution shape off one complete sample sort."""
    if not sample_ranks:
        raise ValidationError("Cannot infer a distribution from an empty sort")
    counts = Counter(sample_ranks)
    lo, hi = min(counts), max(counts)
    return RankDistribution(
        min_rank=lo, max_rank=hi, counts=[counts.get(r, 0) for r in range(lo, hi + 1)]
    )


def standard_distribution(n_statements: int, max_rank: int | None = None) -> RankDistribution:
    """A symmetric quasi-normal distribution for *n_statements* cells.

    The range defaults to +-3 up to 24 statements, +-4 up to 44, +-5 up to
    64 and +-6 beyond.  Cell counts follow a normal curve with every column
    holding at least one cell, e.g. 40 statements over -4..+4 gives
    1-3-5-7-8-7-5-3-1.
    """
    if max_rank is None:
        if n_statements <= 24:
            max_rank = 3
        elif n_statements <= 44:
            max_rank = 4
        elif n_statements <= 64:
            max_rank = 5
        else:
            max_rank = 6
    width = 2 * max_rank + 1
    if n_statements < width:
        raise ValueError(f"{n_statements} statements cannot fill {width} rank columns")

    offsets = np.arange(0, max_rank + 1)
    weights = norm.pdf(offsets, scale=max_rank / 2.0)
    total_weight = weights[0] + 2 * weights[1:].sum()
    raw = weights / total_weight * n_statements
    half = np.maximum(1, np.floor(raw)).astype(int)  # half[0] is the centre column
    remainder = n_statements - (half[0] + 2 * half[1:].sum())

    fractions = raw - np.floor(raw)
    order = [int(k) for k in np.argsort(-fractions[1:]) + 1]
    pick = 0
    while remainder != 0:
        if remainder < 0:
            # Minimum-one bumps overshot; take from the widest column
            widest = int(np.argmax(half))
            if widest == 0:
                half[0] -= 1
                remainder += 1
            else:
                half[widest] -= 1
                remainder += 2
        elif remainder % 2 == 1 or not order:
            half[0] += 1
            remainder -= 1
        else:
            half[order[pick % len(order)]] += 1
            pick += 1
            remainder -= 2

    counts = [int(c) for c in half[::-1]] + [int(c) for c in half[1:]]
    return RankDistribution(min_rank=-max_rank, max_rank=max_rank, counts=counts)
