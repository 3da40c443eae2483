"""Shared test fixtures for Q-Analytics tests.

Synthetic studies are generated from latent viewpoints: each viewpoint is
a random score per statement, and each participant sorts a noisy copy of
one viewpoint onto the forced distribution.  A seeded generator keeps every
fixture deterministic.
"""

from __future__ import annotations

import numpy as np
import pytest

from qanalytics.analysis.models import SortMatrix
from qanalytics.analysis.sort_matrix import build_sort_matrix
from qanalytics.models import RankDistribution, SortSubmission, Statement, StudyDefinition

# -4..+4 over 40 statements
DISTRIBUTION_40 = RankDistribution(min_rank=-4, max_rank=4, counts=[2, 3, 5, 6, 8, 6, 5, 3, 2])

# -2..+2 over 9 statements, for small hand-checkable cases
DISTRIBUTION_9 = RankDistribution(min_rank=-2, max_rank=2, counts=[1, 2, 3, 2, 1])


def forced_sort(scores: np.ndarray, distribution: RankDistribution) -> list[int]:
    """Place statements onto the distribution: highest score, highest rank."""
    cells = np.asarray(distribution.expanded())
    ranks = np.empty(len(scores), dtype=int)
    ranks[np.argsort(-np.asarray(scores), kind="stable")] = cells[::-1]
    return [int(r) for r in ranks]


def make_study(distribution: RankDistribution = DISTRIBUTION_40) -> StudyDefinition:
    n = distribution.total_cells
    return StudyDefinition(
        name="Synthetic study",
        statements=[Statement(id=f"s{i + 1:02d}", text=f"Statement {i + 1}") for i in range(n)],
        distribution=distribution,
    )


def make_submissions(
    study: StudyDefinition,
    members: list[int],
    *,
    noise: float = 0.4,
    seed: int = 7,
) -> list[SortSubmission]:
    """``members[v]`` participants for each latent viewpoint ``v``."""
    rng = np.random.default_rng(seed)
    n = len(study.statements)
    viewpoints = [rng.standard_normal(n) for _ in members]
    submissions: list[SortSubmission] = []
    for v, count in enumerate(members):
        for j in range(count):
            scores = viewpoints[v] + noise * rng.standard_normal(n)
            ranks = forced_sort(scores, study.distribution)
            submissions.append(
                SortSubmission(
                    participant_id=f"v{v + 1}p{j + 1:02d}",
                    ranks=dict(zip(study.statement_ids, ranks)),
                )
            )
    return submissions


@pytest.fixture
def study() -> StudyDefinition:
    """40 statements over -4..+4."""
    return make_study()


@pytest.fixture
def small_study() -> StudyDefinition:
    """9 statements over -2..+2."""
    return make_study(DISTRIBUTION_9)


@pytest.fixture
def two_viewpoint_submissions(study: StudyDefinition) -> list[SortSubmission]:
    """20 participants split evenly between two viewpoints."""
    return make_submissions(study, [10, 10])


@pytest.fixture
def two_viewpoint_matrix(
    study: StudyDefinition, two_viewpoint_submissions: list[SortSubmission]
) -> SortMatrix:
    return build_sort_matrix(study, two_viewpoint_submissions)


@pytest.fixture
def three_viewpoint_matrix(study: StudyDefinition) -> SortMatrix:
    """20 participants over three viewpoints (7 / 7 / 6)."""
    return build_sort_matrix(study, make_submissions(study, [7, 7, 6], seed=11))
