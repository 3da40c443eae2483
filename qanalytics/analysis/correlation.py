"""Participant-by-participant Pearson correlation."""

from __future__ import annotations

import logging

import numpy as np

from qanalytics.analysis.models import CorrelationMatrix, SortMatrix
from qanalytics.errors import DegenerateInputError

logger = logging.getLogger(__name__)


def correlate(matrix: SortMatrix) -> CorrelationMatrix:
    """Correlate every pair of participants' rank vectors.

    Standard Pearson product-moment correlation over the statement set,
    accumulated in float64.  The result is symmetrized by averaging
    ``(i, j)`` and ``(j, i)``, clipped to [-1, 1], and given an exact unit
    diagonal.

    Raises:
        DegenerateInputError: a participant's ranks have zero variance.
    """
    ranks = matrix.ranks.astype(np.float64)
    centred = ranks - ranks.mean(axis=1, keepdims=True)
    norms = np.sqrt(np.sum(centred * centred, axis=1))

    for pid, n in zip(matrix.participant_ids, norms):
        if n == 0.0:
            raise DegenerateInputError(pid)

    unit = centred / norms[:, None]
    values = unit @ unit.T
    values = (values + values.T) / 2.0
    np.clip(values, -1.0, 1.0, out=values)
    np.fill_diagonal(values, 1.0)

    logger.debug(
        "Correlated %d participants over %d statements",
        matrix.n_participants,
        matrix.n_statements,
    )
    return CorrelationMatrix(participant_ids=matrix.participant_ids, values=values)

