"""Exception taxonomy for the analysis engine.

Structural problems (bad input, bad arguments, illegal state transitions)
are raised.  Numerical caveats are never raised; they travel with results
as :class:`qanalytics.analysis.models.AnalysisWarning` values.
"""

from __future__ import annotations


class QAnalyticsError(Exception):
    """Base class for every error the engine raises on purpose."""


class ValidationError(QAnalyticsError, ValueError):
    """Sort submissions are malformed, incomplete, or break the distribution.

    ``problems`` maps participant id to a list of human-readable reasons
    so the caller can report every offending submission at once.
    """

    def __init__(self, message: str, problems: dict[str, list[str]] | None = None) -> None:
        super().__init__(message)
        self.problems: dict[str, list[str]] = problems or {}


class DegenerateInputError(QAnalyticsError):
    """A participant's rank vector has zero variance."""

    def __init__(self, participant_id: str) -> None:
        super().__init__(
            f"Participant {participant_id!r} has zero rank variance;"
            " correlation is undefined"
        )
        self.participant_id = participant_id


class InvalidFactorCountError(QAnalyticsError, ValueError):
    """Requested factor count is outside ``1 <= k < participants``."""

    def __init__(self, factor_count: int, participant_count: int) -> None:
        super().__init__(
            f"Factor count must be between 1 and {participant_count - 1}"
            f" for {participant_count} participants (got {factor_count})"
        )
        self.factor_count = factor_count
        self.participant_count = participant_count


class RotationError(QAnalyticsError, ValueError):
    """Rotation arguments are invalid (bad factor indices, unknown method)."""


class EmptyHistoryError(QAnalyticsError):
    """Undo or redo requested with nothing to undo or redo."""


class ConcurrencyConflictError(QAnalyticsError):
    """A mutating command reached a session that is finalized."""
