"""Tests for unrotated factor extraction."""

from __future__ import annotations

import numpy as np
import pytest

from qanalytics.analysis.correlation import correlate
from qanalytics.analysis.extraction import (
    EXTRACTION_METHODS,
    extract,
    parallel_analysis,
    scree,
    suggest_factor_count,
)
from qanalytics.analysis.models import CorrelationMatrix, SortMatrix
from qanalytics.errors import InvalidFactorCountError, ValidationError


@pytest.fixture
def correlation(two_viewpoint_matrix: SortMatrix) -> CorrelationMatrix:
    return correlate(two_viewpoint_matrix)


# ---------------------------------------------------------------------------
# Principal components
# ---------------------------------------------------------------------------


class TestPrincipalComponents:
    def test_three_factors_shape_and_order(self, correlation: CorrelationMatrix) -> None:
        solution = extract(correlation, 3)
        assert solution.loadings.shape == (20, 3)
        assert solution.eigenvalues.shape == (3,)
        assert list(solution.eigenvalues) == sorted(solution.eigenvalues, reverse=True)
        assert np.all(solution.eigenvalues >= 0.0)
        assert solution.method == "pca"

    def test_spectrum_sums_to_trace(self, correlation: CorrelationMatrix) -> None:
        solution = extract(correlation, 2)
        assert solution.spectrum.shape == (20,)
        assert solution.spectrum.sum() == pytest.approx(correlation.trace, abs=1e-9)

    def test_eigenvalue_is_column_sum_of_squares(self, correlation: CorrelationMatrix) -> None:
        solution = extract(correlation, 3)
        np.testing.assert_allclose(
            np.sum(solution.loadings**2, axis=0), solution.eigenvalues, atol=1e-9
        )

    def test_column_sums_non_negative(self, correlation: CorrelationMatrix) -> None:
        solution = extract(correlation, 3)
        assert np.all(solution.loadings.sum(axis=0) >= 0.0)

    def test_reproduces_correlation_with_all_factors(
        self, correlation: CorrelationMatrix
    ) -> None:
        solution = extract(correlation, 19)
        reproduced = solution.loadings @ solution.loadings.T
        # One component is dropped; the remainder is its rank-one term
        residual = correlation.values - reproduced
        assert np.abs(residual).max() <= solution.spectrum[-1] + 1e-9

    def test_two_viewpoints_dominate(self, correlation: CorrelationMatrix) -> None:
        solution = extract(correlation, 3)
        assert solution.eigenvalues[1] > 2.0
        assert solution.eigenvalues[2] < solution.eigenvalues[1] / 2

    def test_variance_explained(self, correlation: CorrelationMatrix) -> None:
        solution = extract(correlation, 2)
        np.testing.assert_allclose(
            solution.variance_explained, solution.eigenvalues / 20 * 100.0
        )

    def test_deterministic(self, correlation: CorrelationMatrix) -> None:
        first = extract(correlation, 3)
        second = extract(correlation, 3)
        np.testing.assert_array_equal(first.loadings, second.loadings)

    def test_no_warning_for_well_conditioned_input(
        self, correlation: CorrelationMatrix
    ) -> None:
        assert extract(correlation, 2).warnings == ()


class TestClamping:
    def test_negative_eigenvalue_clamped_with_warning(self) -> None:
        # Not positive semi-definite: a valid-looking but inconsistent matrix
        values = np.array(
            [
                [1.0, 0.9, -0.9],
                [0.9, 1.0, 0.9],
                [-0.9, 0.9, 1.0],
            ]
        )
        correlation = CorrelationMatrix(participant_ids=("a", "b", "c"), values=values)
        solution = extract(correlation, 2)
        assert np.all(solution.spectrum >= 0.0)
        assert np.all(solution.eigenvalues >= 0.0)
        assert [w.code for w in solution.warnings] == ["clamped_eigenvalue"]


# ---------------------------------------------------------------------------
# Centroid
# ---------------------------------------------------------------------------


class TestCentroid:
    def test_requested_shape(self, correlation: CorrelationMatrix) -> None:
        solution = extract(correlation, 3, method="centroid")
        assert solution.method == "centroid"
        assert solution.loadings.shape == (20, 3)
        assert list(solution.eigenvalues) == sorted(solution.eigenvalues, reverse=True)

    def test_eigenvalues_are_sums_of_squares(self, correlation: CorrelationMatrix) -> None:
        solution = extract(correlation, 2, method="centroid")
        np.testing.assert_allclose(
            np.sum(solution.loadings**2, axis=0), solution.eigenvalues, atol=1e-12
        )

    def test_first_factor_close_to_principal_component(
        self, correlation: CorrelationMatrix
    ) -> None:
        # Both methods recover the same two-viewpoint space
        pca = extract(correlation, 2)
        centroid = extract(correlation, 2, method="centroid")
        pca_space = pca.loadings @ pca.loadings.T
        centroid_space = centroid.loadings @ centroid.loadings.T
        assert np.abs(pca_space - centroid_space).max() < 0.25

    def test_single_factor_all_positive_when_all_agree(self) -> None:
        values = np.full((4, 4), 0.6)
        np.fill_diagonal(values, 1.0)
        correlation = CorrelationMatrix(participant_ids=tuple("abcd"), values=values)
        solution = extract(correlation, 1, method="centroid")
        np.testing.assert_allclose(solution.loadings[:, 0], np.sqrt(0.6), atol=1e-12)

    def test_reflection_undone_on_loadings(self) -> None:
        values = np.full((4, 4), 0.6)
        np.fill_diagonal(values, 1.0)
        values[3, :3] = values[:3, 3] = -0.6
        correlation = CorrelationMatrix(participant_ids=tuple("abcd"), values=values)
        loadings = extract(correlation, 1, method="centroid").loadings[:, 0]
        assert np.all(loadings[:3] > 0)
        assert loadings[3] < 0
        assert loadings[3] == pytest.approx(-loadings[0])


# ---------------------------------------------------------------------------
# Validation and guidance
# ---------------------------------------------------------------------------


class TestFactorCount:
    def test_factor_count_equal_to_participants_rejected(
        self, correlation: CorrelationMatrix
    ) -> None:
        with pytest.raises(InvalidFactorCountError) as exc_info:
            extract(correlation, 20)
        assert exc_info.value.participant_count == 20

    def test_zero_factors_rejected(self, correlation: CorrelationMatrix) -> None:
        with pytest.raises(InvalidFactorCountError):
            extract(correlation, 0)

    def test_max_factor_count_accepted(self, correlation: CorrelationMatrix) -> None:
        assert extract(correlation, 19).factor_count == 19

    def test_unknown_method_rejected(self, correlation: CorrelationMatrix) -> None:
        with pytest.raises(ValidationError, match="Unknown extraction method"):
            extract(correlation, 2, method="maximum-likelihood")

    def test_methods_closed_set(self) -> None:
        assert set(EXTRACTION_METHODS) == {"pca", "centroid"}

    def test_kaiser_suggestion(self, correlation: CorrelationMatrix) -> None:
        expected = int(np.sum(np.linalg.eigvalsh(correlation.values) > 1.0))
        assert suggest_factor_count(correlation) == max(1, min(expected, 19))

    def test_suggestion_at_least_one(self) -> None:
        correlation = CorrelationMatrix(participant_ids=("a", "b"), values=np.eye(2))
        assert suggest_factor_count(correlation) == 1


class TestScree:
    def test_cumulative_reaches_hundred(self, correlation: CorrelationMatrix) -> None:
        points = scree(correlation)
        assert len(points) == 20
        assert points[0].factor == 1
        assert points[-1].cumulative_variance == pytest.approx(100.0)
        assert [p.eigenvalue for p in points] == sorted(
            (p.eigenvalue for p in points), reverse=True
        )


class TestParallelAnalysis:
    def test_two_viewpoints(self, correlation: CorrelationMatrix) -> None:
        result = parallel_analysis(correlation, 40, simulations=50)
        assert result.suggested == 2
        assert result.simulations == 50
        assert len(result.eigenvalues) == len(result.random_mean) == 20

    def test_three_viewpoints(self, three_viewpoint_matrix: SortMatrix) -> None:
        result = parallel_analysis(correlate(three_viewpoint_matrix), 40, simulations=50)
        assert result.suggested == 3

    def test_seed_is_reproducible(self, correlation: CorrelationMatrix) -> None:
        first = parallel_analysis(correlation, 40, simulations=10, seed=3)
        second = parallel_analysis(correlation, 40, simulations=10, seed=3)
        assert first.random_mean == second.random_mean

    def test_percentile_above_mean(self, correlation: CorrelationMatrix) -> None:
        result = parallel_analysis(correlation, 40, simulations=30)
        assert all(p >= m for p, m in zip(result.random_p95, result.random_mean))

    def test_no_structure_still_suggests_one(self) -> None:
        correlation = CorrelationMatrix(
            participant_ids=tuple(f"p{i}" for i in range(5)), values=np.eye(5)
        )
        assert parallel_analysis(correlation, 40, simulations=20).suggested == 1

    def test_too_few_statements(self, correlation: CorrelationMatrix) -> None:
        with pytest.raises(ValidationError, match="at least 3 statements"):
            parallel_analysis(correlation, 2)

    def test_suggest_with_parallel_rule(self, correlation: CorrelationMatrix) -> None:
        assert suggest_factor_count(correlation, "parallel", n_statements=40, simulations=20) == 2

    def test_parallel_rule_needs_statement_count(self, correlation: CorrelationMatrix) -> None:
        with pytest.raises(ValidationError, match="statement count"):
            suggest_factor_count(correlation, "parallel")

    def test_unknown_rule(self, correlation: CorrelationMatrix) -> None:
        with pytest.raises(ValidationError, match="Unknown factor-count rule"):
            suggest_factor_count(correlation, "scree")
