"""
Unit tests for shared statistical utilities.

Tests Benjamini-Hochberg correction, Student-t correlation p-values and the
pairwise-complete / column-wise correlation helpers.
"""

import numpy as np
import pytest
from scipy import stats

from omicsnet.utils.statistics import (
    benjamini_hochberg,
    column_correlation,
    correlation_p_value,
    pairwise_complete_correlation,
)


class TestBenjaminiHochberg:
    """Test suite for FDR correction."""

    def test_known_values(self):
        """Test adjusted values against a hand-computed example."""
        fdr = benjamini_hochberg([0.01, 0.04, 0.03, 0.5])

        assert fdr == pytest.approx([0.04, 0.04 * 4 / 3, 0.04 * 4 / 3, 0.5])

    def test_fdr_not_below_raw_p(self):
        """Test that q-values are never smaller than p-values and capped at 1."""
        p_values = [0.001, 0.01, 0.02, 0.05, 0.1, 0.5, 0.9]
        fdr = benjamini_hochberg(p_values)

        assert len(fdr) == len(p_values)
        assert all(f >= p for f, p in zip(fdr, p_values))
        assert all(f <= 1.0 for f in fdr)

    def test_monotone_in_p_order(self):
        """Test that q-values are non-decreasing when sorted by p-value."""
        rng = np.random.RandomState(0)
        p_values = rng.uniform(size=50).tolist()
        fdr = np.array(benjamini_hochberg(p_values))
        order = np.argsort(p_values)

        assert np.all(np.diff(fdr[order]) >= -1e-12)

    def test_empty(self):
        """Test FDR correction with empty list."""
        assert benjamini_hochberg([]) == []


class TestCorrelationPValue:
    """Test suite for Student-t correlation p-values."""

    def test_matches_scipy_pearson(self):
        """Test agreement with scipy's exact Pearson test."""
        rng = np.random.RandomState(1)
        x = rng.randn(25)
        y = 0.4 * x + rng.randn(25)
        result = stats.pearsonr(x, y)

        p = correlation_p_value(result[0], 25)

        assert p == pytest.approx(result[1], rel=1e-6)

    def test_zero_correlation(self):
        """Test that r = 0 gives p = 1."""
        assert correlation_p_value(0.0, 30) == pytest.approx(1.0)

    def test_perfect_correlation(self):
        """Test that |r| = 1 gives p = 0."""
        assert correlation_p_value(1.0, 10) == 0.0
        assert correlation_p_value(-1.0, 10) == 0.0

    def test_too_few_observations(self):
        """Test that n <= 2 gives NaN."""
        assert np.isnan(correlation_p_value(0.5, 2))

    def test_vectorised(self):
        """Test array input with per-entry sample sizes."""
        r = np.array([[0.1, 0.5], [0.9, 0.0]])
        n = np.array([[40, 40], [10, 2]])

        p = correlation_p_value(r, n)

        assert p.shape == (2, 2)
        assert p[0, 0] > p[0, 1]
        assert np.isnan(p[1, 1])

    def test_smaller_n_gives_larger_p(self):
        """Test that the same r is less significant with fewer samples."""
        assert correlation_p_value(0.4, 12) > correlation_p_value(0.4, 40)


class TestPairwiseCompleteCorrelation:
    """Test suite for NaN-aware correlation of two vectors."""

    def test_ignores_missing_pairs(self):
        """Test that only complete pairs are used and counted."""
        x = np.array([1.0, 2.0, 3.0, np.nan, 5.0, 6.0])
        y = np.array([2.0, 4.0, 6.0, 8.0, np.nan, 12.0])

        r, n = pairwise_complete_correlation(x, y)

        assert n == 4
        assert r == pytest.approx(1.0)

    def test_spearman(self):
        """Test rank correlation of a monotone non-linear relation."""
        x = np.arange(1.0, 11.0)
        r, n = pairwise_complete_correlation(x, x**3, method="spearman")

        assert n == 10
        assert r == pytest.approx(1.0)

    @pytest.mark.parametrize(
        "method, reference", [("pearson", stats.pearsonr), ("spearman", stats.spearmanr)]
    )
    def test_matches_scipy_on_complete_pairs(self, method, reference):
        rng = np.random.RandomState(5)
        x = rng.randn(30)
        y = 0.5 * x + rng.randn(30)
        x[[2, 9]] = np.nan
        y[[9, 17, 21]] = np.nan
        mask = ~(np.isnan(x) | np.isnan(y))

        r, n = pairwise_complete_correlation(x, y, method=method)

        assert n == 26
        assert r == pytest.approx(reference(x[mask], y[mask])[0])

    def test_constant_vector(self):
        """Test that a constant vector gives NaN."""
        r, n = pairwise_complete_correlation(np.ones(5), np.arange(5.0))

        assert np.isnan(r)
        assert n == 5

    def test_unknown_method(self):
        """Test that an unknown method is rejected."""
        with pytest.raises(ValueError, match="Unknown correlation method"):
            pairwise_complete_correlation(np.arange(5.0), np.arange(5.0), method="kendall")


class TestColumnCorrelation:
    """Test suite for matrix column correlations."""

    def test_matches_numpy(self):
        """Test agreement with numpy's correlation matrix."""
        rng = np.random.RandomState(2)
        X = rng.randn(30, 4)
        Y = rng.randn(30, 3)

        corr = column_correlation(X, Y)
        expected = np.corrcoef(np.hstack([X, Y]), rowvar=False)[:4, 4:]

        assert corr.shape == (4, 3)
        np.testing.assert_allclose(corr, expected, atol=1e-10)

    def test_constant_column_is_nan(self):
        """Test that constant columns produce NaN rather than an error."""
        X = np.column_stack([np.arange(10.0), np.ones(10)])
        Y = np.arange(10.0).reshape(-1, 1)

        corr = column_correlation(X, Y)

        assert corr[0, 0] == pytest.approx(1.0)
        assert np.isnan(corr[1, 0])
