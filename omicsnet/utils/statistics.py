"""
Shared statistical utilities for omicsnet services.

This module provides the correlation and multiple-testing helpers used by the
network construction, trait association and membership scoring steps, so that
every step computes p-values the same way.
"""

from typing import List, Tuple, Union

import numpy as np
from scipy import stats

ArrayLike = Union[float, np.ndarray]


def benjamini_hochberg(p_values: List[float]) -> List[float]:
    """
    Apply Benjamini-Hochberg FDR correction to p-values.

    Args:
        p_values: List of raw p-values to correct

    Returns:
        List of FDR-adjusted p-values (q-values), capped at 1.0

    Example:
        >>> p_values = [0.01, 0.03, 0.05, 0.10, 0.50]
        >>> fdr = benjamini_hochberg(p_values)
        >>> all(f >= p for f, p in zip(fdr, p_values))
        True

    References:
        Benjamini, Y., & Hochberg, Y. (1995). Controlling the false discovery
        rate: a practical and powerful approach to multiple testing.
        Journal of the Royal Statistical Society, Series B, 57(1), 289-300.
    """
    n = len(p_values)
    if n == 0:
        return []

    p = np.asarray(p_values, dtype=float)
    order = np.argsort(p)
    ranked = p[order] * n / np.arange(1, n + 1)

    # q-values must be non-decreasing in p-value order
    ranked = np.minimum.accumulate(ranked[::-1])[::-1]

    fdr = np.empty(n)
    fdr[order] = np.minimum(ranked, 1.0)
    return fdr.tolist()


def correlation_p_value(r: ArrayLike, n: ArrayLike) -> ArrayLike:
    """
    Two-sided Student-t p-value for a Pearson correlation coefficient.

    Uses ``t = r * sqrt((n - 2) / (1 - r^2))`` with ``n - 2`` degrees of
    freedom, the same asymptotic approximation as WGCNA's ``corPvalueStudent``.

    Args:
        r: Correlation coefficient(s)
        n: Number of observations used for each coefficient

    Returns:
        p-value(s) with the same shape as ``r``
    """
    r = np.asarray(r, dtype=float)
    n = np.asarray(n, dtype=float)
    df = n - 2

    with np.errstate(divide="ignore", invalid="ignore"):
        r_clipped = np.clip(r, -1.0, 1.0)
        t_stat = r_clipped * np.sqrt(df / (1.0 - r_clipped**2))

    p = 2.0 * stats.t.sf(np.abs(t_stat), df)
    # |r| == 1 gives infinite t
    p = np.where(np.abs(r_clipped) >= 1.0, 0.0, p)
    p = np.where(df > 0, p, np.nan)

    if p.ndim == 0:
        return float(p)
    return p


def pairwise_complete_correlation(
    x: np.ndarray,
    y: np.ndarray,
    method: str = "pearson",
) -> Tuple[float, int]:
    """
    Correlation of two vectors over their pairwise-complete observations.

    Args:
        x: First vector
        y: Second vector (same length)
        method: 'pearson' or 'spearman'

    Returns:
        Tuple of (correlation, number of complete observations). The
        correlation is NaN when either vector is constant over the complete
        observations or fewer than two observations remain.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    mask = ~(np.isnan(x) | np.isnan(y))
    n = int(mask.sum())
    if n < 2:
        return float("nan"), n

    if method not in ("pearson", "spearman"):
        raise ValueError(f"Unknown correlation method: {method}")

    xv = x[mask]
    yv = y[mask]
    # scipy warns and returns NaN on constant input
    if np.ptp(xv) == 0 or np.ptp(yv) == 0:
        return float("nan"), n

    if method == "spearman":
        r, _ = stats.spearmanr(xv, yv)
    else:
        r, _ = stats.pearsonr(xv, yv)
    return float(r), n


def column_correlation(
    X: np.ndarray,
    Y: np.ndarray,
    method: str = "pearson",
) -> np.ndarray:
    """
    Correlation between every column of ``X`` and every column of ``Y``.

    Both matrices must be complete (no NaN) and share the row dimension.
    Constant columns produce NaN entries; callers decide how to report them.

    Returns:
        Array of shape (X.shape[1], Y.shape[1])
    """
    X = np.asarray(X, dtype=float)
    Y = np.asarray(Y, dtype=float)
    if method == "spearman":
        X = np.apply_along_axis(stats.rankdata, 0, X)
        Y = np.apply_along_axis(stats.rankdata, 0, Y)
    elif method != "pearson":
        raise ValueError(f"Unknown correlation method: {method}")

    Xc = X - X.mean(axis=0)
    Yc = Y - Y.mean(axis=0)
    x_norm = np.sqrt((Xc**2).sum(axis=0))
    y_norm = np.sqrt((Yc**2).sum(axis=0))

    with np.errstate(divide="ignore", invalid="ignore"):
        corr = (Xc.T @ Yc) / np.outer(x_norm, y_norm)
    corr[(x_norm == 0)[:, None] | (y_norm == 0)[None, :]] = np.nan
    return np.clip(corr, -1.0, 1.0)
