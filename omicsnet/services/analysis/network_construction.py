"""
Correlation network construction: adjacency, topological overlap, and
soft-threshold power selection.

These are the numerical building blocks of the co-expression network. They
operate on plain numpy arrays (samples × variables) and are wrapped with
AnnData handling and provenance by ``CoexpressionNetworkService``.
"""

import warnings
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats
from sklearn.linear_model import LinearRegression

from omicsnet.config.constants import (
    DEFAULT_R_SQUARED_CUTOFF,
    DEFAULT_RELAXED_R_SQUARED_CUTOFF,
    DEFAULT_TOM_BLOCK_SIZE,
    SCALE_FREE_N_BREAKS,
    TOM_DENOMINATOR_EPS,
    VALID_CORRELATION_METHODS,
    VALID_NETWORK_TYPES,
    VALID_OVERLAP_TYPES,
)
from omicsnet.core.exceptions import (
    DegenerateColumnError,
    NetworkAnalysisError,
    NoScaleFreeFitWarning,
)
from omicsnet.utils.logger import get_logger

logger = get_logger(__name__)

# Upper bound on elements of the (rows × n × n) temporary used by the
# min-overlap kernel
MAX_BLOCK_ELEMENTS = 2**24


def correlation_matrix(
    X: np.ndarray,
    method: str = "pearson",
    names: Optional[Sequence[str]] = None,
) -> np.ndarray:
    """
    Variable × variable correlation matrix of a samples × variables matrix.

    Args:
        X: Expression matrix (samples × variables), no missing values
        method: 'pearson' or 'spearman'
        names: Variable names used in error messages

    Returns:
        Symmetric correlation matrix with unit diagonal

    Raises:
        NetworkAnalysisError: On missing values or an unknown method
        DegenerateColumnError: If any variable has zero variance
    """
    if method not in VALID_CORRELATION_METHODS:
        raise NetworkAnalysisError(f"Unknown correlation method: {method}")

    X = np.asarray(X, dtype=np.float64)
    if X.ndim != 2 or X.shape[1] < 2:
        raise NetworkAnalysisError(
            f"Need a 2-D matrix with at least 2 variables (got shape {X.shape})"
        )
    if np.isnan(X).any():
        raise NetworkAnalysisError(
            "Expression matrix contains missing values; impute before network construction"
        )

    if names is None:
        names = [str(i) for i in range(X.shape[1])]

    constant = np.flatnonzero(np.ptp(X, axis=0) == 0)
    if constant.size:
        bad = [str(names[i]) for i in constant]
        raise DegenerateColumnError(
            f"{len(bad)} zero-variance columns reached network construction: {bad[:10]}",
            columns=bad,
        )

    if method == "spearman":
        X = stats.rankdata(X, axis=0)

    corr = np.corrcoef(X, rowvar=False)
    if np.isnan(corr).any():
        bad_idx = np.flatnonzero(np.isnan(corr).any(axis=0))
        bad = [str(names[i]) for i in bad_idx]
        raise DegenerateColumnError(
            f"Undefined correlation for columns: {bad[:10]}", columns=bad
        )

    corr = (corr + corr.T) / 2.0
    np.fill_diagonal(corr, 1.0)
    return np.clip(corr, -1.0, 1.0)


def adjacency_from_correlation(
    corr: np.ndarray,
    power: float,
    network_type: str = "unsigned",
) -> np.ndarray:
    """
    Soft-threshold a correlation matrix.

    unsigned: ``|C| ** power``; signed: ``((1 + C) / 2) ** power``.
    """
    if power <= 0:
        raise NetworkAnalysisError(f"Soft-threshold power must be positive (got {power})")
    if network_type not in VALID_NETWORK_TYPES:
        raise NetworkAnalysisError(f"Unknown network type: {network_type}")

    if network_type == "unsigned":
        base = np.abs(corr)
    else:
        base = (1.0 + corr) / 2.0

    adjacency = np.power(np.clip(base, 0.0, 1.0), power)
    np.fill_diagonal(adjacency, 1.0)
    return adjacency


def build_adjacency(
    X: np.ndarray,
    power: float,
    network_type: str = "unsigned",
    method: str = "pearson",
    names: Optional[Sequence[str]] = None,
) -> np.ndarray:
    """
    Adjacency matrix of a samples × variables expression matrix.

    Returns:
        Symmetric variables × variables matrix with entries in [0, 1] and
        unit diagonal
    """
    corr = correlation_matrix(X, method=method, names=names)
    return adjacency_from_correlation(corr, power, network_type)


def connectivity(adjacency: np.ndarray) -> np.ndarray:
    """Whole-network connectivity ``k_i = sum_{j != i} A_ij``."""
    return adjacency.sum(axis=1) - np.diag(adjacency)


def topological_overlap(
    adjacency: np.ndarray,
    overlap: str = "min",
    block_size: int = DEFAULT_TOM_BLOCK_SIZE,
) -> np.ndarray:
    """
    Topological overlap matrix.

    ``TOM_ij = (l_ij + a_ij) / (min(k_i, k_j) + 1 - a_ij)`` where ``l_ij`` is
    the shared-neighbour strength over k != i, j: ``sum_k min(a_ik, a_jk)``
    for ``overlap="min"`` or ``sum_k a_ik a_kj`` for ``overlap="product"``.
    Pairs whose denominator vanishes get overlap 0; the diagonal is 1.

    Args:
        adjacency: Symmetric adjacency with entries in [0, 1]
        overlap: 'min' or 'product'
        block_size: Maximum rows processed per block by the min kernel

    Returns:
        Symmetric TOM with entries in [0, 1]
    """
    if overlap not in VALID_OVERLAP_TYPES:
        raise NetworkAnalysisError(f"Unknown overlap type: {overlap}")

    A = np.array(adjacency, dtype=np.float64, copy=True)
    n = A.shape[0]
    if A.ndim != 2 or A.shape[1] != n:
        raise NetworkAnalysisError(f"Adjacency must be square (got shape {A.shape})")

    # zero diagonal drops the k == i and k == j terms from every sum
    np.fill_diagonal(A, 0.0)
    k = A.sum(axis=1)

    if overlap == "product":
        shared = A @ A
    else:
        rows_per_block = max(1, min(block_size, MAX_BLOCK_ELEMENTS // max(n * n, 1)))
        shared = np.empty((n, n), dtype=np.float64)
        for start in range(0, n, rows_per_block):
            stop = min(start + rows_per_block, n)
            shared[start:stop] = np.minimum(A[start:stop, None, :], A[None, :, :]).sum(
                axis=2
            )

    numerator = shared + A
    denominator = np.minimum.outer(k, k) + 1.0 - A

    tom = np.zeros_like(numerator)
    valid = denominator > TOM_DENOMINATOR_EPS
    tom[valid] = numerator[valid] / denominator[valid]

    tom = (tom + tom.T) / 2.0
    tom = np.clip(tom, 0.0, 1.0)
    np.fill_diagonal(tom, 1.0)
    return tom


def tom_dissimilarity(tom: np.ndarray) -> np.ndarray:
    """``1 - TOM`` with an exact zero diagonal."""
    dissimilarity = 1.0 - tom
    np.fill_diagonal(dissimilarity, 0.0)
    return dissimilarity


def scale_free_fit_index(k: np.ndarray, n_breaks: int = SCALE_FREE_N_BREAKS) -> Dict[str, float]:
    """
    Scale-free topology fit of a connectivity vector.

    Connectivity is discretised into ``n_breaks`` equal-width bins;
    log10(bin frequency) is regressed on log10(mean connectivity in the bin).
    Empty bins use the bin midpoint and frequency 0 (offset by 1e-9).

    Returns:
        Dict with 'r_squared', 'slope' and 'signed_r_squared'
        (``-sign(slope) * R^2``; positive for scale-free-like networks)
    """
    k = np.asarray(k, dtype=np.float64)
    if k.size < 2 or np.ptp(k) == 0:
        return {"r_squared": 0.0, "slope": 0.0, "signed_r_squared": 0.0}

    breaks = np.linspace(k.min(), k.max(), n_breaks + 1)
    midpoints = (breaks[:-1] + breaks[1:]) / 2.0
    bins = np.clip(np.digitize(k, breaks[1:-1], right=True), 0, n_breaks - 1)

    counts = np.bincount(bins, minlength=n_breaks).astype(np.float64)
    sums = np.bincount(bins, weights=k, minlength=n_breaks)
    with np.errstate(invalid="ignore", divide="ignore"):
        mean_k = np.where(counts > 0, sums / counts, midpoints)
    mean_k = np.where(mean_k == 0, midpoints, mean_k)

    usable = mean_k > 0
    if usable.sum() < 2:
        return {"r_squared": 0.0, "slope": 0.0, "signed_r_squared": 0.0}

    log_k = np.log10(mean_k[usable]).reshape(-1, 1)
    log_p = np.log10(counts[usable] / k.size + 1e-9)

    reg = LinearRegression()
    reg.fit(log_k, log_p)
    r_squared = float(reg.score(log_k, log_p))
    slope = float(reg.coef_[0])

    return {
        "r_squared": r_squared,
        "slope": slope,
        "signed_r_squared": float(-np.sign(slope) * r_squared),
    }


@dataclass
class SoftThresholdResult:
    """Outcome of soft-threshold power selection."""

    selected_power: Optional[float]
    selection_rule: str
    power_table: pd.DataFrame

    def fit_at(self, power: float) -> Dict[str, Any]:
        row = self.power_table.loc[self.power_table["power"] == power]
        if row.empty:
            raise KeyError(f"Power {power} was not evaluated")
        return row.iloc[0].to_dict()


def pick_soft_threshold(
    X: np.ndarray,
    powers: Optional[List[float]] = None,
    network_type: str = "unsigned",
    method: str = "pearson",
    r_squared_cutoff: float = DEFAULT_R_SQUARED_CUTOFF,
    relaxed_r_squared_cutoff: float = DEFAULT_RELAXED_R_SQUARED_CUTOFF,
    names: Optional[Sequence[str]] = None,
) -> SoftThresholdResult:
    """
    Evaluate candidate soft-threshold powers against the scale-free criterion.

    Selection policy:
        1. The smallest power with signed R² >= ``r_squared_cutoff``.
        2. Otherwise, among powers with signed R² >= ``relaxed_r_squared_cutoff``,
           the one with the highest mean connectivity.
        3. Otherwise no power is selected: ``NoScaleFreeFitWarning`` is emitted
           and ``selected_power`` is None, so the caller must choose one.

    The returned table is a diagnostic for the analyst; the selection is a
    suggestion to be confirmed against it.
    """
    if powers is None:
        powers = list(range(1, 21))
    powers = sorted(powers)

    corr = correlation_matrix(X, method=method, names=names)

    rows = []
    for power in powers:
        adjacency = adjacency_from_correlation(corr, power, network_type)
        k = connectivity(adjacency)
        fit = scale_free_fit_index(k)
        rows.append(
            {
                "power": power,
                "r_squared": fit["r_squared"],
                "slope": fit["slope"],
                "signed_r_squared": fit["signed_r_squared"],
                "mean_connectivity": float(np.mean(k)),
                "median_connectivity": float(np.median(k)),
                "max_connectivity": float(np.max(k)),
            }
        )
    table = pd.DataFrame(rows)

    passing = table[table["signed_r_squared"] >= r_squared_cutoff]
    if not passing.empty:
        power = passing["power"].iloc[0].item()
        logger.info(
            f"Selected soft power {power} (signed R² "
            f"{passing['signed_r_squared'].iloc[0]:.3f} >= {r_squared_cutoff})"
        )
        return SoftThresholdResult(power, "first_above_cutoff", table)

    relaxed = table[table["signed_r_squared"] >= relaxed_r_squared_cutoff]
    if not relaxed.empty:
        best = relaxed.loc[relaxed["mean_connectivity"].idxmax()]
        logger.warning(
            f"No power reached signed R² {r_squared_cutoff}; using power {best['power']} "
            f"(highest mean connectivity with R² >= {relaxed_r_squared_cutoff})"
        )
        return SoftThresholdResult(
            best["power"].item(), "max_connectivity_relaxed", table
        )

    message = (
        f"No candidate power in {powers[0]}..{powers[-1]} reached a signed scale-free "
        f"R² of {relaxed_r_squared_cutoff}; inspect the fit table and pass a power explicitly"
    )
    logger.warning(message)
    warnings.warn(message, NoScaleFreeFitWarning, stacklevel=2)
    return SoftThresholdResult(None, "none", table)
