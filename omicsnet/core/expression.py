"""
AnnData helpers for expression matrices and clinical traits.

Expression tables arrive as samples × features frames keyed by patient ID;
traits arrive as a separate samples × traits frame. ``build_network_adata``
aligns the two by patient ID so every downstream step can rely on
``adata.obs`` being row-aligned with ``adata.X``.
"""

from typing import Optional

import anndata
import numpy as np
import pandas as pd

from omicsnet.core.exceptions import NetworkAnalysisError
from omicsnet.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_SAMPLE_COLUMN = "patient_id"


def _index_by_sample(frame: pd.DataFrame, sample_column: str) -> pd.DataFrame:
    if sample_column in frame.columns:
        frame = frame.set_index(sample_column)
    frame = frame.copy()
    frame.index = frame.index.map(str)
    frame.index.name = sample_column
    if frame.index.has_duplicates:
        duplicates = frame.index[frame.index.duplicated()].unique().tolist()
        raise NetworkAnalysisError(f"Duplicate sample IDs: {duplicates}")
    return frame


def build_network_adata(
    expression: pd.DataFrame,
    traits: Optional[pd.DataFrame] = None,
    sample_column: str = DEFAULT_SAMPLE_COLUMN,
) -> anndata.AnnData:
    """
    Build an AnnData object from an expression table and optional traits.

    Args:
        expression: Samples × features; sample IDs in the index or in
            ``sample_column``
        traits: Samples × traits; sample IDs in the index or in
            ``sample_column``. Samples without a trait row get NaN traits.
        sample_column: Name of the sample ID column

    Returns:
        AnnData with X = expression values, obs = aligned traits

    Raises:
        NetworkAnalysisError: If the expression table is empty, non-numeric,
            or has duplicate sample IDs
    """
    expr = _index_by_sample(expression, sample_column)
    if expr.shape[0] == 0 or expr.shape[1] == 0:
        raise NetworkAnalysisError(
            f"Expression matrix is empty (shape {expr.shape})"
        )

    non_numeric = [
        c for c in expr.columns if not pd.api.types.is_numeric_dtype(expr[c])
    ]
    if non_numeric:
        raise NetworkAnalysisError(
            f"Expression matrix has non-numeric columns: {non_numeric[:10]}"
        )

    if traits is not None:
        trait_frame = _index_by_sample(traits, sample_column)
        unmatched = expr.index.difference(trait_frame.index)
        if len(unmatched) > 0:
            logger.warning(
                f"{len(unmatched)} samples have no trait record: {unmatched.tolist()}"
            )
        obs = trait_frame.reindex(expr.index)
    else:
        obs = pd.DataFrame(index=expr.index)

    var = pd.DataFrame(index=expr.columns.map(str))
    adata = anndata.AnnData(
        X=expr.to_numpy(dtype=np.float64),
        obs=obs,
        var=var,
    )
    logger.info(
        f"Built expression AnnData: {adata.n_obs} samples × {adata.n_vars} features"
    )
    return adata


def expression_frame(adata: anndata.AnnData) -> pd.DataFrame:
    """Return ``adata.X`` as a dense samples × features DataFrame."""
    X = adata.X
    if hasattr(X, "toarray"):
        X = X.toarray()
    return pd.DataFrame(
        np.asarray(X, dtype=np.float64),
        index=adata.obs_names.copy(),
        columns=adata.var_names.copy(),
    )
