"""
Relating modules and variables to clinical traits.

Module-trait association correlates each module eigengene with each trait;
module membership (kME) correlates each variable with each eigengene; trait
significance correlates each variable with one trait. All p-values use the
Student-t approximation with n - 2 degrees of freedom.
"""

from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np
import pandas as pd

from omicsnet.config.constants import (
    HUB_QUANTILE,
    MIN_SAMPLES_FOR_CORRELATION,
    UNASSIGNED_MODULE,
)
from omicsnet.core.exceptions import ConstantTraitError, NetworkAnalysisError
from omicsnet.utils.logger import get_logger
from omicsnet.utils.statistics import (
    benjamini_hochberg,
    column_correlation,
    correlation_p_value,
    pairwise_complete_correlation,
)

logger = get_logger(__name__)


def _check_trait(name: str, values: pd.Series) -> int:
    observed = values.dropna()
    n = int(observed.shape[0])
    if n > 0 and observed.nunique() <= 1:
        raise ConstantTraitError(
            f"Trait '{name}' is constant over its {n} observed samples "
            f"(value {observed.iloc[0]!r}); its correlations are undefined",
            trait=name,
        )
    if n < MIN_SAMPLES_FOR_CORRELATION:
        raise NetworkAnalysisError(
            f"Trait '{name}' has {n} observed samples; at least "
            f"{MIN_SAMPLES_FOR_CORRELATION} are required"
        )
    return n


def _check_aligned(left: pd.DataFrame, right: pd.DataFrame, what: str) -> None:
    if not left.index.equals(right.index):
        raise NetworkAnalysisError(
            f"{what} are not sample-aligned with the expression data "
            f"({len(left.index)} vs {len(right.index)} samples or differing order)"
        )


@dataclass
class ModuleTraitAssociation:
    """Modules × traits tables of correlation, p-value, sample count and FDR."""

    correlation: pd.DataFrame
    p_value: pd.DataFrame
    n_obs: pd.DataFrame
    fdr: pd.DataFrame

    def to_long(self) -> pd.DataFrame:
        """One row per (module, trait) pair, ordered by p-value."""
        long = pd.DataFrame(
            {
                "correlation": self.correlation.stack(),
                "p_value": self.p_value.stack(),
                "n_obs": self.n_obs.stack(),
                "fdr": self.fdr.stack(),
            }
        )
        long.index.names = ["module", "trait"]
        return long.reset_index().sort_values("p_value", kind="mergesort").reset_index(
            drop=True
        )


def correlate_eigengenes_with_traits(
    eigengenes: pd.DataFrame,
    traits: pd.DataFrame,
    method: str = "pearson",
) -> ModuleTraitAssociation:
    """
    Correlate every eigengene with every trait.

    Trait values may be missing; each pair uses its pairwise-complete samples
    and that sample count for its p-value.

    Args:
        eigengenes: Samples × modules
        traits: Samples × traits, same index as ``eigengenes``
        method: 'pearson' or 'spearman'

    Raises:
        ConstantTraitError: If a trait has zero variance over observed samples
        NetworkAnalysisError: On misaligned samples or too few observations
    """
    _check_aligned(eigengenes, traits, "Traits")
    if eigengenes.isna().any().any():
        raise NetworkAnalysisError("Module eigengenes must not contain missing values")

    for trait in traits.columns:
        _check_trait(str(trait), traits[trait])

    corr = pd.DataFrame(index=eigengenes.columns, columns=traits.columns, dtype=float)
    n_obs = pd.DataFrame(index=eigengenes.columns, columns=traits.columns, dtype=float)

    for module in eigengenes.columns:
        me = eigengenes[module].to_numpy(dtype=float)
        for trait in traits.columns:
            r, n = pairwise_complete_correlation(
                me, traits[trait].to_numpy(dtype=float), method=method
            )
            corr.loc[module, trait] = r
            n_obs.loc[module, trait] = n

    p_value = pd.DataFrame(
        correlation_p_value(corr.to_numpy(), n_obs.to_numpy()),
        index=corr.index,
        columns=corr.columns,
    )

    flat = p_value.to_numpy().ravel()
    fdr = pd.DataFrame(
        np.asarray(benjamini_hochberg(flat.tolist())).reshape(p_value.shape),
        index=p_value.index,
        columns=p_value.columns,
    )

    return ModuleTraitAssociation(
        correlation=corr,
        p_value=p_value,
        n_obs=n_obs.astype(int),
        fdr=fdr,
    )


def module_membership(
    expression: pd.DataFrame,
    eigengenes: pd.DataFrame,
    method: str = "pearson",
) -> Dict[str, pd.DataFrame]:
    """
    Correlation of every variable with every module eigengene (kME).

    Returns:
        Dict with 'membership' and 'p_value', both variables × modules
    """
    _check_aligned(expression, eigengenes, "Eigengenes")
    mm = column_correlation(expression.to_numpy(), eigengenes.to_numpy(), method=method)
    p = correlation_p_value(mm, expression.shape[0])
    return {
        "membership": pd.DataFrame(mm, index=expression.columns, columns=eigengenes.columns),
        "p_value": pd.DataFrame(p, index=expression.columns, columns=eigengenes.columns),
    }


def trait_significance(
    expression: pd.DataFrame,
    trait: pd.Series,
    method: str = "pearson",
) -> pd.DataFrame:
    """
    Correlation of every variable with one trait (gene significance).

    Samples with a missing trait value are dropped.

    Returns:
        Variables × ['significance', 'p_value', 'n_obs']

    Raises:
        ConstantTraitError: If the trait has zero variance over observed samples
    """
    trait_frame = trait.to_frame()
    _check_aligned(expression, trait_frame, "Trait")
    name = str(trait.name)
    n = _check_trait(name, trait)

    observed = trait.notna().to_numpy()
    gs = column_correlation(
        expression.to_numpy()[observed],
        trait.to_numpy(dtype=float)[observed].reshape(-1, 1),
        method=method,
    )[:, 0]

    n_undefined = int(np.isnan(gs).sum())
    if n_undefined:
        logger.warning(
            f"{n_undefined} variables are constant over the {n} samples with "
            f"'{name}' observed; their trait significance is undefined"
        )

    return pd.DataFrame(
        {
            "significance": gs,
            "p_value": correlation_p_value(gs, n),
            "n_obs": n,
        },
        index=expression.columns,
    )


def hub_flags(
    labels: pd.Series,
    membership: pd.DataFrame,
    quantile: float = HUB_QUANTILE,
) -> pd.Series:
    """
    Flag variables in the top ``quantile`` of |kME| within their own module.

    Unassigned variables are never hubs.
    """
    is_hub = pd.Series(False, index=labels.index)
    for module in labels.unique():
        if module == UNASSIGNED_MODULE or module not in membership.columns:
            continue
        members = labels.index[labels == module]
        kme = membership.loc[members, module].abs()
        is_hub.loc[members] = kme >= kme.quantile(quantile)
    return is_hub


def membership_table(
    labels: pd.Series,
    membership: pd.DataFrame,
    membership_p: pd.DataFrame,
    module: int,
    significance: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """
    Members of one module ranked by |module membership|, then |trait significance|.

    Returns:
        DataFrame indexed by variable with 'module_membership', 'mm_p_value'
        and, when ``significance`` is given, 'trait_significance' and
        'gs_p_value'
    """
    if module not in membership.columns:
        raise NetworkAnalysisError(
            f"Module {module} not found; available modules: {list(membership.columns)}"
        )

    members = labels.index[labels == module]
    table = pd.DataFrame(
        {
            "module_membership": membership.loc[members, module],
            "mm_p_value": membership_p.loc[members, module],
        }
    )
    sort_cols = ["abs_mm"]
    table["abs_mm"] = table["module_membership"].abs()
    if significance is not None:
        table["trait_significance"] = significance.loc[members, "significance"]
        table["gs_p_value"] = significance.loc[members, "p_value"]
        table["abs_gs"] = table["trait_significance"].abs()
        sort_cols.append("abs_gs")

    table = table.sort_values(sort_cols, ascending=False, kind="mergesort")
    return table.drop(columns=[c for c in ("abs_mm", "abs_gs") if c in table.columns])
