"""
Feature filtering service for removing low-information columns before network
construction.

Correlation networks are undefined for constant features and dominated by
noise for near-constant ones, so this step runs before any adjacency is built.
It also provides the missing-value / constant-column quality report used to
evaluate freshly loaded omics tables.

All analysis methods return 3-tuples (AnnData, Dict, AnalysisStep) for
provenance tracking.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import anndata
import numpy as np
import pandas as pd

from omicsnet.core.analysis_ir import AnalysisStep, ParameterSpec
from omicsnet.core.exceptions import EmptyFeatureSetError, NetworkAnalysisError
from omicsnet.core.expression import expression_frame
from omicsnet.utils.logger import get_logger

logger = get_logger(__name__)

# Removal reasons, in the order they are applied
REASON_EXCLUDED = "excluded"
REASON_FEW_DISTINCT = "few_distinct_values"
REASON_LOW_VARIANCE = "low_variance"
REASON_NEAR_ZERO_VARIANCE = "near_zero_variance"


@dataclass
class FeatureFilterResult:
    """Filtered matrix plus an audit trail of removed features."""

    filtered: pd.DataFrame
    removed: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def removed_features(self) -> List[str]:
        return [f for ids in self.removed.values() for f in ids]


def _near_zero_variance(column: np.ndarray, freq_cut: float, unique_cut: float) -> bool:
    values = column[~np.isnan(column)]
    if values.size == 0:
        return True
    _, counts = np.unique(values, return_counts=True)
    if counts.size < 2:
        return True
    counts = np.sort(counts)[::-1]
    freq_ratio = counts[0] / counts[1]
    percent_unique = 100.0 * counts.size / values.size
    return freq_ratio > freq_cut and percent_unique <= unique_cut


def filter_feature_frame(
    data: pd.DataFrame,
    min_distinct_values: int = 2,
    min_variance: Optional[float] = None,
    near_zero_variance: bool = False,
    freq_cut: float = 95 / 5,
    unique_cut: float = 10.0,
    exclude: Optional[List[str]] = None,
) -> FeatureFilterResult:
    """
    Remove low-information columns from a samples × features frame.

    Missing values are ignored when counting distinct values and computing
    variance, so a column that is constant apart from NaN is still constant.

    Args:
        data: Samples × features
        min_distinct_values: Keep columns with at least this many distinct values
        min_variance: Drop columns whose sample variance is below this value
        near_zero_variance: Apply the frequency-ratio / percent-unique rule
        freq_cut: Ratio of most to second-most common value above which a
            column counts as near-zero variance
        unique_cut: Percent of distinct values at or below which a column
            counts as near-zero variance
        exclude: Feature IDs removed unconditionally (unknown IDs are ignored
            with a warning)

    Returns:
        FeatureFilterResult with the filtered frame and removed IDs by reason

    Raises:
        EmptyFeatureSetError: If no column survives filtering
    """
    removed: Dict[str, List[str]] = {}
    keep = pd.Series(True, index=data.columns)

    if exclude:
        exclude_set = set(exclude)
        unknown = sorted(exclude_set - set(map(str, data.columns)))
        if unknown:
            logger.warning(f"{len(unknown)} excluded features not present: {unknown[:10]}")
        mask = data.columns.map(lambda c: str(c) in exclude_set).to_numpy(dtype=bool)
        removed[REASON_EXCLUDED] = [str(c) for c in data.columns[mask]]
        keep &= ~mask

    values = data.to_numpy(dtype=np.float64)

    n_distinct = data.nunique(axis=0, dropna=True)
    few = keep & (n_distinct < min_distinct_values)
    removed[REASON_FEW_DISTINCT] = [str(c) for c in data.columns[few.to_numpy()]]
    keep &= ~few

    if min_variance is not None:
        with np.errstate(invalid="ignore"):
            variance = pd.Series(np.nanvar(values, axis=0, ddof=1), index=data.columns)
        low = keep & (variance.fillna(0.0) < min_variance)
        removed[REASON_LOW_VARIANCE] = [str(c) for c in data.columns[low.to_numpy()]]
        keep &= ~low

    if near_zero_variance:
        nzv = pd.Series(
            [
                _near_zero_variance(values[:, j], freq_cut, unique_cut)
                for j in range(values.shape[1])
            ],
            index=data.columns,
        )
        nzv = keep & nzv
        removed[REASON_NEAR_ZERO_VARIANCE] = [
            str(c) for c in data.columns[nzv.to_numpy()]
        ]
        keep &= ~nzv

    removed = {reason: ids for reason, ids in removed.items() if ids}

    if not keep.any():
        counts = {reason: len(ids) for reason, ids in removed.items()}
        raise EmptyFeatureSetError(
            f"Feature filtering removed all {data.shape[1]} columns ({counts})"
        )

    return FeatureFilterResult(filtered=data.loc[:, keep.to_numpy()], removed=removed)


class FeatureFilterService:
    """
    Stateless service for feature-level quality control of omics matrices.

    Example usage:
        service = FeatureFilterService()
        report = service.assess_quality(adata)
        adata_filtered, stats, ir = service.filter_features(
            adata, min_distinct_values=2, exclude=["OID01399"]
        )
    """

    def __init__(self):
        logger.debug("Initializing FeatureFilterService")

    def _create_ir_filter_features(
        self,
        min_distinct_values: int,
        min_variance: Optional[float],
        near_zero_variance: bool,
        freq_cut: float,
        unique_cut: float,
        exclude: List[str],
    ) -> AnalysisStep:
        """Create IR for feature filtering."""
        return AnalysisStep(
            operation="quality.filter_features",
            tool_name="filter_features",
            description="Remove constant, low-variance and excluded features",
            library="omicsnet.services.quality.feature_filter_service",
            code_template="""# Feature filtering
from omicsnet.services.quality.feature_filter_service import FeatureFilterService

service = FeatureFilterService()
adata_filtered, stats, _ = service.filter_features(
    adata,
    min_distinct_values={{ min_distinct_values }},
    min_variance={{ min_variance }},
    near_zero_variance={{ near_zero_variance }},
    freq_cut={{ freq_cut }},
    unique_cut={{ unique_cut }},
    exclude={{ exclude | tojson }}
)
print(f"Retained {stats['n_features_retained']} of {stats['n_features_input']} features")""",
            imports=[
                "from omicsnet.services.quality.feature_filter_service import FeatureFilterService"
            ],
            parameters={
                "min_distinct_values": min_distinct_values,
                "min_variance": min_variance,
                "near_zero_variance": near_zero_variance,
                "freq_cut": freq_cut,
                "unique_cut": unique_cut,
                "exclude": exclude,
            },
            parameter_schema={
                "min_distinct_values": ParameterSpec(
                    param_type="int",
                    papermill_injectable=True,
                    default_value=2,
                    required=False,
                    validation_rule="min_distinct_values >= 1",
                    description="Minimum distinct non-missing values per feature",
                ),
                "min_variance": ParameterSpec(
                    param_type="Optional[float]",
                    papermill_injectable=True,
                    default_value=None,
                    required=False,
                    validation_rule="min_variance is None or min_variance >= 0",
                    description="Minimum sample variance per feature",
                ),
                "near_zero_variance": ParameterSpec(
                    param_type="bool",
                    papermill_injectable=True,
                    default_value=False,
                    required=False,
                    description="Apply the near-zero-variance rule",
                ),
                "freq_cut": ParameterSpec(
                    param_type="float",
                    papermill_injectable=True,
                    default_value=19.0,
                    required=False,
                    validation_rule="freq_cut > 1",
                    description="Most/second-most common value ratio cutoff",
                ),
                "unique_cut": ParameterSpec(
                    param_type="float",
                    papermill_injectable=True,
                    default_value=10.0,
                    required=False,
                    validation_rule="0 <= unique_cut <= 100",
                    description="Percent distinct values cutoff",
                ),
                "exclude": ParameterSpec(
                    param_type="List[str]",
                    papermill_injectable=False,
                    default_value=[],
                    required=False,
                    description="Feature IDs removed unconditionally",
                ),
            },
            input_entities=["adata"],
            output_entities=["adata_filtered"],
        )

    def assess_quality(self, adata: anndata.AnnData) -> Dict[str, Any]:
        """
        Report missing values and constant features without modifying data.

        Args:
            adata: AnnData with samples × features expression

        Returns:
            Dictionary with total and per-feature missing counts and the
            constant feature list
        """
        data = expression_frame(adata)
        missing_per_feature = data.isna().sum(axis=0)
        n_distinct = data.nunique(axis=0, dropna=True)
        constant = [str(c) for c in data.columns[(n_distinct <= 1).to_numpy()]]

        report = {
            "n_samples": int(data.shape[0]),
            "n_features": int(data.shape[1]),
            "n_missing": int(missing_per_feature.sum()),
            "features_with_missing": {
                str(k): int(v) for k, v in missing_per_feature.items() if v > 0
            },
            "n_constant_features": len(constant),
            "constant_features": constant,
        }
        logger.info(
            f"Quality assessment: {report['n_missing']} missing values, "
            f"{report['n_constant_features']} constant features"
        )
        return report

    def filter_features(
        self,
        adata: anndata.AnnData,
        min_distinct_values: int = 2,
        min_variance: Optional[float] = None,
        near_zero_variance: bool = False,
        freq_cut: float = 95 / 5,
        unique_cut: float = 10.0,
        exclude: Optional[List[str]] = None,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Remove low-information features.

        Args:
            adata: AnnData with samples × features expression
            min_distinct_values: Minimum distinct non-missing values
            min_variance: Optional minimum sample variance
            near_zero_variance: Apply the near-zero-variance rule
            freq_cut: Frequency ratio cutoff for the near-zero-variance rule
            unique_cut: Percent-unique cutoff for the near-zero-variance rule
            exclude: Feature IDs to drop unconditionally

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
                - AnnData restricted to retained features
                - Statistics including removed feature IDs by reason
                - IR for notebook export

        Raises:
            EmptyFeatureSetError: If every feature would be removed
            NetworkAnalysisError: If filtering fails for another reason
        """
        exclude = list(exclude or [])
        try:
            logger.info(
                f"Filtering features: {adata.n_obs} samples × {adata.n_vars} features"
            )
            result = filter_feature_frame(
                expression_frame(adata),
                min_distinct_values=min_distinct_values,
                min_variance=min_variance,
                near_zero_variance=near_zero_variance,
                freq_cut=freq_cut,
                unique_cut=unique_cut,
                exclude=exclude,
            )

            adata_filtered = adata[:, result.filtered.columns].copy()
            adata_filtered.uns["feature_filter"] = {
                "removed": result.removed,
                "n_features_input": int(adata.n_vars),
            }

            analysis_stats = {
                "n_features_input": int(adata.n_vars),
                "n_features_retained": int(adata_filtered.n_vars),
                "n_features_removed": len(result.removed_features),
                "removed_by_reason": {k: len(v) for k, v in result.removed.items()},
                "removed_features": result.removed_features,
                "analysis_type": "feature_filtering",
            }

            logger.info(
                f"Feature filtering complete: retained {analysis_stats['n_features_retained']}, "
                f"removed {analysis_stats['n_features_removed']}"
            )

            ir = self._create_ir_filter_features(
                min_distinct_values,
                min_variance,
                near_zero_variance,
                freq_cut,
                unique_cut,
                exclude,
            )
            return adata_filtered, analysis_stats, ir

        except NetworkAnalysisError:
            raise
        except Exception as e:
            logger.exception(f"Error in feature filtering: {e}")
            raise NetworkAnalysisError(f"Feature filtering failed: {str(e)}") from e
