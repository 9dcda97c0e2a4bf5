"""
Unit tests for FeatureFilterService.

Tests removal of constant, low-variance, near-zero-variance and explicitly
excluded features, the quality report, and the provenance IR.
"""

import anndata
import numpy as np
import pandas as pd
import pytest

from omicsnet.core.analysis_ir import AnalysisStep
from omicsnet.core.exceptions import EmptyFeatureSetError, NetworkAnalysisError
from omicsnet.core.expression import build_network_adata
from omicsnet.services.quality.feature_filter_service import (
    REASON_EXCLUDED,
    REASON_FEW_DISTINCT,
    REASON_LOW_VARIANCE,
    REASON_NEAR_ZERO_VARIANCE,
    FeatureFilterService,
    filter_feature_frame,
)


@pytest.fixture
def mixed_frame():
    """24 samples with informative, constant, NaN-constant and sparse columns."""
    np.random.seed(42)
    n = 24
    return pd.DataFrame(
        {
            "informative_1": np.random.randn(n),
            "informative_2": np.random.randn(n),
            "constant": np.full(n, 5.0),
            "constant_with_nan": [2.0] * 22 + [np.nan, np.nan],
            "tiny_variance": 1.0 + np.random.randn(n) * 1e-4,
            "mostly_zero": [0.0] * 23 + [3.0],
            "OID01399": np.random.randn(n),
        },
        index=[f"P{i:02d}" for i in range(n)],
    )


class TestFilterFeatureFrame:
    """Test suite for the frame-level filter."""

    def test_constant_columns_removed(self, mixed_frame):
        """Test that constant columns, ignoring NaN, are removed."""
        result = filter_feature_frame(mixed_frame)

        assert "constant" not in result.filtered.columns
        assert "constant_with_nan" not in result.filtered.columns
        assert set(result.removed[REASON_FEW_DISTINCT]) == {"constant", "constant_with_nan"}
        assert "informative_1" in result.filtered.columns

    def test_exclusion_list(self, mixed_frame):
        """Test that excluded IDs are removed and unknown IDs are ignored."""
        result = filter_feature_frame(mixed_frame, exclude=["OID01399", "OID99999"])

        assert "OID01399" not in result.filtered.columns
        assert result.removed[REASON_EXCLUDED] == ["OID01399"]

    def test_min_variance(self, mixed_frame):
        """Test removal of low-variance columns."""
        result = filter_feature_frame(mixed_frame, min_variance=1e-3)

        assert result.removed[REASON_LOW_VARIANCE] == ["tiny_variance"]

    def test_near_zero_variance(self, mixed_frame):
        """Test the frequency-ratio / percent-unique rule."""
        without = filter_feature_frame(mixed_frame)
        with_nzv = filter_feature_frame(mixed_frame, near_zero_variance=True)

        assert "mostly_zero" in without.filtered.columns
        assert with_nzv.removed[REASON_NEAR_ZERO_VARIANCE] == ["mostly_zero"]

    def test_each_feature_removed_once(self, mixed_frame):
        """Test that a feature is attributed to the first rule that removes it."""
        result = filter_feature_frame(
            mixed_frame,
            min_variance=1e-3,
            near_zero_variance=True,
            exclude=["constant"],
        )

        removed = result.removed_features
        assert len(removed) == len(set(removed))
        assert "constant" in result.removed[REASON_EXCLUDED]
        assert "constant" not in result.removed[REASON_FEW_DISTINCT]

    def test_partition_of_columns(self, mixed_frame):
        """Test that retained and removed features partition the input."""
        result = filter_feature_frame(mixed_frame, min_variance=1e-3)

        assert set(result.filtered.columns) | set(result.removed_features) == set(
            mixed_frame.columns
        )

    def test_all_constant_raises(self):
        """Test that a matrix of only constant columns raises EmptyFeatureSetError."""
        frame = pd.DataFrame(
            {f"C{i}": np.full(20, float(i)) for i in range(10)},
            index=[f"P{i:02d}" for i in range(20)],
        )

        with pytest.raises(EmptyFeatureSetError, match="removed all 10 columns"):
            filter_feature_frame(frame)


class TestFeatureFilterService:
    """Test suite for FeatureFilterService."""

    @pytest.fixture
    def service(self):
        """Create a FeatureFilterService instance."""
        return FeatureFilterService()

    @pytest.fixture
    def mixed_adata(self, mixed_frame):
        return build_network_adata(mixed_frame)

    def test_filter_features_basic(self, service, mixed_adata):
        """Test the 3-tuple result of filter_features."""
        adata_filtered, stats, ir = service.filter_features(
            mixed_adata, exclude=["OID01399"]
        )

        assert isinstance(adata_filtered, anndata.AnnData)
        assert isinstance(ir, AnalysisStep)
        assert adata_filtered.n_obs == mixed_adata.n_obs
        assert stats["n_features_input"] == 7
        assert stats["n_features_retained"] == adata_filtered.n_vars
        assert stats["n_features_removed"] == 3
        assert stats["removed_by_reason"] == {REASON_EXCLUDED: 1, REASON_FEW_DISTINCT: 2}
        assert stats["analysis_type"] == "feature_filtering"

    def test_input_not_modified(self, service, mixed_adata):
        """Test that the input AnnData is left unchanged."""
        service.filter_features(mixed_adata)

        assert mixed_adata.n_vars == 7
        assert "feature_filter" not in mixed_adata.uns

    def test_removed_recorded_in_uns(self, service, mixed_adata):
        """Test that removed IDs are kept for audit."""
        adata_filtered, _, _ = service.filter_features(mixed_adata)

        removed = adata_filtered.uns["feature_filter"]["removed"]
        assert set(removed[REASON_FEW_DISTINCT]) == {"constant", "constant_with_nan"}

    def test_all_constant_raises(self, service):
        """Test that EmptyFeatureSetError propagates unchanged."""
        frame = pd.DataFrame(
            {f"C{i}": np.zeros(20) for i in range(10)},
            index=[f"P{i:02d}" for i in range(20)],
        )
        adata = build_network_adata(frame)

        with pytest.raises(EmptyFeatureSetError):
            service.filter_features(adata)

    def test_empty_feature_error_is_network_error(self):
        """Test the exception hierarchy."""
        assert issubclass(EmptyFeatureSetError, NetworkAnalysisError)

    def test_assess_quality(self, service, mixed_adata):
        """Test the missing-value and constant-column report."""
        report = service.assess_quality(mixed_adata)

        assert report["n_samples"] == 24
        assert report["n_features"] == 7
        assert report["n_missing"] == 2
        assert report["features_with_missing"] == {"constant_with_nan": 2}
        assert set(report["constant_features"]) == {"constant", "constant_with_nan"}

    def test_ir_renders(self, service, mixed_adata):
        """Test that the emitted IR renders to valid Python."""
        _, _, ir = service.filter_features(
            mixed_adata, min_variance=0.01, exclude=["OID01399"]
        )

        assert ir.operation == "quality.filter_features"
        assert ir.validate_template()
        assert ir.validate_rendered_code()
        code = ir.render()
        assert "min_variance=0.01" in code
        assert '"OID01399"' in code
