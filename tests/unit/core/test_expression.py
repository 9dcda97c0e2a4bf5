"""
Unit tests for expression AnnData helpers.

Tests patient-ID alignment of expression and trait tables and validation
of malformed inputs.
"""

import numpy as np
import pandas as pd
import pytest

from omicsnet.core.exceptions import NetworkAnalysisError
from omicsnet.core.expression import build_network_adata, expression_frame


class TestBuildNetworkAdata:
    """Test suite for build_network_adata."""

    def test_basic_shape(self, block_expression, block_traits):
        """Test that X, obs and var line up with the inputs."""
        adata = build_network_adata(block_expression, block_traits)

        assert adata.shape == block_expression.shape
        assert list(adata.var_names) == list(block_expression.columns)
        assert list(adata.obs_names) == list(block_expression.index)
        assert adata.X.dtype == np.float64
        assert "cca_binary" in adata.obs.columns

    def test_sample_id_column(self):
        """Test that a patient_id column is used as the sample index."""
        expression = pd.DataFrame(
            {"patient_id": [101, 102, 103], "miR-21": [1.0, 2.0, 3.0]}
        )

        adata = build_network_adata(expression)

        assert list(adata.obs_names) == ["101", "102", "103"]
        assert list(adata.var_names) == ["miR-21"]

    def test_traits_aligned_by_id(self):
        """Test that traits are reordered to the expression sample order."""
        expression = pd.DataFrame(
            {"patient_id": ["A", "B", "C"], "f1": [1.0, 2.0, 3.0], "f2": [3.0, 1.0, 2.0]}
        )
        traits = pd.DataFrame({"patient_id": ["C", "A", "B"], "alp": [30.0, 10.0, 20.0]})

        adata = build_network_adata(expression, traits)

        assert adata.obs["alp"].tolist() == [10.0, 20.0, 30.0]

    def test_unmatched_samples_get_nan(self):
        """Test that samples without a trait record get missing traits."""
        expression = pd.DataFrame(
            {"patient_id": ["A", "B", "C"], "f1": [1.0, 2.0, 3.0]}
        )
        traits = pd.DataFrame({"patient_id": ["A", "B"], "alp": [10.0, 20.0]})

        adata = build_network_adata(expression, traits)

        assert np.isnan(adata.obs.loc["C", "alp"])

    def test_duplicate_ids_rejected(self):
        """Test that duplicate patient IDs raise an error."""
        expression = pd.DataFrame({"patient_id": ["A", "A"], "f1": [1.0, 2.0]})

        with pytest.raises(NetworkAnalysisError, match="Duplicate sample IDs"):
            build_network_adata(expression)

    def test_non_numeric_rejected(self):
        """Test that non-numeric feature columns raise an error."""
        expression = pd.DataFrame(
            {"patient_id": ["A", "B"], "f1": [1.0, 2.0], "sex": ["M", "F"]}
        )

        with pytest.raises(NetworkAnalysisError, match="non-numeric"):
            build_network_adata(expression)

    def test_empty_rejected(self):
        """Test that an empty matrix raises an error."""
        with pytest.raises(NetworkAnalysisError, match="empty"):
            build_network_adata(pd.DataFrame(index=["A", "B"]))


class TestExpressionFrame:
    """Test suite for expression_frame."""

    def test_round_trip_values(self, block_adata, block_expression):
        """Test that the frame reproduces the input values and labels."""
        frame = expression_frame(block_adata)

        assert frame.shape == block_expression.shape
        np.testing.assert_allclose(frame.to_numpy(), block_expression.to_numpy())
        assert list(frame.index) == list(block_adata.obs_names)
