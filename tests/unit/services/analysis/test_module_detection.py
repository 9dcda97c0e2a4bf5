"""
Unit tests for module detection.

Tests the dynamic branch cut, size-ordered relabelling, module eigengenes,
the iterative eigengene merge and the end-to-end detect_modules step.
"""

import numpy as np
import pandas as pd
import pytest

from omicsnet.core.exceptions import NetworkAnalysisError, NoModulesFoundError
from omicsnet.services.analysis.module_detection import (
    cluster_dissimilarity,
    compute_eigengenes,
    detect_modules,
    dynamic_branch_cut,
    merge_close_modules,
    module_eigengene,
    relabel_by_size,
    resolve_cut_height,
)
from omicsnet.services.analysis.network_construction import (
    build_adjacency,
    tom_dissimilarity,
    topological_overlap,
)


def two_groups_and_outlier():
    """Dissimilarity for two tight groups of 10 and one distant outlier (index 20)."""
    n = 21
    D = np.full((n, n), 0.9)
    D[:10, :10] = 0.1
    D[10:20, 10:20] = 0.1
    D[20, :] = 0.95
    D[:, 20] = 0.95
    np.fill_diagonal(D, 0.0)
    return D


def shared_signal_matrix(module_sizes, shared=False, seed=0, n_samples=40):
    """Samples × variables with one signal per module (or one signal for all)."""
    rng = np.random.RandomState(seed)
    n_signals = 1 if shared else len(module_sizes)
    signals = rng.randn(n_samples, n_signals)
    columns, labels = [], []
    for m, size in enumerate(module_sizes):
        signal = signals[:, 0 if shared else m]
        for _ in range(size):
            columns.append(signal + rng.randn(n_samples) * 0.3)
            labels.append(m + 1)
    return np.column_stack(columns), np.array(labels)


@pytest.fixture
def block_dissimilarity(block_expression):
    adjacency = build_adjacency(block_expression.to_numpy(), 4)
    return tom_dissimilarity(topological_overlap(adjacency))


class TestDynamicBranchCut:
    """Test suite for dynamic_branch_cut."""

    def test_two_groups_and_outlier(self):
        Z = cluster_dissimilarity(two_groups_and_outlier())

        labels = dynamic_branch_cut(Z, min_module_size=5)

        assert set(labels[:10]) == {1}
        assert set(labels[10:20]) == {2}
        assert labels[20] == 0

    def test_explicit_cut_below_group_join(self):
        """Test that joins above an explicit cut height are always split."""
        Z = cluster_dissimilarity(two_groups_and_outlier())

        labels = dynamic_branch_cut(Z, min_module_size=5, cut_height=0.5)

        assert len(set(labels[:20]) - {0}) == 2
        assert labels[20] == 0

    def test_outlier_above_separable_pair_does_not_glue_it(self):
        """Test that a leaf joining just above two distinct groups leaves them split."""
        D = np.full((21, 21), 0.7)
        D[:10, :10] = 0.1
        D[10:20, 10:20] = 0.1
        D[20, :] = 0.72
        D[:, 20] = 0.72
        np.fill_diagonal(D, 0.0)
        Z = cluster_dissimilarity(D)

        labels = dynamic_branch_cut(Z, min_module_size=5, cut_height=0.9)

        assert set(labels[:10]) == {1}
        assert set(labels[10:20]) == {2}
        assert labels[20] == 0

    def test_min_module_size_sends_small_groups_to_grey(self):
        Z = cluster_dissimilarity(two_groups_and_outlier())

        labels = dynamic_branch_cut(Z, min_module_size=11)

        assert np.all(labels == 0)

    def test_every_leaf_labelled(self, block_dissimilarity):
        """Test that every variable gets exactly one label and labels are contiguous."""
        Z = cluster_dissimilarity(block_dissimilarity)

        labels = dynamic_branch_cut(Z, min_module_size=20)

        assert labels.shape == (100,)
        modules = sorted(set(labels.tolist()) - {0})
        assert modules == list(range(1, len(modules) + 1))

    def test_labels_ordered_by_size(self, block_dissimilarity):
        Z = cluster_dissimilarity(block_dissimilarity)

        labels = dynamic_branch_cut(Z, min_module_size=10, deep_split=4)

        sizes = [int((labels == m).sum()) for m in range(1, labels.max() + 1)]
        assert sizes == sorted(sizes, reverse=True)

    def test_invalid_deep_split(self):
        Z = cluster_dissimilarity(two_groups_and_outlier())

        with pytest.raises(NetworkAnalysisError, match="deep_split"):
            dynamic_branch_cut(Z, deep_split=7)

    def test_resolve_cut_height_default(self):
        heights = np.linspace(0.0, 1.0, 101)

        cut, reference = resolve_cut_height(heights)

        assert reference == pytest.approx(0.05)
        assert cut == pytest.approx(0.05 + 0.99 * 0.95)

    def test_resolve_cut_height_explicit(self):
        cut, _ = resolve_cut_height(np.array([0.1, 0.5, 0.9]), cut_height=0.7)

        assert cut == 0.7


class TestRelabelBySize:
    """Test suite for relabel_by_size."""

    def test_relabel(self):
        labels = np.array([3, 3, 1, 2, 2, 2, 0])

        new_labels, mapping = relabel_by_size(labels)

        assert new_labels.tolist() == [2, 2, 3, 1, 1, 1, 0]
        assert mapping == {0: 0, 2: 1, 3: 2, 1: 3}

    def test_ties_keep_label_order(self):
        new_labels, _ = relabel_by_size(np.array([5, 5, 2, 2]))

        assert new_labels.tolist() == [2, 2, 1, 1]


class TestModuleEigengene:
    """Test suite for eigengene computation."""

    def test_tracks_module_signal(self):
        rng = np.random.RandomState(1)
        signal = rng.randn(40)
        X = np.column_stack([signal + rng.randn(40) * 0.3 for _ in range(15)])

        eigengene, variance_explained = module_eigengene(X)

        assert eigengene.shape == (40,)
        assert np.corrcoef(eigengene, signal)[0, 1] > 0.95
        assert 0.7 < variance_explained <= 1.0

    def test_positive_with_member_mean(self):
        """Test the sign convention."""
        X, _ = shared_signal_matrix([12], seed=4)

        eigengene, _ = module_eigengene(X)

        assert np.corrcoef(eigengene, X.mean(axis=1))[0, 1] > 0

    def test_sign_follows_data(self):
        X, _ = shared_signal_matrix([12], seed=5)

        eigengene, _ = module_eigengene(X)
        flipped, _ = module_eigengene(-X)

        np.testing.assert_allclose(flipped, -eigengene, atol=1e-10)

    def test_sign_with_constant_member_mean(self):
        """Test that anti-correlated members with a flat mean still get a fixed sign."""
        x = np.random.RandomState(8).randn(40)
        X = np.column_stack([2.0 * x, -x, -x])

        eigengene, _ = module_eigengene(X)
        flipped, _ = module_eigengene(-X)

        assert np.corrcoef(eigengene, X[:, 0])[0, 1] > 0.99
        assert np.corrcoef(flipped, -X[:, 0])[0, 1] > 0.99

    def test_scaled(self):
        X, _ = shared_signal_matrix([12], seed=6)
        X[:, 0] *= 100.0

        eigengene, variance_explained = module_eigengene(X, scale=True)

        assert np.corrcoef(eigengene, X[:, 1:].mean(axis=1))[0, 1] > 0.9
        assert 0.0 < variance_explained <= 1.0

    def test_empty_module(self):
        with pytest.raises(NetworkAnalysisError, match="empty module"):
            module_eigengene(np.empty((10, 0)))

    def test_compute_eigengenes_skips_unassigned(self):
        X, labels = shared_signal_matrix([8, 6])
        labels[:2] = 0
        names = [f"S{i}" for i in range(X.shape[0])]

        eigengenes, variance_explained = compute_eigengenes(X, labels, sample_names=names)

        assert isinstance(eigengenes, pd.DataFrame)
        assert list(eigengenes.columns) == [1, 2]
        assert list(eigengenes.index) == names
        assert set(variance_explained) == {1, 2}


class TestMergeCloseModules:
    """Test suite for the eigengene merge."""

    def test_identical_signals_merge_into_larger(self):
        X, labels = shared_signal_matrix([30, 20], shared=True)

        merged, history = merge_close_modules(X, labels, merge_cut_height=0.25)

        assert set(merged.tolist()) == {1}
        assert len(history) == 1
        assert history[0]["kept"] == 1
        assert history[0]["absorbed"] == 2
        assert history[0]["eigengene_correlation"] > 0.75

    def test_distinct_signals_not_merged(self):
        X, labels = shared_signal_matrix([20, 20, 20])

        merged, history = merge_close_modules(X, labels, merge_cut_height=0.25)

        np.testing.assert_array_equal(merged, labels)
        assert history == []

    def test_terminates_after_k_minus_one_merges(self):
        """Test that K modules on one signal need exactly K - 1 merges."""
        X, labels = shared_signal_matrix([10, 10, 10, 10], shared=True)

        merged, history = merge_close_modules(X, labels, merge_cut_height=0.5)

        assert len(history) == 3
        assert len(set(merged.tolist())) == 1
        assert [h["iteration"] for h in history] == [1, 2, 3]

    def test_unassigned_untouched(self):
        X, labels = shared_signal_matrix([10, 10, 5], shared=True)
        labels[labels == 3] = 0

        merged, _ = merge_close_modules(X, labels)

        assert (merged == 0).sum() == 5

    def test_input_not_modified(self):
        X, labels = shared_signal_matrix([10, 10], shared=True)
        original = labels.copy()

        merge_close_modules(X, labels)

        np.testing.assert_array_equal(labels, original)


class TestDetectModules:
    """Test suite for detect_modules on the implanted-block scenario."""

    def test_recovers_three_blocks(self, block_expression, block_dissimilarity):
        """Test that 3 implanted blocks give 3 modules and noise is mostly unassigned."""
        result = detect_modules(
            block_expression.to_numpy(),
            block_dissimilarity,
            min_module_size=20,
            merge_cut_height=0.25,
            sample_names=list(block_expression.index),
        )

        labels = result.labels
        assert result.n_modules == 3

        dominant = []
        for b in range(3):
            block_labels = labels[b * 30 : (b + 1) * 30]
            values, counts = np.unique(block_labels, return_counts=True)
            assert values[np.argmax(counts)] != 0
            assert counts.max() >= 25
            dominant.append(values[np.argmax(counts)])
        assert len(set(dominant)) == 3

        assert (labels[90:] == 0).sum() >= 8

    def test_result_contents(self, block_expression, block_dissimilarity):
        result = detect_modules(
            block_expression.to_numpy(),
            block_dissimilarity,
            min_module_size=20,
            sample_names=list(block_expression.index),
        )

        assert list(result.eigengenes.columns) == [1, 2, 3]
        assert list(result.eigengenes.index) == list(block_expression.index)
        assert result.linkage_matrix.shape == (99, 4)
        assert result.unmerged_labels.shape == (100,)
        assert sum(result.module_sizes().values()) == 100
        assert set(result.variance_explained) == {1, 2, 3}
        assert len(result.merge_history) <= max(
            len(set(result.unmerged_labels.tolist()) - {0}) - 1, 0
        )

    def test_repeated_runs_identical(self, block_expression, block_dissimilarity):
        X = block_expression.to_numpy()

        first = detect_modules(X, block_dissimilarity, min_module_size=20)
        second = detect_modules(X, block_dissimilarity, min_module_size=20)

        np.testing.assert_array_equal(first.labels, second.labels)
        pd.testing.assert_frame_equal(first.eigengenes, second.eigengenes)

    def test_no_modules_raises(self, block_expression, block_dissimilarity):
        with pytest.raises(NoModulesFoundError):
            detect_modules(
                block_expression.to_numpy(),
                block_dissimilarity,
                min_module_size=20,
                cut_height=1e-6,
            )

    def test_shape_mismatch(self, block_expression, block_dissimilarity):
        with pytest.raises(NetworkAnalysisError, match="dissimilarity"):
            detect_modules(block_expression.to_numpy()[:, :50], block_dissimilarity)
