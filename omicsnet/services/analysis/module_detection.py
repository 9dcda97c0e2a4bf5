"""
Module detection on a topological-overlap dendrogram.

Average-linkage clustering of 1 - TOM, a dynamic branch cut that separates
distinct branches and sends weakly attached pieces to the unassigned module,
module eigengenes (PC1 of each module), and an iterative eigengene-correlation
merge of near-duplicate modules.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import linkage
from scipy.spatial.distance import squareform
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

from omicsnet.config.constants import (
    DEFAULT_CUT_HEIGHT_FRACTION,
    DEFAULT_DEEP_SPLIT,
    DEFAULT_MERGE_CUT_HEIGHT,
    DEFAULT_MIN_MODULE_SIZE,
    MIN_GAP_BY_DEEP_SPLIT,
    REFERENCE_HEIGHT_QUANTILE,
    UNASSIGNED_MODULE,
)
from omicsnet.core.exceptions import NetworkAnalysisError, NoModulesFoundError
from omicsnet.utils.logger import get_logger

logger = get_logger(__name__)


def cluster_dissimilarity(dissimilarity: np.ndarray) -> np.ndarray:
    """Average-linkage hierarchical clustering of a square dissimilarity matrix."""
    dissimilarity = np.asarray(dissimilarity, dtype=np.float64)
    if dissimilarity.shape[0] < 2:
        raise NetworkAnalysisError("Need at least 2 variables to build a dendrogram")
    condensed = squareform(dissimilarity, checks=False)
    condensed = np.clip(np.nan_to_num(condensed, nan=1.0), 0.0, None)
    return linkage(condensed, method="average")


def _collect_leaves(node: int, n_leaves: int, children: np.ndarray) -> List[int]:
    leaves = []
    stack = [node]
    while stack:
        current = stack.pop()
        if current < n_leaves:
            leaves.append(current)
        else:
            stack.extend(children[current - n_leaves])
    return leaves


def resolve_cut_height(
    heights: np.ndarray, cut_height: Optional[float] = None
) -> Tuple[float, float]:
    """
    Return (cut_height, reference_height) for a set of joining heights.

    The reference height is the 5th percentile of joining heights; the default
    cut height is 99% of the way from the reference to the maximum height.
    """
    reference = float(np.quantile(heights, REFERENCE_HEIGHT_QUANTILE))
    if cut_height is None:
        cut_height = reference + DEFAULT_CUT_HEIGHT_FRACTION * (
            float(heights.max()) - reference
        )
    return float(cut_height), reference


def dynamic_branch_cut(
    linkage_matrix: np.ndarray,
    min_module_size: int = DEFAULT_MIN_MODULE_SIZE,
    deep_split: int = DEFAULT_DEEP_SPLIT,
    cut_height: Optional[float] = None,
) -> np.ndarray:
    """
    Assign flat module labels by adaptive branch cutting of a dendrogram.

    Each branch has a core height: its own joining height, except that pieces
    smaller than ``min_module_size`` attaching to a large sub-branch do not
    raise it. Walking down from the root:

    - joins above ``cut_height`` are always split;
    - two large sub-branches are split when their join lies at least
      ``min_gap`` above the higher of their core heights;
    - a small piece attaching at least ``min_gap`` above the core of its
      large sibling goes to the unassigned module;
    - a branch that contains two separable large sub-branches anywhere below
      it is never emitted whole; small pieces attached on the way down go to
      the unassigned module;
    - any other branch of at least ``min_module_size`` becomes a module.

    ``min_gap`` is ``MIN_GAP_BY_DEEP_SPLIT[deep_split] * (cut_height - ref)``
    with ``ref`` the 5th percentile of joining heights.

    Returns:
        Integer labels per leaf; 0 is unassigned, modules are numbered from 1
        in order of decreasing size
    """
    if deep_split not in MIN_GAP_BY_DEEP_SPLIT:
        raise NetworkAnalysisError(f"deep_split must be 0-4 (got {deep_split})")
    if min_module_size < 1:
        raise NetworkAnalysisError("min_module_size must be at least 1")

    Z = np.asarray(linkage_matrix, dtype=np.float64)
    n = Z.shape[0] + 1
    children = Z[:, :2].astype(np.int64)
    heights = Z[:, 2]

    cut, reference = resolve_cut_height(heights, cut_height)
    min_gap = MIN_GAP_BY_DEEP_SPLIT[deep_split] * max(cut - reference, 0.0)

    n_nodes = 2 * n - 1
    count = np.ones(n_nodes, dtype=np.int64)
    height = np.zeros(n_nodes)
    core = np.zeros(n_nodes)
    # branch contains two large sub-branches separated by at least min_gap
    splittable = np.zeros(n_nodes, dtype=bool)

    # linkage rows only reference earlier nodes, so one forward pass suffices
    for i in range(n - 1):
        node = n + i
        a, b = children[i]
        count[node] = count[a] + count[b]
        height[node] = heights[i]
        small_a = count[a] < min_module_size
        small_b = count[b] < min_module_size
        if small_a and not small_b:
            core[node] = core[b]
            splittable[node] = splittable[b]
        elif small_b and not small_a:
            core[node] = core[a]
            splittable[node] = splittable[a]
        else:
            core[node] = heights[i]
            if not (small_a or small_b):
                splittable[node] = (
                    heights[i] - max(core[a], core[b]) >= min_gap
                    or splittable[a]
                    or splittable[b]
                )

    modules: List[List[int]] = []
    stack = [n_nodes - 1]
    while stack:
        node = stack.pop()
        if node < n:
            continue

        a, b = children[node - n]
        h = height[node]

        if h > cut:
            stack.extend([a, b])
            continue
        if count[node] < min_module_size:
            continue

        big_a = count[a] >= min_module_size
        big_b = count[b] >= min_module_size
        if big_a and big_b:
            if splittable[node]:
                stack.extend([a, b])
            else:
                modules.append(_collect_leaves(node, n, children))
        elif big_a or big_b:
            # the small piece goes to grey whenever the large branch is descended
            big = a if big_a else b
            if h - core[big] >= min_gap or splittable[big]:
                stack.append(big)
            else:
                modules.append(_collect_leaves(node, n, children))
        else:
            if h - max(core[a], core[b]) < min_gap:
                modules.append(_collect_leaves(node, n, children))

    labels = np.full(n, UNASSIGNED_MODULE, dtype=np.int64)
    modules.sort(key=lambda leaves: (-len(leaves), min(leaves)))
    for label, leaves in enumerate(modules, start=1):
        labels[leaves] = label

    logger.debug(
        f"Dynamic branch cut: cut_height={cut:.4f}, min_gap={min_gap:.4f}, "
        f"{len(modules)} modules, {int((labels == UNASSIGNED_MODULE).sum())} unassigned"
    )
    return labels


def relabel_by_size(labels: np.ndarray) -> Tuple[np.ndarray, Dict[int, int]]:
    """
    Renumber module labels 1..K by decreasing size (ties: lower old label first).

    Returns:
        (new labels, mapping old label -> new label); 0 always maps to 0
    """
    labels = np.asarray(labels)
    modules = [m for m in np.unique(labels) if m != UNASSIGNED_MODULE]
    order = sorted(modules, key=lambda m: (-int((labels == m).sum()), int(m)))
    mapping = {UNASSIGNED_MODULE: UNASSIGNED_MODULE}
    mapping.update({int(old): new for new, old in enumerate(order, start=1)})
    new_labels = np.array([mapping[int(m)] for m in labels], dtype=np.int64)
    return new_labels, mapping


def module_eigengene(X_module: np.ndarray, scale: bool = False) -> Tuple[np.ndarray, float]:
    """
    First principal component scores of a module's samples × members matrix.

    Columns are centred (and optionally scaled to unit variance). The sign is
    chosen so that the eigengene correlates positively with the mean of the
    member variables. When that mean is constant, the largest-magnitude PC1
    loading is made positive instead.

    Returns:
        (eigengene vector of length n_samples, fraction of variance explained)
    """
    X_module = np.asarray(X_module, dtype=np.float64)
    if X_module.ndim != 2 or X_module.shape[1] == 0:
        raise NetworkAnalysisError("Cannot compute an eigengene for an empty module")

    X_input = StandardScaler().fit_transform(X_module) if scale else X_module
    pca = PCA(n_components=1, svd_solver="full")
    eigengene = pca.fit_transform(X_input)[:, 0]

    mean_expr = X_module.mean(axis=1)
    with np.errstate(invalid="ignore", divide="ignore"):
        direction = np.corrcoef(eigengene, mean_expr)[0, 1]
    if not np.isfinite(direction) or direction == 0:
        # constant member mean: orient by the dominant loading instead
        loadings = pca.components_[0]
        direction = loadings[np.argmax(np.abs(loadings))]
    if direction < 0:
        eigengene = -eigengene

    return eigengene, float(pca.explained_variance_ratio_[0])


def compute_eigengenes(
    X: np.ndarray,
    labels: np.ndarray,
    scale: bool = False,
    sample_names: Optional[Sequence[str]] = None,
) -> Tuple[pd.DataFrame, Dict[int, float]]:
    """
    Eigengenes of every assigned module.

    Returns:
        (samples × modules DataFrame with integer module labels as columns,
        variance explained per module)
    """
    X = np.asarray(X, dtype=np.float64)
    labels = np.asarray(labels)
    modules = sorted(int(m) for m in np.unique(labels) if m != UNASSIGNED_MODULE)

    vectors = {}
    variance_explained = {}
    for module in modules:
        vectors[module], variance_explained[module] = module_eigengene(
            X[:, labels == module], scale=scale
        )

    index = list(sample_names) if sample_names is not None else None
    eigengenes = pd.DataFrame(vectors, index=index, columns=modules)
    return eigengenes, variance_explained


def merge_close_modules(
    X: np.ndarray,
    labels: np.ndarray,
    merge_cut_height: float = DEFAULT_MERGE_CUT_HEIGHT,
    scale: bool = False,
) -> Tuple[np.ndarray, List[Dict[str, Any]]]:
    """
    Merge modules whose eigengenes correlate above ``1 - merge_cut_height``.

    Repeatedly merges the most correlated pair (the smaller module is absorbed
    into the larger one) and recomputes the merged eigengene, until no pair
    exceeds the threshold. Each merge removes one module, so at most K - 1
    iterations run.

    Returns:
        (merged labels, merge history with provisional labels)
    """
    labels = np.array(labels, dtype=np.int64, copy=True)
    threshold = 1.0 - merge_cut_height

    eigengenes = {
        int(m): module_eigengene(X[:, labels == m], scale=scale)[0]
        for m in np.unique(labels)
        if m != UNASSIGNED_MODULE
    }

    history: List[Dict[str, Any]] = []
    for iteration in range(1, max(len(eigengenes), 1)):
        modules = sorted(eigengenes)
        if len(modules) < 2:
            break

        corr = np.corrcoef(np.column_stack([eigengenes[m] for m in modules]), rowvar=False)
        corr = np.nan_to_num(corr, nan=-1.0)
        np.fill_diagonal(corr, -np.inf)
        i, j = np.unravel_index(np.argmax(corr), corr.shape)
        best = float(corr[i, j])
        if best <= threshold:
            break

        a, b = modules[i], modules[j]
        size_a = int((labels == a).sum())
        size_b = int((labels == b).sum())
        keep, absorb = (a, b) if (size_a, -a) >= (size_b, -b) else (b, a)

        labels[labels == absorb] = keep
        del eigengenes[absorb]
        eigengenes[keep] = module_eigengene(X[:, labels == keep], scale=scale)[0]

        history.append(
            {
                "iteration": iteration,
                "kept": keep,
                "absorbed": absorb,
                "eigengene_correlation": best,
            }
        )
        logger.debug(
            f"Merge {iteration}: module {absorb} into {keep} (r={best:.3f})"
        )

    return labels, history


@dataclass
class ModuleDetectionResult:
    """Final module assignment and the intermediate artefacts that produced it."""

    labels: np.ndarray
    eigengenes: pd.DataFrame
    variance_explained: Dict[int, float]
    linkage_matrix: np.ndarray
    unmerged_labels: np.ndarray
    merge_history: List[Dict[str, Any]] = field(default_factory=list)
    cut_height: float = 0.0

    @property
    def n_modules(self) -> int:
        return int(len(set(self.labels.tolist()) - {UNASSIGNED_MODULE}))

    def module_sizes(self) -> Dict[int, int]:
        values, counts = np.unique(self.labels, return_counts=True)
        return {int(v): int(c) for v, c in zip(values, counts)}


def detect_modules(
    X: np.ndarray,
    dissimilarity: np.ndarray,
    min_module_size: int = DEFAULT_MIN_MODULE_SIZE,
    deep_split: int = DEFAULT_DEEP_SPLIT,
    cut_height: Optional[float] = None,
    merge_cut_height: float = DEFAULT_MERGE_CUT_HEIGHT,
    scale_eigengenes: bool = False,
    sample_names: Optional[Sequence[str]] = None,
) -> ModuleDetectionResult:
    """
    Cluster, cut, merge and summarise modules.

    Args:
        X: Expression matrix (samples × variables) used for eigengenes
        dissimilarity: Variables × variables dissimilarity (1 - TOM)
        min_module_size: Minimum variables per module
        deep_split: Branch split sensitivity (0-4)
        cut_height: Maximum joining height (None = automatic)
        merge_cut_height: Eigengene dissimilarity below which modules merge
        scale_eigengenes: Scale members before PCA
        sample_names: Index for the eigengene frame

    Raises:
        NoModulesFoundError: If no branch reaches ``min_module_size``
    """
    X = np.asarray(X, dtype=np.float64)
    if X.shape[1] != dissimilarity.shape[0]:
        raise NetworkAnalysisError(
            f"Expression has {X.shape[1]} variables but dissimilarity is "
            f"{dissimilarity.shape[0]} × {dissimilarity.shape[1]}"
        )

    Z = cluster_dissimilarity(dissimilarity)
    resolved_cut, _ = resolve_cut_height(Z[:, 2], cut_height)
    unmerged = dynamic_branch_cut(
        Z,
        min_module_size=min_module_size,
        deep_split=deep_split,
        cut_height=resolved_cut,
    )

    if not (unmerged != UNASSIGNED_MODULE).any():
        raise NoModulesFoundError(
            f"No module of at least {min_module_size} variables found among "
            f"{X.shape[1]} variables (cut height {resolved_cut:.3f}); "
            f"try a smaller min_module_size or a different soft-threshold power"
        )

    merged, history = merge_close_modules(
        X, unmerged, merge_cut_height=merge_cut_height, scale=scale_eigengenes
    )
    labels, _ = relabel_by_size(merged)
    eigengenes, variance_explained = compute_eigengenes(
        X, labels, scale=scale_eigengenes, sample_names=sample_names
    )

    logger.info(
        f"Detected {eigengenes.shape[1]} modules "
        f"({len(history)} merges, {int((labels == UNASSIGNED_MODULE).sum())} unassigned)"
    )

    return ModuleDetectionResult(
        labels=labels,
        eigengenes=eigengenes,
        variance_explained=variance_explained,
        linkage_matrix=Z,
        unmerged_labels=unmerged,
        merge_history=history,
        cut_height=resolved_cut,
    )
