"""
Shared constants for network construction and module detection.

This module is the single source of truth for module labels, colour names and
numeric defaults; configuration models and services import from here.
"""

from typing import Dict, Final, List

# Module 0 is reserved for variables not assigned to any module
UNASSIGNED_MODULE: Final[int] = 0
GREY_MODULE: Final[str] = "grey"

# Standard WGCNA module colours, in label order (label 1 = turquoise)
MODULE_COLORS: Final[List[str]] = [
    "turquoise",
    "blue",
    "brown",
    "yellow",
    "green",
    "red",
    "black",
    "pink",
    "magenta",
    "purple",
    "greenyellow",
    "tan",
    "salmon",
    "cyan",
    "midnightblue",
    "lightcyan",
    "grey60",
    "lightgreen",
    "lightyellow",
    "royalblue",
    "darkred",
    "darkgreen",
    "darkturquoise",
    "darkgrey",
    "orange",
    "darkorange",
    "white",
    "skyblue",
    "saddlebrown",
    "steelblue",
    "paleturquoise",
    "violet",
    "darkolivegreen",
    "darkmagenta",
]

VALID_NETWORK_TYPES: Final[List[str]] = ["unsigned", "signed"]
VALID_CORRELATION_METHODS: Final[List[str]] = ["pearson", "spearman"]
VALID_OVERLAP_TYPES: Final[List[str]] = ["min", "product"]

# Soft-threshold selection
DEFAULT_CANDIDATE_POWERS: Final[List[int]] = list(range(1, 21))
DEFAULT_R_SQUARED_CUTOFF: Final[float] = 0.85
DEFAULT_RELAXED_R_SQUARED_CUTOFF: Final[float] = 0.75
SCALE_FREE_N_BREAKS: Final[int] = 10

# Module detection
DEFAULT_MIN_MODULE_SIZE: Final[int] = 30
DEFAULT_MERGE_CUT_HEIGHT: Final[float] = 0.25
DEFAULT_DEEP_SPLIT: Final[int] = 2
REFERENCE_HEIGHT_QUANTILE: Final[float] = 0.05
DEFAULT_CUT_HEIGHT_FRACTION: Final[float] = 0.99

# Minimum gap between a branch core and its join height, as a fraction of
# (cut height - reference height), per deep-split level. Derived from WGCNA's
# maxCoreScatter = (0.64, 0.73, 0.82, 0.91, 0.95) via minGap = (1 - s) * 3/4.
MIN_GAP_BY_DEEP_SPLIT: Final[Dict[int, float]] = {
    0: 0.27,
    1: 0.2025,
    2: 0.135,
    3: 0.0675,
    4: 0.0375,
}

# TOM construction
DEFAULT_TOM_BLOCK_SIZE: Final[int] = 256
TOM_DENOMINATOR_EPS: Final[float] = 1e-12

# Trait association and membership
MIN_SAMPLES_FOR_CORRELATION: Final[int] = 3
HUB_QUANTILE: Final[float] = 0.9
SIGNIFICANCE_ALPHA: Final[float] = 0.05

# Sample-size guidance for network construction
MIN_NETWORK_SAMPLES: Final[int] = 15
RECOMMENDED_NETWORK_SAMPLES: Final[int] = 30


def module_color(label: int) -> str:
    """Map an integer module label to its WGCNA colour name."""
    if label == UNASSIGNED_MODULE:
        return GREY_MODULE
    if label <= len(MODULE_COLORS):
        return MODULE_COLORS[label - 1]
    return f"module_{label}"
