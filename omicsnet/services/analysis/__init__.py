"""
Analysis services for omicsnet.

This module provides the co-expression network service and the numerical
building blocks it wraps. The service returns 3-tuples
(AnnData, Dict, AnalysisStep) for provenance tracking.
"""

from omicsnet.services.analysis.module_detection import (
    ModuleDetectionResult,
    detect_modules,
)
from omicsnet.services.analysis.network_construction import (
    SoftThresholdResult,
    build_adjacency,
    pick_soft_threshold,
    topological_overlap,
)
from omicsnet.services.analysis.network_service import CoexpressionNetworkService
from omicsnet.services.analysis.trait_association import (
    ModuleTraitAssociation,
    correlate_eigengenes_with_traits,
)

__all__ = [
    # Service
    "CoexpressionNetworkService",
    # Network construction
    "SoftThresholdResult",
    "build_adjacency",
    "pick_soft_threshold",
    "topological_overlap",
    # Module detection
    "ModuleDetectionResult",
    "detect_modules",
    # Trait association
    "ModuleTraitAssociation",
    "correlate_eigengenes_with_traits",
]
