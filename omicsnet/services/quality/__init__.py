"""
Quality control services for omicsnet.

All services return 3-tuples (AnnData, Dict, AnalysisStep) for provenance tracking.
"""

from omicsnet.services.quality.feature_filter_service import (
    FeatureFilterResult,
    FeatureFilterService,
    filter_feature_frame,
)

__all__ = [
    "FeatureFilterResult",
    "FeatureFilterService",
    "filter_feature_frame",
]
