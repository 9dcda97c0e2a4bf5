"""Configuration models and constants for omicsnet."""

from omicsnet.config.network_config import (
    FeatureFilterConfig,
    ModuleDetectionConfig,
    NetworkConfig,
    PipelineConfig,
    SoftThresholdConfig,
    TraitSchema,
    TraitSpec,
)

__all__ = [
    "FeatureFilterConfig",
    "ModuleDetectionConfig",
    "NetworkConfig",
    "PipelineConfig",
    "SoftThresholdConfig",
    "TraitSchema",
    "TraitSpec",
]
