"""
Network analysis configuration with Pydantic validation.

Every threshold of the analysis is an explicit, validated field here rather
than module-level state, so a run is fully described by one ``PipelineConfig``.
Configurations can be stored as human-readable TOML.

Example pipeline.toml:
    membership_trait = "cca_binary"

    [feature_filter]
    min_distinct_values = 2
    exclude = ["OID01399", "OID01397"]

    [network]
    soft_power = 6
    network_type = "signed"

    [modules]
    min_module_size = 30
    merge_cut_height = 0.25

    [traits]
    traits = [
        { name = "cca_binary", kind = "binary" },
        { name = "alp", kind = "continuous" },
    ]

Top-level keys must precede the first table header. Unknown or misplaced keys
are rejected.

Example:
    >>> from pathlib import Path
    >>> config = PipelineConfig.load(Path("pipeline.toml"))
    >>> config.network.soft_power
    6
"""

import tomllib
from pathlib import Path
from typing import List, Literal, Optional

import numpy as np
import pandas as pd
import tomli_w
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from omicsnet.config.constants import (
    DEFAULT_CANDIDATE_POWERS,
    DEFAULT_DEEP_SPLIT,
    DEFAULT_MERGE_CUT_HEIGHT,
    DEFAULT_MIN_MODULE_SIZE,
    DEFAULT_R_SQUARED_CUTOFF,
    DEFAULT_RELAXED_R_SQUARED_CUTOFF,
    DEFAULT_TOM_BLOCK_SIZE,
)
from omicsnet.core.exceptions import NetworkAnalysisError
from omicsnet.utils.logger import get_logger

logger = get_logger(__name__)


class _ConfigModel(BaseModel):
    """Base for configuration sections; unknown keys raise a ValidationError."""

    model_config = ConfigDict(extra="forbid")


class FeatureFilterConfig(_ConfigModel):
    """
    Thresholds for removing low-information features.

    Attributes:
        min_distinct_values: Minimum number of distinct non-missing values
        min_variance: Optional minimum sample variance
        near_zero_variance: Apply the frequency-ratio / percent-unique rule
        freq_cut: Most-common / second-most-common value ratio limit
        unique_cut: Percent-unique limit (0-100)
        exclude: Feature IDs removed unconditionally
    """

    min_distinct_values: int = Field(2, ge=1, description="Minimum distinct values")
    min_variance: Optional[float] = Field(
        None, ge=0.0, description="Minimum sample variance (None disables)"
    )
    near_zero_variance: bool = Field(
        False, description="Remove near-zero-variance features"
    )
    freq_cut: float = Field(95 / 5, gt=1.0, description="Frequency ratio cutoff")
    unique_cut: float = Field(
        10.0, ge=0.0, le=100.0, description="Percent unique cutoff"
    )
    exclude: List[str] = Field(
        default_factory=list, description="Feature IDs to drop unconditionally"
    )


class SoftThresholdConfig(_ConfigModel):
    """Candidate powers and acceptance thresholds for power selection."""

    powers: List[float] = Field(
        default_factory=lambda: list(DEFAULT_CANDIDATE_POWERS),
        min_length=1,
        description="Candidate soft-threshold powers",
    )
    r_squared_cutoff: float = Field(
        DEFAULT_R_SQUARED_CUTOFF, gt=0.0, le=1.0, description="Target signed R²"
    )
    relaxed_r_squared_cutoff: float = Field(
        DEFAULT_RELAXED_R_SQUARED_CUTOFF,
        gt=0.0,
        le=1.0,
        description="Fallback signed R² for max-connectivity selection",
    )

    @field_validator("powers")
    @classmethod
    def _positive_powers(cls, v: List[float]) -> List[float]:
        if any(p <= 0 for p in v):
            raise ValueError("All candidate powers must be positive")
        return sorted(v)

    @model_validator(mode="after")
    def _relaxed_below_target(self) -> "SoftThresholdConfig":
        if self.relaxed_r_squared_cutoff > self.r_squared_cutoff:
            raise ValueError(
                "relaxed_r_squared_cutoff must not exceed r_squared_cutoff"
            )
        return self


class NetworkConfig(_ConfigModel):
    """
    Adjacency and topological overlap construction.

    ``soft_power`` has no default: it is chosen by the analyst, usually after
    inspecting the soft-threshold fit table.
    """

    soft_power: float = Field(..., gt=0.0, description="Soft-threshold power")
    network_type: Literal["unsigned", "signed"] = Field(
        "unsigned", description="Network sign handling"
    )
    correlation_method: Literal["pearson", "spearman"] = Field(
        "pearson", description="Correlation used for adjacency"
    )
    overlap: Literal["min", "product"] = Field(
        "min", description="Shared-neighbour term of the overlap numerator"
    )
    block_size: int = Field(
        DEFAULT_TOM_BLOCK_SIZE, ge=1, description="Rows per TOM computation block"
    )


class ModuleDetectionConfig(_ConfigModel):
    """Dendrogram cutting, eigengene and merge parameters."""

    min_module_size: int = Field(
        DEFAULT_MIN_MODULE_SIZE, ge=1, description="Minimum variables per module"
    )
    deep_split: int = Field(
        DEFAULT_DEEP_SPLIT, ge=0, le=4, description="Branch split sensitivity"
    )
    cut_height: Optional[float] = Field(
        None, gt=0.0, le=1.0, description="Maximum joining height (None = auto)"
    )
    merge_cut_height: float = Field(
        DEFAULT_MERGE_CUT_HEIGHT,
        ge=0.0,
        le=1.0,
        description="Eigengene dissimilarity below which modules merge",
    )
    scale_eigengenes: bool = Field(
        False, description="Scale member variables to unit variance before PCA"
    )


class TraitSpec(_ConfigModel):
    """One named clinical trait."""

    name: str = Field(..., min_length=1)
    kind: Literal["binary", "continuous"] = "continuous"


class TraitSchema(_ConfigModel):
    """
    Named, validated selection of clinical traits.

    Replaces positional column slicing of a metadata table: every trait is
    referenced by name and checked against the sample table before use.
    """

    traits: List[TraitSpec] = Field(..., min_length=1)

    @field_validator("traits")
    @classmethod
    def _unique_names(cls, v: List[TraitSpec]) -> List[TraitSpec]:
        names = [t.name for t in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate trait names: {duplicates}")
        return v

    @property
    def names(self) -> List[str]:
        return [t.name for t in self.traits]

    @classmethod
    def from_names(cls, names: List[str]) -> "TraitSchema":
        return cls(traits=[TraitSpec(name=n) for n in names])

    def select(self, frame: pd.DataFrame) -> pd.DataFrame:
        """
        Validate ``frame`` against the schema and return the trait columns.

        Raises:
            NetworkAnalysisError: If a trait is missing, non-numeric, or a
                binary trait holds values other than 0/1
        """
        missing = [n for n in self.names if n not in frame.columns]
        if missing:
            raise NetworkAnalysisError(
                f"Traits not found in sample table: {missing}. "
                f"Available columns: {list(frame.columns)}"
            )

        selected = frame[self.names]
        for spec in self.traits:
            column = selected[spec.name]
            if pd.api.types.is_bool_dtype(column):
                continue
            if not pd.api.types.is_numeric_dtype(column):
                raise NetworkAnalysisError(
                    f"Trait '{spec.name}' must be numeric (got dtype {column.dtype})"
                )
            if spec.kind == "binary":
                observed = set(np.unique(column.dropna().to_numpy()))
                if not observed <= {0, 1}:
                    raise NetworkAnalysisError(
                        f"Binary trait '{spec.name}' has values outside {{0, 1}}: "
                        f"{sorted(observed - {0, 1})}"
                    )

        return selected.astype(float)


class PipelineConfig(_ConfigModel):
    """Complete parameter set for one network analysis run."""

    feature_filter: FeatureFilterConfig = Field(default_factory=FeatureFilterConfig)
    soft_threshold: Optional[SoftThresholdConfig] = Field(
        None, description="Run the soft-threshold diagnostic when set"
    )
    network: NetworkConfig
    modules: ModuleDetectionConfig = Field(default_factory=ModuleDetectionConfig)
    traits: Optional[TraitSchema] = None
    membership_trait: Optional[str] = Field(
        None, description="Trait used for gene significance"
    )

    @model_validator(mode="after")
    def _membership_trait_known(self) -> "PipelineConfig":
        if self.membership_trait is not None:
            if self.traits is None or self.membership_trait not in self.traits.names:
                raise ValueError(
                    f"membership_trait '{self.membership_trait}' must be listed in traits"
                )
        return self

    @classmethod
    def load(cls, path: Path) -> "PipelineConfig":
        """Load a configuration from a TOML file."""
        path = Path(path)
        with open(path, "rb") as f:
            data = tomllib.load(f)
        logger.debug(f"Loaded pipeline configuration from {path}")
        return cls.model_validate(data)

    def save(self, path: Path) -> None:
        """Write the configuration as TOML (unset optional fields are omitted)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            tomli_w.dump(self.model_dump(exclude_none=True), f)
        logger.debug(f"Saved pipeline configuration to {path}")
