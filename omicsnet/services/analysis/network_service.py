"""
Co-expression network service for WGCNA-style module identification.

This service wraps the numerical network steps (adjacency, topological overlap,
dynamic branch cut, eigengene merge) with AnnData handling, enabling
identification of co-expression modules in miRNA, protein and metabolite
matrices and their correlation with clinical traits.

All methods return 3-tuples (AnnData, Dict, AnalysisStep) for provenance tracking and
reproducible notebook export.
"""

from typing import Any, Dict, List, Optional, Tuple, Union

import anndata
import numpy as np
import pandas as pd

from omicsnet.config.constants import (
    DEFAULT_DEEP_SPLIT,
    DEFAULT_MERGE_CUT_HEIGHT,
    DEFAULT_MIN_MODULE_SIZE,
    DEFAULT_R_SQUARED_CUTOFF,
    DEFAULT_RELAXED_R_SQUARED_CUTOFF,
    DEFAULT_TOM_BLOCK_SIZE,
    GREY_MODULE,
    MIN_NETWORK_SAMPLES,
    RECOMMENDED_NETWORK_SAMPLES,
    SIGNIFICANCE_ALPHA,
    UNASSIGNED_MODULE,
    module_color,
)
from omicsnet.config.network_config import PipelineConfig, TraitSchema
from omicsnet.core.analysis_ir import AnalysisStep, ParameterSpec, extract_unique_imports
from omicsnet.core.exceptions import NetworkAnalysisError
from omicsnet.core.expression import expression_frame
from omicsnet.services.analysis.module_detection import detect_modules
from omicsnet.services.analysis.network_construction import (
    build_adjacency,
    pick_soft_threshold,
    tom_dissimilarity,
    topological_overlap,
)
from omicsnet.services.analysis.trait_association import (
    correlate_eigengenes_with_traits,
    hub_flags,
    membership_table,
    module_membership,
    trait_significance,
)
from omicsnet.services.quality.feature_filter_service import FeatureFilterService
from omicsnet.utils.logger import get_logger

logger = get_logger(__name__)

EIGENGENE_KEY = "module_eigengenes"
EIGENGENE_PREFIX = "ME"


def eigengene_column(label: int) -> str:
    """Eigengene column name for a module label (``ME1``, ``ME2``, ...)."""
    return f"{EIGENGENE_PREFIX}{label}"


class CoexpressionNetworkService:
    """
    Weighted co-expression network analysis service for omics matrices.

    This stateless service builds a soft-thresholded correlation network,
    identifies modules on its topological overlap, summarises each module by
    its eigengene and relates modules and variables to clinical traits.

    Key features:
    - Scale-free soft-threshold diagnostic with an explicit selection rule
    - Signed or unsigned adjacency, min- or product-form topological overlap
    - Dynamic branch cut with unassigned (grey) variables
    - Iterative eigengene-correlation merge with recorded history
    - Module-trait association with pairwise-complete Student-t p-values and FDR
    - Module membership (kME), trait significance and hub flags

    Example usage:
        service = CoexpressionNetworkService()
        adata_modules, stats, ir = service.identify_modules(
            adata,
            soft_power=6,
            network_type="signed",
            min_module_size=30,
        )
    """

    def __init__(self):
        """Initialize the co-expression network service."""
        logger.debug("Initializing CoexpressionNetworkService")

    # ------------------------------------------------------------------
    # IR builders
    # ------------------------------------------------------------------

    def _create_ir_pick_soft_threshold(
        self,
        powers: List[float],
        network_type: str,
        correlation_method: str,
        r_squared_cutoff: float,
        relaxed_r_squared_cutoff: float,
    ) -> AnalysisStep:
        """Create IR for soft-threshold power selection."""
        return AnalysisStep(
            operation="network.pick_soft_threshold",
            tool_name="pick_soft_threshold",
            description="Evaluate soft-threshold powers against the scale-free topology criterion",
            library="omicsnet.services.analysis.network_service",
            code_template="""# Soft-threshold power selection
from omicsnet.services.analysis.network_service import CoexpressionNetworkService

service = CoexpressionNetworkService()
adata_threshold, stats, _ = service.pick_soft_threshold(
    adata,
    powers={{ powers | tojson }},
    network_type={{ network_type | tojson }},
    correlation_method={{ correlation_method | tojson }},
    r_squared_cutoff={{ r_squared_cutoff }},
    relaxed_r_squared_cutoff={{ relaxed_r_squared_cutoff }}
)
print(adata_threshold.uns["soft_threshold"]["power_table"])
print(f"Selected power: {stats['selected_power']} ({stats['selection_rule']})")""",
            imports=[
                "from omicsnet.services.analysis.network_service import CoexpressionNetworkService"
            ],
            parameters={
                "powers": powers,
                "network_type": network_type,
                "correlation_method": correlation_method,
                "r_squared_cutoff": r_squared_cutoff,
                "relaxed_r_squared_cutoff": relaxed_r_squared_cutoff,
            },
            parameter_schema={
                "powers": ParameterSpec(
                    param_type="List[float]",
                    papermill_injectable=True,
                    default_value=list(range(1, 21)),
                    required=False,
                    validation_rule="all(p > 0 for p in powers)",
                    description="Candidate soft-threshold powers",
                ),
                "network_type": ParameterSpec(
                    param_type="str",
                    papermill_injectable=True,
                    default_value="unsigned",
                    required=False,
                    validation_rule="network_type in ['unsigned', 'signed']",
                    description="Adjacency sign handling",
                ),
                "correlation_method": ParameterSpec(
                    param_type="str",
                    papermill_injectable=True,
                    default_value="pearson",
                    required=False,
                    validation_rule="correlation_method in ['pearson', 'spearman']",
                    description="Correlation method for network construction",
                ),
                "r_squared_cutoff": ParameterSpec(
                    param_type="float",
                    papermill_injectable=True,
                    default_value=DEFAULT_R_SQUARED_CUTOFF,
                    required=False,
                    validation_rule="0 < r_squared_cutoff <= 1",
                    description="Signed R² target for scale-free topology",
                ),
                "relaxed_r_squared_cutoff": ParameterSpec(
                    param_type="float",
                    papermill_injectable=True,
                    default_value=DEFAULT_RELAXED_R_SQUARED_CUTOFF,
                    required=False,
                    validation_rule="0 < relaxed_r_squared_cutoff <= r_squared_cutoff",
                    description="Fallback signed R² threshold",
                ),
            },
            input_entities=["adata"],
            output_entities=["adata_threshold"],
        )

    def _create_ir_identify_modules(
        self,
        soft_power: float,
        network_type: str,
        correlation_method: str,
        overlap: str,
        min_module_size: int,
        deep_split: int,
        cut_height: Optional[float],
        merge_cut_height: float,
        scale_eigengenes: bool,
    ) -> AnalysisStep:
        """Create IR for module identification."""
        return AnalysisStep(
            operation="network.identify_modules",
            tool_name="identify_modules",
            description="Identify co-expression modules on the topological overlap dendrogram",
            library="omicsnet.services.analysis.network_service",
            code_template="""# Co-expression module identification
from omicsnet.services.analysis.network_service import CoexpressionNetworkService

service = CoexpressionNetworkService()
adata_modules, stats, _ = service.identify_modules(
    adata,
    soft_power={{ soft_power }},
    network_type={{ network_type | tojson }},
    correlation_method={{ correlation_method | tojson }},
    overlap={{ overlap | tojson }},
    min_module_size={{ min_module_size }},
    deep_split={{ deep_split }},
    cut_height={{ cut_height }},
    merge_cut_height={{ merge_cut_height }},
    scale_eigengenes={{ scale_eigengenes }}
)
print(f"Identified {stats['n_modules']} modules")
print(f"Module sizes: {stats['module_sizes']}")""",
            imports=[
                "from omicsnet.services.analysis.network_service import CoexpressionNetworkService"
            ],
            parameters={
                "soft_power": soft_power,
                "network_type": network_type,
                "correlation_method": correlation_method,
                "overlap": overlap,
                "min_module_size": min_module_size,
                "deep_split": deep_split,
                "cut_height": cut_height,
                "merge_cut_height": merge_cut_height,
                "scale_eigengenes": scale_eigengenes,
            },
            parameter_schema={
                "soft_power": ParameterSpec(
                    param_type="float",
                    papermill_injectable=True,
                    default_value=None,
                    required=True,
                    validation_rule="soft_power > 0",
                    description="Soft-threshold power applied to correlations",
                ),
                "network_type": ParameterSpec(
                    param_type="str",
                    papermill_injectable=True,
                    default_value="unsigned",
                    required=False,
                    validation_rule="network_type in ['unsigned', 'signed']",
                    description="Adjacency sign handling",
                ),
                "correlation_method": ParameterSpec(
                    param_type="str",
                    papermill_injectable=True,
                    default_value="pearson",
                    required=False,
                    validation_rule="correlation_method in ['pearson', 'spearman']",
                    description="Correlation method for network construction",
                ),
                "overlap": ParameterSpec(
                    param_type="str",
                    papermill_injectable=True,
                    default_value="min",
                    required=False,
                    validation_rule="overlap in ['min', 'product']",
                    description="Shared-neighbour term of the topological overlap",
                ),
                "min_module_size": ParameterSpec(
                    param_type="int",
                    papermill_injectable=True,
                    default_value=DEFAULT_MIN_MODULE_SIZE,
                    required=False,
                    validation_rule="min_module_size >= 1",
                    description="Minimum number of variables per module",
                ),
                "deep_split": ParameterSpec(
                    param_type="int",
                    papermill_injectable=True,
                    default_value=DEFAULT_DEEP_SPLIT,
                    required=False,
                    validation_rule="0 <= deep_split <= 4",
                    description="Branch split sensitivity",
                ),
                "cut_height": ParameterSpec(
                    param_type="Optional[float]",
                    papermill_injectable=True,
                    default_value=None,
                    required=False,
                    validation_rule="cut_height is None or 0 < cut_height <= 1",
                    description="Maximum joining height (None = automatic)",
                ),
                "merge_cut_height": ParameterSpec(
                    param_type="float",
                    papermill_injectable=True,
                    default_value=DEFAULT_MERGE_CUT_HEIGHT,
                    required=False,
                    validation_rule="0 <= merge_cut_height <= 1",
                    description="Eigengene dissimilarity below which modules merge",
                ),
                "scale_eigengenes": ParameterSpec(
                    param_type="bool",
                    papermill_injectable=True,
                    default_value=False,
                    required=False,
                    description="Scale member variables before eigengene PCA",
                ),
            },
            input_entities=["adata"],
            output_entities=["adata_modules"],
        )

    def _create_ir_correlate_modules_with_traits(
        self,
        traits: List[str],
        correlation_method: str,
    ) -> AnalysisStep:
        """Create IR for module-trait correlation."""
        return AnalysisStep(
            operation="network.correlate_modules_with_traits",
            tool_name="correlate_modules_with_traits",
            description="Correlate module eigengenes with clinical traits",
            library="omicsnet.services.analysis.network_service",
            code_template="""# Module-trait correlation
from omicsnet.services.analysis.network_service import CoexpressionNetworkService

service = CoexpressionNetworkService()
adata_traits, stats, _ = service.correlate_modules_with_traits(
    adata_modules,
    traits={{ traits | tojson }},
    correlation_method={{ correlation_method | tojson }}
)
print(adata_traits.uns["module_trait_association"]["correlation"].round(2))
print(f"Significant pairs (FDR < 0.05): {stats['n_significant_correlations']}")""",
            imports=[
                "from omicsnet.services.analysis.network_service import CoexpressionNetworkService"
            ],
            parameters={
                "traits": traits,
                "correlation_method": correlation_method,
            },
            parameter_schema={
                "traits": ParameterSpec(
                    param_type="List[str]",
                    papermill_injectable=True,
                    default_value=[],
                    required=True,
                    description="Clinical trait columns in obs",
                ),
                "correlation_method": ParameterSpec(
                    param_type="str",
                    papermill_injectable=True,
                    default_value="pearson",
                    required=False,
                    validation_rule="correlation_method in ['pearson', 'spearman']",
                    description="Correlation method",
                ),
            },
            input_entities=["adata_modules"],
            output_entities=["adata_traits"],
        )

    def _create_ir_calculate_module_membership(
        self,
        trait: Optional[str],
        correlation_method: str,
    ) -> AnalysisStep:
        """Create IR for module membership and trait significance."""
        return AnalysisStep(
            operation="network.calculate_module_membership",
            tool_name="calculate_module_membership",
            description="Calculate module membership (kME) and trait significance per variable",
            library="omicsnet.services.analysis.network_service",
            code_template="""# Module membership and trait significance
from omicsnet.services.analysis.network_service import CoexpressionNetworkService

service = CoexpressionNetworkService()
adata_kme, stats, _ = service.calculate_module_membership(
    adata_modules,
    trait={{ trait | pprint }},
    correlation_method={{ correlation_method | tojson }}
)
print(f"Hub variables: {stats['n_hub_variables']}")""",
            imports=[
                "from omicsnet.services.analysis.network_service import CoexpressionNetworkService"
            ],
            parameters={
                "trait": trait,
                "correlation_method": correlation_method,
            },
            parameter_schema={
                "trait": ParameterSpec(
                    param_type="Optional[str]",
                    papermill_injectable=True,
                    default_value=None,
                    required=False,
                    description="Trait for gene significance (None = membership only)",
                ),
                "correlation_method": ParameterSpec(
                    param_type="str",
                    papermill_injectable=True,
                    default_value="pearson",
                    required=False,
                    validation_rule="correlation_method in ['pearson', 'spearman']",
                    description="Correlation method",
                ),
            },
            input_entities=["adata_modules"],
            output_entities=["adata_kme"],
        )

    def _create_ir_run_pipeline(
        self,
        config: PipelineConfig,
        steps: List[AnalysisStep],
    ) -> AnalysisStep:
        """Create IR for a full configured pipeline run."""
        imports = extract_unique_imports(
            steps, extra=["from omicsnet.config import PipelineConfig"]
        )
        return AnalysisStep(
            operation="network.run_pipeline",
            tool_name="run_pipeline",
            description="Filter features, identify modules and relate them to traits",
            library="omicsnet.services.analysis.network_service",
            code_template="""# Co-expression network pipeline
from omicsnet.config import PipelineConfig
from omicsnet.services.analysis.network_service import CoexpressionNetworkService

config = PipelineConfig.model_validate({{ config | pprint }})
service = CoexpressionNetworkService()
adata_network, stats, _ = service.run_pipeline(adata, config)
print(f"Steps: {stats['steps']}")
print(f"Identified {stats['identify_modules']['n_modules']} modules")""",
            imports=imports,
            parameters={"config": config.model_dump(mode="json")},
            parameter_schema={
                "config": ParameterSpec(
                    param_type="Dict[str, Any]",
                    papermill_injectable=False,
                    default_value={},
                    required=True,
                    description="Serialised PipelineConfig",
                ),
            },
            input_entities=["adata"],
            output_entities=["adata_network"],
            execution_context={"steps": [step.operation for step in steps]},
        )

    # ------------------------------------------------------------------
    # Analysis methods
    # ------------------------------------------------------------------

    def _check_sample_size(self, n_samples: int) -> None:
        if n_samples < MIN_NETWORK_SAMPLES:
            raise NetworkAnalysisError(
                f"Network construction needs at least {MIN_NETWORK_SAMPLES} samples "
                f"(got {n_samples})"
            )
        if n_samples < RECOMMENDED_NETWORK_SAMPLES:
            logger.warning(
                f"Only {n_samples} samples; correlation networks are unstable below "
                f"{RECOMMENDED_NETWORK_SAMPLES} samples"
            )

    def pick_soft_threshold(
        self,
        adata: anndata.AnnData,
        powers: Optional[List[float]] = None,
        network_type: str = "unsigned",
        correlation_method: str = "pearson",
        r_squared_cutoff: float = DEFAULT_R_SQUARED_CUTOFF,
        relaxed_r_squared_cutoff: float = DEFAULT_RELAXED_R_SQUARED_CUTOFF,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Evaluate soft-threshold powers using the scale-free topology criterion.

        The selected power is a suggestion: the fit table stored in
        ``uns["soft_threshold"]["power_table"]`` is meant for review before a
        power is passed to ``identify_modules``.

        Args:
            adata: AnnData object with expression data (samples × variables)
            powers: Powers to evaluate (default: 1..20)
            network_type: 'unsigned' or 'signed'
            correlation_method: 'pearson' or 'spearman'
            r_squared_cutoff: Signed R² target
            relaxed_r_squared_cutoff: Fallback signed R² threshold

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
                - AnnData with the fit table in uns["soft_threshold"]
                - Statistics with 'selected_power' (None if no power fits)
                - IR for notebook export

        Example:
            service = CoexpressionNetworkService()
            adata_threshold, stats, ir = service.pick_soft_threshold(adata)
            print(f"Suggested power: {stats['selected_power']}")
        """
        if powers is None:
            powers = list(range(1, 21))
        powers = sorted(powers)

        try:
            logger.info("Starting soft power threshold selection")
            self._check_sample_size(adata.n_obs)
            logger.info(f"Input data: {adata.n_obs} samples × {adata.n_vars} variables")

            result = pick_soft_threshold(
                expression_frame(adata).to_numpy(),
                powers=powers,
                network_type=network_type,
                method=correlation_method,
                r_squared_cutoff=r_squared_cutoff,
                relaxed_r_squared_cutoff=relaxed_r_squared_cutoff,
                names=list(adata.var_names),
            )

            adata_threshold = adata.copy()
            adata_threshold.uns["soft_threshold"] = {
                "power_table": result.power_table,
                "selected_power": result.selected_power,
                "selection_rule": result.selection_rule,
                "network_type": network_type,
                "correlation_method": correlation_method,
                "r_squared_cutoff": r_squared_cutoff,
                "relaxed_r_squared_cutoff": relaxed_r_squared_cutoff,
            }

            achieved = (
                float(result.fit_at(result.selected_power)["signed_r_squared"])
                if result.selected_power is not None
                else None
            )
            analysis_stats = {
                "selected_power": result.selected_power,
                "selection_rule": result.selection_rule,
                "achieved_signed_r_squared": achieved,
                "n_powers_evaluated": len(powers),
                "n_variables_used": int(adata.n_vars),
                "network_type": network_type,
                "correlation_method": correlation_method,
                "analysis_type": "soft_power_selection",
            }

            logger.info(
                f"Soft power selection complete: power={result.selected_power} "
                f"({result.selection_rule})"
            )

            ir = self._create_ir_pick_soft_threshold(
                powers,
                network_type,
                correlation_method,
                r_squared_cutoff,
                relaxed_r_squared_cutoff,
            )
            return adata_threshold, analysis_stats, ir

        except NetworkAnalysisError:
            raise
        except Exception as e:
            logger.exception(f"Error in soft power selection: {e}")
            raise NetworkAnalysisError(f"Soft power selection failed: {str(e)}") from e

    def identify_modules(
        self,
        adata: anndata.AnnData,
        soft_power: float,
        network_type: str = "unsigned",
        correlation_method: str = "pearson",
        overlap: str = "min",
        min_module_size: int = DEFAULT_MIN_MODULE_SIZE,
        deep_split: int = DEFAULT_DEEP_SPLIT,
        cut_height: Optional[float] = None,
        merge_cut_height: float = DEFAULT_MERGE_CUT_HEIGHT,
        scale_eigengenes: bool = False,
        block_size: int = DEFAULT_TOM_BLOCK_SIZE,
        store_tom: bool = False,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Identify co-expression modules.

        Builds the soft-thresholded adjacency, its topological overlap, an
        average-linkage dendrogram of 1 - TOM, cuts it with the dynamic branch
        cut and merges modules with near-identical eigengenes.

        Args:
            adata: AnnData object with expression data (samples × variables),
                no missing values and no constant variables
            soft_power: Soft-threshold power (see pick_soft_threshold)
            network_type: 'unsigned' or 'signed'
            correlation_method: 'pearson' or 'spearman'
            overlap: 'min' or 'product' topological overlap
            min_module_size: Minimum variables per module
            deep_split: Branch split sensitivity (0-4)
            cut_height: Maximum joining height (None = automatic)
            merge_cut_height: Eigengene dissimilarity below which modules merge
            scale_eigengenes: Scale member variables before eigengene PCA
            block_size: Rows per TOM computation block
            store_tom: Keep the TOM in varp["tom"]

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
                - AnnData with var['module'], var['module_color'],
                  obsm['module_eigengenes'] and uns['network']
                - Analysis statistics
                - IR for notebook export

        Raises:
            DegenerateColumnError: If a variable is constant
            NoModulesFoundError: If no module reaches min_module_size
        """
        try:
            logger.info("Starting co-expression module identification")
            self._check_sample_size(adata.n_obs)
            logger.info(f"Input data: {adata.n_obs} samples × {adata.n_vars} variables")

            adata_modules = adata.copy()
            X = expression_frame(adata_modules).to_numpy()
            names = list(adata_modules.var_names)

            logger.info(
                f"Building {network_type} adjacency (power={soft_power}, "
                f"{correlation_method})"
            )
            adjacency = build_adjacency(
                X,
                soft_power,
                network_type=network_type,
                method=correlation_method,
                names=names,
            )

            logger.info(f"Computing topological overlap ({overlap})")
            tom = topological_overlap(adjacency, overlap=overlap, block_size=block_size)

            logger.info("Clustering and cutting dendrogram...")
            result = detect_modules(
                X,
                tom_dissimilarity(tom),
                min_module_size=min_module_size,
                deep_split=deep_split,
                cut_height=cut_height,
                merge_cut_height=merge_cut_height,
                scale_eigengenes=scale_eigengenes,
                sample_names=list(adata_modules.obs_names),
            )

            labels = result.labels
            adata_modules.var["module"] = labels
            adata_modules.var["module_color"] = [module_color(int(m)) for m in labels]

            eigengenes = result.eigengenes.rename(columns=eigengene_column)
            eigengenes.index = adata_modules.obs_names
            adata_modules.obsm[EIGENGENE_KEY] = eigengenes

            if store_tom:
                adata_modules.varp["tom"] = tom

            module_sizes = {
                str(label): size
                for label, size in result.module_sizes().items()
                if label != UNASSIGNED_MODULE
            }
            n_unassigned = int((labels == UNASSIGNED_MODULE).sum())

            adata_modules.uns["network"] = {
                "soft_power": soft_power,
                "network_type": network_type,
                "correlation_method": correlation_method,
                "overlap": overlap,
                "min_module_size": min_module_size,
                "deep_split": deep_split,
                "cut_height": result.cut_height,
                "merge_cut_height": merge_cut_height,
                "scale_eigengenes": scale_eigengenes,
                "module_sizes": module_sizes,
                "module_colors": {
                    str(label): module_color(int(label)) for label in result.eigengenes.columns
                },
                "variance_explained": {
                    str(label): value for label, value in result.variance_explained.items()
                },
                "n_unmerged_modules": int(
                    len(set(result.unmerged_labels.tolist()) - {UNASSIGNED_MODULE})
                ),
                "merge_history": pd.DataFrame(
                    result.merge_history,
                    columns=["iteration", "kept", "absorbed", "eigengene_correlation"],
                ),
                "linkage_matrix": result.linkage_matrix,
            }

            analysis_stats = {
                "n_modules": result.n_modules,
                "n_variables_in_modules": int(adata_modules.n_vars - n_unassigned),
                "n_variables_unassigned": n_unassigned,
                "module_sizes": module_sizes,
                "n_merges": len(result.merge_history),
                "cut_height": result.cut_height,
                "soft_power": soft_power,
                "network_type": network_type,
                "correlation_method": correlation_method,
                "analysis_type": "module_identification",
            }

            logger.info(
                f"Module identification complete: {result.n_modules} modules, "
                f"{adata_modules.n_vars - n_unassigned} variables assigned, "
                f"{n_unassigned} unassigned"
            )

            ir = self._create_ir_identify_modules(
                soft_power,
                network_type,
                correlation_method,
                overlap,
                min_module_size,
                deep_split,
                cut_height,
                merge_cut_height,
                scale_eigengenes,
            )
            return adata_modules, analysis_stats, ir

        except NetworkAnalysisError:
            raise
        except Exception as e:
            logger.exception(f"Error in module identification: {e}")
            raise NetworkAnalysisError(f"Module identification failed: {str(e)}") from e

    def _eigengenes(self, adata: anndata.AnnData) -> pd.DataFrame:
        if EIGENGENE_KEY not in adata.obsm:
            raise NetworkAnalysisError(
                "Module eigengenes not found. Run identify_modules first."
            )
        eigengenes = adata.obsm[EIGENGENE_KEY]
        if not isinstance(eigengenes, pd.DataFrame):
            raise NetworkAnalysisError(
                f"obsm['{EIGENGENE_KEY}'] must be a DataFrame with ME<label> columns"
            )
        return eigengenes

    def correlate_modules_with_traits(
        self,
        adata: anndata.AnnData,
        traits: Union[List[str], TraitSchema],
        correlation_method: str = "pearson",
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Correlate module eigengenes with clinical traits.

        Args:
            adata: AnnData object with module eigengenes (run identify_modules first)
            traits: Trait names in obs, or a TraitSchema
            correlation_method: Correlation method ('pearson' or 'spearman')

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
                - AnnData with correlation, p_value, n_obs and fdr tables in
                  uns['module_trait_association']
                - Analysis statistics
                - IR for notebook export

        Raises:
            ConstantTraitError: If a trait has zero variance
        """
        try:
            schema = (
                traits if isinstance(traits, TraitSchema) else TraitSchema.from_names(traits)
            )
            logger.info(f"Correlating modules with traits: {schema.names}")

            eigengenes = self._eigengenes(adata)
            trait_frame = schema.select(adata.obs)

            association = correlate_eigengenes_with_traits(
                eigengenes, trait_frame, method=correlation_method
            )

            adata_traits = adata.copy()
            adata_traits.uns["module_trait_association"] = {
                "correlation": association.correlation,
                "p_value": association.p_value,
                "n_obs": association.n_obs,
                "fdr": association.fdr,
                "traits": schema.names,
                "correlation_method": correlation_method,
            }

            long = association.to_long()
            significant = long[long["fdr"] < SIGNIFICANCE_ALPHA]

            analysis_stats = {
                "n_modules": int(eigengenes.shape[1]),
                "n_traits": len(schema.names),
                "n_tests": int(len(long)),
                "n_significant_correlations": int(len(significant)),
                "significant_pairs": [
                    {
                        "module": row.module,
                        "trait": row.trait,
                        "correlation": float(row.correlation),
                        "fdr": float(row.fdr),
                    }
                    for row in significant.itertuples(index=False)
                ],
                "correlation_method": correlation_method,
                "analysis_type": "module_trait_correlation",
            }

            logger.info(
                f"Module-trait correlation complete: {len(significant)} of "
                f"{len(long)} pairs significant at FDR < {SIGNIFICANCE_ALPHA}"
            )

            ir = self._create_ir_correlate_modules_with_traits(
                schema.names, correlation_method
            )
            return adata_traits, analysis_stats, ir

        except NetworkAnalysisError:
            raise
        except Exception as e:
            logger.exception(f"Error in module-trait correlation: {e}")
            raise NetworkAnalysisError(f"Module-trait correlation failed: {str(e)}") from e

    def calculate_module_membership(
        self,
        adata: anndata.AnnData,
        trait: Optional[str] = None,
        correlation_method: str = "pearson",
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Calculate module membership (kME) and, optionally, trait significance.

        Module membership is the correlation between a variable's expression
        and a module eigengene. Variables in the top 10% of |kME| within their
        own module are flagged as hubs.

        Args:
            adata: AnnData object with module eigengenes
            trait: Trait in obs for gene significance (optional)
            correlation_method: Correlation method ('pearson' or 'spearman')

        Returns:
            Tuple with AnnData containing MM_<label>, p_MM_<label>, is_hub
            and GS_<trait>, p_GS_<trait> columns in var, statistics, and IR

        Raises:
            ConstantTraitError: If the trait has zero variance
        """
        try:
            logger.info("Calculating module membership (kME)")

            if "module" not in adata.var.columns:
                raise NetworkAnalysisError(
                    "Module assignments not found. Run identify_modules first."
                )
            eigengenes = self._eigengenes(adata)
            labelled = self._labelled_eigengenes(eigengenes)
            expression = expression_frame(adata)

            membership = module_membership(expression, labelled, method=correlation_method)

            adata_kme = adata.copy()
            for label in labelled.columns:
                adata_kme.var[f"MM_{label}"] = membership["membership"][label].to_numpy()
                adata_kme.var[f"p_MM_{label}"] = membership["p_value"][label].to_numpy()

            labels = pd.Series(
                adata_kme.var["module"].to_numpy(), index=adata_kme.var_names
            )
            adata_kme.var["is_hub"] = hub_flags(labels, membership["membership"]).to_numpy()

            n_significant_gs = None
            if trait is not None:
                trait_values = TraitSchema.from_names([trait]).select(adata.obs)[trait]
                significance = trait_significance(
                    expression, trait_values, method=correlation_method
                )
                adata_kme.var[f"GS_{trait}"] = significance["significance"].to_numpy()
                adata_kme.var[f"p_GS_{trait}"] = significance["p_value"].to_numpy()
                n_significant_gs = int((significance["p_value"] < SIGNIFICANCE_ALPHA).sum())

            adata_kme.uns["module_membership"] = {
                "modules": [int(label) for label in labelled.columns],
                "trait": trait,
                "correlation_method": correlation_method,
            }

            n_hubs = int(adata_kme.var["is_hub"].sum())
            analysis_stats = {
                "n_modules_analyzed": int(labelled.shape[1]),
                "n_variables": int(adata_kme.n_vars),
                "n_hub_variables": n_hubs,
                "hub_variables": adata_kme.var_names[adata_kme.var["is_hub"].to_numpy()].tolist(),
                "trait": trait,
                "n_significant_trait_variables": n_significant_gs,
                "analysis_type": "module_membership",
            }

            logger.info(f"Module membership complete: {n_hubs} hub variables")

            ir = self._create_ir_calculate_module_membership(trait, correlation_method)
            return adata_kme, analysis_stats, ir

        except NetworkAnalysisError:
            raise
        except Exception as e:
            logger.exception(f"Error calculating module membership: {e}")
            raise NetworkAnalysisError(
                f"Module membership calculation failed: {str(e)}"
            ) from e

    def run_pipeline(
        self,
        adata: anndata.AnnData,
        config: PipelineConfig,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Run filtering, module identification and trait analysis from one config.

        Steps, in order: feature filtering, the soft-threshold diagnostic (when
        ``config.soft_threshold`` is set), module identification, module-trait
        association (when ``config.traits`` is set) and module membership with
        trait significance (when ``config.membership_trait`` is set).

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
                - AnnData carrying the results of every step
                - Statistics keyed by step name, plus 'steps'
                - Combined IR for notebook export
        """
        pipeline_stats: Dict[str, Any] = {"steps": []}
        steps: List[AnalysisStep] = []

        def record(name: str, stats: Dict[str, Any], ir: AnalysisStep) -> None:
            pipeline_stats["steps"].append(name)
            pipeline_stats[name] = stats
            steps.append(ir)

        filter_cfg = config.feature_filter
        current, stats, ir = FeatureFilterService().filter_features(
            adata,
            min_distinct_values=filter_cfg.min_distinct_values,
            min_variance=filter_cfg.min_variance,
            near_zero_variance=filter_cfg.near_zero_variance,
            freq_cut=filter_cfg.freq_cut,
            unique_cut=filter_cfg.unique_cut,
            exclude=filter_cfg.exclude,
        )
        record("filter_features", stats, ir)

        network_cfg = config.network
        if config.soft_threshold is not None:
            threshold_cfg = config.soft_threshold
            current, stats, ir = self.pick_soft_threshold(
                current,
                powers=threshold_cfg.powers,
                network_type=network_cfg.network_type,
                correlation_method=network_cfg.correlation_method,
                r_squared_cutoff=threshold_cfg.r_squared_cutoff,
                relaxed_r_squared_cutoff=threshold_cfg.relaxed_r_squared_cutoff,
            )
            record("pick_soft_threshold", stats, ir)
            if stats["selected_power"] != network_cfg.soft_power:
                logger.warning(
                    f"Configured soft power {network_cfg.soft_power} differs from the "
                    f"suggested power {stats['selected_power']}"
                )

        module_cfg = config.modules
        current, stats, ir = self.identify_modules(
            current,
            soft_power=network_cfg.soft_power,
            network_type=network_cfg.network_type,
            correlation_method=network_cfg.correlation_method,
            overlap=network_cfg.overlap,
            min_module_size=module_cfg.min_module_size,
            deep_split=module_cfg.deep_split,
            cut_height=module_cfg.cut_height,
            merge_cut_height=module_cfg.merge_cut_height,
            scale_eigengenes=module_cfg.scale_eigengenes,
            block_size=network_cfg.block_size,
        )
        record("identify_modules", stats, ir)

        if config.traits is not None:
            current, stats, ir = self.correlate_modules_with_traits(
                current,
                config.traits,
                correlation_method=network_cfg.correlation_method,
            )
            record("correlate_modules_with_traits", stats, ir)

        if config.membership_trait is not None:
            current, stats, ir = self.calculate_module_membership(
                current,
                trait=config.membership_trait,
                correlation_method=network_cfg.correlation_method,
            )
            record("calculate_module_membership", stats, ir)

        pipeline_stats["analysis_type"] = "network_pipeline"
        logger.info(f"Pipeline complete: {', '.join(pipeline_stats['steps'])}")

        return current, pipeline_stats, self._create_ir_run_pipeline(config, steps)

    # ------------------------------------------------------------------
    # Result accessors
    # ------------------------------------------------------------------

    @staticmethod
    def _labelled_eigengenes(eigengenes: pd.DataFrame) -> pd.DataFrame:
        return eigengenes.rename(columns=lambda c: int(str(c)[len(EIGENGENE_PREFIX):]))

    def _resolve_module(self, adata: anndata.AnnData, module: Union[int, str]) -> int:
        if "module" not in adata.var.columns:
            raise NetworkAnalysisError(
                "Module assignments not found. Run identify_modules first."
            )
        if isinstance(module, str):
            matches = adata.var.loc[adata.var["module_color"] == module, "module"]
            if matches.empty:
                available = sorted(adata.var["module_color"].unique().tolist())
                raise NetworkAnalysisError(
                    f"Module '{module}' not found. Available modules: {available}"
                )
            return int(matches.iloc[0])
        return int(module)

    def get_module_variables(
        self,
        adata: anndata.AnnData,
        module: Union[int, str],
    ) -> List[str]:
        """
        Get list of variables in a specific module.

        Args:
            adata: AnnData object with module assignments
            module: Module label (e.g. 1) or colour (e.g. 'turquoise')

        Returns:
            List of variable names in the module
        """
        label = self._resolve_module(adata, module)
        variables = adata.var_names[(adata.var["module"] == label).to_numpy()].tolist()

        if not variables:
            available = sorted(adata.var["module"].unique().tolist())
            logger.warning(
                f"No variables found in module {module}. Available modules: {available}"
            )

        return variables

    def get_module_summary(
        self,
        adata: anndata.AnnData,
    ) -> Dict[str, Any]:
        """
        Get summary of all modules.

        Args:
            adata: AnnData object with module assignments

        Returns:
            Dictionary with module summary statistics
        """
        if "module" not in adata.var.columns:
            raise NetworkAnalysisError(
                "Module assignments not found. Run identify_modules first."
            )

        module_counts = adata.var["module"].value_counts().to_dict()
        modules = sorted(int(m) for m in module_counts if m != UNASSIGNED_MODULE)

        summary = {
            "n_modules": len(modules),
            "module_sizes": {m: int(module_counts[m]) for m in modules},
            "module_colors": {m: module_color(m) for m in modules},
            "total_assigned": int(sum(module_counts[m] for m in modules)),
            "total_unassigned": int(module_counts.get(UNASSIGNED_MODULE, 0)),
            "unassigned_color": GREY_MODULE,
            "modules": modules,
        }

        network = adata.uns.get("network", {})
        if "variance_explained" in network:
            summary["variance_explained"] = {
                m: float(network["variance_explained"][str(m)]) for m in modules
            }

        return summary

    def get_membership_table(
        self,
        adata: anndata.AnnData,
        module: Union[int, str],
        trait: Optional[str] = None,
    ) -> pd.DataFrame:
        """
        Module membership and trait significance for the members of one module.

        Args:
            adata: AnnData object after calculate_module_membership
            module: Module label or colour
            trait: Trait whose GS_<trait> column to include (optional)

        Returns:
            DataFrame ranked by |module membership|, then |trait significance|
        """
        label = self._resolve_module(adata, module)
        mm_columns = [c for c in adata.var.columns if c.startswith("MM_")]
        if not mm_columns:
            raise NetworkAnalysisError(
                "Module membership not found. Run calculate_module_membership first."
            )

        membership = adata.var[mm_columns].rename(columns=lambda c: int(c[3:]))
        membership_p = adata.var[[f"p_{c}" for c in mm_columns]].rename(
            columns=lambda c: int(c[5:])
        )

        significance = None
        if trait is not None:
            gs_column = f"GS_{trait}"
            if gs_column not in adata.var.columns:
                raise NetworkAnalysisError(
                    f"Trait significance for '{trait}' not found. Run "
                    f"calculate_module_membership with trait='{trait}' first."
                )
            significance = pd.DataFrame(
                {
                    "significance": adata.var[gs_column],
                    "p_value": adata.var[f"p_GS_{trait}"],
                }
            )

        labels = pd.Series(adata.var["module"].to_numpy(), index=adata.var_names)
        return membership_table(labels, membership, membership_p, label, significance)
