"""
Exception hierarchy for network analysis operations.

Every error here is a data-quality condition that the caller resolves by
re-parameterising the analysis (a different power, minimum module size, or
trait selection); none of them is retried internally.
"""

from typing import List, Optional


class NetworkAnalysisError(Exception):
    """Base exception for co-expression network analysis operations."""

    pass


class EmptyFeatureSetError(NetworkAnalysisError):
    """Feature filtering removed every column of the expression matrix."""

    pass


class DegenerateColumnError(NetworkAnalysisError):
    """A zero-variance column reached correlation-based network construction."""

    def __init__(self, message: str, columns: Optional[List[str]] = None):
        super().__init__(message)
        self.columns = list(columns or [])


class NoModulesFoundError(NetworkAnalysisError):
    """Dendrogram cutting produced no module of the minimum size."""

    pass


class ConstantTraitError(NetworkAnalysisError):
    """A trait has zero variance, so its correlations are undefined."""

    def __init__(self, message: str, trait: Optional[str] = None):
        super().__init__(message)
        self.trait = trait


class NoScaleFreeFitWarning(UserWarning):
    """No candidate soft-threshold power reached the scale-free fit target."""

    pass
