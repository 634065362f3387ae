"""
SVYEST - Design-based estimation for complex sample surveys

A Python package for estimating means, totals, rates and products of
estimates from weighted, stratified, clustered samples, with linearization
or replicate-weight variance.
"""

from .core import SurveyEstimator, EstimationConfig
from .constants import VarianceMethod, CombinationRule
from .design import SampleDesign
from .estimation import StatisticSpec
from .variance import VarianceBackend, estimate_variance
from .domain import DomainEstimator, estimate_by_domain
from .ratio import RatioEstimator, estimate_ratio, estimate_ratio_auto, estimate_ratio_group
from .product import ProductEstimator, estimate_product
from .decomposition import VarianceDecomposer, VarianceComponents
from .diagnostics import design_diagnostics
from .results import EstimateResult, results_to_frame
from .errors import (ConfigurationError, DataQualityWarning,
                     MethodFallbackWarning, DomainMismatchWarning)

__version__ = "1.0.0"
__all__ = [
    "SurveyEstimator",
    "EstimationConfig",
    "VarianceMethod",
    "CombinationRule",
    "SampleDesign",
    "StatisticSpec",
    "VarianceBackend",
    "estimate_variance",
    "DomainEstimator",
    "estimate_by_domain",
    "RatioEstimator",
    "estimate_ratio",
    "estimate_ratio_auto",
    "estimate_ratio_group",
    "ProductEstimator",
    "estimate_product",
    "VarianceDecomposer",
    "VarianceComponents",
    "design_diagnostics",
    "EstimateResult",
    "results_to_frame",
    "ConfigurationError",
    "DataQualityWarning",
    "MethodFallbackWarning",
    "DomainMismatchWarning",
]
