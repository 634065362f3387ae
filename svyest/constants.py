"""
Shared constants and option enums for svyest
"""

from enum import Enum

from .errors import ConfigurationError


class VarianceMethod(str, Enum):
    """Variance estimation methods understood by the variance backend"""
    LINEARIZATION = "linearization"
    BOOTSTRAP = "bootstrap"
    JACKKNIFE = "jackknife"
    CUSTOM_REPLICATE = "custom_replicate"

    @classmethod
    def parse(cls, value) -> "VarianceMethod":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigurationError(
                f"Unknown variance method: {value!r}. "
                f"Available: {[m.value for m in cls]}"
            ) from None

    @property
    def is_resampling(self) -> bool:
        return self is not VarianceMethod.LINEARIZATION


class CombinationRule(str, Enum):
    """How per-unit response/exposure pairs are combined into one rate"""
    RATIO_OF_SUMS = "ratio_of_sums"
    MEAN_OF_UNIT_RATIOS = "mean_of_unit_ratios"

    @classmethod
    def parse(cls, value) -> "CombinationRule":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigurationError(
                f"Unknown combination rule: {value!r}. "
                f"Available: {[r.value for r in cls]}"
            ) from None


# Domains with fewer records than this get an instability warning
SMALL_DOMAIN_THRESHOLD = 3

DEFAULT_REPLICATES = 500
DEFAULT_CONFIDENCE_LEVEL = 0.95

# Product inputs whose sample sizes differ by more than this factor are flagged
SAMPLE_SIZE_MISMATCH_RATIO = 2.0

# Internal column synthesized into working copies of a design
UNIT_RATIO_COLUMN = "_unit_ratio"
AGGREGATE_RESPONSE_COLUMN = "_aggregate_response"
RESERVED_COLUMNS = (UNIT_RATIO_COLUMN, AGGREGATE_RESPONSE_COLUMN)

RESULT_COLUMNS = [
    "estimate", "se", "ci_low", "ci_high", "deff", "n",
    "method", "requested_method", "diagnostics",
    "var_among_psu", "var_within_psu",
]
