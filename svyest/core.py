"""
SVYEST - Design-based estimation for complex sample surveys

Turns weighted, stratified, clustered sample records into population
estimates with standard errors, confidence intervals and design effects:
- Weighted means, totals and ratios by domain
- Rates from response/exposure pairs (ratio of sums or mean of unit ratios)
- Linearization, bootstrap, jackknife or supplied replicate weights, with
  fallback to linearization
- Delta-method products of two estimates
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

import pandas as pd

from .constants import (DEFAULT_CONFIDENCE_LEVEL, DEFAULT_REPLICATES, SMALL_DOMAIN_THRESHOLD,
                        CombinationRule, VarianceMethod)
from .design import SampleDesign
from .diagnostics import design_diagnostics
from .domain import DomainEstimator
from .errors import ConfigurationError
from .estimation import StatisticSpec
from .ratio import RatioEstimator
from .results import EstimateResult, display_results, results_to_frame
from .variance import VarianceBackend

LINEAR_STATISTICS = ("mean", "total")


@dataclass
class EstimationConfig:
    """Options for one estimation request"""
    response: str
    exposure: Optional[str] = None  # Set for rate (ratio) estimation
    group_by: List[str] = field(default_factory=list)
    variance_method: str = "linearization"
    num_replicates: int = DEFAULT_REPLICATES
    confidence_level: float = DEFAULT_CONFIDENCE_LEVEL
    min_exposure_threshold: Optional[float] = None
    decompose_variance: bool = False
    combination_rule: str = "ratio_of_sums"
    statistic: str = "mean"  # Linear path only: 'mean' or 'total'
    random_state: Optional[int] = None
    small_domain_threshold: int = SMALL_DOMAIN_THRESHOLD
    population_units: Optional[float] = None  # Primary units in the population, for decomposition

    def __post_init__(self):
        if isinstance(self.group_by, str):
            self.group_by = [self.group_by]
        else:
            self.group_by = list(self.group_by or [])

        method = VarianceMethod.parse(self.variance_method)
        self.variance_method = method.value
        self.combination_rule = CombinationRule.parse(self.combination_rule).value

        if self.statistic not in LINEAR_STATISTICS:
            raise ConfigurationError(
                f"Unknown statistic: {self.statistic!r}. Available: {list(LINEAR_STATISTICS)}"
            )
        if not 0 < self.confidence_level < 1:
            raise ConfigurationError(
                f"confidence_level must be in (0, 1), got {self.confidence_level}"
            )
        if method.is_resampling and not self.num_replicates > 0:
            raise ConfigurationError(
                f"num_replicates must be positive for method '{method.value}', "
                f"got {self.num_replicates}"
            )
        if self.min_exposure_threshold is not None and not self.min_exposure_threshold > 0:
            raise ConfigurationError(
                f"min_exposure_threshold must be positive, got {self.min_exposure_threshold}"
            )
        if self.small_domain_threshold < 1:
            raise ConfigurationError(
                f"small_domain_threshold must be at least 1, got {self.small_domain_threshold}"
            )


class SurveyEstimator:
    """
    Main class for survey estimation

    Runs one configured estimation against a sample design:

    1. With ``exposure`` set: the rate response/exposure per domain, via
       ``RatioEstimator`` and the configured combination rule
    2. Otherwise: the weighted mean or total of ``response`` per domain,
       via ``DomainEstimator``

    Either way the variance backend computes all domains in one pass and the
    result comes back as one tidy table.

    Example:
        design = SampleDesign(data, weight='w', strata='stratum', cluster='day')
        config = EstimationConfig(response='catch', exposure='hours',
                                  group_by=['species'])
        table = SurveyEstimator(design, config).estimate()
    """

    def __init__(self,
                 design: SampleDesign,
                 config: Union[EstimationConfig, Dict]):
        """
        Initialize estimator

        Parameters
        ----------
        design : SampleDesign
            Sample design to estimate from
        config : EstimationConfig or dict
            Estimation options (a dict is passed to ``EstimationConfig``)
        """
        self.design = design
        self.config = config if isinstance(config, EstimationConfig) else EstimationConfig(**config)
        self.backend = VarianceBackend(
            confidence_level=self.config.confidence_level,
            num_replicates=self.config.num_replicates,
            random_state=self.config.random_state,
        )
        self.domain_estimator = DomainEstimator(self.backend)
        self.ratio_estimator = RatioEstimator(self.domain_estimator)
        self.results: List[EstimateResult] = []

    def _common_options(self) -> Dict:
        cfg = self.config
        return dict(
            method=cfg.variance_method,
            confidence_level=cfg.confidence_level,
            num_replicates=cfg.num_replicates,
            random_state=cfg.random_state,
            small_domain_threshold=cfg.small_domain_threshold,
            decompose_variance=cfg.decompose_variance,
            population_units=cfg.population_units,
        )

    def _estimate_ratio(self, domains=None) -> List[EstimateResult]:
        cfg = self.config
        return self.ratio_estimator.estimate_ratio(
            self.design, cfg.response, cfg.exposure, cfg.combination_rule,
            group_by=cfg.group_by,
            min_exposure_threshold=cfg.min_exposure_threshold,
            domains=domains,
            **self._common_options()
        )

    def _estimate_linear(self, domains=None) -> List[EstimateResult]:
        cfg = self.config
        if cfg.statistic == "total":
            spec = StatisticSpec.total(cfg.response)
        else:
            spec = StatisticSpec.mean(cfg.response)
        options = self._common_options()
        method = options.pop('method')
        return self.domain_estimator.estimate_by_domain(
            self.design, spec, cfg.group_by, method, domains=domains, **options
        )

    def estimate(self, domains: Optional[List] = None, display: bool = False) -> pd.DataFrame:
        """
        Run the configured estimation

        Parameters
        ----------
        domains : list, optional
            Explicit domain universe (see ``DomainEstimator.estimate_by_domain``)
        display : bool, default False
            Print the result table

        Returns
        -------
        pd.DataFrame
            Group columns followed by estimate, se, ci_low, ci_high, deff, n,
            method, requested_method, diagnostics, var_among_psu, var_within_psu
        """
        if self.config.exposure is not None:
            self.results = self._estimate_ratio(domains)
        else:
            self.results = self._estimate_linear(domains)

        table = results_to_frame(self.results, self.config.group_by)
        if display:
            display_results(table)
        return table

    def diagnose(self, detailed: bool = False) -> Dict:
        """Design quality report for the estimator's design"""
        return design_diagnostics(self.design, detailed=detailed)
