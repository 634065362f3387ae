"""
Domain (group) estimation

``DomainEstimator`` runs the variance backend for a grouping and owns the
bookkeeping around it:
- Grouping columns must exist in the design
- Per-domain sample counts are computed directly from the records and
  joined to the backend rows by group key, never by position
- Empty requested domains are surfaced as flagged rows, never estimated
- Small domains are estimated but flagged as unstable
"""

import dataclasses
import warnings
from collections import Counter
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from .constants import DEFAULT_CONFIDENCE_LEVEL, SMALL_DOMAIN_THRESHOLD, VarianceMethod
from .decomposition import VarianceDecomposer
from .errors import ConfigurationError, DataQualityWarning
from .estimation import StatisticSpec
from .results import (MISSING, EstimateResult, add_flag, copy_diagnostics,
                      make_diagnostics, normalize_key, row_keys)
from .variance import VarianceBackend


def _as_list(group_by) -> List[str]:
    if group_by is None:
        return []
    if isinstance(group_by, str):
        return [group_by]
    return list(group_by)


def _output_key(key: Tuple) -> Tuple:
    """Group key as written to result rows (missing values as NaN)"""
    return tuple(np.nan if v is MISSING else v for v in key)


def _format_key(key: Tuple) -> str:
    return "(" + ", ".join(repr(v) for v in key) + ")"


class DomainEstimator:
    """
    One estimate per domain, aligned to per-domain sample counts

    Parameters
    ----------
    backend : VarianceBackend, optional
        Backend doing the numeric work
    decomposer : VarianceDecomposer, optional
        Used when ``decompose_variance=True``
    """

    def __init__(self,
                 backend: Optional[VarianceBackend] = None,
                 decomposer: Optional[VarianceDecomposer] = None):
        self.backend = backend or VarianceBackend()
        self.decomposer = decomposer or VarianceDecomposer()

    def estimate_by_domain(self,
                           design,
                           statistic_spec: StatisticSpec,
                           group_by: Optional[Union[str, Sequence[str]]] = None,
                           method: Union[str, VarianceMethod] = VarianceMethod.LINEARIZATION,
                           confidence_level: float = DEFAULT_CONFIDENCE_LEVEL,
                           num_replicates: Optional[int] = None,
                           random_state: Optional[int] = None,
                           domains: Optional[Sequence] = None,
                           small_domain_threshold: int = SMALL_DOMAIN_THRESHOLD,
                           decompose_variance: bool = False,
                           population_units: Optional[float] = None) -> List[EstimateResult]:
        """
        Estimate a statistic for every domain of a grouping

        Parameters
        ----------
        design : SampleDesign
            Sample to estimate from
        statistic_spec : StatisticSpec
            Statistic to compute in each domain
        group_by : str or list of str, optional
            Grouping columns; none gives one overall row
        method : str or VarianceMethod, default 'linearization'
            Requested variance method
        confidence_level : float, default 0.95
            Confidence level of the intervals
        num_replicates : int, optional
            Bootstrap replicates to generate
        random_state : int, optional
            Seed for generated bootstrap replicates
        domains : list, optional
            Explicit domain universe (key tuples, or scalars for a single
            grouping column). Requested domains without records are returned
            as empty rows; observed domains outside it are left out.
        small_domain_threshold : int, default 3
            Domains with fewer records are flagged as unstable
        decompose_variance : bool, default False
            Add among/within primary unit variance components per domain
        population_units : float, optional
            Number of primary units in the population, for the decomposition

        Returns
        -------
        list of EstimateResult
            In universe order when ``domains`` is given, else in order of
            first appearance in the records
        """
        group_by = _as_list(group_by)
        design.check_columns(group_by, context="grouping")
        statistic_spec.validate(design)
        requested = VarianceMethod.parse(method)

        if int(small_domain_threshold) != small_domain_threshold or small_domain_threshold < 1:
            raise ConfigurationError(
                f"small_domain_threshold must be a positive integer, got {small_domain_threshold!r}"
            )

        keys = row_keys(design.data, group_by)
        counts = Counter(keys)
        observed = list(dict.fromkeys(keys))
        if not group_by:
            observed = [()]

        if domains is not None:
            ordered = self._domain_universe(domains, group_by)
            universe = set(ordered)
            outside = [k for k in observed if k not in universe]
            if outside:
                warnings.warn(
                    f"{len(outside)} observed domain(s) are outside the requested domains "
                    f"and were omitted: {', '.join(_format_key(k) for k in outside[:5])}",
                    DataQualityWarning,
                    stacklevel=2,
                )
        else:
            ordered = observed

        empty = [k for k in ordered if counts.get(k, 0) == 0]
        small = [k for k in ordered if 0 < counts.get(k, 0) < small_domain_threshold]
        if empty:
            warnings.warn(
                f"{len(empty)} domain(s) have no records and are reported empty: "
                f"{', '.join(_format_key(k) for k in empty[:5])}",
                DataQualityWarning,
                stacklevel=2,
            )
        if small:
            warnings.warn(
                f"{len(small)} domain(s) have fewer than {small_domain_threshold} records; "
                f"their variance estimates are likely unstable: "
                f"{', '.join(_format_key(k) for k in small[:5])}",
                DataQualityWarning,
                stacklevel=2,
            )

        run = self.backend.run(
            design, statistic_spec, requested, group_keys=group_by,
            confidence_level=confidence_level, num_replicates=num_replicates,
            random_state=random_state,
        )
        by_key = {res.key: res for res in run.results}

        results = []
        for key in ordered:
            n = counts.get(key, 0)
            if n == 0:
                result = self._empty_result(key, group_by, run)
            elif key in by_key:
                result = self._aligned_result(by_key[key], key, n, group_by, small_domain_threshold)
            else:
                diagnostics = make_diagnostics(n_used=0)
                add_flag(diagnostics, 'not_estimated', "Variance backend returned no row for this domain")
                result = self._blank_result(key, n, group_by, run, diagnostics)

            if decompose_variance and n > 0:
                result = self._add_decomposition(result, design, statistic_spec, group_by,
                                                 keys, key, population_units)
            results.append(result)

        return results

    @staticmethod
    def _domain_universe(domains: Sequence, group_by: List[str]) -> List[Tuple]:
        """Normalized, de-duplicated domain keys in caller order"""
        if not group_by:
            raise ConfigurationError("An explicit domain list needs group_by columns")

        universe = []
        for domain in domains:
            key = normalize_key(tuple(domain) if isinstance(domain, list) else domain)
            if len(key) != len(group_by):
                raise ConfigurationError(
                    f"Domain {domain!r} has {len(key)} value(s) for {len(group_by)} "
                    f"grouping column(s) {group_by}"
                )
            universe.append(key)
        return list(dict.fromkeys(universe))

    @staticmethod
    def _aligned_result(res: EstimateResult, key: Tuple, n: int, group_by: List[str],
                        small_domain_threshold: int) -> EstimateResult:
        diagnostics = copy_diagnostics(res.diagnostics)
        if n < small_domain_threshold:
            diagnostics['small_domain_threshold'] = small_domain_threshold
            add_flag(diagnostics, 'small_domain',
                     f"Only {n} record(s) in domain {_format_key(key)}; variance likely unstable")
        return dataclasses.replace(
            res,
            group_key=_output_key(key),
            n=n,
            group_by=tuple(group_by),
            diagnostics=diagnostics,
        )

    def _empty_result(self, key: Tuple, group_by: List[str], run) -> EstimateResult:
        diagnostics = make_diagnostics(n_used=0)
        add_flag(diagnostics, 'empty_domain', f"No records in domain {_format_key(key)}")
        return self._blank_result(key, 0, group_by, run, diagnostics)

    @staticmethod
    def _blank_result(key, n, group_by, run, diagnostics) -> EstimateResult:
        if run.fallback_reason is not None:
            add_flag(diagnostics, 'method_fallback')
            diagnostics['fallback_from'] = run.requested_method.value
            diagnostics['fallback_reason'] = run.fallback_reason
        return EstimateResult(
            group_key=_output_key(key),
            estimate=np.nan,
            se=np.nan,
            ci_low=np.nan,
            ci_high=np.nan,
            n=n,
            deff=np.nan,
            method=run.method.value,
            requested_method=run.requested_method.value,
            diagnostics=diagnostics,
            group_by=tuple(group_by),
        )

    def _add_decomposition(self, result: EstimateResult, design, spec: StatisticSpec,
                           group_by: List[str], keys: List[Tuple], key: Tuple,
                           population_units: Optional[float]) -> EstimateResult:
        """Attach among/within primary unit variance components"""
        diagnostics = copy_diagnostics(result.diagnostics)
        if design.cluster is None:
            add_flag(diagnostics, 'decomposition_unavailable',
                     "Variance decomposition needs a cluster (primary unit) column")
            return dataclasses.replace(result, diagnostics=diagnostics)

        mask = np.fromiter((k == key for k in keys), dtype=bool, count=len(keys))
        subset = design.subset(mask)
        components = self.decomposer.decompose(
            self._unit_values(subset, spec, result.estimate),
            subset.data[design.cluster],
            population_units,
        )

        diagnostics['decomposition'] = components.diagnostics
        for flag in components.flags:
            add_flag(diagnostics, flag)
        return dataclasses.replace(
            result,
            var_among_psu=components.var_among,
            var_within_psu=components.var_within,
            diagnostics=diagnostics,
        )

    @staticmethod
    def _unit_values(design, spec: StatisticSpec, estimate: float) -> np.ndarray:
        """
        Per-unit values on the scale of the statistic, NaN where unusable

        Ratios use the residuals (y_i - R x_i) / x_bar, whose spread gives the
        variance of R; units without a usable denominator drop out.
        """
        y, x, usable = spec.prepare(design)
        if spec.kind != "ratio":
            return np.where(usable, y, np.nan)

        weights = design.weights
        w_sum = weights[usable].sum()
        if not usable.any() or not np.isfinite(estimate) or w_sum <= 0:
            return np.full(len(y), np.nan)
        x_bar = (weights * x)[usable].sum() / w_sum
        if x_bar == 0:
            return np.full(len(y), np.nan)
        return np.where(usable, (y - estimate * x) / x_bar, np.nan)


def estimate_by_domain(design, statistic_spec: StatisticSpec, group_by=None,
                       method=VarianceMethod.LINEARIZATION, **kwargs) -> List[EstimateResult]:
    """Functional form of ``DomainEstimator.estimate_by_domain``"""
    return DomainEstimator().estimate_by_domain(design, statistic_spec, group_by, method, **kwargs)
