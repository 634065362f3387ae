"""
Ratio estimators

Two ways of turning per-unit (response, exposure) pairs into one rate:
- ratio_of_sums: sum(w * response) / sum(w * exposure) per domain, for units
  whose observation is a complete event
- mean_of_unit_ratios: weighted mean of response_i / exposure_i, for partial
  observations where a per-unit rate is the natural statistic

Units with zero, negative or missing exposure never enter a ratio. They are
counted, reported and set to missing in a working copy of the design.
``estimate_ratio_auto`` chooses between the two rules from a completion
indicator and combines them when both kinds of unit are present.
``estimate_ratio_group`` pools the response of several species within each
unit before forming the rate.
"""

import dataclasses
import warnings
from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import stats

from .constants import (AGGREGATE_RESPONSE_COLUMN, DEFAULT_CONFIDENCE_LEVEL, RESERVED_COLUMNS,
                        SMALL_DOMAIN_THRESHOLD, UNIT_RATIO_COLUMN, CombinationRule,
                        VarianceMethod)
from .domain import DomainEstimator, _as_list, _format_key, _output_key
from .errors import ConfigurationError, DataQualityWarning
from .estimation import StatisticSpec
from .results import EstimateResult, add_flag, copy_diagnostics, make_diagnostics, row_keys
from .variance import validate_confidence_level


def _check_threshold(min_exposure_threshold) -> Optional[float]:
    if min_exposure_threshold is None:
        return None
    try:
        threshold = float(min_exposure_threshold)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"min_exposure_threshold must be a number, got {min_exposure_threshold!r}"
        ) from None
    if not threshold > 0:
        raise ConfigurationError(f"min_exposure_threshold must be positive, got {threshold}")
    return threshold


def _count_by_key(keys: List[Tuple], mask: np.ndarray) -> Counter:
    return Counter(k for k, m in zip(keys, mask) if m)


def _check_reserved(design):
    collisions = [c for c in RESERVED_COLUMNS if c in design.columns]
    if collisions:
        raise ConfigurationError(
            f"Column(s) {collisions} are reserved for internal use by the ratio "
            f"estimator; rename them in the design data"
        )


def _completion_flags(status: pd.Series, completion_col: str) -> np.ndarray:
    """Booleans (or 0/1) as a bool array; any other value is rejected"""
    flags = np.zeros(len(status), dtype=bool)
    invalid = []
    for i, value in enumerate(status.to_numpy(dtype=object)):
        if isinstance(value, (bool, np.bool_)):
            flags[i] = bool(value)
        elif isinstance(value, (int, float, np.integer, np.floating)) and value in (0, 1):
            flags[i] = value == 1
        else:
            invalid.append(value)

    if invalid:
        shown = list(dict.fromkeys(repr(v) for v in invalid))[:5]
        raise ConfigurationError(
            f"'{completion_col}' must hold True/False (or 1/0) values; "
            f"found {len(invalid)} other value(s): {', '.join(shown)}"
        )
    return flags


class RatioEstimator:
    """Rate estimation from response and exposure columns"""

    def __init__(self, domain_estimator: Optional[DomainEstimator] = None):
        self.domain_estimator = domain_estimator or DomainEstimator()

    def estimate_ratio(self,
                       design,
                       response_col: str,
                       exposure_col: str,
                       combination_rule: Union[str, CombinationRule] = CombinationRule.RATIO_OF_SUMS,
                       group_by: Optional[Union[str, Sequence[str]]] = None,
                       method: Union[str, VarianceMethod] = VarianceMethod.LINEARIZATION,
                       min_exposure_threshold: Optional[float] = None,
                       confidence_level: float = DEFAULT_CONFIDENCE_LEVEL,
                       num_replicates: Optional[int] = None,
                       random_state: Optional[int] = None,
                       domains: Optional[Sequence] = None,
                       small_domain_threshold: int = SMALL_DOMAIN_THRESHOLD,
                       decompose_variance: bool = False,
                       population_units: Optional[float] = None) -> List[EstimateResult]:
        """
        Estimate response per unit of exposure for each domain

        Parameters
        ----------
        design : SampleDesign
            Sample to estimate from; never modified
        response_col : str
            Amount of the event (e.g. catch)
        exposure_col : str
            Amount of exposure (e.g. hours fished)
        combination_rule : str or CombinationRule, default 'ratio_of_sums'
            'ratio_of_sums' or 'mean_of_unit_ratios'
        group_by : str or list of str, optional
            Grouping columns
        method : str or VarianceMethod, default 'linearization'
            Requested variance method
        min_exposure_threshold : float, optional
            Units with smaller (positive) exposure are excluded as well
        confidence_level, num_replicates, random_state, domains,
        small_domain_threshold, decompose_variance, population_units
            Passed to ``DomainEstimator.estimate_by_domain``

        Returns
        -------
        list of EstimateResult
            Diagnostics carry ``n_excluded_exposure`` and ``n_below_threshold``
            for every domain
        """
        _check_reserved(design)
        return self._estimate_ratio(
            design, response_col, exposure_col, combination_rule, group_by, method,
            min_exposure_threshold, confidence_level, num_replicates, random_state,
            domains, small_domain_threshold, decompose_variance, population_units,
        )

    def _estimate_ratio(self, design, response_col, exposure_col, combination_rule, group_by,
                        method, min_exposure_threshold, confidence_level, num_replicates,
                        random_state, domains, small_domain_threshold, decompose_variance,
                        population_units) -> List[EstimateResult]:
        rule = CombinationRule.parse(combination_rule)
        group_by = _as_list(group_by)
        design.check_columns([response_col, exposure_col], context="ratio estimation")
        design.check_columns(group_by, context="grouping")
        threshold = _check_threshold(min_exposure_threshold)

        response = pd.to_numeric(design.data[response_col], errors='coerce').to_numpy(dtype=float)
        exposure = pd.to_numeric(design.data[exposure_col], errors='coerce').to_numpy(dtype=float)

        invalid = ~np.isfinite(exposure) | (exposure <= 0)
        below = ~invalid & (exposure < threshold) if threshold is not None else np.zeros(len(exposure), dtype=bool)

        n_invalid = int(invalid.sum())
        n_below = int(below.sum())
        if n_invalid:
            warnings.warn(
                f"{n_invalid} units have zero or negative exposure and will be excluded",
                DataQualityWarning,
                stacklevel=3,
            )
        if n_below:
            warnings.warn(
                f"{n_below} units have exposure below min_exposure_threshold={threshold:g} "
                f"and will be excluded",
                DataQualityWarning,
                stacklevel=3,
            )

        excluded = invalid | below
        if rule is CombinationRule.MEAN_OF_UNIT_RATIOS:
            with np.errstate(divide='ignore', invalid='ignore'):
                ratios = response / exposure
            ratios = np.where(excluded | ~np.isfinite(ratios), np.nan, ratios)
            working = design.with_column(UNIT_RATIO_COLUMN, ratios)
            spec = StatisticSpec.mean(UNIT_RATIO_COLUMN)
        else:
            # Excluded units leave numerator and denominator together
            working = design.with_column(exposure_col, np.where(excluded, np.nan, exposure), replace=True)
            spec = StatisticSpec.ratio(response_col, exposure_col)

        results = self.domain_estimator.estimate_by_domain(
            working, spec, group_by, method,
            confidence_level=confidence_level,
            num_replicates=num_replicates,
            random_state=random_state,
            domains=domains,
            small_domain_threshold=small_domain_threshold,
            decompose_variance=decompose_variance,
            population_units=population_units,
        )

        keys = row_keys(design.data, group_by)
        invalid_by_key = _count_by_key(keys, invalid)
        below_by_key = _count_by_key(keys, below)

        annotated = []
        for res in results:
            diagnostics = copy_diagnostics(res.diagnostics)
            diagnostics['combination_rule'] = rule.value
            diagnostics['n_excluded_exposure'] = invalid_by_key.get(res.key, 0)
            diagnostics['n_below_threshold'] = below_by_key.get(res.key, 0)
            if diagnostics['n_excluded_exposure']:
                add_flag(diagnostics, 'invalid_exposure',
                         f"{diagnostics['n_excluded_exposure']} unit(s) with zero, negative "
                         f"or missing exposure excluded")
            if diagnostics['n_below_threshold']:
                diagnostics['min_exposure_threshold'] = threshold
                add_flag(diagnostics, 'below_min_exposure',
                         f"{diagnostics['n_below_threshold']} unit(s) below exposure "
                         f"threshold {threshold:g} excluded")
            annotated.append(dataclasses.replace(res, diagnostics=diagnostics))

        return annotated

    def estimate_ratio_group(self,
                             design,
                             response_col: str,
                             exposure_col: str,
                             species_col: str,
                             species_values: Sequence,
                             group_name: str,
                             combination_rule: Union[str, CombinationRule] = CombinationRule.RATIO_OF_SUMS,
                             group_by: Optional[Union[str, Sequence[str]]] = None,
                             method: Union[str, VarianceMethod] = VarianceMethod.LINEARIZATION,
                             min_exposure_threshold: Optional[float] = None,
                             confidence_level: float = DEFAULT_CONFIDENCE_LEVEL,
                             num_replicates: Optional[int] = None,
                             random_state: Optional[int] = None,
                             domains: Optional[Sequence] = None,
                             small_domain_threshold: int = SMALL_DOMAIN_THRESHOLD) -> List[EstimateResult]:
        """
        Estimate one rate for a group of species

        Each unit's response counts toward the group only when its species is
        one of ``species_values``, otherwise it contributes zero. Estimating
        the rate of this summed response (rather than adding per-species
        rates) keeps the covariance between species in the standard error,
        so the result can go straight into ``estimate_product``.

        Parameters
        ----------
        design : SampleDesign
            Sample to estimate from; never modified
        response_col : str
            Amount of the event (e.g. catch)
        exposure_col : str
            Amount of exposure (e.g. hours fished)
        species_col : str
            Species of each unit
        species_values : list
            Species making up the group
        group_name : str
            Label of the group (e.g. 'black_bass'), reported in diagnostics
        combination_rule, group_by, method, min_exposure_threshold,
        confidence_level, num_replicates, random_state, domains,
        small_domain_threshold
            As for ``estimate_ratio``

        Returns
        -------
        list of EstimateResult
            Diagnostics carry ``species_group`` and the ``species`` found
        """
        _check_reserved(design)
        design.check_columns([species_col, response_col], context="species aggregation")

        species_values = list(dict.fromkeys(species_values))
        if not species_values:
            raise ConfigurationError("species_values cannot be empty")

        available = set(design.data[species_col].dropna())
        present = [s for s in species_values if s in available]
        missing = [s for s in species_values if s not in available]
        if not present:
            raise ConfigurationError(
                f"None of the species {species_values} are in column '{species_col}'. "
                f"Available: {sorted(map(str, available))}"
            )
        if missing:
            warnings.warn(
                f"{len(missing)} species not in the data contribute zero to "
                f"'{group_name}': {missing}",
                DataQualityWarning,
                stacklevel=2,
            )

        response = pd.to_numeric(design.data[response_col], errors='coerce').to_numpy(dtype=float)
        match = design.data[species_col].isin(present).to_numpy()
        aggregated = np.where(match, np.nan_to_num(response, nan=0.0), 0.0)
        working = design.with_column(AGGREGATE_RESPONSE_COLUMN, aggregated)

        results = self._estimate_ratio(
            working, AGGREGATE_RESPONSE_COLUMN, exposure_col, combination_rule, group_by,
            method, min_exposure_threshold, confidence_level, num_replicates, random_state,
            domains, small_domain_threshold, False, None,
        )

        grouped = []
        for res in results:
            diagnostics = copy_diagnostics(res.diagnostics)
            diagnostics['species_group'] = group_name
            diagnostics['species'] = present
            diagnostics['response'] = response_col
            grouped.append(dataclasses.replace(res, diagnostics=diagnostics))
        return grouped

    def estimate_ratio_auto(self,
                            design,
                            response_col: str,
                            exposure_col: str,
                            completion_col: str = "trip_complete",
                            group_by: Optional[Union[str, Sequence[str]]] = None,
                            method: Union[str, VarianceMethod] = VarianceMethod.LINEARIZATION,
                            min_exposure_threshold: Optional[float] = 0.5,
                            confidence_level: float = DEFAULT_CONFIDENCE_LEVEL,
                            num_replicates: Optional[int] = None,
                            random_state: Optional[int] = None,
                            domains: Optional[Sequence] = None,
                            small_domain_threshold: int = SMALL_DOMAIN_THRESHOLD) -> List[EstimateResult]:
        """
        Pick the combination rule from a completion indicator

        All units complete: mean_of_unit_ratios. All incomplete:
        ratio_of_sums, excluding units below ``min_exposure_threshold``.
        Mixed: both estimates per domain, combined with exposure-share
        weights w_c = E_c / (E_c + E_i):

            R = w_c R_c + w_i R_i,   SE = sqrt(w_c^2 SE_c^2 + w_i^2 SE_i^2)

        Units with a missing completion status are excluded.
        """
        group_by = _as_list(group_by)
        design.check_columns([completion_col], context="automatic ratio estimation")
        design.check_columns(group_by, context="grouping")
        level = validate_confidence_level(confidence_level)
        threshold = _check_threshold(min_exposure_threshold)

        status = design.data[completion_col]
        unknown = status.isna().to_numpy()
        if unknown.any():
            warnings.warn(
                f"{int(unknown.sum())} units with missing '{completion_col}' excluded",
                DataQualityWarning,
                stacklevel=2,
            )
            design = design.subset(~unknown)
            status = design.data[completion_col]
        if design.n_units == 0:
            raise ConfigurationError(f"No units with a known '{completion_col}' value")

        complete = _completion_flags(status, completion_col)
        common = dict(group_by=group_by, method=method, confidence_level=level,
                      num_replicates=num_replicates, random_state=random_state)

        if complete.all():
            results = self.estimate_ratio(
                design, response_col, exposure_col, CombinationRule.MEAN_OF_UNIT_RATIOS,
                domains=domains, small_domain_threshold=small_domain_threshold, **common
            )
            return [self._tag_rule(r, "mean_of_unit_ratios") for r in results]

        if not complete.any():
            results = self.estimate_ratio(
                design, response_col, exposure_col, CombinationRule.RATIO_OF_SUMS,
                min_exposure_threshold=threshold, domains=domains,
                small_domain_threshold=small_domain_threshold, **common
            )
            return [self._tag_rule(r, "ratio_of_sums") for r in results]

        return self._hybrid(design, response_col, exposure_col, complete, threshold,
                            domains, small_domain_threshold, common)

    @staticmethod
    def _tag_rule(result: EstimateResult, rule: str) -> EstimateResult:
        diagnostics = copy_diagnostics(result.diagnostics)
        diagnostics['auto_rule'] = rule
        return dataclasses.replace(result, diagnostics=diagnostics)

    def _hybrid(self, design, response_col, exposure_col, complete, threshold,
                domains, small_domain_threshold, common) -> List[EstimateResult]:
        """Combine complete and incomplete unit estimates per domain"""
        group_by = common['group_by']
        level = common['confidence_level']

        complete_design = design.subset(complete)
        incomplete_design = design.subset(~complete)

        # Subsets are small by construction; domain health is judged on the combined counts
        res_c = self.estimate_ratio(complete_design, response_col, exposure_col,
                                    CombinationRule.MEAN_OF_UNIT_RATIOS,
                                    small_domain_threshold=1, **common)
        res_i = self.estimate_ratio(incomplete_design, response_col, exposure_col,
                                    CombinationRule.RATIO_OF_SUMS,
                                    min_exposure_threshold=threshold,
                                    small_domain_threshold=1, **common)
        by_c = {r.key: r for r in res_c}
        by_i = {r.key: r for r in res_i}

        effort_c = self._effort_by_domain(complete_design, exposure_col, group_by, None)
        effort_i = self._effort_by_domain(incomplete_design, exposure_col, group_by, threshold)

        keys = row_keys(design.data, group_by)
        counts = Counter(keys)
        complete_counts = _count_by_key(keys, complete)
        observed = list(dict.fromkeys(keys))

        if domains is not None:
            ordered = DomainEstimator._domain_universe(domains, group_by)
            outside = [k for k in observed if k not in set(ordered)]
            if outside:
                warnings.warn(
                    f"{len(outside)} observed domain(s) are outside the requested domains "
                    f"and were omitted: {', '.join(_format_key(k) for k in outside[:5])}",
                    DataQualityWarning,
                    stacklevel=3,
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
                stacklevel=3,
            )
        if small:
            warnings.warn(
                f"{len(small)} domain(s) have fewer than {small_domain_threshold} records; "
                f"their variance estimates are likely unstable: "
                f"{', '.join(_format_key(k) for k in small[:5])}",
                DataQualityWarning,
                stacklevel=3,
            )

        requested = VarianceMethod.parse(common['method']).value
        z = stats.norm.ppf(1 - (1 - level) / 2)
        results = []
        for key in ordered:
            rc, ri = by_c.get(key), by_i.get(key)
            e_c, e_i = effort_c.get(key, 0.0), effort_i.get(key, 0.0)
            n = counts.get(key, 0)

            diagnostics = make_diagnostics(
                auto_rule='hybrid',
                n_complete=complete_counts.get(key, 0),
                n_incomplete=n - complete_counts.get(key, 0),
                effort_complete=e_c,
                effort_incomplete=e_i,
            )
            parts = []
            for label, res, effort in (('complete', rc, e_c), ('incomplete', ri, e_i)):
                if res is None:
                    continue
                diagnostics[f'estimate_{label}'] = res.estimate
                diagnostics[f'se_{label}'] = res.se
                diagnostics[f'n_excluded_exposure_{label}'] = res.diagnostics.get('n_excluded_exposure', 0)
                for flag in res.flags:
                    add_flag(diagnostics, flag)
                if 'fallback_from' in res.diagnostics:
                    diagnostics['fallback_from'] = res.diagnostics['fallback_from']
                    diagnostics['fallback_reason'] = res.diagnostics.get('fallback_reason')
                    diagnostics[f'fallback_reason_{label}'] = res.diagnostics.get('fallback_reason')
                if np.isfinite(res.estimate) and effort > 0:
                    parts.append((label, res, effort))

            if n == 0:
                add_flag(diagnostics, 'empty_domain', f"No records in domain {_format_key(key)}")
            elif n < small_domain_threshold:
                add_flag(diagnostics, 'small_domain',
                         f"Only {n} record(s) in domain {_format_key(key)}; variance likely unstable")

            if parts:
                total_effort = sum(effort for _, _, effort in parts)
                estimate = 0.0
                variance = 0.0
                for label, res, effort in parts:
                    w = effort / total_effort
                    diagnostics[f'weight_{label}'] = w
                    estimate += w * res.estimate
                    variance += w ** 2 * res.se ** 2
                se = float(np.sqrt(variance)) if np.isfinite(variance) else np.nan
                methods = list(dict.fromkeys(res.method for _, res, _ in parts))
                used = methods[0] if len(methods) == 1 else "+".join(methods)
            else:
                estimate, se, variance = np.nan, np.nan, np.nan
                used = (rc or ri).method if (rc or ri) is not None else requested
                if n > 0:
                    add_flag(diagnostics, 'no_usable_units', "No unit with usable exposure in this domain")

            results.append(EstimateResult(
                group_key=_output_key(key),
                estimate=estimate,
                se=se,
                ci_low=estimate - z * se,
                ci_high=estimate + z * se,
                n=n,
                deff=np.nan,
                method=used,
                requested_method=requested,
                diagnostics=diagnostics,
                group_by=tuple(group_by),
                variance=variance,
            ))

        return results

    @staticmethod
    def _effort_by_domain(design, exposure_col: str, group_by: List[str],
                          threshold: Optional[float]) -> Dict[Tuple, float]:
        """Unweighted sum of usable exposure per domain"""
        exposure = pd.to_numeric(design.data[exposure_col], errors='coerce').to_numpy(dtype=float)
        usable = np.isfinite(exposure) & (exposure > 0)
        if threshold is not None:
            usable &= exposure >= threshold

        totals = {}
        for key, value, ok in zip(row_keys(design.data, group_by), exposure, usable):
            if ok:
                totals[key] = totals.get(key, 0.0) + value
        return totals


def estimate_ratio(design, response_col: str, exposure_col: str,
                   combination_rule=CombinationRule.RATIO_OF_SUMS, **kwargs) -> List[EstimateResult]:
    """Functional form of ``RatioEstimator.estimate_ratio``"""
    return RatioEstimator().estimate_ratio(design, response_col, exposure_col, combination_rule, **kwargs)


def estimate_ratio_auto(design, response_col: str, exposure_col: str,
                        completion_col: str = "trip_complete", **kwargs) -> List[EstimateResult]:
    """Functional form of ``RatioEstimator.estimate_ratio_auto``"""
    return RatioEstimator().estimate_ratio_auto(design, response_col, exposure_col, completion_col, **kwargs)


def estimate_ratio_group(design, response_col: str, exposure_col: str, species_col: str,
                         species_values: Sequence, group_name: str, **kwargs) -> List[EstimateResult]:
    """Functional form of ``RatioEstimator.estimate_ratio_group``"""
    return RatioEstimator().estimate_ratio_group(design, response_col, exposure_col, species_col,
                                                 species_values, group_name, **kwargs)
