"""
Variance backend for svyest

Computes (estimate, variance) for one weighted statistic, for every domain
of a grouping at once, under one variance method:
- linearization: Taylor-series variance from weights, strata, clusters and
  FPC. Always available, and the fallback target.
- bootstrap: Rao-Wu rescaling bootstrap replicates, generated from the
  strata/PSU structure or taken from attached bootstrap replicate weights
- jackknife: delete-one-PSU replicates (JKn, or JK1 when unstratified)
- custom_replicate: attached replicate weights of any scheme

Replicate variance follows the usual replicate-weight recipe:

    Var(theta) = sum_r c_r * (theta_r - theta)^2

where theta is the full-sample estimate, theta_r the estimate recomputed
with replicate weight vector r and c_r the replicate's variance factor.

When a resampling method cannot be set up or run, the backend falls back to
linearization. The returned ``method`` is then 'linearization',
``requested_method`` keeps the caller's choice and the diagnostics record
the fallback and its reason.
"""

import warnings
from typing import Callable, Dict, Iterator, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import stats

from .constants import DEFAULT_CONFIDENCE_LEVEL, DEFAULT_REPLICATES, VarianceMethod
from .errors import ConfigurationError, DataQualityWarning, MethodFallbackWarning
from .estimation import StatisticSpec
from .results import EstimateResult, add_flag, make_diagnostics


class ReplicateConstructionError(RuntimeError):
    """Replicate weights cannot be built for this design"""


class BackendRun(NamedTuple):
    """Backend output plus the method that actually produced it"""
    results: List[EstimateResult]
    method: VarianceMethod
    requested_method: VarianceMethod
    fallback_reason: Optional[str]


class ReplicateSet:
    """
    Replicate weight vectors for one estimation call

    Weight vectors are produced one at a time by ``source`` so that large
    generated replicate sets are never held in memory as a full matrix.
    Iterating twice yields the same vectors.
    """

    def __init__(self,
                 factors: np.ndarray,
                 source: Callable[[], Iterator[np.ndarray]],
                 replicate_type: str,
                 generated: bool):
        self.factors = np.asarray(factors, dtype=float)
        self._source = source
        self.replicate_type = replicate_type
        self.generated = generated

    def __len__(self):
        return len(self.factors)

    def __iter__(self):
        return iter(self._source())

    def describe(self) -> Dict:
        return {
            'n_replicates': len(self),
            'replicate_type': self.replicate_type,
            'replicates_generated': self.generated,
        }


def _attached_replicates(design) -> ReplicateSet:
    """Wrap the replicate weight matrix carried by the design"""
    rep = design.replicate_weights
    n_reps = rep.shape[1]

    scale = design.replicate_scale
    if scale is None:
        if design.replicate_type == "bootstrap":
            if n_reps < 2:
                raise ReplicateConstructionError("Bootstrap variance needs at least 2 replicates")
            scale = 1.0 / (n_reps - 1)
        elif design.replicate_type == "jackknife":
            scale = (n_reps - 1) / n_reps
        else:
            scale = 1.0

    rscales = design.replicate_rscales
    if rscales is None:
        rscales = np.ones(n_reps)

    def source():
        for r in range(n_reps):
            yield rep[:, r]

    return ReplicateSet(scale * rscales, source, design.replicate_type, generated=False)


def _check_psu_structure(design, method_name: str):
    psu, psu_stratum, n_h = design.psu_structure()
    if len(psu) == 0:
        raise ReplicateConstructionError(f"Cannot build {method_name} replicates for an empty design")
    lonely = int((n_h < 2).sum())
    if lonely:
        raise ReplicateConstructionError(
            f"{lonely} stratum/strata contain a single PSU; "
            f"{method_name} replicates need at least 2 PSUs per stratum"
        )
    return psu, psu_stratum, n_h


def rescaled_bootstrap(design, num_replicates: int,
                       random_state: Optional[int] = None) -> ReplicateSet:
    """
    Rao-Wu rescaling bootstrap replicates

    In each stratum with n_h PSUs, n_h - 1 PSUs are drawn with replacement
    and a PSU drawn m times gets its weights multiplied by m * n_h / (n_h - 1).
    """
    if num_replicates < 2:
        raise ReplicateConstructionError("Bootstrap variance needs at least 2 replicates")

    psu, psu_stratum, n_h = _check_psu_structure(design, "bootstrap")
    members = [np.flatnonzero(psu_stratum == h) for h in range(len(n_h))]
    weights = design.weights
    seed = random_state if random_state is not None else np.random.randint(0, 2**31 - 1)

    def source():
        rng = np.random.RandomState(seed)
        for _ in range(num_replicates):
            multiplier = np.zeros(len(psu_stratum))
            for idx in members:
                m = len(idx)
                draws = rng.randint(0, m, size=m - 1)
                multiplier[idx] = np.bincount(draws, minlength=m) * m / (m - 1)
            yield weights * multiplier[psu]

    factors = np.full(num_replicates, 1.0 / (num_replicates - 1))
    return ReplicateSet(factors, source, "bootstrap", generated=True)


def delete_one_jackknife(design) -> ReplicateSet:
    """
    Delete-one-PSU jackknife replicates, one per PSU

    Dropping PSU j of stratum h zeroes its weights and inflates the other
    PSUs of the stratum by n_h / (n_h - 1); the replicate's factor is
    (1 - f_h) * (n_h - 1) / n_h.
    """
    psu, psu_stratum, n_h = _check_psu_structure(design, "jackknife")
    f_h = design.sampling_fractions(n_h)
    weights = design.weights

    def source():
        for j in range(len(psu_stratum)):
            h = psu_stratum[j]
            multiplier = np.ones(len(psu_stratum))
            multiplier[psu_stratum == h] = n_h[h] / (n_h[h] - 1)
            multiplier[j] = 0.0
            yield weights * multiplier[psu]

    factors = ((1 - f_h) * (n_h - 1) / n_h)[psu_stratum]
    return ReplicateSet(factors, source, "jackknife", generated=True)


class LinearizationMethod:
    """Taylor-series linearization over strata and PSUs"""
    method = VarianceMethod.LINEARIZATION

    def construct_replicates(self, design, num_replicates, random_state):
        return None

    def estimate(self, design, spec: StatisticSpec, prepared, codes: np.ndarray,
                 n_domains: int, theta: np.ndarray, replicates=None):
        """
        Stratified between-PSU variance of linearized domain totals

        V = sum_h (1 - f_h) * n_h / (n_h - 1) * sum_j (z_hj - zbar_h)^2

        where z_hj is the weighted sum of linearized values in PSU j of
        stratum h. Units outside a domain contribute zero to its z_hj, so
        domain variances keep the full design structure. Strata with a
        single PSU contribute nothing.
        """
        weights = design.weights
        u = spec.influence(prepared, weights, codes, theta, n_domains)

        psu, psu_stratum, n_h = design.psu_structure()
        f_h = design.sampling_fractions(n_h)
        n_psu = len(psu_stratum)
        n_strata = len(n_h)

        psu_totals = np.zeros((n_psu, n_domains))
        np.add.at(psu_totals, (psu, codes), weights * u)

        stratum_sums = np.zeros((n_strata, n_domains))
        np.add.at(stratum_sums, psu_stratum, psu_totals)
        with np.errstate(divide='ignore', invalid='ignore'):
            stratum_means = stratum_sums / n_h[:, None]
            coef = np.where(n_h > 1, (1 - f_h) * n_h / (n_h - 1), 0.0)

        deviations = psu_totals - stratum_means[psu_stratum]
        squares = np.zeros((n_strata, n_domains))
        np.add.at(squares, psu_stratum, deviations ** 2)

        variance = coef @ squares
        variance = np.where(np.isfinite(theta), variance, np.nan)

        v_srs = spec.srs_variance(prepared, weights, codes, theta, n_domains)
        with np.errstate(divide='ignore', invalid='ignore'):
            deff = np.where(v_srs > 0, variance / v_srs, np.nan)

        info = {
            'n_strata': int(n_strata),
            'n_psu': int(n_psu),
            'lonely_psu_strata': int((n_h == 1).sum()),
        }
        return variance, deff, info, {}


class _ReplicateMethod:
    """Shared replicate-variance computation"""
    method = None

    def construct_replicates(self, design, num_replicates, random_state) -> ReplicateSet:
        raise NotImplementedError

    def estimate(self, design, spec: StatisticSpec, prepared, codes: np.ndarray,
                 n_domains: int, theta: np.ndarray, replicates: ReplicateSet):
        total = np.zeros(n_domains)
        undefined = np.zeros(n_domains, dtype=int)

        for factor, rep_weights in zip(replicates.factors, replicates):
            theta_r = spec.evaluate(prepared, rep_weights, codes, n_domains)
            sq_dev = (theta_r - theta) ** 2
            bad = ~np.isfinite(sq_dev)
            total += factor * np.where(bad, 0.0, sq_dev)
            undefined += bad

        variance = np.where(np.isfinite(theta), total, np.nan)
        undefined = np.where(np.isfinite(theta), undefined, 0)
        return variance, np.full(n_domains, np.nan), replicates.describe(), {
            'undefined_replicates': undefined,
        }


class BootstrapMethod(_ReplicateMethod):
    method = VarianceMethod.BOOTSTRAP

    def construct_replicates(self, design, num_replicates, random_state):
        if design.has_replicates and design.replicate_type == "bootstrap":
            return _attached_replicates(design)
        return rescaled_bootstrap(design, num_replicates, random_state)


class JackknifeMethod(_ReplicateMethod):
    method = VarianceMethod.JACKKNIFE

    def construct_replicates(self, design, num_replicates, random_state):
        if design.has_replicates and design.replicate_type == "jackknife":
            return _attached_replicates(design)
        return delete_one_jackknife(design)


class CustomReplicateMethod(_ReplicateMethod):
    method = VarianceMethod.CUSTOM_REPLICATE

    def construct_replicates(self, design, num_replicates, random_state):
        if not design.has_replicates:
            raise ReplicateConstructionError("Design carries no replicate weights")
        return _attached_replicates(design)


def get_method(method):
    """Method implementation for a VarianceMethod value"""
    method = VarianceMethod.parse(method)
    if method is VarianceMethod.LINEARIZATION:
        return LinearizationMethod()
    elif method is VarianceMethod.BOOTSTRAP:
        return BootstrapMethod()
    elif method is VarianceMethod.JACKKNIFE:
        return JackknifeMethod()
    elif method is VarianceMethod.CUSTOM_REPLICATE:
        return CustomReplicateMethod()
    raise ConfigurationError(f"Unsupported variance method: {method!r}")


def domain_codes(data: pd.DataFrame, group_keys: Sequence[str]) -> Tuple[np.ndarray, List[Tuple]]:
    """Domain code per record and the key of each code (missing values kept)"""
    if not group_keys:
        return np.zeros(len(data), dtype=int), [()]
    grouped = data.groupby(list(group_keys), dropna=False, sort=False, observed=True)
    codes = grouped.ngroup().to_numpy()
    keys = [k if isinstance(k, tuple) else (k,) for k in grouped.size().index]
    return codes, keys


def validate_confidence_level(confidence_level: float) -> float:
    try:
        level = float(confidence_level)
    except (TypeError, ValueError):
        raise ConfigurationError(f"confidence_level must be a number, got {confidence_level!r}") from None
    if not 0 < level < 1:
        raise ConfigurationError(f"confidence_level must be in (0, 1), got {confidence_level}")
    return level


def validate_num_replicates(num_replicates, method: VarianceMethod) -> int:
    if num_replicates is None:
        return DEFAULT_REPLICATES
    if isinstance(num_replicates, bool) or int(num_replicates) != num_replicates:
        raise ConfigurationError(f"num_replicates must be an integer, got {num_replicates!r}")
    if method.is_resampling and num_replicates <= 0:
        raise ConfigurationError(
            f"num_replicates must be positive for method '{method.value}', got {num_replicates}"
        )
    return int(num_replicates)


class VarianceBackend:
    """
    Weighted-statistic-plus-variance machine

    The backend knows nothing about ratios of catch to effort or any other
    domain semantics: it evaluates a ``StatisticSpec`` on a design and
    attaches a variance, a confidence interval and a design effect.
    """

    def __init__(self,
                 confidence_level: float = DEFAULT_CONFIDENCE_LEVEL,
                 num_replicates: Optional[int] = None,
                 random_state: Optional[int] = None):
        self.confidence_level = confidence_level
        self.num_replicates = num_replicates
        self.random_state = random_state

    def estimate_variance(self,
                          design,
                          statistic_spec: StatisticSpec,
                          method: Union[str, VarianceMethod] = VarianceMethod.LINEARIZATION,
                          group_keys: Optional[Sequence[str]] = None,
                          confidence_level: Optional[float] = None,
                          num_replicates: Optional[int] = None,
                          random_state: Optional[int] = None) -> List[EstimateResult]:
        """
        Estimate a statistic and its variance for every observed domain

        Parameters
        ----------
        design : SampleDesign
            Sample to estimate from (read only)
        statistic_spec : StatisticSpec
            Statistic to compute
        method : str or VarianceMethod, default 'linearization'
            Requested variance method
        group_keys : list of str, optional
            Grouping columns; one result per observed combination
        confidence_level : float, optional
            Confidence level of the intervals
        num_replicates : int, optional
            Number of bootstrap replicates to generate
        random_state : int, optional
            Seed for generated bootstrap replicates

        Returns
        -------
        list of EstimateResult
            One row per observed domain, in the backend's own traversal order
        """
        return self.run(design, statistic_spec, method, group_keys,
                        confidence_level, num_replicates, random_state).results

    def run(self, design, statistic_spec, method=VarianceMethod.LINEARIZATION,
            group_keys=None, confidence_level=None, num_replicates=None,
            random_state=None) -> "BackendRun":
        """Same as ``estimate_variance`` but also reports the method that ran"""
        requested = VarianceMethod.parse(method)
        group_keys = [group_keys] if isinstance(group_keys, str) else list(group_keys or [])
        level = validate_confidence_level(
            self.confidence_level if confidence_level is None else confidence_level
        )
        n_reps = validate_num_replicates(
            self.num_replicates if num_replicates is None else num_replicates, requested
        )
        seed = self.random_state if random_state is None else random_state

        statistic_spec.validate(design)
        design.check_columns(group_keys, context="grouping")

        codes, keys = domain_codes(design.data, group_keys)
        n_domains = len(keys)
        prepared = statistic_spec.prepare(design)
        theta = statistic_spec.evaluate(prepared, design.weights, codes, n_domains)

        used = requested
        fallback_reason = None
        impl = get_method(requested)
        if requested.is_resampling:
            try:
                replicates = impl.construct_replicates(design, n_reps, seed)
                variance, deff, info, per_domain = impl.estimate(
                    design, statistic_spec, prepared, codes, n_domains, theta, replicates
                )
            except ConfigurationError:
                raise
            except Exception as e:
                fallback_reason = str(e) or type(e).__name__
                warnings.warn(
                    f"Variance method '{requested.value}' unavailable ({fallback_reason}); "
                    f"falling back to linearization",
                    MethodFallbackWarning,
                    stacklevel=2,
                )
                used = VarianceMethod.LINEARIZATION
                impl = LinearizationMethod()

        if used is VarianceMethod.LINEARIZATION:
            variance, deff, info, per_domain = impl.estimate(
                design, statistic_spec, prepared, codes, n_domains, theta
            )

        if info.get('lonely_psu_strata'):
            warnings.warn(
                f"{info['lonely_psu_strata']} stratum/strata have a single PSU and "
                f"contribute no variance",
                DataQualityWarning,
                stacklevel=2,
            )

        results = self._build_results(
            keys, group_keys, theta, variance, deff, codes, prepared[2],
            statistic_spec, used, requested, level, info, per_domain, fallback_reason
        )
        return BackendRun(results, used, requested, fallback_reason)

    def _build_results(self, keys, group_keys, theta, variance, deff, codes, usable,
                       spec, used, requested, level, info, per_domain,
                       fallback_reason) -> List[EstimateResult]:
        """Build one result row per domain code"""
        n_domains = len(keys)
        z = stats.norm.ppf(1 - (1 - level) / 2)
        n_rows = np.bincount(codes, minlength=n_domains)
        n_used = np.bincount(codes[usable], minlength=n_domains)

        results = []
        for d, key in enumerate(keys):
            diagnostics = make_diagnostics(
                statistic=spec.describe(),
                n_used=int(n_used[d]),
                confidence_level=level,
                **info
            )

            if fallback_reason is not None:
                add_flag(diagnostics, 'method_fallback',
                         f"'{requested.value}' unavailable: {fallback_reason}")
                diagnostics['fallback_from'] = requested.value
                diagnostics['fallback_reason'] = fallback_reason

            if info.get('lonely_psu_strata'):
                add_flag(diagnostics, 'lonely_psu')

            undefined = per_domain.get('undefined_replicates')
            if undefined is not None and undefined[d] > 0:
                diagnostics['undefined_replicates'] = int(undefined[d])
                add_flag(diagnostics, 'undefined_replicates',
                         f"{int(undefined[d])} replicate estimate(s) undefined and skipped")

            estimate = float(theta[d])
            var = float(variance[d])
            if not np.isfinite(estimate):
                estimate = np.nan
                var = np.nan
                add_flag(diagnostics, 'no_usable_units',
                         "No unit with usable values in this domain")

            se = float(np.sqrt(var)) if np.isfinite(var) and var >= 0 else np.nan

            results.append(EstimateResult(
                group_key=tuple(key),
                estimate=estimate,
                se=se,
                ci_low=estimate - z * se,
                ci_high=estimate + z * se,
                n=int(n_rows[d]),
                deff=float(deff[d]),
                method=used.value,
                requested_method=requested.value,
                diagnostics=diagnostics,
                group_by=tuple(group_keys),
                variance=var,
            ))
        return results


def estimate_variance(design,
                      statistic_spec: StatisticSpec,
                      method: Union[str, VarianceMethod] = VarianceMethod.LINEARIZATION,
                      group_keys: Optional[Sequence[str]] = None,
                      confidence_level: float = DEFAULT_CONFIDENCE_LEVEL,
                      num_replicates: Optional[int] = None,
                      random_state: Optional[int] = None) -> List[EstimateResult]:
    """Functional form of ``VarianceBackend.estimate_variance``"""
    return VarianceBackend().estimate_variance(
        design, statistic_spec, method, group_keys=group_keys,
        confidence_level=confidence_level, num_replicates=num_replicates,
        random_state=random_state,
    )
