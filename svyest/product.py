"""
Product of two estimates (e.g. effort x catch rate = total catch)

Variance is propagated with the delta method:

    Var(A B) = B^2 Var(A) + A^2 Var(B) + 2 A B Cov(A, B)

The covariance term is zero unless a correlation or covariance is supplied,
for estimates that come from the same underlying sample.
"""

import warnings
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import stats

from .constants import DEFAULT_CONFIDENCE_LEVEL, RESULT_COLUMNS, SAMPLE_SIZE_MISMATCH_RATIO
from .errors import ConfigurationError, DomainMismatchWarning
from .results import EstimateResult, add_flag, make_diagnostics, results_from_frame
from .variance import validate_confidence_level

PRODUCT_METHOD = "delta_method"

EstimateInput = Union[pd.DataFrame, EstimateResult, Sequence[EstimateResult]]


class ProductEstimator:
    """Delta-method product of two per-domain estimate tables"""

    def __init__(self, confidence_level: float = DEFAULT_CONFIDENCE_LEVEL):
        self.confidence_level = confidence_level

    def estimate_product(self,
                         estimate_a: EstimateInput,
                         estimate_b: EstimateInput,
                         group_by: Optional[Union[str, Sequence[str]]] = None,
                         correlation: Optional[float] = None,
                         covariance: Optional[float] = None,
                         confidence_level: Optional[float] = None,
                         pad: bool = False) -> List[EstimateResult]:
        """
        Multiply two estimates domain by domain

        Parameters
        ----------
        estimate_a, estimate_b : list of EstimateResult or pd.DataFrame
            Per-domain estimates sharing the same grouping
        group_by : str or list of str, optional
            Group columns; needed to read domains from DataFrame inputs, taken
            from the results otherwise
        correlation : float, optional
            Correlation between A and B in [-1, 1]; None assumes independence
        covariance : float, optional
            Covariance between A and B (instead of ``correlation``)
        confidence_level : float, optional
            Confidence level of the intervals
        pad : bool, default False
            Return the union of domains, with missing rows for domains present
            in only one input, instead of the intersection

        Returns
        -------
        list of EstimateResult
            Ordered as in ``estimate_a``, then domains only in ``estimate_b``
        """
        level = validate_confidence_level(
            self.confidence_level if confidence_level is None else confidence_level
        )
        if correlation is not None and covariance is not None:
            raise ConfigurationError("Supply either correlation or covariance, not both")
        if correlation is not None:
            correlation = float(correlation)
            if not -1 <= correlation <= 1:
                raise ConfigurationError(f"correlation must be in [-1, 1], got {correlation}")
        if covariance is not None:
            covariance = float(covariance)
            if not np.isfinite(covariance):
                raise ConfigurationError(f"covariance must be finite, got {covariance}")

        group_by = [group_by] if isinstance(group_by, str) else group_by
        rows_a = self._as_results(estimate_a, group_by)
        rows_b = self._as_results(estimate_b, group_by)
        index_a = self._index(rows_a, "estimate_a")
        index_b = self._index(rows_b, "estimate_b")

        if group_by is None:
            known = [r.group_by for r in rows_a + rows_b if r.group_by]
            group_by = list(known[0]) if known else []
        key_lengths = {len(k) for k in list(index_a) + list(index_b)}
        if key_lengths and key_lengths != {len(group_by)}:
            raise ConfigurationError(
                f"Estimate tables have group keys of length {sorted(key_lengths)} "
                f"but group columns {list(group_by)}"
            )

        only_a = [k for k in index_a if k not in index_b]
        only_b = [k for k in index_b if k not in index_a]
        if only_a or only_b:
            warnings.warn(
                f"Estimate tables cover different domains: {len(only_a)} only in estimate_a, "
                f"{len(only_b)} only in estimate_b; "
                + ("padding with missing rows" if pad else "keeping matching domains only"),
                DomainMismatchWarning,
                stacklevel=2,
            )

        z = stats.norm.ppf(1 - (1 - level) / 2)
        results = []
        for key in list(index_a) + only_b:
            ra, rb = index_a.get(key), index_b.get(key)
            if ra is not None and rb is not None:
                results.append(self._combine(ra, rb, group_by, correlation, covariance, z))
            elif pad:
                results.append(self._unmatched(ra if ra is not None else rb,
                                               "estimate_a" if ra is not None else "estimate_b",
                                               group_by))
        return results

    @staticmethod
    def _as_results(estimates: EstimateInput, group_by) -> List[EstimateResult]:
        if isinstance(estimates, EstimateResult):
            return [estimates]
        if isinstance(estimates, pd.DataFrame):
            if group_by is None:
                group_by = [c for c in estimates.columns if c not in RESULT_COLUMNS]
            return results_from_frame(estimates, group_by)
        return list(estimates)

    @staticmethod
    def _index(rows: List[EstimateResult], name: str) -> Dict[Tuple, EstimateResult]:
        index = {}
        for res in rows:
            if res.key in index:
                raise ConfigurationError(f"Duplicate domain {res.group_key!r} in {name}")
            index[res.key] = res
        return index

    @staticmethod
    def _combine(ra: EstimateResult, rb: EstimateResult, group_by, correlation,
                 covariance, z) -> EstimateResult:
        a, b = ra.estimate, rb.estimate
        var_a, var_b = ra.se ** 2, rb.se ** 2

        if correlation is not None:
            cov = correlation * ra.se * rb.se
        elif covariance is not None:
            cov = covariance
        else:
            cov = 0.0

        diagnostics = make_diagnostics(
            estimate_a=a, estimate_b=b, se_a=ra.se, se_b=rb.se,
            method_a=ra.method, method_b=rb.method, n_a=ra.n, n_b=rb.n,
            correlation=correlation, covariance=cov,
        )

        variance = b ** 2 * var_a + a ** 2 * var_b + 2 * a * b * cov
        if not np.all(np.isfinite([a, b, ra.se, rb.se])):
            add_flag(diagnostics, 'undefined_input', "An input estimate or standard error is missing")
        if variance < 0:
            add_flag(diagnostics, 'negative_variance',
                     f"Delta-method variance {variance:.4g} < 0 set to 0")
            variance = 0.0

        if ra.method != rb.method:
            add_flag(diagnostics, 'method_mismatch',
                     f"Inputs use different variance methods: {ra.method} vs {rb.method}")

        n_small, n_large = sorted([ra.n, rb.n])
        if n_large > 0 and (n_small == 0 or n_large / n_small > SAMPLE_SIZE_MISMATCH_RATIO):
            add_flag(diagnostics, 'sample_size_mismatch',
                     f"Input sample sizes differ substantially: {ra.n} vs {rb.n}")

        estimate = a * b
        se = float(np.sqrt(variance)) if np.isfinite(variance) else np.nan
        return EstimateResult(
            group_key=ra.group_key,
            estimate=estimate,
            se=se,
            ci_low=estimate - z * se,
            ci_high=estimate + z * se,
            n=min(ra.n, rb.n),
            deff=np.nan,
            method=PRODUCT_METHOD,
            requested_method=PRODUCT_METHOD,
            diagnostics=diagnostics,
            group_by=tuple(group_by),
            variance=variance,
        )

    @staticmethod
    def _unmatched(res: EstimateResult, present_in: str, group_by) -> EstimateResult:
        diagnostics = make_diagnostics(present_in=present_in)
        add_flag(diagnostics, 'domain_unmatched', f"Domain present only in {present_in}")
        return EstimateResult(
            group_key=res.group_key,
            estimate=np.nan,
            se=np.nan,
            ci_low=np.nan,
            ci_high=np.nan,
            n=0,
            deff=np.nan,
            method=PRODUCT_METHOD,
            requested_method=PRODUCT_METHOD,
            diagnostics=diagnostics,
            group_by=tuple(group_by),
        )


def estimate_product(estimate_a: EstimateInput, estimate_b: EstimateInput,
                     group_by=None, correlation=None, **kwargs) -> List[EstimateResult]:
    """Functional form of ``ProductEstimator.estimate_product``"""
    return ProductEstimator().estimate_product(estimate_a, estimate_b, group_by, correlation, **kwargs)
