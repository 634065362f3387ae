"""
Design quality checks

Summarizes the strata, clusters, weights, FPC and replicate structure of a
``SampleDesign`` and lists the issues likely to hurt variance estimation.
"""

from typing import Dict

import numpy as np
import pandas as pd

MIN_SAMPLE_SIZE = 30
SMALL_STRATUM_SIZE = 5
SMALL_CLUSTER_SIZE = 3
MAX_WEIGHT_CV = 1.0
EXTREME_WEIGHT_FACTOR = 5.0
MAX_WEIGHT_RANGE_RATIO = 10.0

RECOMMENDATIONS = {
    'sample_size': f"Increase sample size to at least {MIN_SAMPLE_SIZE} observations",
    'stratification': "Combine singleton or very small strata with similar strata",
    'lonely_psu': "Strata with a single PSU contribute no variance; collapse them or add PSUs",
    'clustering': "Singleton clusters reduce variance estimation accuracy; consider larger clusters",
    'weights': "High weight variability can reduce precision; consider trimming extreme weights",
    'fpc': "Specify a finite population correction when sampling a large share of a finite population",
}


def _size_summary(sizes: pd.Series) -> Dict:
    return {
        'count': int(len(sizes)),
        'min_size': int(sizes.min()) if len(sizes) else 0,
        'max_size': int(sizes.max()) if len(sizes) else 0,
        'mean_size': float(sizes.mean()) if len(sizes) else np.nan,
    }


def design_diagnostics(design, detailed: bool = False) -> Dict:
    """
    Assess design quality

    Parameters
    ----------
    design : SampleDesign
        Design to check
    detailed : bool, default False
        Add weight quantiles and per-stratum sizes

    Returns
    -------
    dict
        'summary', 'checks', 'issues' (check name -> message) and
        'recommendations'; 'detailed' when requested
    """
    data = design.data
    weights = design.weights
    psu, psu_stratum, n_h = design.psu_structure()

    summary = {
        'n_observations': design.n_units,
        'has_strata': design.strata is not None,
        'has_clusters': design.cluster is not None,
        'has_fpc': design.fpc is not None,
        'has_replicates': design.has_replicates,
        'n_replicates': design.n_replicates,
        'replicate_type': design.replicate_type,
        'n_psu': int(len(psu_stratum)),
        'n_strata': int(len(n_h)),
    }

    checks = {}
    issues = {}

    checks['sample_size'] = {'n_obs': design.n_units, 'adequate': design.n_units >= MIN_SAMPLE_SIZE}
    if design.n_units < MIN_SAMPLE_SIZE:
        issues['sample_size'] = "Very small sample size"

    if design.strata is not None:
        sizes = data.groupby(design.strata, dropna=False, sort=False).size()
        check = _size_summary(sizes)
        check['singleton_strata'] = int((sizes == 1).sum())
        check['small_strata'] = int((sizes < SMALL_STRATUM_SIZE).sum())
        check['balanced'] = bool(check['max_size'] <= 2 * check['min_size'])
        checks['stratification'] = check
        if check['singleton_strata']:
            issues['stratification'] = f"{check['singleton_strata']} singleton strata detected"
        elif check['small_strata']:
            issues['stratification'] = (
                f"{check['small_strata']} small strata (n < {SMALL_STRATUM_SIZE}) detected"
            )

    lonely = int((n_h == 1).sum())
    checks['lonely_psu'] = {'lonely_psu_strata': lonely}
    if lonely and design.n_units:
        issues['lonely_psu'] = f"{lonely} stratum/strata with a single PSU"

    if design.cluster is not None:
        sizes = pd.Series(np.bincount(psu)) if len(psu) else pd.Series([], dtype=int)
        check = _size_summary(sizes)
        check['singleton_clusters'] = int((sizes == 1).sum())
        check['small_clusters'] = int((sizes < SMALL_CLUSTER_SIZE).sum())
        checks['clustering'] = check
        if check['singleton_clusters']:
            issues['clustering'] = f"{check['singleton_clusters']} singleton clusters detected"
        elif check['small_clusters']:
            issues['clustering'] = (
                f"{check['small_clusters']} small clusters (n < {SMALL_CLUSTER_SIZE}) detected"
            )

    if len(weights):
        mean_w = weights.mean()
        cv = float(weights.std(ddof=1) / mean_w) if len(weights) > 1 else 0.0
        extreme = int(((weights > EXTREME_WEIGHT_FACTOR * mean_w) |
                       (weights < mean_w / EXTREME_WEIGHT_FACTOR)).sum())
        range_ratio = float(weights.max() / weights.min())
        checks['weights'] = {
            'min': float(weights.min()),
            'max': float(weights.max()),
            'mean': float(mean_w),
            'cv_weights': cv,
            'range_ratio': range_ratio,
            'extreme_weights': extreme,
        }
        if cv > MAX_WEIGHT_CV:
            issues['weights'] = f"High weight variability (CV > {MAX_WEIGHT_CV:g})"
        elif extreme:
            issues['weights'] = f"{extreme} extreme weights detected"
        elif range_ratio > MAX_WEIGHT_RANGE_RATIO:
            issues['weights'] = f"Large weight range (max/min > {MAX_WEIGHT_RANGE_RATIO:g})"

    checks['fpc'] = {'has_fpc': design.fpc is not None}
    if design.fpc is None:
        issues['fpc'] = "No finite population correction specified"
    else:
        checks['fpc']['sampling_fractions'] = design.sampling_fractions(n_h).tolist()

    report = {
        'summary': summary,
        'checks': checks,
        'issues': issues,
        'recommendations': {name: RECOMMENDATIONS[name] for name in issues},
    }

    if detailed:
        report['detailed'] = {
            'weight_quantiles': dict(zip(
                [0.01, 0.05, 0.25, 0.5, 0.75, 0.95, 0.99],
                np.quantile(weights, [0.01, 0.05, 0.25, 0.5, 0.75, 0.95, 0.99]).tolist()
            )) if len(weights) else {},
            'psu_per_stratum': n_h.tolist(),
        }
        if design.strata is not None:
            report['detailed']['stratum_sizes'] = (
                data.groupby(design.strata, dropna=False, sort=False).size()
                .rename('n').reset_index()
            )

    return report
