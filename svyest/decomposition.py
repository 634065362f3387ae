"""
Variance components for two-stage samples

Repeated sub-samples (counts, shifts) are taken within primary units (days,
sites), which are themselves a sample of the primary units in a domain.
``VarianceDecomposer.decompose`` splits the domain-level variance into an
among-primary-unit and a within-primary-unit component:

    V = ((1 - n/N) / n) * s2_among + s2_within / (2 N)

``VarianceDecomposer.anova_components`` gives the one-way random-effects
ANOVA view of the same split (via statsmodels), with the intraclass
correlation and the optimal allocation ratio sqrt(V_among / V_within).
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from .errors import ConfigurationError
from .results import add_flag, make_diagnostics

# Optional: statsmodels for ANOVA variance components
try:
    import statsmodels.api as sm
    from statsmodels.formula.api import ols
    HAS_STATSMODELS = True
except ImportError:
    HAS_STATSMODELS = False


@dataclass
class VarianceComponents:
    """Among / within primary unit split of one domain's variance"""
    var_among: float
    var_within: float
    var_total: float
    n_units: int
    population_units: Optional[float]
    s2_among: float
    s2_within: float
    diagnostics: Dict = field(default_factory=make_diagnostics)

    @property
    def flags(self) -> List[str]:
        return self.diagnostics['flags']


class VarianceDecomposer:
    """Two-stage variance decomposition"""

    def __init__(self, population_units: Optional[float] = None):
        self.population_units = population_units

    def decompose(self, values, units, population_units: Optional[float] = None) -> VarianceComponents:
        """
        Decompose variance into among- and within-primary-unit components

        Parameters
        ----------
        values : array-like
            Repeated measurements
        units : array-like
            Primary unit label of each measurement
        population_units : float, optional
            Number of primary units in the population (N)

        Returns
        -------
        VarianceComponents
            Components that cannot be computed are NaN and flagged
        """
        values = pd.to_numeric(pd.Series(values), errors='coerce').reset_index(drop=True)
        units = pd.Series(units).reset_index(drop=True)
        if len(values) != len(units):
            raise ConfigurationError(
                f"values ({len(values)}) and units ({len(units)}) differ in length"
            )

        keep = np.isfinite(values.to_numpy(dtype=float))
        frame = pd.DataFrame({'y': values[keep], 'unit': units[keep]})
        grouped = frame.groupby('unit', sort=False, dropna=False)['y']
        unit_means = grouped.mean()
        counts = grouped.size()
        unit_vars = grouped.var(ddof=1)
        n = len(unit_means)

        N = self.population_units if population_units is None else population_units
        if N is not None:
            N = float(N)
            if not N > 0:
                raise ConfigurationError(f"population_units must be positive, got {N}")
            if N < n:
                raise ConfigurationError(
                    f"population_units ({N:g}) is smaller than the {n} sampled primary units"
                )

        diagnostics = make_diagnostics(n_units=n, n_obs=int(keep.sum()), population_units=N)

        if n >= 2:
            s2_among = float(unit_means.var(ddof=1))
        else:
            s2_among = np.nan
            add_flag(diagnostics, 'insufficient_primary_units',
                     f"{n} primary unit(s); the among-unit variance needs at least 2")

        repeated = unit_vars[counts >= 2]
        diagnostics['n_units_repeated'] = int(len(repeated))
        if len(repeated):
            s2_within = float(repeated.mean())
        else:
            s2_within = np.nan
            add_flag(diagnostics, 'insufficient_repeated_measurements',
                     "No primary unit has 2 or more measurements")

        if N is None:
            add_flag(diagnostics, 'population_units_unknown',
                     "Number of population primary units unknown; no FPC and no within component")
            var_among = s2_among / n if n > 0 else np.nan
            var_within = np.nan
        else:
            var_among = (1 - n / N) / n * s2_among if n > 0 else np.nan
            var_within = s2_within / (2 * N)

        parts = [v for v in (var_among, var_within) if np.isfinite(v)]
        var_total = float(sum(parts)) if parts else np.nan
        if len(parts) == 1:
            add_flag(diagnostics, 'partial_decomposition')

        return VarianceComponents(
            var_among=float(var_among),
            var_within=float(var_within),
            var_total=var_total,
            n_units=n,
            population_units=N,
            s2_among=s2_among,
            s2_within=s2_within,
            diagnostics=diagnostics,
        )

    def anova_components(self, data: pd.DataFrame, response: str, unit_col: str) -> Dict:
        """
        One-way random-effects ANOVA variance components

        Parameters
        ----------
        data : pd.DataFrame
            Records with repeated measurements per unit
        response : str
            Measured variable
        unit_col : str
            Primary unit label

        Returns
        -------
        dict
            'components' table (component, variance, proportion, mean_sq, df),
            'icc', 'optimal_ratio', 'n_units', 'n_obs' and 'diagnostics'
        """
        if not HAS_STATSMODELS:
            raise ImportError(
                "statsmodels is required for ANOVA variance components. "
                "Install with: pip install svyest[anova]"
            )

        missing = [c for c in (response, unit_col) if c not in data.columns]
        if missing:
            raise ConfigurationError(
                f"Column(s) {missing} not found. Available columns: {list(data.columns)}"
            )

        frame = pd.DataFrame({
            'y': pd.to_numeric(data[response], errors='coerce'),
            'unit': data[unit_col].astype(str),
        }).dropna()

        counts = frame.groupby('unit').size()
        a = len(counts)
        n_obs = len(frame)
        diagnostics = make_diagnostics(n_units=a, n_obs=n_obs)
        components = pd.DataFrame({
            'component': [f'among_{unit_col}', f'within_{unit_col}'],
            'variance': np.nan,
            'proportion': np.nan,
            'mean_sq': np.nan,
            'df': np.nan,
        })

        if a < 2 or n_obs <= a:
            add_flag(diagnostics, 'insufficient_data',
                     "ANOVA components need at least 2 units and some repeated measurements")
            return {'components': components, 'icc': np.nan, 'optimal_ratio': np.nan,
                    'n_units': a, 'n_obs': n_obs, 'diagnostics': diagnostics}

        model = ols("y ~ C(unit)", data=frame).fit()
        table = sm.stats.anova_lm(model, typ=1)
        ms_among = float(table.loc['C(unit)', 'mean_sq'])
        ms_within = float(table.loc['Residual', 'mean_sq'])

        # Effective replicates per unit for unbalanced designs
        n0 = (n_obs - (counts ** 2).sum() / n_obs) / (a - 1)
        var_among = max(0.0, (ms_among - ms_within) / n0)
        var_within = ms_within
        total = var_among + var_within

        components['variance'] = [var_among, var_within]
        components['proportion'] = [var_among / total, var_within / total] if total > 0 else np.nan
        components['mean_sq'] = [ms_among, ms_within]
        components['df'] = [float(table.loc['C(unit)', 'df']), float(table.loc['Residual', 'df'])]

        if ms_among < ms_within:
            add_flag(diagnostics, 'negative_among_component',
                     "Among-unit mean square below within-unit mean square; component set to 0")

        icc = var_among / total if total > 0 else np.nan
        optimal_ratio = float(np.sqrt(var_among / var_within)) if var_within > 0 else np.nan

        return {'components': components, 'icc': icc, 'optimal_ratio': optimal_ratio,
                'n_units': a, 'n_obs': n_obs, 'diagnostics': diagnostics}
